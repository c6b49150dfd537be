"""Observability helpers for ragchat."""

from __future__ import annotations

import logging
from contextvars import ContextVar
from typing import Iterable

import structlog
from prometheus_client import Counter, Gauge, Histogram

_logger_configured = False
_correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="-")


def configure_logging(level: int = logging.INFO) -> None:
    global _logger_configured  # noqa: PLW0603 - module-level guard
    if _logger_configured:
        return
    logging.basicConfig(level=level, format="%(message)s")
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    _logger_configured = True


def bind_correlation_id(correlation_id: str) -> None:
    structlog.contextvars.bind_contextvars(correlation_id=correlation_id)
    _correlation_id_var.set(correlation_id)


def clear_correlation_id() -> None:
    structlog.contextvars.clear_contextvars()
    _correlation_id_var.set("-")


def get_correlation_id() -> str:
    return _correlation_id_var.get()


def turn_context(conversation_id: str, turn_id: str):
    """Bind conversation/turn identifiers to every log line inside the block.

    Context variables are task-local, so concurrent turns never see each
    other's bindings.
    """

    return structlog.contextvars.bound_contextvars(conversation_id=conversation_id, turn_id=turn_id)


def get_logger(name: str = "ragchat") -> structlog.BoundLogger:
    configure_logging()
    return structlog.get_logger(name)


def _clamp_score(score: float) -> float:
    if score < 0.0:
        return 0.0
    if score > 1.0:
        return 1.0
    return score


class PipelineMetrics:
    """Prometheus metrics for pipeline stages."""

    retrieval_latency = Histogram(
        "ragchat_retrieval_duration_seconds",
        "Time spent searching the fragment index.",
        buckets=(0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 2.0),
    )
    retrieved_fragment_count = Histogram(
        "ragchat_retrieved_fragment_count",
        "Number of fragments returned by retrieval.",
        buckets=(0, 1, 2, 3, 5, 8, 13),
    )
    similarity_score = Histogram(
        "ragchat_similarity_score",
        "Cosine similarity of returned fragments.",
        buckets=(0.0, 0.25, 0.5, 0.7, 0.8, 0.9, 1.0),
    )
    retrieval_failures = Counter(
        "ragchat_retrieval_failures_total",
        "Retrieval attempts that fell back to an empty context.",
    )
    indexed_fragments = Gauge(
        "ragchat_indexed_fragments",
        "Fragments currently held in the in-memory index.",
    )
    generation_latency = Histogram(
        "ragchat_generation_duration_seconds",
        "Time spent generating answers.",
        ["provider"],
        buckets=(0.05, 0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0),
    )
    provider_failures = Counter(
        "ragchat_provider_failures_total",
        "Provider attempts that raised or timed out.",
        ["provider"],
    )
    stream_chunks = Counter(
        "ragchat_stream_chunks_total",
        "Chunks broadcast to conversation rooms.",
    )
    turn_outcomes = Counter(
        "ragchat_turn_outcomes_total",
        "Conversation turns by terminal state.",
        ["state"],
    )

    @classmethod
    def observe_retrieval(
        cls,
        duration_seconds: float,
        result_count: int,
        scores: Iterable[float],
    ) -> None:
        cls.retrieval_latency.observe(duration_seconds)
        cls.retrieved_fragment_count.observe(result_count)
        for score in scores:
            cls.similarity_score.observe(_clamp_score(score))

    @classmethod
    def observe_generation(cls, provider: str, duration_seconds: float) -> None:
        cls.generation_latency.labels(provider=provider).observe(duration_seconds)

    @classmethod
    def record_provider_failure(cls, provider: str) -> None:
        cls.provider_failures.labels(provider=provider).inc()

    @classmethod
    def record_turn(cls, state: str) -> None:
        cls.turn_outcomes.labels(state=state).inc()


__all__ = [
    "PipelineMetrics",
    "bind_correlation_id",
    "clear_correlation_id",
    "configure_logging",
    "get_correlation_id",
    "get_logger",
    "turn_context",
]
