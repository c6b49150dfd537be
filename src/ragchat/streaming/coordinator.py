"""Conversation turn orchestration: retrieval, generation, persistence and broadcast."""

from __future__ import annotations

import asyncio
import time
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Deque, Dict, List, Mapping, Sequence, Tuple
from uuid import uuid4

from ragchat.config import Settings
from ragchat.conversations.models import Conversation, Message, MessageMetadata, Role
from ragchat.conversations.repository import ConversationRepository, QuotaLedger
from ragchat.errors import InvalidMessageError, QuotaExceededError, TurnFailedError
from ragchat.generation.gateway import GenerationGateway
from ragchat.generation.providers import estimate_tokens
from ragchat.metrics.observability import PipelineMetrics, get_logger, turn_context
from ragchat.models import ChatMessage, GenerationOptions, ProviderResponse
from ragchat.retrieval.service import RetrievalEngine
from ragchat.streaming.rooms import EventType, RoomBroker

ASSISTANT_ID = "assistant"

CONTEXT_PROMPT_TEMPLATE = (
    "You are a helpful AI assistant. Use the following context to answer the user's question "
    "accurately and helpfully.\n\n"
    "Context from documents:\n{context}\n\n"
    "User question: {question}\n\n"
    "Base your answer on the context provided. If the context does not contain the information "
    "needed, say so explicitly and then give a general response."
)


class TurnState(str, Enum):
    IDLE = "idle"
    CONTEXT_GATHERING = "context_gathering"
    GENERATING = "generating"
    FINALIZING = "finalizing"
    DONE = "done"
    FAILED = "failed"


@dataclass
class TurnRecord:
    conversation_id: str
    user_id: str
    turn_id: str = field(default_factory=lambda: uuid4().hex)
    states: List[TurnState] = field(default_factory=lambda: [TurnState.IDLE])
    error: str | None = None

    @property
    def state(self) -> TurnState:
        return self.states[-1]

    def advance(self, state: TurnState) -> None:
        self.states.append(state)


@dataclass(frozen=True)
class CoordinatorConfig:
    history_limit: int = 10
    max_message_chars: int = 4000
    quota_reservation: int = 100
    retrieval_limit: int = 5
    retrieval_threshold: float = 0.7

    @classmethod
    def from_settings(cls, settings: Settings) -> "CoordinatorConfig":
        return cls(
            history_limit=settings.history_limit,
            max_message_chars=settings.max_message_chars,
            quota_reservation=settings.quota_reservation,
            retrieval_limit=settings.retrieval_limit,
            retrieval_threshold=settings.retrieval_threshold,
        )


@dataclass(frozen=True)
class GatheredContext:
    text: str = ""
    sources: Tuple[str, ...] = ()


def _dedupe(values: Sequence[str]) -> Tuple[str, ...]:
    return tuple(dict.fromkeys(values))


class StreamingCoordinator:
    """Runs one conversation turn at a time per conversation.

    A turn moves ``idle -> context_gathering -> generating -> finalizing ->
    done`` or ends in ``failed``. The conversation lock is held for the whole
    turn, so turns on the same conversation are serialized while turns on
    different conversations proceed concurrently. Every event of a turn is
    published to the conversation's room in order.
    """

    def __init__(
        self,
        repository: ConversationRepository,
        quota: QuotaLedger,
        retrieval: RetrievalEngine,
        gateway: GenerationGateway,
        broker: RoomBroker,
        config: CoordinatorConfig | None = None,
        *,
        history_size: int = 100,
    ) -> None:
        self._repository = repository
        self._quota = quota
        self._retrieval = retrieval
        self._gateway = gateway
        self._broker = broker
        self._config = config or CoordinatorConfig()
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_holders: Dict[str, int] = {}
        self._turns: Deque[TurnRecord] = deque(maxlen=history_size)
        self._logger = get_logger("coordinator")

    @property
    def broker(self) -> RoomBroker:
        return self._broker

    @property
    def tracked_locks(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def _conversation_lock(self, conversation_id: str) -> AsyncIterator[None]:
        """Hold the conversation lock; the entry is evicted once nobody holds or awaits it."""

        lock = self._locks.setdefault(conversation_id, asyncio.Lock())
        self._lock_holders[conversation_id] = self._lock_holders.get(conversation_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._lock_holders[conversation_id] - 1
            if remaining:
                self._lock_holders[conversation_id] = remaining
            else:
                del self._lock_holders[conversation_id]
                del self._locks[conversation_id]

    def recent_turns(self) -> List[TurnRecord]:
        return list(self._turns)

    def validate(self, content: str) -> str:
        text = (content or "").strip()
        if not text:
            raise InvalidMessageError("Message content cannot be empty")
        if len(text) > self._config.max_message_chars:
            raise InvalidMessageError(
                f"Message content exceeds {self._config.max_message_chars} characters"
            )
        return text

    async def handle_message(
        self,
        conversation_id: str,
        user_id: str,
        content: str,
        *,
        use_rag: bool = True,
    ) -> Message:
        text = self.validate(content)
        if not self._quota.has_quota(user_id, self._config.quota_reservation):
            used, limit = self._quota.usage(user_id)
            raise QuotaExceededError(used, limit)

        record = TurnRecord(conversation_id=conversation_id, user_id=user_id)
        self._turns.append(record)
        with turn_context(conversation_id, record.turn_id):
            async with self._conversation_lock(conversation_id):
                conversation = await self._repository.load(conversation_id, user_id)
                return await self._run_turn(record, conversation, text, use_rag)

    async def _run_turn(
        self,
        record: TurnRecord,
        conversation: Conversation,
        text: str,
        use_rag: bool,
    ) -> Message:
        started = time.perf_counter()
        saved_count = len(conversation.messages)
        saved_title = conversation.title
        try:
            user_message = conversation.append_message(Role.USER, text)
            await self._repository.save(conversation)
            saved_count = len(conversation.messages)
            self._publish(
                conversation.conversation_id,
                EventType.MESSAGE_RECEIVED,
                {"message": user_message.to_dict(), "user_id": record.user_id},
            )

            self._advance(record, TurnState.CONTEXT_GATHERING)
            context = await self._gather_context(conversation, text, use_rag)
            prompt = self._build_prompt(conversation, text, context)

            self._advance(record, TurnState.GENERATING)
            response = await self._generate(conversation, prompt)

            self._advance(record, TurnState.FINALIZING)
            metadata = MessageMetadata(
                tokens_used=response.usage.total_tokens or estimate_tokens(response.content),
                provider=response.provider,
                processing_time_ms=(time.perf_counter() - started) * 1000.0,
                sources=_dedupe(context.sources),
            )
            assistant_message = conversation.append_message(Role.ASSISTANT, response.content, metadata)
            conversation.derive_title()
            await self._repository.save(conversation)
            saved_count = len(conversation.messages)
            saved_title = conversation.title
        except asyncio.CancelledError:
            self._fail_turn(record, conversation, saved_count, saved_title, "cancelled", "CancelledError")
            raise
        except Exception as exc:
            reason = str(exc) or type(exc).__name__
            self._fail_turn(record, conversation, saved_count, saved_title, reason, type(exc).__name__)
            raise TurnFailedError(conversation.conversation_id, reason) from exc

        self._publish(
            conversation.conversation_id,
            EventType.STREAM_COMPLETE,
            {"turn_id": record.turn_id, "message": assistant_message.to_dict(), "conversation": conversation.summary()},
        )
        self._publish_typing(conversation.conversation_id, ASSISTANT_ID, False)
        self._advance(record, TurnState.DONE)
        PipelineMetrics.record_turn(TurnState.DONE.value)
        self._logger.info(
            "turn.complete",
            provider=response.provider,
            tokens_used=metadata.tokens_used,
            processing_time_ms=metadata.processing_time_ms,
            source_count=len(metadata.sources),
        )
        await self._consume_quota(record.user_id, metadata.tokens_used)
        return assistant_message

    def _fail_turn(
        self,
        record: TurnRecord,
        conversation: Conversation,
        saved_count: int,
        saved_title: str,
        reason: str,
        error_type: str,
    ) -> None:
        conversation.revert_to(saved_count)
        conversation.title = saved_title
        record.error = reason
        self._advance(record, TurnState.FAILED)
        PipelineMetrics.record_turn(TurnState.FAILED.value)
        self._logger.error("turn.failed", error_type=error_type, detail=reason)
        self._publish(
            conversation.conversation_id,
            EventType.STREAM_ERROR,
            {"turn_id": record.turn_id, "message": "Error processing message"},
        )
        self._publish_typing(conversation.conversation_id, ASSISTANT_ID, False)

    async def _consume_quota(self, user_id: str, tokens: int) -> None:
        # Runs after stream_complete; the persisted answer stands even if accounting fails
        try:
            await self._quota.consume(user_id, tokens)
        except Exception as exc:
            self._logger.error(
                "quota.consume_failed",
                user_id=user_id,
                tokens=tokens,
                error_type=type(exc).__name__,
                detail=str(exc),
            )

    async def _gather_context(self, conversation: Conversation, text: str, use_rag: bool) -> GatheredContext:
        if not (use_rag and conversation.settings.rag_enabled):
            return GatheredContext()
        try:
            results = await self._retrieval.search(
                text,
                limit=self._config.retrieval_limit,
                similarity_threshold=self._config.retrieval_threshold,
            )
        except Exception as exc:
            PipelineMetrics.retrieval_failures.inc()
            self._logger.warning("retrieval.failed", error_type=type(exc).__name__, detail=str(exc))
            return GatheredContext()
        if not results:
            return GatheredContext()
        return GatheredContext(
            text="\n\n".join(result.content for result in results),
            sources=tuple(result.document_id for result in results),
        )

    def _build_prompt(self, conversation: Conversation, text: str, context: GatheredContext) -> List[ChatMessage]:
        if context.text:
            system = CONTEXT_PROMPT_TEMPLATE.format(context=context.text, question=text)
        else:
            system = conversation.generation.system_prompt
        return [ChatMessage(role=Role.SYSTEM.value, content=system), *conversation.context_window(self._config.history_limit)]

    async def _generate(self, conversation: Conversation, prompt: Sequence[ChatMessage]) -> ProviderResponse:
        conversation_id = conversation.conversation_id
        options = GenerationOptions(
            temperature=conversation.generation.temperature,
            max_tokens=conversation.generation.max_tokens,
        )
        self._publish(conversation_id, EventType.STREAM_START, {"provider": self._gateway.primary, "restarted": False})
        self._publish_typing(conversation_id, ASSISTANT_ID, True)
        if not conversation.settings.streaming_enabled:
            return await self._gateway.generate(prompt, options)

        buffer: List[str] = []

        async def on_chunk(delta: str) -> None:
            buffer.append(delta)
            PipelineMetrics.stream_chunks.inc()
            self._publish(conversation_id, EventType.STREAM_CHUNK, {"chunk": delta, "full_content": "".join(buffer)})

        async def on_restart(provider: str) -> None:
            buffer.clear()
            self._publish(conversation_id, EventType.STREAM_START, {"provider": provider, "restarted": True})

        return await self._gateway.generate_stream(prompt, on_chunk, options, on_restart)

    async def set_typing(self, conversation_id: str, user_id: str, is_typing: bool) -> None:
        # Ownership check only; typing never touches the transcript
        await self._repository.load(conversation_id, user_id)
        self._publish_typing(conversation_id, user_id, is_typing)

    async def update_conversation(
        self,
        conversation_id: str,
        user_id: str,
        *,
        title: str | None = None,
        settings: Mapping[str, Any] | None = None,
        generation: Mapping[str, Any] | None = None,
    ) -> Conversation:
        async with self._conversation_lock(conversation_id):
            conversation = await self._repository.load(conversation_id, user_id)
            conversation.update(title=title, settings=settings, generation=generation)
            await self._repository.save(conversation)
        self._logger.info("conversation.updated", conversation_id=conversation_id)
        return conversation

    async def delete_conversation(self, conversation_id: str, user_id: str) -> None:
        async with self._conversation_lock(conversation_id):
            conversation = await self._repository.load(conversation_id, user_id)
            conversation.deactivate()
            await self._repository.save(conversation)
        self._logger.info("conversation.deleted", conversation_id=conversation_id)

    def _advance(self, record: TurnRecord, state: TurnState) -> None:
        record.advance(state)
        self._logger.info("turn.state", state=state.value)

    def _publish(self, conversation_id: str, event_type: EventType, payload: Mapping[str, Any]) -> None:
        self._broker.publish(conversation_id, event_type, payload)

    def _publish_typing(self, conversation_id: str, user_id: str, is_typing: bool) -> None:
        self._publish(conversation_id, EventType.TYPING, {"user_id": user_id, "is_typing": is_typing})
