"""Turns extracted document text into indexable fragments."""

from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass
from typing import Any, Iterable, List, Mapping, Protocol, Sequence

from langchain_core.documents import Document as LCDocument
from langchain_text_splitters import RecursiveCharacterTextSplitter

from ragchat.metrics.observability import get_logger
from ragchat.models import Fragment


class IngestionError(RuntimeError):
    """Raised when supplied text or chunks cannot be turned into fragments."""


@dataclass(frozen=True)
class FragmenterConfig:
    """Character-based chunking parameters."""

    chunk_size: int = 1000
    chunk_overlap: int = 200


class Fragmenter(Protocol):
    """Protocol for implementations that split document text into fragments."""

    def split(self, document_id: str, text: str, metadata: Mapping[str, Any] | None = None) -> Sequence[Fragment]:
        """Split ``text`` into ordered fragments owned by ``document_id``."""


def _normalize_text(raw: str) -> str:
    normalized = unicodedata.normalize("NFKC", raw)
    normalized = normalized.replace("\u00a0", " ")
    normalized = re.sub(r"\s+", " ", normalized)
    return normalized.strip()


class LangChainFragmenter:
    """Split normalized text with LangChain's recursive character splitter.

    Offsets refer to the normalized text, which is what gets indexed.
    """

    _logger = get_logger("ingestion")

    def __init__(self, config: FragmenterConfig | None = None) -> None:
        self._config = config or FragmenterConfig()
        if self._config.chunk_overlap >= self._config.chunk_size:
            raise IngestionError("chunk_overlap must be smaller than chunk_size")
        self._splitter = RecursiveCharacterTextSplitter(
            chunk_size=self._config.chunk_size,
            chunk_overlap=self._config.chunk_overlap,
            add_start_index=True,
        )

    def split(self, document_id: str, text: str, metadata: Mapping[str, Any] | None = None) -> Sequence[Fragment]:
        normalized = _normalize_text(text)
        if not normalized:
            return []
        documents = self._splitter.split_documents([LCDocument(page_content=normalized, metadata=dict(metadata or {}))])
        fragments: List[Fragment] = []
        for ordinal, doc in enumerate(documents):
            chunk_metadata = dict(doc.metadata)
            start = int(chunk_metadata.pop("start_index", 0))
            if start < 0:
                start = normalized.find(doc.page_content)
            content = doc.page_content.strip()
            fragments.append(
                Fragment(
                    document_id=document_id,
                    ordinal=ordinal,
                    content=content,
                    start=start,
                    end=start + len(doc.page_content),
                    metadata={**chunk_metadata, "length": len(content)},
                ),
            )
        self._logger.info("ingestion.split", document_id=document_id, fragment_count=len(fragments))
        return fragments


def fragments_from_chunks(document_id: str, chunks: Iterable[Mapping[str, Any]]) -> Sequence[Fragment]:
    """Build fragments from collaborator-supplied ``{content, start, end, ...}`` chunks."""

    fragments: List[Fragment] = []
    for ordinal, chunk in enumerate(chunks):
        content = str(chunk.get("content") or "").strip()
        if not content:
            raise IngestionError(f"Chunk {ordinal} of document {document_id} has no content")
        start = int(chunk.get("start", 0))
        end = int(chunk.get("end", start + len(content)))
        if end < start:
            raise IngestionError(f"Chunk {ordinal} of document {document_id} ends before it starts")
        extra = {key: value for key, value in chunk.items() if key not in {"content", "start", "end", "embedding"}}
        embedding = chunk.get("embedding")
        fragments.append(
            Fragment(
                document_id=document_id,
                ordinal=ordinal,
                content=content,
                embedding=tuple(float(value) for value in embedding) if embedding else None,
                start=start,
                end=end,
                metadata=extra,
            ),
        )
    return fragments
