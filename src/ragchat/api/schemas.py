"""Pydantic models for the ragchat API."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class ChunkIn(BaseModel):
    content: str = Field(..., description="Fragment text as produced by the ingestion collaborator")
    start: Optional[int] = Field(default=None, ge=0, description="Start offset in the source document")
    end: Optional[int] = Field(default=None, ge=0, description="End offset in the source document")
    embedding: Optional[List[float]] = Field(default=None, description="Precomputed embedding, if any")


class IndexDocumentRequest(BaseModel):
    """Either raw ``text`` to fragment, or pre-chunked ``chunks``."""

    text: Optional[str] = Field(default=None, description="Raw document text to split into fragments")
    chunks: Optional[List[ChunkIn]] = Field(default=None, description="Pre-chunked fragments")
    metadata: Dict[str, Any] = Field(default_factory=dict)


class IndexDocumentResponse(BaseModel):
    document_id: str
    indexed: int = Field(..., ge=0, description="Number of fragments added to the index")


class RemoveDocumentResponse(BaseModel):
    document_id: str
    removed: int = Field(..., ge=0)


class IndexStatsResponse(BaseModel):
    total_fragments: int
    total_documents: int
    fragments_per_document: Dict[str, int]
    dimension: int


class SearchRequest(BaseModel):
    query: str = Field(..., min_length=1, description="Text to search the index with")
    limit: Optional[int] = Field(default=None, ge=1, le=50)
    similarity_threshold: Optional[float] = Field(default=None, ge=-1.0, le=1.0)
    document_ids: Optional[List[str]] = Field(default=None, description="Restrict results to these documents")


class SearchResultModel(BaseModel):
    fragment_id: str
    document_id: str
    content: str
    similarity: float
    metadata: Dict[str, Any] = Field(default_factory=dict)


class SearchResponse(BaseModel):
    query: str
    results: List[SearchResultModel]


class GenerationSettingsModel(BaseModel):
    system_prompt: Optional[str] = None
    temperature: Optional[float] = Field(default=None, ge=0.0, le=2.0)
    max_tokens: Optional[int] = Field(default=None, ge=1, le=4000)


class ConversationSettingsModel(BaseModel):
    rag_enabled: Optional[bool] = None
    streaming_enabled: Optional[bool] = None
    memory_enabled: Optional[bool] = None


class CreateConversationRequest(BaseModel):
    title: Optional[str] = Field(default=None, max_length=100)
    generation: Optional[GenerationSettingsModel] = None
    settings: Optional[ConversationSettingsModel] = None


class UpdateConversationRequest(BaseModel):
    title: Optional[str] = Field(default=None, max_length=100)
    generation: Optional[GenerationSettingsModel] = None
    settings: Optional[ConversationSettingsModel] = None


class SendMessageRequest(BaseModel):
    # Length limits are enforced by the coordinator so HTTP and socket callers agree
    content: str
    use_rag: bool = True


class MessageMetadataModel(BaseModel):
    tokens_used: int = 0
    provider: str = ""
    processing_time_ms: float = 0.0
    sources: List[str] = Field(default_factory=list)


class MessageModel(BaseModel):
    role: str
    content: str
    timestamp: datetime
    metadata: MessageMetadataModel


class ConversationStatsModel(BaseModel):
    total_messages: int
    total_tokens_used: int
    average_response_time_ms: float


class ConversationSummaryModel(BaseModel):
    id: str
    title: str
    stats: ConversationStatsModel
    last_activity: datetime


class ConversationModel(BaseModel):
    id: str
    owner_id: str
    title: str
    messages: List[MessageModel]
    generation: Dict[str, Any]
    settings: Dict[str, Any]
    stats: ConversationStatsModel
    is_active: bool
    created_at: datetime
    last_activity: datetime


class ConversationListResponse(BaseModel):
    conversations: List[ConversationSummaryModel]


class SendMessageResponse(BaseModel):
    conversation: ConversationSummaryModel
    message: MessageModel


class ProviderStatusResponse(BaseModel):
    primary: str
    fallbacks: List[str]
    simulation: bool
    providers: Dict[str, bool]
    embeddings: str


class SnapshotFragmentModel(BaseModel):
    document_id: str
    ordinal: int = Field(..., ge=0)
    content: str
    embedding: List[float]
    start: int = 0
    end: int = 0
    metadata: Dict[str, Any] = Field(default_factory=dict)


class IndexSnapshotModel(BaseModel):
    dimension: int = Field(..., ge=1)
    fragments: List[SnapshotFragmentModel] = Field(default_factory=list)


class RestoreIndexResponse(BaseModel):
    restored: int = Field(..., ge=0)


class SummaryRequest(BaseModel):
    text: Optional[str] = Field(default=None, description="Raw text to summarize")
    document_id: Optional[str] = Field(default=None, description="Indexed document to summarize instead of text")
    max_length: int = Field(default=200, ge=10, le=2000, description="Approximate summary length in words")


class SummaryResponse(BaseModel):
    summary: str
    tokens_used: int
    original_length: int
    summary_length: int
    provider: str


class FlashcardRequest(BaseModel):
    text: Optional[str] = None
    document_id: Optional[str] = None
    count: int = Field(default=5, ge=1, le=20)


class FlashcardModel(BaseModel):
    question: str
    answer: str


class FlashcardResponse(BaseModel):
    flashcards: List[FlashcardModel]
    count: int
    tokens_used: int
    provider: str
