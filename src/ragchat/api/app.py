"""FastAPI application exposing the ragchat services."""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from typing import Set
from uuid import uuid4

from fastapi import Depends, FastAPI, Header, HTTPException, Request, WebSocket, WebSocketDisconnect, status
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from ragchat.api.schemas import (
    ConversationListResponse,
    ConversationModel,
    ConversationSummaryModel,
    CreateConversationRequest,
    FlashcardModel,
    FlashcardRequest,
    FlashcardResponse,
    IndexDocumentRequest,
    IndexDocumentResponse,
    IndexSnapshotModel,
    IndexStatsResponse,
    MessageModel,
    ProviderStatusResponse,
    RemoveDocumentResponse,
    RestoreIndexResponse,
    SearchRequest,
    SearchResponse,
    SearchResultModel,
    SendMessageRequest,
    SendMessageResponse,
    SnapshotFragmentModel,
    SummaryRequest,
    SummaryResponse,
    UpdateConversationRequest,
)
from ragchat.config import Settings, credential_configured, get_settings
from ragchat.conversations import (
    Conversation,
    ConversationRepository,
    ConversationSettings,
    GenerationSettings,
    InMemoryConversationRepository,
    InMemoryQuotaLedger,
)
from ragchat.embeddings import EmbeddingConfig, EmbeddingEstimator
from ragchat.errors import (
    ConversationNotFoundError,
    DocumentNotFoundError,
    DuplicateFragmentError,
    InvalidMessageError,
    QuotaExceededError,
    TurnFailedError,
)
from ragchat.generation import GenerationGateway, StudyAidService, StudyConfig, build_gateway
from ragchat.ingestion import Fragmenter, FragmenterConfig, IngestionError, LangChainFragmenter, fragments_from_chunks
from ragchat.metrics.observability import bind_correlation_id, clear_correlation_id, configure_logging, get_logger
from ragchat.models import Fragment
from ragchat.retrieval import IndexSnapshot, RetrievalConfig, RetrievalEngine
from ragchat.streaming import CoordinatorConfig, RoomBroker, StreamingCoordinator


@dataclass(frozen=True)
class AppDependencies:
    fragmenter: Fragmenter
    retrieval: RetrievalEngine
    gateway: GenerationGateway
    repository: ConversationRepository
    quota: InMemoryQuotaLedger
    broker: RoomBroker
    coordinator: StreamingCoordinator
    study: StudyAidService


def _embedding_config(settings: Settings) -> EmbeddingConfig:
    if settings.use_local_embeddings:
        return EmbeddingConfig(model=settings.local_embedding_model, dim=settings.embedding_dim, backend="huggingface")
    if credential_configured(settings.openai_api_key):
        return EmbeddingConfig(
            model=settings.embedding_model,
            dim=settings.embedding_dim,
            backend="openai",
            api_key=settings.openai_api_key,
        )
    return EmbeddingConfig(model=settings.embedding_model, dim=settings.embedding_dim, backend="hash")


def build_dependencies(settings: Settings) -> AppDependencies:
    embedder = EmbeddingEstimator(_embedding_config(settings))
    retrieval = RetrievalEngine(
        embedder,
        RetrievalConfig(limit=settings.retrieval_limit, similarity_threshold=settings.retrieval_threshold),
    )
    gateway = build_gateway(settings, embedder)
    repository = InMemoryConversationRepository()
    quota = InMemoryQuotaLedger(default_limit=settings.default_token_limit)
    broker = RoomBroker(queue_size=settings.room_queue_size)
    coordinator = StreamingCoordinator(
        repository,
        quota,
        retrieval,
        gateway,
        broker,
        CoordinatorConfig.from_settings(settings),
    )
    return AppDependencies(
        fragmenter=LangChainFragmenter(FragmenterConfig(settings.chunk_size, settings.chunk_overlap)),
        retrieval=retrieval,
        gateway=gateway,
        repository=repository,
        quota=quota,
        broker=broker,
        coordinator=coordinator,
        study=StudyAidService(gateway, quota, retrieval, StudyConfig.from_settings(settings)),
    )


def _summary_model(conversation: Conversation) -> ConversationSummaryModel:
    return ConversationSummaryModel.model_validate(
        {**conversation.summary(), "last_activity": conversation.last_activity},
    )


def create_app(*, settings: Settings | None = None, dependencies: AppDependencies | None = None) -> FastAPI:
    settings = settings or get_settings()
    deps = dependencies or build_dependencies(settings)

    configure_logging()
    logger = get_logger("api")
    app = FastAPI(title="ragchat API", version="0.1.0")
    app.state.dependencies = deps
    # Turns started from a socket outlive the socket that started them
    background_turns: Set[asyncio.Task] = set()

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):  # type: ignore[override]
        correlation_id = request.headers.get("X-Request-ID", uuid4().hex)
        request.state.correlation_id = correlation_id
        bind_correlation_id(correlation_id)
        try:
            response = await call_next(request)
        finally:
            clear_correlation_id()
        response.headers["X-Correlation-ID"] = correlation_id
        return response

    def require_api_key(request: Request) -> None:
        expected = settings.api_key
        if not expected:
            return
        provided = request.headers.get("X-API-Key")
        if provided != expected:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid API key")

    def require_user(x_user_id: str | None = Header(default=None)) -> str:
        if not x_user_id:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing X-User-ID header")
        return x_user_id

    def _error_response(request: Request, status_code: int, detail: str, **extra: object) -> JSONResponse:
        correlation_id = getattr(request.state, "correlation_id", uuid4().hex)
        return JSONResponse(
            status_code=status_code,
            content={"detail": detail, "correlation_id": correlation_id, **extra},
        )

    @app.exception_handler(InvalidMessageError)
    async def handle_invalid_message(request: Request, exc: InvalidMessageError) -> JSONResponse:
        return _error_response(request, status.HTTP_400_BAD_REQUEST, str(exc))

    @app.exception_handler(IngestionError)
    async def handle_ingestion_error(request: Request, exc: IngestionError) -> JSONResponse:
        logger.warning("ingestion.error", detail=str(exc))
        return _error_response(request, status.HTTP_400_BAD_REQUEST, str(exc))

    @app.exception_handler(ConversationNotFoundError)
    async def handle_not_found(request: Request, exc: ConversationNotFoundError) -> JSONResponse:
        return _error_response(request, status.HTTP_404_NOT_FOUND, str(exc))

    @app.exception_handler(DocumentNotFoundError)
    async def handle_document_not_found(request: Request, exc: DocumentNotFoundError) -> JSONResponse:
        return _error_response(request, status.HTTP_404_NOT_FOUND, str(exc))

    @app.exception_handler(DuplicateFragmentError)
    async def handle_duplicate(request: Request, exc: DuplicateFragmentError) -> JSONResponse:
        return _error_response(request, status.HTTP_409_CONFLICT, str(exc))

    @app.exception_handler(QuotaExceededError)
    async def handle_quota(request: Request, exc: QuotaExceededError) -> JSONResponse:
        return _error_response(
            request,
            status.HTTP_429_TOO_MANY_REQUESTS,
            str(exc),
            tokens_used=exc.used,
            tokens_limit=exc.limit,
        )

    @app.exception_handler(TurnFailedError)
    async def handle_turn_failed(request: Request, exc: TurnFailedError) -> JSONResponse:
        logger.error("turn.error", conversation_id=exc.conversation_id, detail=exc.reason)
        return _error_response(request, status.HTTP_500_INTERNAL_SERVER_ERROR, "Error processing message")

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        logger.error("unhandled.error", detail=str(exc))
        return _error_response(request, status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal Server Error")

    def get_dependencies(request: Request) -> AppDependencies:
        return request.app.state.dependencies

    @app.post(
        "/documents/{document_id}/fragments",
        response_model=IndexDocumentResponse,
        status_code=status.HTTP_201_CREATED,
    )
    async def index_document(
        document_id: str,
        payload: IndexDocumentRequest,
        dep: AppDependencies = Depends(get_dependencies),
        _auth: None = Depends(require_api_key),
    ) -> IndexDocumentResponse:
        if payload.chunks:
            chunks = [{**payload.metadata, **chunk.model_dump(exclude_none=True)} for chunk in payload.chunks]
            fragments = fragments_from_chunks(document_id, chunks)
        elif payload.text and payload.text.strip():
            fragments = dep.fragmenter.split(document_id, payload.text, payload.metadata)
        else:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Provide text or chunks")
        try:
            indexed = await dep.retrieval.index(document_id, fragments)
        except DuplicateFragmentError:
            raise
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        return IndexDocumentResponse(document_id=document_id, indexed=indexed)

    @app.delete("/documents/{document_id}", response_model=RemoveDocumentResponse)
    async def remove_document(
        document_id: str,
        dep: AppDependencies = Depends(get_dependencies),
        _auth: None = Depends(require_api_key),
    ) -> RemoveDocumentResponse:
        removed = await dep.retrieval.remove(document_id)
        return RemoveDocumentResponse(document_id=document_id, removed=removed)

    @app.get("/index/stats", response_model=IndexStatsResponse)
    async def index_stats(dep: AppDependencies = Depends(get_dependencies)) -> IndexStatsResponse:
        stats = dep.retrieval.stats()
        return IndexStatsResponse(
            total_fragments=stats.total_fragments,
            total_documents=stats.total_documents,
            fragments_per_document=dict(stats.fragments_per_document),
            dimension=dep.retrieval.dim,
        )

    @app.get("/index/export", response_model=IndexSnapshotModel)
    async def export_index(
        dep: AppDependencies = Depends(get_dependencies),
        _auth: None = Depends(require_api_key),
    ) -> IndexSnapshotModel:
        snapshot = dep.retrieval.export()
        return IndexSnapshotModel(
            dimension=snapshot.dimension,
            fragments=[
                SnapshotFragmentModel(
                    document_id=fragment.document_id,
                    ordinal=fragment.ordinal,
                    content=fragment.content,
                    embedding=list(fragment.embedding or ()),
                    start=fragment.start,
                    end=fragment.end,
                    metadata=dict(fragment.metadata),
                )
                for fragment in snapshot.fragments
            ],
        )

    @app.post("/index/import", response_model=RestoreIndexResponse)
    async def import_index(
        payload: IndexSnapshotModel,
        dep: AppDependencies = Depends(get_dependencies),
        _auth: None = Depends(require_api_key),
    ) -> RestoreIndexResponse:
        snapshot = IndexSnapshot(
            dimension=payload.dimension,
            fragments=tuple(
                Fragment(
                    document_id=item.document_id,
                    ordinal=item.ordinal,
                    content=item.content,
                    embedding=tuple(item.embedding),
                    start=item.start,
                    end=item.end,
                    metadata=item.metadata,
                )
                for item in payload.fragments
            ),
        )
        try:
            restored = await dep.retrieval.restore(snapshot)
        except DuplicateFragmentError:
            raise
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        return RestoreIndexResponse(restored=restored)

    @app.post("/generate/summary", response_model=SummaryResponse)
    async def generate_summary(
        payload: SummaryRequest,
        user_id: str = Depends(require_user),
        dep: AppDependencies = Depends(get_dependencies),
        _auth: None = Depends(require_api_key),
    ) -> SummaryResponse:
        result = await dep.study.summarize(
            user_id,
            text=payload.text,
            document_id=payload.document_id,
            max_words=payload.max_length,
        )
        return SummaryResponse(
            summary=result.summary,
            tokens_used=result.tokens_used,
            original_length=result.original_length,
            summary_length=len(result.summary),
            provider=result.provider,
        )

    @app.post("/generate/flashcards", response_model=FlashcardResponse)
    async def generate_flashcards(
        payload: FlashcardRequest,
        user_id: str = Depends(require_user),
        dep: AppDependencies = Depends(get_dependencies),
        _auth: None = Depends(require_api_key),
    ) -> FlashcardResponse:
        deck = await dep.study.flashcards(
            user_id,
            text=payload.text,
            document_id=payload.document_id,
            count=payload.count,
        )
        return FlashcardResponse(
            flashcards=[FlashcardModel(question=card.question, answer=card.answer) for card in deck.flashcards],
            count=len(deck.flashcards),
            tokens_used=deck.tokens_used,
            provider=deck.provider,
        )

    @app.post("/search", response_model=SearchResponse)
    async def search(
        payload: SearchRequest,
        dep: AppDependencies = Depends(get_dependencies),
        _auth: None = Depends(require_api_key),
    ) -> SearchResponse:
        results = await dep.retrieval.search(
            payload.query,
            limit=payload.limit,
            similarity_threshold=payload.similarity_threshold,
            document_ids=payload.document_ids,
        )
        return SearchResponse(
            query=payload.query,
            results=[
                SearchResultModel(
                    fragment_id=result.fragment_id,
                    document_id=result.document_id,
                    content=result.content,
                    similarity=result.similarity,
                    metadata=dict(result.metadata),
                )
                for result in results
            ],
        )

    @app.post("/conversations", response_model=ConversationModel, status_code=status.HTTP_201_CREATED)
    async def create_conversation(
        payload: CreateConversationRequest,
        user_id: str = Depends(require_user),
        dep: AppDependencies = Depends(get_dependencies),
        _auth: None = Depends(require_api_key),
    ) -> ConversationModel:
        generation = GenerationSettings(**payload.generation.model_dump(exclude_none=True)) if payload.generation else None
        conversation_settings = (
            ConversationSettings(**payload.settings.model_dump(exclude_none=True)) if payload.settings else None
        )
        conversation = await dep.repository.create(
            user_id,
            title=payload.title,
            generation=generation,
            settings=conversation_settings,
        )
        return ConversationModel.model_validate(conversation.to_dict())

    @app.get("/conversations", response_model=ConversationListResponse)
    async def list_conversations(
        user_id: str = Depends(require_user),
        dep: AppDependencies = Depends(get_dependencies),
    ) -> ConversationListResponse:
        conversations = await dep.repository.list_for_owner(user_id)
        return ConversationListResponse(conversations=[_summary_model(conversation) for conversation in conversations])

    @app.get("/conversations/{conversation_id}", response_model=ConversationModel)
    async def get_conversation(
        conversation_id: str,
        user_id: str = Depends(require_user),
        dep: AppDependencies = Depends(get_dependencies),
    ) -> ConversationModel:
        conversation = await dep.repository.load(conversation_id, user_id)
        return ConversationModel.model_validate(conversation.to_dict())

    @app.put("/conversations/{conversation_id}", response_model=ConversationModel)
    async def update_conversation(
        conversation_id: str,
        payload: UpdateConversationRequest,
        user_id: str = Depends(require_user),
        dep: AppDependencies = Depends(get_dependencies),
        _auth: None = Depends(require_api_key),
    ) -> ConversationModel:
        try:
            conversation = await dep.coordinator.update_conversation(
                conversation_id,
                user_id,
                title=payload.title,
                settings=payload.settings.model_dump(exclude_none=True) if payload.settings else None,
                generation=payload.generation.model_dump(exclude_none=True) if payload.generation else None,
            )
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        return ConversationModel.model_validate(conversation.to_dict())

    @app.delete("/conversations/{conversation_id}", status_code=status.HTTP_204_NO_CONTENT)
    async def delete_conversation(
        conversation_id: str,
        user_id: str = Depends(require_user),
        dep: AppDependencies = Depends(get_dependencies),
        _auth: None = Depends(require_api_key),
    ) -> Response:
        await dep.coordinator.delete_conversation(conversation_id, user_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.post("/conversations/{conversation_id}/messages", response_model=SendMessageResponse)
    async def send_message(
        conversation_id: str,
        payload: SendMessageRequest,
        user_id: str = Depends(require_user),
        dep: AppDependencies = Depends(get_dependencies),
        _auth: None = Depends(require_api_key),
    ) -> SendMessageResponse:
        message = await dep.coordinator.handle_message(
            conversation_id,
            user_id,
            payload.content,
            use_rag=payload.use_rag,
        )
        conversation = await dep.repository.load(conversation_id, user_id)
        return SendMessageResponse(
            conversation=_summary_model(conversation),
            message=MessageModel.model_validate(message.to_dict()),
        )

    @app.get("/providers/status", response_model=ProviderStatusResponse)
    async def provider_status(dep: AppDependencies = Depends(get_dependencies)) -> ProviderStatusResponse:
        return ProviderStatusResponse.model_validate(dep.gateway.status())

    @app.websocket("/ws/conversations/{conversation_id}")
    async def conversation_socket(websocket: WebSocket, conversation_id: str) -> None:
        dep: AppDependencies = websocket.app.state.dependencies
        user_id = websocket.headers.get("X-User-ID") or websocket.query_params.get("user_id")
        provided_key = websocket.headers.get("X-API-Key") or websocket.query_params.get("api_key")
        if not user_id or (settings.api_key and provided_key != settings.api_key):
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
            return
        try:
            await dep.repository.load(conversation_id, user_id)
        except ConversationNotFoundError:
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
            return

        await websocket.accept()
        subscription = dep.broker.join(conversation_id)

        async def forward_events() -> None:
            async for event in subscription:
                await websocket.send_json(event.to_dict())

        async def run_turn(content: str, use_rag: bool) -> None:
            try:
                await dep.coordinator.handle_message(conversation_id, user_id, content, use_rag=use_rag)
            except QuotaExceededError as exc:
                await websocket.send_json(
                    {"type": "error", "message": str(exc), "tokens_used": exc.used, "tokens_limit": exc.limit},
                )
            except (InvalidMessageError, ConversationNotFoundError) as exc:
                await websocket.send_json({"type": "error", "message": str(exc)})
            except TurnFailedError as exc:
                # stream_error has already reached the room
                logger.warning("socket.turn_failed", conversation_id=conversation_id, detail=exc.reason)

        def _turn_finished(task: asyncio.Task) -> None:
            background_turns.discard(task)
            if not task.cancelled() and task.exception() is not None:
                logger.warning("socket.turn_error", conversation_id=conversation_id, detail=str(task.exception()))

        sender = asyncio.create_task(forward_events())
        try:
            while True:
                raw = await websocket.receive_text()
                try:
                    frame = json.loads(raw)
                except json.JSONDecodeError:
                    frame = None
                if not isinstance(frame, dict):
                    await websocket.send_json({"type": "error", "message": "Frames must be JSON objects"})
                    continue
                kind = frame.get("type")
                if kind == "send_message":
                    task = asyncio.create_task(run_turn(str(frame.get("content") or ""), bool(frame.get("use_rag", True))))
                    background_turns.add(task)
                    task.add_done_callback(_turn_finished)
                elif kind == "typing":
                    try:
                        await dep.coordinator.set_typing(conversation_id, user_id, bool(frame.get("is_typing")))
                    except ConversationNotFoundError as exc:
                        await websocket.send_json({"type": "error", "message": str(exc)})
                else:
                    await websocket.send_json({"type": "error", "message": f"Unknown frame type: {kind}"})
        except WebSocketDisconnect:
            logger.info("socket.disconnected", conversation_id=conversation_id)
        finally:
            subscription.leave()
            sender.cancel()
            await asyncio.gather(sender, return_exceptions=True)

    @app.get("/metrics")
    async def metrics() -> Response:
        payload = generate_latest()
        return Response(content=payload, media_type=CONTENT_TYPE_LATEST)

    @app.get("/healthz")
    async def healthcheck() -> dict[str, str]:
        from ragchat import __version__

        return {"status": "ok", "version": __version__, "environment": settings.environment}

    @app.head("/healthz")
    async def healthcheck_head() -> Response:
        return Response(status_code=status.HTTP_200_OK)

    @app.get("/livez")
    async def liveness() -> dict[str, str]:
        return {"status": "alive"}

    @app.get("/healthz/ready")
    async def readiness(dep: AppDependencies = Depends(get_dependencies)) -> dict[str, object]:
        return {
            "status": "ready",
            "indexed_fragments": len(dep.retrieval),
            "simulation": dep.gateway.simulation_mode,
        }

    return app
