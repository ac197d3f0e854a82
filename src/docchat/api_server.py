"""
FastAPI service layer for the document chat pipeline.

Exposes file upload/list/get/delete, POST /chat, GET /metrics and GET /health.

Run with:
    uvicorn docchat.api_server:app --host 0.0.0.0 --port 3000
"""
from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable

from fastapi import FastAPI, File, Form, Query, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from .config import DEFAULT_MAX_COMPLETION_TOKENS, DEFAULT_TEMPERATURE, Settings, load_settings
from .document_manager import DocumentIngestor, FileRegistry, IngestedFile
from .errors import DocChatError
from .llm_gateway import ChatProvider, LLMGateway, SleepFn
from .metrics import MetricsCollector
from .observability import get_logger
from .query_processor import QueryProcessor
from .rate_limiter import RateLimiter
from .storage_provider import LocalFileStorageProvider, check_upload_allowed

logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Pydantic request / response models
# ---------------------------------------------------------------------------

class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class FileSummary(_CamelModel):
    id: str
    filename: str
    mime_type: str
    uploaded_at: datetime
    file_size: int
    token_count: int
    summary: str


class FileDetail(FileSummary):
    extracted_text: str


class UploadResponse(_CamelModel):
    success: bool
    file: FileSummary


class UploadErrorItem(_CamelModel):
    filename: str
    error: str


class MultiUploadResponse(_CamelModel):
    success: bool
    uploaded_files: list[FileSummary]
    errors: list[UploadErrorItem]


class FileListResponse(_CamelModel):
    success: bool
    files: list[FileSummary]


class FileDetailResponse(_CamelModel):
    success: bool
    file: FileDetail


class DeleteResponse(_CamelModel):
    success: bool
    message: str


class ChatRequest(_CamelModel):
    # Untyped so missing or blank values reach the MISSING_* checks in the handler.
    user_id: Any = None
    prompt: Any = None
    max_tokens: int | None = None
    temperature: float | None = None


class ChatResponse(_CamelModel):
    success: bool
    response: str
    tokens_used: int
    files_referenced: list[str]


def _file_summary(record: IngestedFile) -> FileSummary:
    return FileSummary(
        id=record.id,
        filename=record.display_name,
        mime_type=record.mime_type,
        uploaded_at=record.uploaded_at,
        file_size=record.size_bytes,
        token_count=record.token_count,
        summary=record.summary,
    )


def _file_detail(record: IngestedFile) -> FileDetail:
    return FileDetail(**_file_summary(record).model_dump(), extracted_text=record.extracted_text)


def _error_response(status: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status,
        content={
            "error": message,
            "code": code,
            "timestamp": datetime.now(timezone.utc).isoformat(timespec="milliseconds"),
        },
    )


# ---------------------------------------------------------------------------
# Application state
# ---------------------------------------------------------------------------

@dataclass
class AppState:
    settings: Settings
    storage: LocalFileStorageProvider
    registry: FileRegistry
    ingestor: DocumentIngestor
    limiter: RateLimiter
    gateway: LLMGateway
    processor: QueryProcessor
    metrics: MetricsCollector

    def reset(self):
        """Drops every ingested file record and rate-limit record."""
        self.registry.clear()
        self.limiter.reset()


def build_state(
    settings: Settings,
    *,
    provider: ChatProvider | None = None,
    sleep: SleepFn | None = None,
    clock: Callable[[], float] | None = None,
) -> AppState:
    storage = LocalFileStorageProvider(settings.upload_dir, max_bytes=settings.max_upload_bytes)
    registry = FileRegistry(storage)
    limiter_kwargs = {"clock": clock} if clock is not None else {}
    limiter = RateLimiter(
        settings.rate_limit_requests,
        settings.rate_limit_window_ms,
        **limiter_kwargs,
    )
    gateway = LLMGateway(
        api_key=settings.openai_api_key,
        model_name=settings.openai_model_name,
        max_tokens_per_request=settings.max_tokens_per_request,
        max_attempts=settings.llm_max_retries,
        retry_delay_s=settings.llm_retry_delay_ms / 1000.0,
        timeout_s=settings.llm_request_timeout_s,
        provider=provider,
        sleep=sleep or asyncio.sleep,
    )
    return AppState(
        settings=settings,
        storage=storage,
        registry=registry,
        ingestor=DocumentIngestor(registry),
        limiter=limiter,
        gateway=gateway,
        processor=QueryProcessor(registry=registry, limiter=limiter, gateway=gateway),
        metrics=MetricsCollector(settings.metrics_dir),
    )


def _state(request: Request) -> AppState:
    return request.app.state.docchat


async def _store_and_ingest(state: AppState, user_id: str, upload: UploadFile) -> IngestedFile:
    original_name = upload.filename or "file"
    mime_type = upload.content_type or ""
    check_upload_allowed(original_name, mime_type)

    loop = asyncio.get_running_loop()
    stored_path = await loop.run_in_executor(None, state.storage.save_stream, upload.file, original_name)
    size_bytes = stored_path.stat().st_size
    return await state.ingestor.ingest(user_id, stored_path, mime_type, size_bytes, original_name)


# ---------------------------------------------------------------------------
# FastAPI application
# ---------------------------------------------------------------------------

def create_app(
    settings: Settings | None = None,
    *,
    provider: ChatProvider | None = None,
    sleep: SleepFn | None = None,
    clock: Callable[[], float] | None = None,
) -> FastAPI:
    state = build_state(settings or load_settings(), provider=provider, sleep=sleep, clock=clock)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        state.storage.ensure_ready()
        logger.info("application_startup", upload_dir=str(state.storage.root))
        yield
        state.reset()
        logger.info("application_shutdown")

    app = FastAPI(
        title="DocChat API",
        description="Upload documents and ask questions answered from their content",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.docchat = state

    @app.exception_handler(DocChatError)
    async def _docchat_error_handler(request: Request, exc: DocChatError):
        logger.warning(
            "request_failed",
            path=request.url.path,
            status=exc.status,
            code=exc.code,
            error=exc.message,
        )
        return _error_response(exc.status, exc.code, exc.message)

    @app.exception_handler(RequestValidationError)
    async def _validation_error_handler(request: Request, exc: RequestValidationError):
        logger.warning("request_invalid", path=request.url.path, errors=str(exc.errors()))
        return _error_response(400, "INVALID_REQUEST", "Request validation failed")

    @app.exception_handler(Exception)
    async def _unexpected_error_handler(request: Request, exc: Exception):
        logger.error("request_crashed", path=request.url.path, error=str(exc), exc_info=True)
        return _error_response(500, "INTERNAL_ERROR", "An unexpected error occurred")

    # -----------------------------------------------------------------------
    # Files
    # -----------------------------------------------------------------------

    @app.post("/files/upload", response_model=UploadResponse)
    async def upload_file(
        request: Request,
        user_id: str | None = Form(default=None, alias="userId"),
        file: UploadFile | None = File(default=None),
    ):
        if not user_id:
            return _error_response(400, "MISSING_USER_ID", "userId is required")
        if file is None:
            return _error_response(400, "NO_FILE", "No file uploaded")

        record = await _store_and_ingest(_state(request), user_id, file)
        return UploadResponse(success=True, file=_file_summary(record))

    @app.post("/files/upload-multiple", response_model=MultiUploadResponse)
    async def upload_multiple(
        request: Request,
        user_id: str | None = Form(default=None, alias="userId"),
        files: list[UploadFile] | None = File(default=None),
    ):
        state = _state(request)
        if not user_id:
            return _error_response(400, "MISSING_USER_ID", "userId is required")
        if not files:
            return _error_response(400, "NO_FILES", "No files uploaded")
        if len(files) > state.settings.max_files_per_upload:
            return _error_response(
                400,
                "TOO_MANY_FILES",
                f"At most {state.settings.max_files_per_upload} files can be uploaded at once",
            )

        uploaded: list[FileSummary] = []
        errors: list[UploadErrorItem] = []
        for upload in files:
            filename = upload.filename or "file"
            try:
                record = await _store_and_ingest(state, user_id, upload)
            except DocChatError as exc:
                errors.append(UploadErrorItem(filename=filename, error=exc.message))
                continue
            except Exception as exc:
                logger.error("file_upload_crashed", filename=filename, error=str(exc), exc_info=True)
                errors.append(UploadErrorItem(filename=filename, error=str(exc)))
                continue
            uploaded.append(_file_summary(record))

        logger.info("multi_upload_finished", user_id=user_id, stored=len(uploaded), failed=len(errors))
        return MultiUploadResponse(success=bool(uploaded), uploaded_files=uploaded, errors=errors)

    @app.get("/files/list", response_model=FileListResponse)
    async def list_files(request: Request, user_id: str | None = Query(default=None, alias="userId")):
        if not user_id:
            return _error_response(400, "MISSING_USER_ID", "userId is required")
        records = _state(request).registry.list(user_id)
        return FileListResponse(success=True, files=[_file_summary(r) for r in records])

    @app.get("/files/{file_id}", response_model=FileDetailResponse)
    async def get_file(request: Request, file_id: str, user_id: str | None = Query(default=None, alias="userId")):
        if not user_id:
            return _error_response(400, "MISSING_USER_ID", "userId is required")
        record = _state(request).registry.get(user_id, file_id)
        if record is None:
            return _error_response(404, "FILE_NOT_FOUND", "File not found")
        return FileDetailResponse(success=True, file=_file_detail(record))

    @app.delete("/files/{file_id}", response_model=DeleteResponse)
    async def delete_file(request: Request, file_id: str, user_id: str | None = Query(default=None, alias="userId")):
        if not user_id:
            return _error_response(400, "MISSING_USER_ID", "userId is required")
        if not _state(request).registry.delete(user_id, file_id):
            return _error_response(404, "FILE_NOT_FOUND", "File not found")
        return DeleteResponse(success=True, message="File deleted successfully")

    # -----------------------------------------------------------------------
    # Chat
    # -----------------------------------------------------------------------

    @app.post("/chat", response_model=ChatResponse)
    async def chat(request: Request, body: ChatRequest):
        if not body.user_id:
            return _error_response(400, "MISSING_USER_ID", "userId is required")
        if not isinstance(body.prompt, str) or not body.prompt.strip():
            return _error_response(400, "MISSING_PROMPT", "prompt is required and must be a non-empty string")

        state = _state(request)
        start = time.perf_counter()
        try:
            result = await state.processor.process(
                str(body.user_id),
                body.prompt,
                max_tokens=body.max_tokens or DEFAULT_MAX_COMPLETION_TOKENS,
                temperature=body.temperature or DEFAULT_TEMPERATURE,
            )
        except DocChatError as exc:
            latency_ms = (time.perf_counter() - start) * 1000.0
            state.metrics.record_request(latency_ms, success=False, model=state.gateway.model_name, error_code=exc.code)
            raise

        latency_ms = (time.perf_counter() - start) * 1000.0
        state.metrics.record_request(
            latency_ms,
            success=True,
            input_tokens=result.input_tokens,
            output_tokens=result.output_tokens,
            tokens_used=result.tokens_used,
            model=result.model,
        )
        return ChatResponse(
            success=True,
            response=result.text,
            tokens_used=result.tokens_used,
            files_referenced=result.files_referenced,
        )

    # -----------------------------------------------------------------------
    # Service
    # -----------------------------------------------------------------------

    @app.get("/metrics")
    async def metrics_endpoint(request: Request):
        """Return aggregated chat and token metrics."""
        return _state(request).metrics.get_summary()

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app


app = create_app()
