from __future__ import annotations

import os
import time
import uuid
from typing import Any, Dict, List

from fastapi import Depends, FastAPI, File, Form, Header, HTTPException, Query, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, PlainTextResponse
from starlette.middleware import Middleware
from starlette.routing import Match

from src.agencies.backend import BackendAgency, get_agency
from src.schemas.models import (
    AppendChatRequest,
    ChatCreatedResponse,
    ChatRecord,
    ChatSummary,
    ConverseRequest,
    ConverseResponse,
    CreateChatRequest,
    DocumentRecord,
    DocumentUrlResponse,
    GenerationRequest,
    GenerationResponse,
    IndexJobHistoryResponse,
    IngestionJobEntry,
    InstantLookupRequest,
    MessageResponse,
    PinChatRequest,
    RenameChatRequest,
)
from src.utils.env import load_env_file
from src.utils.errors import ChatServiceError
from src.utils.logging import bind_request_context, clear_request_context, get_logger
from src.utils.object_store import LocalObjectStore
from src.utils.observability import get_metrics
from src.utils.security import get_rate_limiter, require_user_id, verify_api_key
from src.utils.upload_signing import verify_object_signature

load_env_file()

raw_origins = os.getenv("CORS_ALLOW_ORIGINS", "*")

if raw_origins.strip() == "*":
    cors_origins = ["*"]
else:
    cors_origins = [entry.strip() for entry in raw_origins.split(",") if entry.strip()]

cors_middleware = Middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=cors_origins != ["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

log = get_logger(__name__)

app = FastAPI(title="Knowledge Base Chat API", version="0.1.0", middleware=[cors_middleware])


@app.exception_handler(ChatServiceError)
async def chat_service_error_handler(request: Request, exc: ChatServiceError) -> JSONResponse:
    if exc.status_code >= 500:
        log.error("api_error", path=request.url.path, status=exc.status_code, error=exc.detail)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"detail": jsonable_errors(exc)})


def jsonable_errors(exc: RequestValidationError) -> List[Dict[str, Any]]:
    return [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg", ""), "type": error.get("type", "")}
        for error in exc.errors()
    ]


UNMATCHED_ROUTE = "<unmatched>"


def _route_key(request: Request) -> str:
    """Route template for the request, so per-id paths share one key."""

    route = request.scope.get("route")
    if route is not None:
        return getattr(route, "path", UNMATCHED_ROUTE)
    for candidate in request.app.router.routes:
        match, _ = candidate.matches(request.scope)
        if match == Match.FULL:
            return getattr(candidate, "path", UNMATCHED_ROUTE)
    return UNMATCHED_ROUTE


@app.middleware("http")
async def observability_middleware(request: Request, call_next):
    metrics = get_metrics()
    request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
    bind_request_context(request_id=request_id)
    start = time.perf_counter()
    try:
        response = await call_next(request)
    except Exception as exc:
        duration_ms = (time.perf_counter() - start) * 1000
        metrics.record(_route_key(request), duration_ms, 500)
        log.error("api_request_failed", path=request.url.path, duration_ms=duration_ms, error=str(exc))
        clear_request_context()
        raise
    duration_ms = (time.perf_counter() - start) * 1000
    metrics.record(_route_key(request), duration_ms, response.status_code)
    log.info(
        "api_request",
        method=request.method,
        path=request.url.path,
        status=response.status_code,
        duration_ms=duration_ms,
    )
    clear_request_context()
    response.headers["X-Request-ID"] = request_id
    return response


def _rate_limit_identity(api_key: str | None, path: str) -> str:
    identity = (api_key or "anonymous").strip() or "anonymous"
    return f"{identity}:{path}"


def require_auth(
    request: Request,
    api_key: str | None = Header(default=None, alias="X-API-Key"),
    limiter=Depends(get_rate_limiter),
) -> str | None:
    verify_api_key(api_key)
    limiter.allow(_rate_limit_identity(api_key, _route_key(request)))
    return api_key


def current_user(user_id: str | None = Header(default=None, alias="X-User-Id")) -> str:
    return require_user_id(user_id)


@app.get("/", response_class=PlainTextResponse)
def health() -> str:
    return "Knowledge base chat backend is running"


# chats


@app.post("/v1/chats", status_code=201, response_model=ChatCreatedResponse)
async def create_chat(
    payload: CreateChatRequest,
    user_id: str = Depends(current_user),
    agency: BackendAgency = Depends(get_agency),
    api_key: str | None = Depends(require_auth),
) -> ChatCreatedResponse:
    record = await agency.chats.create_chat(user_id, payload.text, payload.assistant_response, payload.img)
    return ChatCreatedResponse(chat_id=record.id)


@app.get("/v1/chats", response_model=List[ChatSummary])
async def list_chats(
    user_id: str = Depends(current_user),
    agency: BackendAgency = Depends(get_agency),
    api_key: str | None = Depends(require_auth),
) -> List[ChatSummary]:
    return await agency.chats.list_chats(user_id)


@app.get("/v1/chats/{chat_id}", response_model=ChatRecord)
async def get_chat(
    chat_id: str,
    user_id: str = Depends(current_user),
    agency: BackendAgency = Depends(get_agency),
    api_key: str | None = Depends(require_auth),
) -> ChatRecord:
    return await agency.chats.get_chat(user_id, chat_id)


@app.put("/v1/chats/{chat_id}", response_model=ChatRecord)
async def append_chat(
    chat_id: str,
    payload: AppendChatRequest,
    user_id: str = Depends(current_user),
    agency: BackendAgency = Depends(get_agency),
    api_key: str | None = Depends(require_auth),
) -> ChatRecord:
    await agency.chats.append_exchange(user_id, chat_id, payload.question, payload.assistant_response, payload.img)
    return await agency.chats.get_chat(user_id, chat_id)


@app.put("/v1/chats/{chat_id}/rename", response_model=MessageResponse)
async def rename_chat(
    chat_id: str,
    payload: RenameChatRequest,
    user_id: str = Depends(current_user),
    agency: BackendAgency = Depends(get_agency),
    api_key: str | None = Depends(require_auth),
) -> MessageResponse:
    await agency.chats.rename_chat(user_id, chat_id, payload.new_title)
    return MessageResponse(message="Chat renamed successfully")


@app.delete("/v1/chats/{chat_id}", response_model=MessageResponse)
async def delete_chat(
    chat_id: str,
    user_id: str = Depends(current_user),
    agency: BackendAgency = Depends(get_agency),
    api_key: str | None = Depends(require_auth),
) -> MessageResponse:
    await agency.chats.delete_chat(user_id, chat_id)
    return MessageResponse(message="Chat deleted successfully")


@app.post("/v1/pinned-chats", status_code=201, response_model=MessageResponse)
async def pin_chat(
    payload: PinChatRequest,
    user_id: str = Depends(current_user),
    agency: BackendAgency = Depends(get_agency),
    api_key: str | None = Depends(require_auth),
) -> MessageResponse:
    await agency.chats.pin_chat(user_id, payload.chat_id, payload.title)
    return MessageResponse(message="Chat pinned successfully")


@app.delete("/v1/pinned-chats/{chat_id}", response_model=MessageResponse)
async def unpin_chat(
    chat_id: str,
    user_id: str = Depends(current_user),
    agency: BackendAgency = Depends(get_agency),
    api_key: str | None = Depends(require_auth),
) -> MessageResponse:
    await agency.chats.unpin_chat(user_id, chat_id)
    return MessageResponse(message="Chat unpinned successfully")


@app.get("/v1/pinned-chats", response_model=List[ChatSummary])
async def list_pinned_chats(
    user_id: str = Depends(current_user),
    agency: BackendAgency = Depends(get_agency),
    api_key: str | None = Depends(require_auth),
) -> List[ChatSummary]:
    return await agency.chats.list_pinned(user_id)


# generation


@app.post("/v1/converse", response_model=ConverseResponse)
async def converse(
    payload: ConverseRequest,
    agency: BackendAgency = Depends(get_agency),
    api_key: str | None = Depends(require_auth),
) -> ConverseResponse:
    chat_id, reply = await agency.chats.converse(
        payload.user_id,
        payload.query,
        mode=payload.mode,
        chat_id=payload.chat_id,
    )
    return ConverseResponse(chat_id=chat_id, response=reply)


@app.post("/v1/retrieve-and-generate", response_model=GenerationResponse)
async def retrieve_and_generate(
    payload: GenerationRequest,
    agency: BackendAgency = Depends(get_agency),
    api_key: str | None = Depends(require_auth),
) -> GenerationResponse:
    user_id = require_user_id(payload.user_id)
    return GenerationResponse(response=await agency.gateway.retrieve_and_generate(payload.query, user_id))


@app.post("/v1/generate", response_model=GenerationResponse)
async def generate(
    payload: GenerationRequest,
    agency: BackendAgency = Depends(get_agency),
    api_key: str | None = Depends(require_auth),
) -> GenerationResponse:
    user_id = require_user_id(payload.user_id)
    return GenerationResponse(response=await agency.gateway.answer_freeform(payload.query, user_id))


@app.post("/v1/instant-lookup", response_model=GenerationResponse)
async def instant_lookup(
    payload: InstantLookupRequest,
    agency: BackendAgency = Depends(get_agency),
    api_key: str | None = Depends(require_auth),
) -> GenerationResponse:
    return GenerationResponse(response=await agency.gateway.instant_lookup(payload.query, payload.data_source))


# documents


@app.post("/v1/documents/upload", status_code=201, response_model=DocumentRecord)
async def upload_document(
    file: UploadFile = File(...),
    user_id: str = Form(default="", alias="userId"),
    agency: BackendAgency = Depends(get_agency),
    api_key: str | None = Depends(require_auth),
) -> DocumentRecord:
    contents = await file.read()
    return await agency.documents.upload(user_id, file.filename, contents, file.content_type)


@app.get("/v1/documents", response_model=List[DocumentRecord])
async def list_documents(
    user_id: str = Query(default="", alias="userId"),
    agency: BackendAgency = Depends(get_agency),
    api_key: str | None = Depends(require_auth),
) -> List[DocumentRecord]:
    return await agency.documents.list_documents(user_id)


@app.get("/v1/documents/{document_id}", response_model=DocumentUrlResponse)
async def document_url(
    document_id: str,
    agency: BackendAgency = Depends(get_agency),
    api_key: str | None = Depends(require_auth),
) -> DocumentUrlResponse:
    return DocumentUrlResponse(file_url=await agency.documents.download_url(document_id))


@app.delete("/v1/documents/{document_id}", response_model=MessageResponse)
async def delete_document(
    document_id: str,
    agency: BackendAgency = Depends(get_agency),
    api_key: str | None = Depends(require_auth),
) -> MessageResponse:
    await agency.documents.delete(document_id)
    return MessageResponse(message="Document deleted and knowledge base resync requested")


@app.get("/v1/objects/{key}")
def download_object(
    key: str,
    exp: int = Query(...),
    sig: str = Query(...),
    agency: BackendAgency = Depends(get_agency),
) -> FileResponse:
    store = agency.object_store
    if not isinstance(store, LocalObjectStore):
        raise HTTPException(status_code=404, detail="Object not found")
    if not verify_object_signature(key, exp=exp, sig=sig):
        raise HTTPException(status_code=403, detail="Invalid or expired signature")
    path = store.path_for(key)
    if not path.exists():
        raise HTTPException(status_code=404, detail="Object not found")
    return FileResponse(path, filename=key.split("-", 5)[-1])


# index


@app.post("/v1/index/sync", response_model=IngestionJobEntry)
async def index_sync(
    agency: BackendAgency = Depends(get_agency),
    api_key: str | None = Depends(require_auth),
) -> IngestionJobEntry:
    outcome = await agency.synchronizer.resync(strict=True)
    return IngestionJobEntry.model_validate(outcome.to_dict())


@app.get("/v1/index/jobs", response_model=IndexJobHistoryResponse)
def index_jobs(
    limit: int = Query(default=50, ge=1, le=500),
    agency: BackendAgency = Depends(get_agency),
    api_key: str | None = Depends(require_auth),
) -> IndexJobHistoryResponse:
    jobs = [IngestionJobEntry.model_validate(entry) for entry in agency.synchronizer.history(limit)]
    return IndexJobHistoryResponse(jobs=jobs)


@app.get("/v1/metrics")
def metrics_snapshot(
    api_key: str | None = Depends(require_auth),
) -> Dict[str, Any]:
    return get_metrics().snapshot()