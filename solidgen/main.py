"""
SolidGen Microservice — FastAPI entry point.

Endpoints:
  POST /generate                       One generation call (?stream=true → NDJSON)
  POST /conversations                  Create / list / get / update / delete conversations
  POST /conversations/import           Bulk import
  POST /conversations/{id}/turns       Full retry loop for one turn (sync)
  POST /conversations/{id}/turns/stream  Same, streamed as NDJSON progress
  POST /run                            Submit a turn job and wait for its result
  POST /jobs                           Async job submission (polling)
  GET  /jobs/{id}                      Job status
  GET  /jobs/{id}/result               Final result
  DELETE /jobs/{id}                    Cancel queued job
  POST /execute                        Run a script in the sandbox, return meshes
  POST /export/{fmt}                   Run a script and export it as STL or 3MF
  GET  /health                         Service health check
  GET  /tool/schema                    Tool schema for registry
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator

from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse
from pydantic import BaseModel, ValidationError as PydanticValidationError

from shared.logging import configure_logging
from shared.payloads import unwrap_tool_payload, wrap_tool_result

from .config import settings
from .core.conversation_store import DEFAULT_TITLE, Conversation, ConversationTurn, build_store
from .core.errors import (
    ConfigurationError,
    ConversationBusyError,
    ConversationNotFoundError,
    ImageValidationError,
    TransportError,
)
from .core.exporters import EXPORTERS
from .core.image_utils import validate_image
from .core.llm_client import GenerationRequest
from .core.mesh_converter import parts_to_meshes
from .core.code_processor import extract_parameters
from .core.prompt_builder import build_messages, build_system_prompt, trim_history
from .core.sandbox import Accepted, SingleSolid
from .core.turn_pipeline import TurnService
from .schemas import (
    AsyncJobAccepted,
    ConversationCreate,
    ConversationImport,
    ConversationUpdate,
    ExecuteRequest,
    ExecuteResponse,
    ExportRequest,
    GenerateRequest,
    GenerateResponse,
    JobRecordView,
    MeshOut,
    TurnJobStatus,
    TurnRequest,
    TurnResultOut,
)
from .turn_manager import TurnJobManager

configure_logging(settings.log_level)
logger = logging.getLogger("solidgen.main")

NDJSON = "application/x-ndjson"


# ---------------------------------------------------------------------------
# Turn service + job manager (singletons)
# ---------------------------------------------------------------------------

service = TurnService(settings, build_store(settings.conversations_dir))
jobs = TurnJobManager(settings, service)


# ---------------------------------------------------------------------------
# Auth helper
# ---------------------------------------------------------------------------

def _require_api_key(x_api_key: str | None) -> None:
    if settings.api_key and x_api_key != settings.api_key:
        raise HTTPException(status_code=401, detail="Invalid API key")


def _validate(model: type[BaseModel], data: dict[str, Any]) -> Any:
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        errors = [{"msg": err["msg"], "loc": err.get("loc", ()), "type": err["type"]} for err in e.errors()]
        raise HTTPException(status_code=422, detail=errors)


async def _read_body(request: Request) -> tuple[dict[str, Any], dict[str, Any], bool]:
    try:
        raw = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise HTTPException(status_code=400, detail="Request body must be JSON")
    if not isinstance(raw, dict):
        raise HTTPException(status_code=400, detail="Request body must be a JSON object")
    data, meta, wrapped = unwrap_tool_payload(raw)
    # Allow meta overrides for llm_name
    if "llm_name" in meta and "llm_name" not in data:
        data["llm_name"] = meta["llm_name"]
    return data, meta, wrapped


async def _ndjson(lines: AsyncIterator[dict[str, Any]]) -> AsyncIterator[bytes]:
    async for line in lines:
        yield (json.dumps(line) + "\n").encode("utf-8")


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(_: FastAPI):
    await jobs.startup()
    yield
    await jobs.shutdown()


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------

app = FastAPI(
    title="SolidGen Tool Service",
    version="1.0.0",
    description=(
        "Text/photo to parametric solid models. Generates a constrained "
        "modeling script via LLM, runs it in a sandbox against a fixed "
        "primitive set with auto-retry, and returns render-ready meshes."
    ),
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(PydanticValidationError)
async def validation_exception_handler(request: Request, exc: PydanticValidationError):
    return JSONResponse(status_code=422, content={"detail": exc.errors()})


@app.exception_handler(ConversationNotFoundError)
async def not_found_handler(request: Request, exc: ConversationNotFoundError):
    return JSONResponse(status_code=404, content={"detail": f"Conversation not found: {exc.args[0]}"})


@app.exception_handler(ConversationBusyError)
async def busy_handler(request: Request, exc: ConversationBusyError):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(ImageValidationError)
async def image_handler(request: Request, exc: ImageValidationError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(ConfigurationError)
async def configuration_handler(request: Request, exc: ConfigurationError):
    logger.error("Configuration error: %s", exc)
    return JSONResponse(
        status_code=503,
        content={"detail": "The server is missing its model credentials. Please contact the administrator."},
    )


@app.exception_handler(TransportError)
async def transport_handler(request: Request, exc: TransportError):
    logger.error("Transport error: %s", exc)
    return JSONResponse(status_code=502, content={"detail": str(exc)})


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------

@app.get("/")
async def root():
    return {
        "service": settings.service_name,
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
    }


@app.get("/health")
async def health():
    return {
        "status": "ok",
        "service": settings.service_name,
        "queue_size": jobs.queue.qsize(),
        "active_jobs": sum(
            1 for x in jobs.jobs.values()
            if x.status in {TurnJobStatus.queued, TurnJobStatus.running}
        ),
        "cache_entries": len(service.executor.cache),
        "claude_available": settings.claude_available,
        "gemini_available": settings.gemini_available,
        "default_llm": settings.default_llm,
        "max_attempts": settings.max_attempts,
        "max_concurrent_jobs": settings.max_concurrent_jobs,
    }


# ---------------------------------------------------------------------------
# Tool schema (self-description for tool registries)
# ---------------------------------------------------------------------------

@app.get("/tool/schema")
async def tool_schema():
    return {
        "name": "solid-generate",
        "description": (
            "Turns a natural-language description (optionally with a photo) "
            "into a parametric solid-modeling script, validates it in a "
            "sandbox with LLM-assisted auto-retry, and returns render meshes."
        ),
        "input_schema": TurnRequest.model_json_schema(),
        "output_schema": TurnResultOut.model_json_schema(),
        "endpoints": {
            "sync": "/run",
            "submit": "/jobs",
            "status": "/jobs/{job_id}",
            "result": "/jobs/{job_id}/result",
        },
    }


# ---------------------------------------------------------------------------
# POST /generate — single generation call
# ---------------------------------------------------------------------------

@app.post("/generate")
async def generate(request: Request, stream: bool = False, x_api_key: str | None = Header(default=None)):
    _require_api_key(x_api_key)
    data, _, _ = await _read_body(request)
    gen = _validate(GenerateRequest, data)

    image = None
    if gen.image_attachment is not None:
        image = validate_image(
            gen.image_attachment.data,
            gen.image_attachment.mime_type,
            max_bytes=settings.max_image_bytes,
            max_dimension=settings.max_image_dimension,
        )

    turns = trim_history([(t.role, t.content) for t in gen.conversation_history], settings.max_history_turns)
    messages = build_messages(
        turns,
        image_data=image.data if image else None,
        image_mime=image.mime_type if image else None,
    )
    llm_request = GenerationRequest(
        system=build_system_prompt(current_code=gen.current_script, has_image=image is not None),
        messages=messages,
        current_code=gen.current_script,
    )
    client = service.client_factory(gen.llm_name or settings.default_llm)

    if stream:
        async def _events() -> AsyncIterator[dict[str, Any]]:
            async for event in client.stream(llm_request):
                yield event.to_wire()

        return StreamingResponse(_ndjson(_events()), media_type=NDJSON)

    response = await client.generate(llm_request)
    return GenerateResponse(
        code=response.code,
        usage=response.usage.to_dict(),
        elapsed_seconds=round(response.elapsed_seconds, 3),
    )


# ---------------------------------------------------------------------------
# Conversations CRUD
# ---------------------------------------------------------------------------

@app.post("/conversations", status_code=201)
async def create_conversation(body: ConversationCreate, x_api_key: str | None = Header(default=None)):
    _require_api_key(x_api_key)
    conversation = service.store.create(
        title=body.title,
        turns=[ConversationTurn(role=t.role, content=t.content) for t in body.turns],
        current_code=body.current_code,
        last_prompt=body.last_prompt,
    )
    return {
        "id": conversation.id,
        "title": conversation.title,
        "created_at": conversation.created_at,
        "updated_at": conversation.updated_at,
    }


@app.get("/conversations")
async def list_conversations(x_api_key: str | None = Header(default=None)):
    _require_api_key(x_api_key)
    return {"conversations": [c.summary() for c in service.store.list()]}


@app.post("/conversations/import")
async def import_conversations(body: ConversationImport, x_api_key: str | None = Header(default=None)):
    _require_api_key(x_api_key)
    conversations = [
        Conversation(
            title=c.title or DEFAULT_TITLE,
            turns=[ConversationTurn(role=t.role, content=t.content) for t in c.turns],
            current_code=c.current_code,
            last_prompt=c.last_prompt,
        )
        for c in body.conversations
    ]
    count = service.store.import_many(conversations)
    logger.info("Imported %d conversation(s)", count)
    return {"imported": count, "ids": [c.id for c in conversations]}


@app.get("/conversations/{conversation_id}")
async def get_conversation(conversation_id: str, x_api_key: str | None = Header(default=None)):
    _require_api_key(x_api_key)
    return service.store.get(conversation_id).model_dump(mode="json")


@app.patch("/conversations/{conversation_id}")
async def update_conversation(
    conversation_id: str,
    body: ConversationUpdate,
    x_api_key: str | None = Header(default=None),
):
    _require_api_key(x_api_key)
    conversation = service.store.get(conversation_id)
    changes = body.model_dump(exclude_unset=True)
    changes["updated_at"] = datetime.now(timezone.utc)
    conversation = conversation.model_copy(update=changes)
    service.store.save(conversation)
    return {"id": conversation.id, "title": conversation.title, "updated_at": conversation.updated_at}


@app.delete("/conversations/{conversation_id}")
async def delete_conversation(conversation_id: str, x_api_key: str | None = Header(default=None)):
    _require_api_key(x_api_key)
    service.store.delete(conversation_id)
    return {"success": True}


# ---------------------------------------------------------------------------
# Conversation turns
# ---------------------------------------------------------------------------

@app.post("/conversations/{conversation_id}/turns", response_model=TurnResultOut)
async def run_turn(conversation_id: str, request: Request, x_api_key: str | None = Header(default=None)):
    _require_api_key(x_api_key)
    data, _, _ = await _read_body(request)
    turn_request = _validate(TurnRequest, data)
    return await service.run(conversation_id, turn_request)


@app.post("/conversations/{conversation_id}/turns/stream")
async def stream_turn(conversation_id: str, request: Request, x_api_key: str | None = Header(default=None)):
    _require_api_key(x_api_key)
    data, _, _ = await _read_body(request)
    turn_request = _validate(TurnRequest, data)
    lines = service.stream(conversation_id, turn_request)
    return StreamingResponse(_ndjson(lines), media_type=NDJSON)


async def _submit_turn_job(data: dict[str, Any]):
    turn_request = _validate(TurnRequest, data)
    if turn_request.conversation_id:
        service.store.get(turn_request.conversation_id)
        conversation_id = turn_request.conversation_id
    else:
        conversation_id = service.store.create().id
    try:
        return await jobs.submit(turn_request, conversation_id)
    except RuntimeError as e:
        raise HTTPException(status_code=429, detail=str(e))


# ---------------------------------------------------------------------------
# POST /run — submit a turn job and wait for it
# ---------------------------------------------------------------------------

@app.post("/run")
async def run_sync(request: Request, x_api_key: str | None = Header(default=None)):
    """
    Queue a turn job and block until it finishes (or the sync wait times out).
    Accepts either:
      - plain TurnRequest JSON
      - envelope shape: { "data": { ... }, "meta": { ... } }
    """
    _require_api_key(x_api_key)
    data, _, wrapped = await _read_body(request)
    record = await _submit_turn_job(data)
    try:
        finished = await jobs.wait_for_completion(record.id, timeout_seconds=settings.sync_wait_timeout_seconds)
    except RuntimeError as e:
        raise HTTPException(status_code=504, detail=str(e))

    if finished.status == TurnJobStatus.succeeded and finished.result:
        return wrap_tool_result(finished.result.model_dump(mode="json"), wrapped)

    if finished.status == TurnJobStatus.cancelled:
        raise HTTPException(status_code=409, detail="Job cancelled")

    error = finished.error or {"message": "Unknown turn error", "status_code": 500}
    raise HTTPException(
        status_code=int(error.get("status_code", 500)),
        detail=error.get("message", "Turn failed"),
    )


# ---------------------------------------------------------------------------
# POST /jobs — Async job submission
# ---------------------------------------------------------------------------

@app.post("/jobs", response_model=AsyncJobAccepted)
async def enqueue_job(request: Request, x_api_key: str | None = Header(default=None)):
    """
    Async endpoint for polling clients:
      POST /jobs  → returns job_id
      GET /jobs/{job_id}  → poll status
    """
    _require_api_key(x_api_key)
    data, _, _ = await _read_body(request)
    record = await _submit_turn_job(data)

    return AsyncJobAccepted(
        job_id=record.id,
        conversation_id=record.conversation_id,
        status=record.status,
        status_url=f"/jobs/{record.id}",
        result_url=f"/jobs/{record.id}/result",
    )


@app.get("/jobs/{job_id}", response_model=JobRecordView)
async def get_job(job_id: str, x_api_key: str | None = Header(default=None)):
    _require_api_key(x_api_key)
    try:
        record = await jobs.get(job_id)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Job not found: {job_id}")
    return record.as_view()


@app.get("/jobs/{job_id}/result")
async def get_job_result(job_id: str, x_api_key: str | None = Header(default=None)):
    _require_api_key(x_api_key)
    try:
        record = await jobs.get(job_id)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Job not found: {job_id}")

    if record.status == TurnJobStatus.queued:
        return {"status": "queued", "progress": record.progress}
    if record.status == TurnJobStatus.running:
        return {"status": "running", "progress": record.progress, "detail": record.detail}
    if record.status == TurnJobStatus.cancelled:
        return {"status": "cancelled"}
    if record.status == TurnJobStatus.failed:
        return {
            "status": "failed",
            "error": (record.error or {}).get("message", "unknown error"),
            "result": record.result.model_dump() if record.result else None,
        }
    return {
        "status": "succeeded",
        "result": record.result.model_dump() if record.result else None,
    }


@app.delete("/jobs/{job_id}")
async def cancel_job(job_id: str, x_api_key: str | None = Header(default=None)):
    _require_api_key(x_api_key)
    try:
        record = await jobs.cancel(job_id)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Job not found: {job_id}")
    except RuntimeError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {"success": True, "job_id": job_id, "status": record.status}


# ---------------------------------------------------------------------------
# POST /execute, POST /export/{fmt}
# ---------------------------------------------------------------------------

@app.post("/execute", response_model=ExecuteResponse)
async def execute(body: ExecuteRequest, x_api_key: str | None = Header(default=None)):
    _require_api_key(x_api_key)
    t0 = time.time()
    outcome = await asyncio.to_thread(service.executor.execute, body.code)
    if not isinstance(outcome, Accepted):
        return ExecuteResponse(ok=False, error=outcome.error, elapsed_seconds=round(time.time() - t0, 3))

    meshes: list[MeshOut] = []
    if body.include_meshes:
        render = await asyncio.to_thread(parts_to_meshes, outcome.parts, settings.crease_angle_degrees)
        meshes = [MeshOut(**m.to_dict()) for m in render]
    return ExecuteResponse(
        ok=True,
        kind="single" if isinstance(outcome.model, SingleSolid) else "parts",
        part_count=len(outcome.parts),
        parameters=extract_parameters(body.code),
        meshes=meshes,
        elapsed_seconds=round(time.time() - t0, 3),
    )


@app.post("/export/{fmt}")
async def export(fmt: str, body: ExportRequest, x_api_key: str | None = Header(default=None)):
    _require_api_key(x_api_key)
    exporter = EXPORTERS.get(fmt.lower())
    if exporter is None:
        raise HTTPException(status_code=404, detail=f"Unknown export format: {fmt}")
    outcome = await asyncio.to_thread(service.executor.execute, body.code)
    if not isinstance(outcome, Accepted):
        raise HTTPException(status_code=422, detail=outcome.error)

    serialize, media_type = exporter
    payload = await asyncio.to_thread(serialize, outcome.parts)
    return Response(
        content=payload,
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="model.{fmt.lower()}"'},
    )


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "solidgen.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
        reload=bool(int(os.getenv("UVICORN_RELOAD", "0"))),
    )
