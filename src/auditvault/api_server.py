"""
FastAPI service layer for the document ingestion pipeline.

Exposes local batch upload, Google Drive import, version history, rollback,
inline edit, delete and signed downloads over HTTP. Orchestrators are
synchronous and run on a thread pool off the event loop.

Run with:
    uvicorn auditvault.api_server:app --host 0.0.0.0 --port 8000
"""
from __future__ import annotations

import asyncio
import time
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from functools import partial
from typing import Any, Callable

from fastapi import FastAPI, File, Header, HTTPException, UploadFile
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .drive_import import ImportRequest
from .errors import (
    IngestError,
    InputValidationError,
    NotFoundError,
    ProviderError,
    RollbackError,
    StorageError,
)
from .local_upload import CandidateFile
from .metrics import metrics_collector
from .observability import get_logger
from .runtime import Actor, Runtime, Services, build_runtime

logger = get_logger(__name__)

_THREAD_POOL_WORKERS = 8
_IMPORT_STATUS_BY_KIND = {"validation": 400, "provider": 502, "fatal": 500}


# ---------------------------------------------------------------------------
# Pydantic request models
# ---------------------------------------------------------------------------

class DriveImportBody(BaseModel):
    source_url: str = Field(..., description="Google Drive file or folder link, or a bare id")
    section_id: str
    import_type: str = Field(default="", description="'file', 'folder', or empty to infer from the link")
    company_id: str = ""
    target_document_id: str = ""
    create_subfolder: bool = False
    subfolder_name: str = ""


class RollbackBody(BaseModel):
    version_number: int = Field(..., ge=1)


# ---------------------------------------------------------------------------
# Application state populated at startup
# ---------------------------------------------------------------------------

_state: dict[str, Any] = {}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime once at startup unless one was installed already."""
    owns_runtime = "runtime" not in _state
    if owns_runtime:
        _state["runtime"] = build_runtime()
    _state["executor"] = ThreadPoolExecutor(max_workers=_THREAD_POOL_WORKERS)

    yield

    _state.pop("executor").shutdown(wait=False)
    runtime: Runtime = _state.pop("runtime")
    if owns_runtime:
        runtime.close()


app = FastAPI(
    title="AuditVault Ingestion API",
    description="Document file ingestion and versioning",
    version="1.0.0",
    lifespan=lifespan,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _actor(actor_id: str | None, authorization: str | None) -> Actor:
    token = ""
    if authorization and authorization.lower().startswith("bearer "):
        token = authorization[7:].strip()
    return Actor(user_id=(actor_id or "").strip() or None, access_token=token)


def _runtime() -> Runtime:
    runtime: Runtime | None = _state.get("runtime")
    if runtime is None or _state.get("executor") is None:
        raise HTTPException(status_code=503, detail="runtime is not initialized")
    return runtime


def _services(actor: Actor) -> Services:
    return _runtime().services(actor)


def _status_for(exc: IngestError) -> int:
    if isinstance(exc, InputValidationError):
        return 400
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, RollbackError):
        return 409
    if isinstance(exc, (StorageError, ProviderError)):
        return 502
    return 500


async def _run(operation: str, fn: Callable[..., Any], *args, **kwargs) -> Any:
    loop = asyncio.get_running_loop()
    start = time.perf_counter()
    try:
        return await loop.run_in_executor(_state["executor"], partial(fn, *args, **kwargs))
    except IngestError as exc:
        status = _status_for(exc)
        if status >= 500:
            logger.error("api_request_failed", operation=operation, error=str(exc))
        latency_ms = (time.perf_counter() - start) * 1000.0
        metrics_collector.record_operation(f"api_{operation}", latency_ms, success=False, status=status)
        raise HTTPException(status_code=status, detail=str(exc)) from exc


def _snapshot_payload(outcome) -> dict[str, Any]:
    return {
        "created": outcome.created,
        "version": outcome.version.as_dict() if outcome.version else None,
        "warning": outcome.warning,
    }


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@app.get("/documents/{document_id}/files")
async def list_document_files(document_id: str):
    files = await _run("list_files", _runtime().store.list_files, document_id)
    return {"document_id": document_id, "files": [record.as_dict() for record in files]}


@app.post("/documents/{document_id}/files")
async def upload_document_files(
    document_id: str,
    files: list[UploadFile] = File(...),
    x_actor_id: str | None = Header(default=None),
    authorization: str | None = Header(default=None),
):
    """Upload a batch of local files into one document."""
    services = _services(_actor(x_actor_id, authorization))
    candidates = []
    for upload in files:
        candidates.append(
            CandidateFile(
                name=upload.filename or "",
                data=await upload.read(),
                content_type=upload.content_type or "",
            )
        )
    result = await _run("upload", services.uploader.upload_batch, document_id, candidates, services.actor.user_id)
    return result.as_dict()


@app.post("/imports/drive")
async def import_from_drive(
    body: DriveImportBody,
    x_actor_id: str | None = Header(default=None),
    authorization: str | None = Header(default=None),
):
    """Import a Google Drive file or folder into a section."""
    services = _services(_actor(x_actor_id, authorization))
    if services.importer is None:
        raise HTTPException(status_code=503, detail="GOOGLE_API_KEY is not configured")
    request = ImportRequest(**body.model_dump())
    result = await _run("drive_import", services.importer.run, request, services.actor.user_id)
    if result.ok:
        return result.as_dict()
    return JSONResponse(status_code=_IMPORT_STATUS_BY_KIND.get(result.error_kind, 500), content=result.as_dict())


@app.get("/files/{file_id}/versions")
async def list_file_versions(file_id: str):
    services = _services(Actor())
    versions = await _run("list_versions", services.files.list_versions, file_id)
    return {
        "file_id": file_id,
        "versioning_enabled": services.engine.capability.enabled,
        "versions": [version.as_dict() for version in versions],
    }


@app.post("/files/{file_id}/versions")
async def create_file_snapshot(
    file_id: str,
    x_actor_id: str | None = Header(default=None),
    authorization: str | None = Header(default=None),
):
    services = _services(_actor(x_actor_id, authorization))
    outcome = await _run("snapshot", services.files.create_manual_snapshot, file_id, services.actor.user_id)
    return _snapshot_payload(outcome)


@app.post("/files/{file_id}/rollback")
async def rollback_file(
    file_id: str,
    body: RollbackBody,
    x_actor_id: str | None = Header(default=None),
    authorization: str | None = Header(default=None),
):
    services = _services(_actor(x_actor_id, authorization))
    result = await _run("rollback", services.files.rollback, file_id, body.version_number, services.actor.user_id)
    return {
        "file": result.file.as_dict(),
        "restored_version": result.restored_version,
        "strategy_used": result.strategy_used,
        "snapshot": _snapshot_payload(result.snapshot),
        "warnings": list(result.warnings),
    }


@app.put("/files/{file_id}/content")
async def replace_file_content(
    file_id: str,
    file: UploadFile = File(...),
    x_actor_id: str | None = Header(default=None),
    authorization: str | None = Header(default=None),
):
    """Inline edit: overwrite the current content, snapshotting it first."""
    services = _services(_actor(x_actor_id, authorization))
    data = await file.read()
    result = await _run(
        "edit",
        services.files.replace_content,
        file_id,
        data,
        file.content_type or "",
        services.actor.user_id,
        file_name=file.filename or None,
    )
    return {
        "file": result.file.as_dict(),
        "strategy_used": result.strategy_used,
        "snapshot": _snapshot_payload(result.snapshot),
    }


@app.delete("/files/{file_id}")
async def delete_file(
    file_id: str,
    x_actor_id: str | None = Header(default=None),
    authorization: str | None = Header(default=None),
):
    services = _services(_actor(x_actor_id, authorization))
    result = await _run("delete", services.files.delete_file, file_id, services.actor.user_id)
    return result.as_dict()


@app.get("/files/{file_id}/download-url")
async def file_download_url(
    file_id: str,
    x_actor_id: str | None = Header(default=None),
    authorization: str | None = Header(default=None),
):
    services = _services(_actor(x_actor_id, authorization))
    url = await _run("download_url", services.files.signed_download_url, file_id, services.actor.user_id)
    return {"file_id": file_id, "url": url}


@app.get("/metrics")
async def metrics_endpoint():
    """Return aggregated service metrics."""
    return metrics_collector.get_summary()
