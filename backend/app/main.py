"""FastAPI backend for the chat archive import service."""

from __future__ import annotations

import asyncio
import logging
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import (
    BackgroundTasks,
    Depends,
    FastAPI,
    HTTPException,
    Query,
    UploadFile,
    File,
    Form,
)
from fastapi.middleware.cors import CORSMiddleware
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool

from . import importer, merge, storage
from .archive import StagedBundle
from .config import DEFAULT_OWNER_ID, load_settings
from .errors import ChatImportError
from .import_adapters import get_collator
from .import_contract import TranscriptCollator
from .sessions import JobStage, JobTracker, PreviewSessionStore, run_sweeper

logger = logging.getLogger(__name__)

UPLOAD_CHUNK_SIZE = 1024 * 1024

app = FastAPI(title="Chat Import API", version="0.3.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class ConfirmRequest(BaseModel):
    preview_id: str
    target_chat_id: Optional[int] = None


class ChatIdsRequest(BaseModel):
    chat_ids: List[int]


settings = load_settings()
storage.set_db_path_override(settings.db_path)

sessions = PreviewSessionStore(settings.preview_ttl_seconds)
jobs = JobTracker(settings.job_retention_seconds)
_sweeper_task: Optional[asyncio.Task] = None


@app.on_event("startup")
async def _startup() -> None:
    global _sweeper_task
    storage.ensure_schema()
    settings.media_root.mkdir(parents=True, exist_ok=True)
    _sweeper_task = asyncio.create_task(run_sweeper(sessions, jobs, settings.sweep_interval_seconds))


@app.on_event("shutdown")
async def _shutdown() -> None:
    global _sweeper_task
    if _sweeper_task is not None:
        _sweeper_task.cancel()
        try:
            await _sweeper_task
        except asyncio.CancelledError:
            pass
        _sweeper_task = None
    sessions.close()


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _owner_from_token(auth_token: Optional[str] = None, query_token: Optional[str] = None) -> str:
    if settings.open_access:
        return DEFAULT_OWNER_ID

    token = auth_token or query_token or ""
    if token.startswith("Bearer "):
        token = token[7:].strip()
    return settings.owner_tokens.get(token, "")


def _require_owner(
    auth: Optional[HTTPAuthorizationCredentials] = Depends(HTTPBearer(auto_error=False)),
    token: Optional[str] = Query(default=None, alias="token"),
) -> str:
    owner_id = _owner_from_token(auth.credentials if auth else None, token)
    if not owner_id:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return owner_id


def _http_error(exc: ChatImportError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=str(exc))


def _record_failure(owner_id: str, action: str, exc: ChatImportError) -> None:
    level = "error" if exc.status_code >= 500 else "warning"
    storage.append_event(action, f"{action.capitalize()} failed: {exc}", level, owner_id=owner_id)


def _collator_for(source_type: str) -> TranscriptCollator:
    collator = get_collator(source_type)
    if collator is None:
        raise HTTPException(
            status_code=400,
            detail=f"Unsupported source_type '{source_type}'. Supported values: whatsapp",
        )
    return collator


async def _stage_upload(upload: UploadFile) -> StagedBundle:
    """Stream an uploaded bundle to a staging file in fixed-size chunks."""

    settings.staging_dir.mkdir(parents=True, exist_ok=True)
    handle = tempfile.NamedTemporaryFile(
        prefix="chat-bundle-", suffix=".zip", dir=settings.staging_dir, delete=False
    )
    bundle = StagedBundle(Path(handle.name), filename=upload.filename)
    size = 0
    try:
        with handle:
            while True:
                chunk = await upload.read(UPLOAD_CHUNK_SIZE)
                if not chunk:
                    break
                size += len(chunk)
                if size > settings.max_upload_bytes:
                    raise HTTPException(status_code=413, detail="bundle exceeds the upload size limit")
                handle.write(chunk)
        if size == 0:
            raise HTTPException(status_code=400, detail="bundle is empty")
    except BaseException:
        bundle.release()
        raise
    bundle.size = size
    return bundle


def _import_staged(
    owner_id: str,
    bundle: StagedBundle,
    collator: TranscriptCollator,
    target_chat_id: Optional[int] = None,
    progress: Optional[importer.ProgressCallback] = None,
) -> Dict[str, Any]:
    stats = importer.import_bundle(
        owner_id,
        bundle.path,
        collator,
        settings.media_root,
        target_chat_id=target_chat_id,
        staging_root=settings.staging_dir,
        memory_limit=settings.media_memory_limit,
        progress=progress,
    )
    return stats.as_dict()


def _run_import_job(job_id: str, owner_id: str, bundle: StagedBundle, collator: TranscriptCollator) -> None:
    def _progress(stage: str, percent: int) -> None:
        jobs.update(job_id, JobStage(stage), percent)

    try:
        result = _import_staged(owner_id, bundle, collator, progress=_progress)
    except ChatImportError as exc:
        jobs.fail(job_id, str(exc))
        _record_failure(owner_id, "import", exc)
    except Exception:
        logger.exception("Import job %s failed", job_id)
        jobs.fail(job_id, "internal error during import")
    else:
        jobs.complete(job_id, result)
    finally:
        bundle.release()


@app.get("/api/health")
def health() -> Dict[str, Any]:
    return {
        "status": "ok",
        "service": "chat-import",
        "open_previews": len(sessions),
        "tracked_jobs": len(jobs),
        "updated_at": _now_iso(),
    }


@app.post("/api/upload")
async def upload_bundle(
    bundle: UploadFile = File(...),
    source_type: str = Form(default="whatsapp"),
    owner_id: str = Depends(_require_owner),
) -> Dict[str, Any]:
    collator = _collator_for(source_type)
    staged = await _stage_upload(bundle)
    try:
        return await run_in_threadpool(_import_staged, owner_id, staged, collator)
    except ChatImportError as exc:
        _record_failure(owner_id, "import", exc)
        raise _http_error(exc)
    finally:
        staged.release()


@app.post("/api/upload/async")
async def upload_bundle_async(
    background_tasks: BackgroundTasks,
    bundle: UploadFile = File(...),
    source_type: str = Form(default="whatsapp"),
    owner_id: str = Depends(_require_owner),
) -> Dict[str, Any]:
    collator = _collator_for(source_type)
    staged = await _stage_upload(bundle)
    job = jobs.start(owner_id)
    background_tasks.add_task(_run_import_job, job.id, owner_id, staged, collator)
    return {"job_id": job.id, "stage": job.stage.value}


@app.get("/api/jobs/{job_id}")
def get_job(job_id: str, owner_id: str = Depends(_require_owner)) -> Dict[str, Any]:
    try:
        return jobs.get(job_id, owner_id)
    except ChatImportError as exc:
        raise _http_error(exc)


@app.post("/api/upload/preview")
async def preview_upload(
    bundle: UploadFile = File(...),
    source_type: str = Form(default="whatsapp"),
    owner_id: str = Depends(_require_owner),
) -> Dict[str, Any]:
    collator = _collator_for(source_type)
    staged = await _stage_upload(bundle)
    try:
        summary = await run_in_threadpool(importer.preview_bundle, owner_id, staged.path, collator)
    except ChatImportError as exc:
        staged.release()
        raise _http_error(exc)
    except BaseException:
        staged.release()
        raise
    summary["source_type"] = source_type
    session = sessions.create(owner_id, staged, summary)
    return {**session.describe(), **summary}


@app.delete("/api/upload/preview/{preview_id}")
def cancel_preview(preview_id: str, owner_id: str = Depends(_require_owner)) -> Dict[str, Any]:
    try:
        cancelled = sessions.destroy(preview_id, owner_id)
    except ChatImportError as exc:
        raise _http_error(exc)
    if not cancelled:
        raise HTTPException(status_code=404, detail=f"preview '{preview_id}' not found")
    return {"preview_id": preview_id, "cancelled": True}


@app.post("/api/upload/confirm")
async def confirm_upload(request: ConfirmRequest, owner_id: str = Depends(_require_owner)) -> Dict[str, Any]:
    try:
        session = sessions.claim(request.preview_id, owner_id)
    except ChatImportError as exc:
        raise _http_error(exc)

    try:
        collator = _collator_for(session.summary.get("source_type", "whatsapp"))
        return await run_in_threadpool(
            _import_staged, owner_id, session.bundle, collator, request.target_chat_id
        )
    except ChatImportError as exc:
        _record_failure(owner_id, "import", exc)
        raise _http_error(exc)
    finally:
        session.bundle.release()


@app.get("/api/chats")
def get_chats(owner_id: str = Depends(_require_owner)) -> Dict[str, Any]:
    return {"chats": storage.list_chats(owner_id), "updated_at": _now_iso()}


@app.get("/api/chats/{chat_id}")
def get_chat(
    chat_id: int,
    limit: Optional[int] = Query(default=None, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
    owner_id: str = Depends(_require_owner),
) -> Dict[str, Any]:
    chat = storage.get_chat(owner_id, chat_id, limit=limit, offset=offset)
    if chat is None:
        raise HTTPException(status_code=404, detail=f"chat '{chat_id}' not found")
    return {"chat": chat}


@app.delete("/api/chats/{chat_id}")
async def delete_chat(chat_id: int, owner_id: str = Depends(_require_owner)) -> Dict[str, Any]:
    try:
        deleted = await run_in_threadpool(merge.delete_chat, owner_id, chat_id, settings.media_root)
    except ChatImportError as exc:
        raise _http_error(exc)
    return {"deleted": deleted}


@app.post("/api/chats/delete")
async def delete_chats(request: ChatIdsRequest, owner_id: str = Depends(_require_owner)) -> Dict[str, Any]:
    try:
        deleted = await run_in_threadpool(merge.delete_chats, owner_id, request.chat_ids, settings.media_root)
    except ChatImportError as exc:
        raise _http_error(exc)
    return {"deleted": deleted}


@app.post("/api/chats/merge")
async def merge_chats(request: ChatIdsRequest, owner_id: str = Depends(_require_owner)) -> Dict[str, Any]:
    try:
        return await run_in_threadpool(merge.merge_chats, owner_id, request.chat_ids, settings.media_root)
    except ChatImportError as exc:
        _record_failure(owner_id, "merge", exc)
        raise _http_error(exc)


@app.get("/api/events")
def get_events(
    limit: int = Query(default=25, ge=1, le=100),
    owner_id: str = Depends(_require_owner),
) -> Dict[str, Any]:
    return {"events": storage.list_events(owner_id=owner_id, limit=limit), "updated_at": _now_iso()}
