"""API routes: upload staging, background conversion/summary tasks, synchronous conversion, session history."""
import asyncio
import io
import logging
import time
import uuid
from pathlib import PurePath
from typing import Optional

from fastapi import APIRouter, Body, Depends, File, HTTPException, Query, Request, UploadFile
from PIL import Image, UnidentifiedImageError

from doc2md.config import (
    MAX_DOCUMENT_SIZE_BYTES,
    MAX_DOCUMENT_SIZE_MB,
    MAX_FILES_PER_TASK,
    MAX_MEDIA_SIZE_BYTES,
    MAX_MEDIA_SIZE_MB,
    MAX_SUMMARY_CHARS,
    UPLOAD_CACHE_TTL_SECONDS,
)
from doc2md.conversion.formats import classify, resolve_media_type, supported_formats
from doc2md.conversion.models import CacheMetadata, MediaKind, SourceFile, TaskKind
from doc2md.db import delete_session_data, get_session_activities, get_session_stats
from doc2md.errors import (
    Doc2MDError,
    InvalidInput,
    PayloadTooLarge,
    TaskNotFound,
    UnsupportedFormat,
)

logger = logging.getLogger("doc2md.api")
router = APIRouter(prefix="/api", tags=["doc2md"])

_CHUNK = 1024 * 1024


def http_error(e: Doc2MDError) -> HTTPException:
    return HTTPException(e.status_code, e.to_dict())


def get_or_create_session_id(request: Request) -> str:
    """Use X-Session-ID header or generate and attach to request for response header."""
    sid = (request.headers.get("X-Session-ID") or "").strip()
    if sid:
        return sid
    sid = str(uuid.uuid4())
    request.state.session_id = sid
    return sid


def _max_bytes_for_kind(kind: Optional[MediaKind]) -> tuple[int, int]:
    if kind in (MediaKind.AUDIO, MediaKind.VIDEO):
        return MAX_MEDIA_SIZE_BYTES, MAX_MEDIA_SIZE_MB
    return MAX_DOCUMENT_SIZE_BYTES, MAX_DOCUMENT_SIZE_MB


async def _read_upload(file: UploadFile) -> tuple[bytes, str]:
    """Read an upload within its size ceiling. Returns (bytes, resolved media type)."""
    filename = file.filename or "file"
    media_type = resolve_media_type(file.content_type, filename)
    classification = classify(media_type)
    if not classification.supported:
        raise UnsupportedFormat(f"Unsupported file format: {filename} ({media_type or 'unknown'})")
    max_bytes, max_mb = _max_bytes_for_kind(classification.info.kind)
    buf = io.BytesIO()
    while chunk := await file.read(_CHUNK):
        if buf.tell() + len(chunk) > max_bytes:
            raise PayloadTooLarge(f"File too large: {filename} (max {max_mb} MB for {classification.info.kind.value})")
        buf.write(chunk)
    if buf.tell() == 0:
        raise InvalidInput(f"Empty file: {filename}")
    return buf.getvalue(), media_type


def _image_size(data: bytes, filename: str) -> tuple[int, int]:
    try:
        with Image.open(io.BytesIO(data)) as img:
            img.verify()
        with Image.open(io.BytesIO(data)) as img:
            return img.width, img.height
    except (UnidentifiedImageError, OSError, SyntaxError) as e:
        logger.warning("Rejected invalid image %s: %s", filename, e)
        raise InvalidInput(f"Not a valid image: {filename}") from e


@router.get("/health")
def health(request: Request):
    state = request.app.state
    return {
        "status": "ok",
        "ai_configured": bool(getattr(state.ai_client.backend, "api_key", True)),
        "office_configured": state.preparer.office.is_configured(),
        "ffmpeg_available": state.preparer.encoder.is_available(),
    }


@router.get("/limits")
def get_limits():
    """Return upload and task limits for the client."""
    return {
        "max_files_per_task": MAX_FILES_PER_TASK,
        "max_document_size_mb": MAX_DOCUMENT_SIZE_MB,
        "max_document_size_bytes": MAX_DOCUMENT_SIZE_BYTES,
        "max_media_size_mb": MAX_MEDIA_SIZE_MB,
        "max_media_size_bytes": MAX_MEDIA_SIZE_BYTES,
        "max_summary_chars": MAX_SUMMARY_CHARS,
        "upload_expires_in_ms": UPLOAD_CACHE_TTL_SECONDS * 1000,
    }


@router.get("/convert/formats")
def get_formats():
    return {"formats": supported_formats()}


@router.post("/upload")
async def upload_file(request: Request, file: UploadFile = File(...)):
    """Stage one file in the upload cache. The returned entry_id is what /convert/start takes."""
    cache = request.app.state.upload_cache
    filename = file.filename or "file"
    try:
        data, media_type = await _read_upload(file)
        extra = {}
        if classify(media_type).info.kind is MediaKind.IMAGE:
            extra["width"], extra["height"] = _image_size(data, filename)
        metadata = CacheMetadata(filename=filename, media_type=media_type, size=len(data), extra=extra)
        entry = await asyncio.to_thread(cache.put, data, metadata)
    except Doc2MDError as e:
        raise http_error(e)
    except Exception as e:
        logger.exception("Upload failed: %s", e)
        raise HTTPException(500, {"error": "Upload failed", "code": "internal_error"})
    out = {
        "entry_id": entry.entry_id,
        "locator": entry.locator,
        "filename": filename,
        "size": len(data),
        "media_type": media_type,
        "expires_in_ms": int(round((entry.expires_at - entry.created_at) * 1000)),
    }
    out.update(extra)
    return out


@router.delete("/upload/{entry_id}")
async def delete_upload(entry_id: str, request: Request):
    deleted = await asyncio.to_thread(request.app.state.upload_cache.delete, entry_id)
    if not deleted:
        logger.debug("Delete of unknown upload %s ignored", entry_id)
    return {"ok": True}


def _entry_ids(files: list) -> list[str]:
    ids = []
    for f in files or []:
        if isinstance(f, str):
            ids.append(f)
        elif isinstance(f, dict) and f.get("entry_id"):
            ids.append(str(f["entry_id"]))
        else:
            raise InvalidInput("Each file must be an entry_id or {\"entry_id\": ...}")
    return ids


@router.post("/convert/start")
async def start_conversion(
    request: Request,
    files: list = Body([], embed=True),
    model: Optional[str] = Body(None, embed=True),
    session_id: str = Depends(get_or_create_session_id),
):
    store = request.app.state.task_store
    try:
        task_id = store.start_conversion(_entry_ids(files), model, session_id=session_id)
    except Doc2MDError as e:
        raise http_error(e)
    return {"task_id": task_id, "status": store.poll(task_id).status.value}


def _poll(request: Request, task_id: str, kind: TaskKind):
    try:
        snapshot = request.app.state.task_store.poll(task_id)
        if snapshot.kind is not kind:
            raise TaskNotFound(task_id)
    except Doc2MDError as e:
        raise http_error(e)
    return snapshot


# Async so snapshots are taken on the loop thread that mutates the task.
@router.get("/convert/status/{task_id}")
async def conversion_status(task_id: str, request: Request):
    return _poll(request, task_id, TaskKind.CONVERT).to_dict(result_key="markdown")


@router.post("/summarize/start")
async def start_summary(
    request: Request,
    markdown: str = Body("", embed=True),
    model: Optional[str] = Body(None, embed=True),
    session_id: str = Depends(get_or_create_session_id),
):
    store = request.app.state.task_store
    try:
        task_id = store.start_summary(markdown, model, session_id=session_id)
    except Doc2MDError as e:
        raise http_error(e)
    return {"task_id": task_id, "status": store.poll(task_id).status.value}


@router.get("/summarize/status/{task_id}")
async def summary_status(task_id: str, request: Request):
    return _poll(request, task_id, TaskKind.SUMMARIZE).to_dict(result_key="summary")


@router.post("/convert")
async def convert_now(
    request: Request,
    files: list[UploadFile] = File(...),
    model: Optional[str] = Query(None),
):
    """Synchronous variant: prepare and convert the uploaded files in one request."""
    state = request.app.state
    if not files:
        raise http_error(InvalidInput("File list is empty"))
    if len(files) > MAX_FILES_PER_TASK:
        raise http_error(InvalidInput(f"Too many files (max {MAX_FILES_PER_TASK})"))
    started = time.monotonic()
    try:
        sources = []
        for file in files:
            data, media_type = await _read_upload(file)
            sources.append(SourceFile(data=data, media_type=media_type, name=file.filename or "file"))
        prepared = await state.preparer.prepare(sources)
        markdown = await state.ai_client.convert(prepared, model)
    except Doc2MDError as e:
        raise http_error(e)
    first = sources[0].name
    filename = f"{PurePath(first).stem or 'document'}.md"
    logger.info("Synchronous conversion: %s file(s) -> %s chars", len(sources), len(markdown))
    return {
        "filename": filename,
        "markdown": markdown,
        "stats": {
            "files": len(sources),
            "input_bytes": sum(len(s.data) for s in sources),
            "output_chars": len(markdown),
            "duration_seconds": round(time.monotonic() - started, 2),
        },
    }


@router.post("/generate-title")
async def generate_title(
    request: Request,
    markdown: str = Body(..., embed=True),
    model: Optional[str] = Body(None, embed=True),
):
    """Suggest a file name for converted Markdown; falls back to a random name when the backend fails."""
    if not markdown.strip():
        raise http_error(InvalidInput("Markdown must not be empty"))
    try:
        title = await request.app.state.ai_client.generate_title(markdown, model)
        return {"title": title, "fallback": False}
    except Doc2MDError as e:
        logger.warning("Title generation failed, using fallback: %s", e.message)
        return {"title": f"document-{uuid.uuid4().hex[:8]}", "fallback": True}


@router.get("/session/stats")
def session_stats(session_id: str = Depends(get_or_create_session_id)):
    """Return aggregated stats for the current session."""
    return get_session_stats(session_id)


@router.get("/session/activities")
def session_activities(
    limit: int = Query(100, ge=1, le=500),
    session_id: str = Depends(get_or_create_session_id),
):
    """Return recent tasks for the current session."""
    return {"activities": get_session_activities(session_id, limit=limit)}


@router.delete("/session/data")
def session_delete_data(session_id: str = Depends(get_or_create_session_id)):
    """Delete the session's task history."""
    deleted = delete_session_data(session_id)
    logger.info("Session %s: deleted %s activity record(s)", session_id, deleted)
    return {"deleted": deleted}
