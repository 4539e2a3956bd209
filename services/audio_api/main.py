"""Voice memo pipeline - Audio API FastAPI application.

FastAPI service for voice memo upload, read-back and deletion.

On successful upload, a best-effort non-blocking enqueue of a transcription
attempt is triggered. On startup, audios left in the retry ledger are
rescheduled. This module does NOT contain transcription or retry logic.

Run with:
    uvicorn services.audio_api.main:app --reload  # dev server only
"""

from __future__ import annotations

import logging
import tempfile
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from voicememo.config import AUDIO_FILE_MIMETYPE, DEFAULT_LANGUAGE, MAX_UPLOAD_BYTES
from voicememo.db import init_db
from voicememo.schemas import AudioListResponse, AudioResponse, ErrorResponse
from voicememo.storage import AudioStorage, LocalAudioStorage, StorageError, create_storage
from voicememo.stt import check_speech_to_text_config
from services.audio_api.service import (
    AudioErrorCode,
    AudioServiceError,
    PayloadTooLargeError,
    UnauthorizedError,
    UnsupportedMediaTypeError,
    delete_user_audio,
    get_user_audio,
    is_expected_content_type,
    list_user_audios,
    open_user_audio_file,
    upload_audio,
)

logger = logging.getLogger(__name__)

# In-memory threshold before an upload body spills to a temp file
SPOOL_MAX_MEMORY = 1024 * 1024

# --- Database Setup ---

# Module-level session factory (initialized on startup)
_session_factory = None


def get_session_factory():
    """Get the session factory.

    Raises:
        RuntimeError: If session factory not initialized (app lifespan not invoked).
    """
    global _session_factory
    if _session_factory is None:
        raise RuntimeError("Session factory not initialized. App lifespan not invoked?")
    return _session_factory


def get_db_session():
    """Dependency that provides a database session."""
    SessionFactory = get_session_factory()
    session = SessionFactory()
    try:
        yield session
    finally:
        session.close()


# --- Storage Setup ---

# Module-level storage backend (initialized on startup unless overridden)
_storage: AudioStorage | None = None


def get_storage() -> AudioStorage:
    """Dependency that provides the audio storage backend."""
    global _storage
    if _storage is None:
        _storage = create_storage()
    return _storage


# --- Identity ---


def get_user_id(x_user_id: Annotated[str | None, Header()] = None) -> int:
    """Dependency resolving the calling user from the X-User-Id header."""
    if x_user_id is None:
        raise UnauthorizedError()
    try:
        user_id = int(x_user_id)
    except ValueError:
        raise UnauthorizedError() from None
    if user_id < 1:
        raise UnauthorizedError()
    return user_id


# --- Lifespan ---


def _cleanup_orphan_temp_files_safe(storage: AudioStorage) -> None:
    """Clean up temp files left by interrupted uploads (best-effort)."""
    if not isinstance(storage, LocalAudioStorage):
        return
    try:
        if storage.root.exists():
            cleaned = storage.cleanup_orphans()
            if cleaned > 0:
                logger.info("Startup cleanup: removed %d orphan temp files", cleaned)
    except Exception:
        # Best-effort: never crash startup
        logger.warning("Startup cleanup failed (non-fatal)", exc_info=True)


def _enqueue_resume_safe() -> None:
    """Reschedule audios left in the retry ledger (best-effort)."""
    try:
        from voicememo.huey_app import enqueue_resume

        enqueue_resume()
    except Exception:
        logger.warning("Failed to enqueue transcription resume (non-fatal)", exc_info=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler.

    Checks the speech-to-text configuration, initializes the database and
    storage, cleans up orphan temp files and resumes failed transcriptions.

    Raises:
        ConfigError: If no transcription backend is configured. Uploads would
            otherwise be accepted that no worker can ever transcribe.
    """
    backend = check_speech_to_text_config()
    logger.info("Transcriptions handled by the %s backend", backend)

    global _session_factory
    if _session_factory is None:
        _, _session_factory = init_db()

    storage = get_storage()
    _cleanup_orphan_temp_files_safe(storage)

    _enqueue_resume_safe()

    yield
    # Shutdown: nothing special needed


# --- FastAPI App ---


app = FastAPI(
    title="Voice Memo Pipeline - Audio API",
    description="Voice memo upload, read-back and deletion.",
    version="0.1.0",
    lifespan=lifespan,
)


# --- Error Handling ---


def error_code_to_status(error_code: str) -> int:
    """Map error codes to HTTP status codes."""
    if error_code == AudioErrorCode.UNAUTHORIZED:
        return 401
    if error_code == AudioErrorCode.NOT_FOUND:
        return 404
    if error_code == AudioErrorCode.PAYLOAD_TOO_LARGE:
        return 413
    if error_code == AudioErrorCode.UNSUPPORTED_MEDIA_TYPE:
        return 415
    return 500


def make_error_response(error_code: str, error_message: str) -> JSONResponse:
    """Create a JSON error response."""
    return JSONResponse(
        status_code=error_code_to_status(error_code),
        content=ErrorResponse(
            error_code=error_code,
            error_message=error_message,
        ).model_dump(),
    )


@app.exception_handler(AudioServiceError)
async def audio_service_error_handler(request: Request, exc: AudioServiceError) -> JSONResponse:
    return make_error_response(exc.error_code, exc.message)


ERROR_RESPONSES = {
    401: {"model": ErrorResponse, "description": "Missing or invalid X-User-Id"},
    404: {"model": ErrorResponse, "description": "Audio not found"},
    500: {"model": ErrorResponse, "description": "Storage failure"},
}


# --- Upload Helpers ---


async def _spool_request_body(request: Request, limit: int):
    """Copy the request body into a spooled temp file, enforcing the size limit.

    Raises:
        PayloadTooLargeError: If the body exceeds `limit` bytes.
    """
    content_length = request.headers.get("content-length")
    if content_length is not None and content_length.isdigit() and int(content_length) > limit:
        raise PayloadTooLargeError(limit)

    spool = tempfile.SpooledTemporaryFile(max_size=SPOOL_MAX_MEMORY)
    total = 0
    try:
        async for chunk in request.stream():
            total += len(chunk)
            if total > limit:
                raise PayloadTooLargeError(limit)
            spool.write(chunk)
    except BaseException:
        spool.close()
        raise
    spool.seek(0)
    return spool


# --- Endpoints ---


@app.post(
    "/api/audios",
    status_code=201,
    response_model=AudioResponse,
    responses={
        **ERROR_RESPONSES,
        413: {"model": ErrorResponse, "description": "Upload too large"},
        415: {"model": ErrorResponse, "description": "Not audio/webm"},
    },
    summary="Upload a voice memo",
    description="Store a raw audio/webm body and enqueue its transcription.",
)
async def create_audio(
    request: Request,
    session: Annotated[Session, Depends(get_db_session)],
    storage: Annotated[AudioStorage, Depends(get_storage)],
    user_id: Annotated[int, Depends(get_user_id)],
    language: Annotated[
        str, Query(pattern=r"^[a-z]{2}$", description="Two-letter language code")
    ] = DEFAULT_LANGUAGE,
):
    """Upload a voice memo.

    The body is the raw audio. The response carries a null transcription;
    it is filled in asynchronously once an attempt succeeds.
    """
    content_type = request.headers.get("content-type")
    if not is_expected_content_type(content_type):
        raise UnsupportedMediaTypeError(content_type)

    spool = await _spool_request_body(request, MAX_UPLOAD_BYTES)
    try:
        audio = await run_in_threadpool(upload_audio, session, storage, user_id, language, spool)
    except AudioServiceError:
        raise
    except Exception:
        # Log full exception server-side, return generic message to client
        logger.exception("Unexpected error during audio upload")
        return make_error_response(
            AudioErrorCode.INTERNAL_ERROR,
            "An unexpected error occurred during upload",
        )
    finally:
        spool.close()

    return AudioResponse.model_validate(audio)


@app.get(
    "/api/audios",
    response_model=AudioListResponse,
    responses={401: ERROR_RESPONSES[401]},
    summary="List the caller's voice memos",
)
def list_audios(
    session: Annotated[Session, Depends(get_db_session)],
    user_id: Annotated[int, Depends(get_user_id)],
):
    audios = list_user_audios(session, user_id)
    return AudioListResponse(audios=[AudioResponse.model_validate(a) for a in audios])


@app.get(
    "/api/audios/{audio_id}",
    response_model=AudioResponse,
    responses={401: ERROR_RESPONSES[401], 404: ERROR_RESPONSES[404]},
    summary="Get one voice memo",
)
def get_audio_record(
    audio_id: int,
    session: Annotated[Session, Depends(get_db_session)],
    user_id: Annotated[int, Depends(get_user_id)],
):
    return AudioResponse.model_validate(get_user_audio(session, user_id, audio_id))


@app.get(
    "/api/audios/{audio_id}/file",
    response_class=StreamingResponse,
    responses=ERROR_RESPONSES,
    summary="Download a voice memo's audio",
)
def get_audio_file(
    audio_id: int,
    session: Annotated[Session, Depends(get_db_session)],
    storage: Annotated[AudioStorage, Depends(get_storage)],
    user_id: Annotated[int, Depends(get_user_id)],
):
    try:
        stream = open_user_audio_file(session, storage, user_id, audio_id)
    except StorageError as e:
        logger.error("Failed to open audio %d: %s", audio_id, e)
        return make_error_response(AudioErrorCode.INTERNAL_ERROR, "Failed to read audio")
    return StreamingResponse(iter(stream), media_type=AUDIO_FILE_MIMETYPE)


@app.delete(
    "/api/audios/{audio_id}",
    status_code=204,
    responses=ERROR_RESPONSES,
    summary="Delete a voice memo",
    description="Deletes the record first, then the stored audio.",
)
def delete_audio_record(
    audio_id: int,
    session: Annotated[Session, Depends(get_db_session)],
    storage: Annotated[AudioStorage, Depends(get_storage)],
    user_id: Annotated[int, Depends(get_user_id)],
):
    try:
        delete_user_audio(session, storage, user_id, audio_id)
    except StorageError as e:
        logger.error("Failed to delete blob for audio %d: %s", audio_id, e)
        return make_error_response(AudioErrorCode.INTERNAL_ERROR, "Failed to delete audio")
    return Response(status_code=204)


@app.get("/health", summary="Health check")
def health_check():
    """Simple health check endpoint."""
    return {"status": "ok"}


# --- For testing: allow overriding session factory and storage ---


def override_session_factory(factory):
    """Override the session factory for testing."""
    global _session_factory
    _session_factory = factory


def override_storage(storage: AudioStorage | None):
    """Override the storage backend for testing."""
    global _storage
    _storage = storage
