"""Voice memo pipeline - Audio service logic.

Upload, read-back and delete for audio records and their blobs:
- Upload: row insert, blob store, then a best-effort transcription enqueue
- Delete: row first, blob second, not-found if either is missing

NO transcription logic here. The driver runs it in the Huey consumer.
"""

from __future__ import annotations

import logging
from enum import StrEnum
from typing import TYPE_CHECKING

from voicememo.config import AUDIO_FILE_MIMETYPE
from voicememo.db import delete_audio, get_audio, get_audios_by_user, insert_audio
from voicememo.models import Audio
from voicememo.storage import AudioNotFoundError, AudioStorage, AudioStream, StorageError

if TYPE_CHECKING:
    from typing import BinaryIO

    from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

# Read size when streaming an upload into storage
UPLOAD_CHUNK_SIZE = 64 * 1024


# --- Error Codes ---


class AudioErrorCode(StrEnum):
    """Error codes for the audio API."""

    UNAUTHORIZED = "UNAUTHORIZED"
    NOT_FOUND = "NOT_FOUND"
    UNSUPPORTED_MEDIA_TYPE = "UNSUPPORTED_MEDIA_TYPE"
    PAYLOAD_TOO_LARGE = "PAYLOAD_TOO_LARGE"
    UPLOAD_FAILED = "UPLOAD_FAILED"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class AudioServiceError(Exception):
    """Base exception for audio API errors."""

    def __init__(self, error_code: str, message: str):
        self.error_code = error_code
        self.message = message
        super().__init__(f"{error_code}: {message}")


class UnauthorizedError(AudioServiceError):
    """Request carries no usable user identity."""

    def __init__(self):
        super().__init__(AudioErrorCode.UNAUTHORIZED, "Unauthorized")


class AudioRecordNotFoundError(AudioServiceError):
    """Audio row or blob missing, or owned by someone else."""

    def __init__(self, audio_id: int):
        super().__init__(AudioErrorCode.NOT_FOUND, f"Audio {audio_id} not found")


class UnsupportedMediaTypeError(AudioServiceError):
    """Declared content type is not the expected audio type."""

    def __init__(self, content_type: str | None):
        super().__init__(
            AudioErrorCode.UNSUPPORTED_MEDIA_TYPE,
            f"Expected {AUDIO_FILE_MIMETYPE}, got {content_type or 'no content type'}",
        )


class PayloadTooLargeError(AudioServiceError):
    """Upload exceeds the size limit."""

    def __init__(self, limit: int):
        super().__init__(AudioErrorCode.PAYLOAD_TOO_LARGE, f"Exceeded file size limit of {limit} bytes")


class UploadFailedError(AudioServiceError):
    """Blob could not be stored."""

    def __init__(self, reason: str):
        super().__init__(AudioErrorCode.UPLOAD_FAILED, f"Upload failed: {reason}")


# --- Service ---


def is_expected_content_type(content_type: str | None) -> bool:
    """Check a Content-Type header against the stored audio type.

    Parameters such as `;codecs=opus` are ignored.
    """
    if not content_type:
        return False
    media_type = content_type.split(";", 1)[0].strip().lower()
    return media_type == AUDIO_FILE_MIMETYPE


def _remove_unstored_audio(session: Session, user_id: int, audio_id: int) -> None:
    """Delete the row of an upload whose blob was never stored.

    Best-effort: a failure is logged and the original storage error wins.
    """
    try:
        session.rollback()
        delete_audio(session, user_id, audio_id)
        session.commit()
    except Exception as e:
        session.rollback()
        logger.error("Failed to remove row of unstored audio %d: %s", audio_id, e)


def upload_audio(
    session: Session,
    storage: AudioStorage,
    user_id: int,
    language: str,
    stream: BinaryIO,
) -> Audio:
    """Create an audio record and durably store its blob.

    Transcription is enqueued only after the blob is stored; enqueue failures
    do not fail the upload.

    Args:
        session: Active database session.
        storage: Audio storage backend.
        user_id: Owning user.
        language: Two-letter language code for transcription.
        stream: File-like object with read(), positioned at the start.

    Returns:
        The committed Audio row.

    Raises:
        UploadFailedError: If the blob could not be stored.

        The row is removed whenever storing fails, whatever the error; errors
        other than StorageError are re-raised as is.

    Note:
        This function commits the session.
    """
    audio = insert_audio(session, user_id)
    session.commit()

    try:
        size = storage.store(audio.id, iter(lambda: stream.read(UPLOAD_CHUNK_SIZE), b""))
    except Exception as e:
        logger.error("Failed to store audio %d: %s", audio.id, e)
        _remove_unstored_audio(session, user_id, audio.id)
        if isinstance(e, StorageError):
            raise UploadFailedError(str(e)) from e
        raise

    logger.info("Stored audio %d for user %d (%d bytes)", audio.id, user_id, size)

    _enqueue_transcription_safe(audio.id, language)

    return audio


def get_user_audio(session: Session, user_id: int, audio_id: int) -> Audio:
    """Get one of the user's audio rows.

    Raises:
        AudioRecordNotFoundError: If missing or owned by another user.
    """
    audio = get_audio(session, audio_id, user_id)
    if audio is None:
        raise AudioRecordNotFoundError(audio_id)
    return audio


def list_user_audios(session: Session, user_id: int) -> list[Audio]:
    """Get all of the user's audio rows."""
    return get_audios_by_user(session, user_id)


def open_user_audio_file(
    session: Session, storage: AudioStorage, user_id: int, audio_id: int
) -> AudioStream:
    """Open the blob of one of the user's audios.

    Raises:
        AudioRecordNotFoundError: If the row or the blob is missing.
    """
    get_user_audio(session, user_id, audio_id)
    try:
        return storage.get(audio_id)
    except AudioNotFoundError as e:
        raise AudioRecordNotFoundError(audio_id) from e


def delete_user_audio(session: Session, storage: AudioStorage, user_id: int, audio_id: int) -> None:
    """Delete one of the user's audios, row first and blob second.

    Raises:
        AudioRecordNotFoundError: If the row or the blob is missing.
        StorageError: If the blob delete fails for another reason.

    Note:
        This function commits the session.
    """
    if not delete_audio(session, user_id, audio_id):
        raise AudioRecordNotFoundError(audio_id)
    session.commit()

    if not storage.delete(audio_id):
        logger.warning("Audio %d row deleted but no blob was stored", audio_id)
        raise AudioRecordNotFoundError(audio_id)


# --- Internal Helpers ---


def _enqueue_transcription_safe(audio_id: int, language: str) -> None:
    """Enqueue a transcription attempt, logging instead of raising on failure.

    The upload already succeeded. An enqueue failure leaves the audio
    untranscribed until it is uploaded again.
    """
    try:
        from voicememo.huey_app import enqueue_transcription

        enqueue_transcription(audio_id, language)
    except Exception:
        logger.warning(
            "Failed to enqueue transcription for audio_id=%d (non-fatal)",
            audio_id,
            exc_info=True,
        )
