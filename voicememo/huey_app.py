"""Voice memo pipeline - Huey task queue configuration.

Huey with a SQLite backend is the work queue between the upload path and the
transcription driver. Retries are Huey scheduled tasks, so the queue is keyed
by (audio id, eta).

How to run:
1. Start the audio API:
   uvicorn services.audio_api.main:app

2. Start the Huey consumer with a bounded pool of worker threads:
   huey_consumer voicememo.huey_app.huey -k thread -w 4 --flush-locks

--flush-locks clears per-audio locks left behind by a crashed consumer.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path

from huey import SqliteHuey
from huey.exceptions import TaskLockedException

from voicememo.config import HUEY_DB_PATH, QUEUE_DIR

logger = logging.getLogger(__name__)


def _ensure_queue_dir() -> None:
    """Ensure the queue directory exists."""
    Path(QUEUE_DIR).mkdir(parents=True, exist_ok=True)


_ensure_queue_dir()

huey = SqliteHuey(
    name="voicememo",
    filename=str(HUEY_DB_PATH),
    immediate=False,  # Tasks queued for consumer processing
)

# Driver built once per process (backend selection happens here)
_driver = None
_driver_lock = threading.Lock()


def get_driver():
    """Get the process-wide TranscriptionDriver, creating it on first use."""
    global _driver
    if _driver is None:
        with _driver_lock:
            if _driver is None:
                from voicememo.driver import create_driver

                _driver = create_driver()
    return _driver


def set_driver(driver) -> None:
    """Override the process-wide driver (for testing)."""
    global _driver
    _driver = driver


def transcription_lock_name(audio_id: int) -> str:
    return f"transcribe-{audio_id}"


@huey.on_startup()
def build_driver_on_startup() -> None:
    """Build the driver (and its backends) when a consumer worker starts.

    A missing credential or an unfetchable default model surfaces in the
    consumer log at startup instead of on the first upload.
    """
    get_driver()


@huey.task()
def transcribe_task(audio_id: int, language: str) -> None:
    """Huey task running one transcription attempt for an audio.

    The per-audio lock lives in Huey's storage, so at most one attempt per
    audio runs at a time across all workers. A delivery that finds the lock
    held is dropped; the running attempt schedules any retry itself.

    The outcome is logged, not returned, so no result is kept in the queue db.
    """
    logger.info("Transcription task started for audio_id=%d", audio_id)
    try:
        with huey.lock_task(transcription_lock_name(audio_id)):
            result = get_driver().attempt(audio_id, language)
    except TaskLockedException:
        logger.info("Attempt already running for audio_id=%d, dropping duplicate", audio_id)
        return
    logger.info("Transcription task completed for audio_id=%d: %s", audio_id, result)


@huey.task()
def resume_failed_task() -> None:
    """Huey task rescheduling every audio left in the retry ledger."""
    logger.info("Resuming failed transcriptions")
    result = get_driver().resume_pending()
    logger.info("Resume of failed transcriptions done: %s", result)


def enqueue_transcription(audio_id: int, language: str, delay_seconds: int = 0) -> None:
    """Enqueue a transcription attempt.

    Non-blocking: returns immediately even if the Huey consumer is not running.
    The task is persisted in SQLite and processed when the consumer starts.

    Args:
        audio_id: The audio to transcribe.
        language: Two-letter language code.
        delay_seconds: Optional delay before execution (for retries).
    """
    logger.info(
        "Enqueueing transcription: audio_id=%d, language=%s, delay=%ds",
        audio_id,
        language,
        delay_seconds,
    )
    if delay_seconds > 0:
        transcribe_task.schedule((audio_id, language), delay=delay_seconds)
    else:
        transcribe_task(audio_id, language)


def enqueue_resume() -> None:
    """Enqueue the startup resume of failed transcriptions."""
    logger.info("Enqueueing resume of failed transcriptions")
    resume_failed_task()
