"""Voice memo pipeline - Transcription driver.

Ties AudioStorage + SpeechToText + RetryLedger together. One call to
TranscriptionDriver.attempt() is one transcription attempt for one audio;
follow-up attempts are never run inline but handed to the scheduler (Huey
scheduled tasks in production), so live retries and the startup resume share
the same code path.

Per-audio states:
  pending -> attempting -> succeeded (terminal)
                        -> failed(n) -> attempting -> ...
                        -> abandoned (terminal, n >= MAX_RETRY_ATTEMPTS)

Retry Semantics:
----------------
`retries` in the ledger counts recorded failures.
  - Failure 1: ledger entry created, count 1, retry after 60s
  - Failure 2: count 2, retry after 120s
  - Failure 3: count 3, entry deleted, audio abandoned (no 4th attempt)
Backoff is linear: RETRY_BASE_DELAY_SECONDS * count.

An entry that is already at MAX_RETRY_ATTEMPTS when an attempt starts (for
example after a crash between recording the failure and deleting the entry)
is abandoned without another attempt.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable
from datetime import datetime, timedelta

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from voicememo.config import MAX_RETRY_ATTEMPTS, RESUME_PACING_SECONDS, RETRY_BASE_DELAY_SECONDS
from voicememo.db import get_audio, init_db, set_transcription
from voicememo.ledger import LedgerError, RetryLedger
from voicememo.models import Audio, FailedAudioTranscription, as_utc, utc_now
from voicememo.storage import AudioNotFoundError, AudioStorage, StorageError, create_storage
from voicememo.stt import SpeechToText, TranscriptionError, create_speech_to_text

logger = logging.getLogger(__name__)

# --- Attempt Outcomes ---

OUTCOME_SUCCEEDED = "succeeded"
OUTCOME_RETRY_SCHEDULED = "retry_scheduled"
OUTCOME_ABANDONED = "abandoned"
OUTCOME_NOT_DUE = "not_due"
OUTCOME_ALREADY_TRANSCRIBED = "already_transcribed"
OUTCOME_GONE = "gone"
OUTCOME_ERROR = "error"

# Scheduler timing slack when checking whether a retry is due
DUE_TOLERANCE_SECONDS = 1

# (audio_id, language, delay_seconds)
Scheduler = Callable[[int, str, int], None]


def _schedule_with_huey(audio_id: int, language: str, delay_seconds: int) -> None:
    # Import here to avoid circular imports
    from voicememo.huey_app import enqueue_transcription

    enqueue_transcription(audio_id, language, delay_seconds)


class TranscriptionDriver:
    """Runs transcription attempts and owns the retry policy."""

    def __init__(
        self,
        session_factory: sessionmaker,
        storage: AudioStorage,
        stt: SpeechToText,
        ledger: RetryLedger | None = None,
        schedule: Scheduler | None = None,
        clock: Callable[[], datetime] = utc_now,
        max_retries: int = MAX_RETRY_ATTEMPTS,
        base_delay_seconds: int = RETRY_BASE_DELAY_SECONDS,
        resume_pacing_seconds: int = RESUME_PACING_SECONDS,
    ):
        self._session_factory = session_factory
        self.storage = storage
        self.stt = stt
        self.ledger = ledger or RetryLedger(session_factory)
        self._schedule = schedule or _schedule_with_huey
        self._clock = clock
        self.max_retries = max_retries
        self.base_delay_seconds = base_delay_seconds
        self.resume_pacing_seconds = resume_pacing_seconds

    def retry_delay(self, failures: int) -> int:
        """Backoff before the retry that follows the `failures`-th recorded failure."""
        return self.base_delay_seconds * failures

    # --- Attempt ---

    def attempt(self, audio_id: int, language: str) -> dict:
        """Run one transcription attempt for an audio.

        Never raises: every failure is logged and reflected in the ledger
        (or, for persistence failures, only logged).

        Returns:
            Dict describing what happened (for logging/debugging).
        """
        try:
            return self._attempt_impl(audio_id, language)
        except (LedgerError, SQLAlchemyError) as e:
            # Bookkeeping itself failed; the attempt is lost until the next resume
            logger.exception("Persistence failure during transcription of audio_id=%d", audio_id)
            return {"status": OUTCOME_ERROR, "audio_id": audio_id, "error": str(e)}

    def _attempt_impl(self, audio_id: int, language: str) -> dict:
        audio = self._load_audio(audio_id)
        entry = self.ledger.get(audio_id)

        if audio is None:
            if entry is not None:
                self.ledger.delete(entry.id)
            logger.info("Audio %d no longer exists, nothing to transcribe", audio_id)
            return {"status": OUTCOME_GONE, "audio_id": audio_id}

        if audio.transcription is not None:
            if entry is not None:
                self.ledger.delete(entry.id)
            return {"status": OUTCOME_ALREADY_TRANSCRIBED, "audio_id": audio_id}

        if entry is not None:
            if entry.retries >= self.max_retries:
                return self._abandon(audio_id, entry.id, entry.retries)

            next_retry_at = as_utc(entry.next_retry_at)
            if next_retry_at is not None and next_retry_at > self._clock() + timedelta(
                seconds=DUE_TOLERANCE_SECONDS
            ):
                logger.debug(
                    "Retry for audio_id=%d not due until %s, skipping", audio_id, next_retry_at
                )
                return {"status": OUTCOME_NOT_DUE, "audio_id": audio_id}

            # The language recorded with the first failure is authoritative
            language = entry.language

        logger.info(
            "Transcribing audio_id=%d (language=%s, previous_failures=%d)",
            audio_id,
            language,
            entry.retries if entry is not None else 0,
        )

        try:
            with self.storage.get(audio_id) as stream:
                text = self.stt.transcribe(stream, language)
        except (AudioNotFoundError, StorageError, TranscriptionError) as e:
            logger.warning("Transcription failed for audio_id=%d: %s", audio_id, e)
            return self._handle_failure(audio_id, language, entry, e)
        except Exception as e:
            logger.exception("Unexpected transcription error for audio_id=%d", audio_id)
            return self._handle_failure(audio_id, language, entry, e)

        return self._handle_success(audio_id, entry, text)

    def _load_audio(self, audio_id: int) -> Audio | None:
        with self._session_factory() as session:
            return get_audio(session, audio_id)

    def _handle_success(
        self, audio_id: int, entry: FailedAudioTranscription | None, text: str
    ) -> dict:
        with self._session_factory() as session:
            stored = set_transcription(session, audio_id, text)
            session.commit()

        if entry is not None:
            self.ledger.delete(entry.id)

        attempts = (entry.retries if entry is not None else 0) + 1
        if stored:
            logger.info("Transcribed audio_id=%d after %d attempt(s)", audio_id, attempts)
        else:
            logger.info(
                "Audio %d was deleted or transcribed concurrently; result discarded", audio_id
            )
        return {"status": OUTCOME_SUCCEEDED, "audio_id": audio_id, "attempts": attempts}

    def _handle_failure(
        self,
        audio_id: int,
        language: str,
        entry: FailedAudioTranscription | None,
        error: Exception,
    ) -> dict:
        now = self._clock()
        entry_id = entry.id if entry is not None else self.ledger.insert(audio_id, language)
        failures = self.ledger.increment(entry_id, now)

        logger.info(
            "Transcription failure: audio_id=%d, failures=%d/%d, error=%s",
            audio_id,
            failures,
            self.max_retries,
            type(error).__name__,
        )

        if failures >= self.max_retries:
            return self._abandon(audio_id, entry_id, failures)

        delay_seconds = self.retry_delay(failures)
        self.ledger.set_next_retry(entry_id, now + timedelta(seconds=delay_seconds))

        logger.info("Scheduling retry: audio_id=%d, delay=%ds", audio_id, delay_seconds)
        self._schedule(audio_id, language, delay_seconds)

        return {
            "status": OUTCOME_RETRY_SCHEDULED,
            "audio_id": audio_id,
            "failures": failures,
            "delay_seconds": delay_seconds,
            "error": str(error),
        }

    def _abandon(self, audio_id: int, entry_id: int, failures: int) -> dict:
        self.ledger.delete(entry_id)
        logger.warning(
            "Abandoning transcription of audio_id=%d after %d failed attempts", audio_id, failures
        )
        return {"status": OUTCOME_ABANDONED, "audio_id": audio_id, "failures": failures}

    # --- Startup Resume ---

    def resume_pending(self) -> dict:
        """Reschedule every audio still in the ledger.

        Entries are scheduled in ledger order, each no earlier than its
        recorded next_retry_at and at least RESUME_PACING_SECONDS after the
        entry scheduled before it, so no two resumed attempts share a slot.
        Entries that already exhausted the retry budget are abandoned here without an attempt.

        Returns:
            Dict with the number of scheduled and abandoned entries.
        """
        entries = self.ledger.list_all()
        if entries:
            logger.info(
                "retrying old failed transcriptions (id, audio_id): %s",
                [(entry.id, entry.audio_id) for entry in entries],
            )

        now = self._clock()
        scheduled = 0
        abandoned = 0
        next_slot = 0
        for entry in entries:
            if entry.retries >= self.max_retries:
                self._abandon(entry.audio_id, entry.id, entry.retries)
                abandoned += 1
                continue

            delay_seconds = next_slot
            next_retry_at = as_utc(entry.next_retry_at)
            if next_retry_at is not None:
                remaining = math.ceil((next_retry_at - now).total_seconds())
                delay_seconds = max(delay_seconds, remaining)

            self._schedule(entry.audio_id, entry.language, delay_seconds)
            next_slot = delay_seconds + self.resume_pacing_seconds
            scheduled += 1

        return {"status": "resumed", "scheduled": scheduled, "abandoned": abandoned}


def create_driver(db_path: str | None = None) -> TranscriptionDriver:
    """Build the driver with the backends selected by configuration.

    Backends are chosen once here; the driver keeps them for the process lifetime.
    """
    _, SessionFactory = init_db(db_path)
    return TranscriptionDriver(
        session_factory=SessionFactory,
        storage=create_storage(),
        stt=create_speech_to_text(),
    )
