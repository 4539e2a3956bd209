"""Voice memo pipeline - Retry ledger.

Durable record of blobs whose last transcription attempt failed, one row per
audio in failed_audio_transcriptions. Read at startup to resume retries.

Every operation is a single-row unit of work in its own session. Operations on
different audio ids are safe to run concurrently; the driver never runs two
operations for the same audio at once.
"""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from voicememo.models import FailedAudioTranscription, utc_now

logger = logging.getLogger(__name__)


class LedgerError(Exception):
    """The ledger's backing store failed."""


class RetryLedger:
    """Retry ledger backed by the relational store."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def get(self, audio_id: int) -> FailedAudioTranscription | None:
        """Get the live entry for an audio, if any."""
        stmt = select(FailedAudioTranscription).where(
            FailedAudioTranscription.audio_id == audio_id
        )
        try:
            with self._session_factory() as session:
                return session.execute(stmt).scalar_one_or_none()
        except SQLAlchemyError as e:
            raise LedgerError(f"Failed to read ledger entry for audio {audio_id}: {e}") from e

    def insert(self, audio_id: int, language: str) -> int:
        """Create an entry with zero recorded failures.

        Returns:
            The new entry id.

        Raises:
            LedgerError: If the store fails or an entry already exists for audio_id.
        """
        entry = FailedAudioTranscription(audio_id=audio_id, language=language, retries=0)
        try:
            with self._session_factory() as session:
                session.add(entry)
                session.commit()
        except SQLAlchemyError as e:
            raise LedgerError(f"Failed to insert ledger entry for audio {audio_id}: {e}") from e
        logger.debug("Inserted ledger entry id=%d for audio_id=%d", entry.id, audio_id)
        return entry.id

    def increment(self, entry_id: int, now: datetime | None = None) -> int:
        """Record one more failure and stamp last_retry_at.

        Returns:
            The new failure count.

        Raises:
            LedgerError: If the store fails or the entry does not exist.
        """
        stmt = (
            update(FailedAudioTranscription)
            .where(FailedAudioTranscription.id == entry_id)
            .values(
                retries=FailedAudioTranscription.retries + 1,
                last_retry_at=now or utc_now(),
            )
            .returning(FailedAudioTranscription.retries)
        )
        try:
            with self._session_factory() as session:
                retries = session.execute(stmt).scalar_one_or_none()
                session.commit()
        except SQLAlchemyError as e:
            raise LedgerError(f"Failed to increment ledger entry {entry_id}: {e}") from e
        if retries is None:
            raise LedgerError(f"Ledger entry {entry_id} not found")
        return retries

    def set_next_retry(self, entry_id: int, next_retry_at: datetime) -> None:
        """Record when the scheduled retry for an entry becomes eligible."""
        stmt = (
            update(FailedAudioTranscription)
            .where(FailedAudioTranscription.id == entry_id)
            .values(next_retry_at=next_retry_at)
        )
        try:
            with self._session_factory() as session:
                session.execute(stmt)
                session.commit()
        except SQLAlchemyError as e:
            raise LedgerError(f"Failed to update ledger entry {entry_id}: {e}") from e

    def delete(self, entry_id: int) -> bool:
        """Delete an entry.

        Returns:
            True if a row was removed.
        """
        stmt = delete(FailedAudioTranscription).where(FailedAudioTranscription.id == entry_id)
        try:
            with self._session_factory() as session:
                result = session.execute(stmt)
                session.commit()
        except SQLAlchemyError as e:
            raise LedgerError(f"Failed to delete ledger entry {entry_id}: {e}") from e
        return result.rowcount == 1

    def list_all(self) -> list[FailedAudioTranscription]:
        """All live entries, oldest first."""
        stmt = select(FailedAudioTranscription).order_by(FailedAudioTranscription.id)
        try:
            with self._session_factory() as session:
                return list(session.execute(stmt).scalars().all())
        except SQLAlchemyError as e:
            raise LedgerError(f"Failed to list ledger entries: {e}") from e
