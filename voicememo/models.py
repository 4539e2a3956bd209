"""Voice memo pipeline - SQLAlchemy ORM models.

Tables:
1. audios - one row per uploaded blob, carries the transcription record
2. failed_audio_transcriptions - the retry ledger
"""

from datetime import UTC, datetime

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Return current UTC datetime."""
    return datetime.now(UTC)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to a naive datetime read back from SQLite."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


class Audio(Base):
    """An uploaded audio blob and its transcription record.

    The blob bytes live in the configured AudioStorage under the same id.
    `transcription` is NULL until the first successful transcription and
    is never overwritten afterwards.
    """

    __tablename__ = "audios"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Owning user (numeric identity from the auth layer)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)

    transcription: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )


class FailedAudioTranscription(Base):
    """Retry ledger entry for a blob whose last transcription attempt failed.

    At most one live entry per audio. `retries` counts recorded failures.
    """

    __tablename__ = "failed_audio_transcriptions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    audio_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("audios.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
    )

    retries: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Language hint passed to the transcriber
    language: Mapped[str] = mapped_column(String(16), nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    last_retry_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Earliest time the scheduled retry may run
    next_retry_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
