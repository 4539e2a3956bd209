"""Voice memo pipeline - Database engine, session management and row primitives.

SQLAlchemy sync engine/session factory for SQLite.
"""

from __future__ import annotations

from sqlalchemy import Engine, create_engine, delete, select, update
from sqlalchemy.orm import Session, sessionmaker

from voicememo.config import DB_PATH
from voicememo.models import Audio, Base, FailedAudioTranscription


def get_database_url(db_path: str | None = None) -> str:
    """Get SQLite database URL.

    Args:
        db_path: Optional path override. Defaults to config.DB_PATH.

    Returns:
        SQLite connection URL string.
    """
    path = db_path if db_path is not None else DB_PATH
    return f"sqlite:///{path}"


def create_db_engine(db_path: str | None = None, echo: bool = False) -> Engine:
    """Create SQLAlchemy engine.

    Args:
        db_path: Optional path override for the database file.
        echo: If True, log all SQL statements.

    Returns:
        SQLAlchemy Engine instance.
    """
    url = get_database_url(db_path)
    return create_engine(
        url,
        echo=echo,
        # Connections are used from API threads and Huey worker threads.
        # Sessions are never shared across threads (one session per unit of work).
        connect_args={"check_same_thread": False},
    )


def create_session_factory(engine: Engine) -> sessionmaker:
    """Create a session factory bound to the given engine.

    Args:
        engine: SQLAlchemy Engine instance.

    Returns:
        Configured sessionmaker.
    """
    # - autoflush=False: explicit flush control
    # - expire_on_commit=False: rows stay readable after commit
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def init_db(db_path: str | None = None, echo: bool = False) -> tuple[Engine, sessionmaker]:
    """Initialize the database: create engine, session factory, and all tables.

    This is idempotent - safe to call multiple times.

    Args:
        db_path: Optional path override for the database file.
        echo: If True, log all SQL statements.

    Returns:
        Tuple of (engine, SessionFactory).
    """
    if db_path is None:
        DB_PATH.parent.mkdir(parents=True, exist_ok=True)
    engine = create_db_engine(db_path, echo=echo)
    SessionFactory = create_session_factory(engine)

    Base.metadata.create_all(engine)

    return engine, SessionFactory


# --- Audio Row Primitives ---
#
# None of these commit. They flush so ids are assigned and leave the
# transaction boundary to the caller.


def insert_audio(session: Session, user_id: int) -> Audio:
    """Insert a new audio row for a user.

    Returns:
        The flushed Audio with its id assigned.
    """
    audio = Audio(user_id=user_id)
    session.add(audio)
    session.flush()
    return audio


def get_audio(session: Session, audio_id: int, user_id: int | None = None) -> Audio | None:
    """Get an audio row, optionally restricted to its owner."""
    stmt = select(Audio).where(Audio.id == audio_id)
    if user_id is not None:
        stmt = stmt.where(Audio.user_id == user_id)
    return session.execute(stmt).scalar_one_or_none()


def get_audios_by_user(session: Session, user_id: int) -> list[Audio]:
    """Get all audio rows owned by a user, ordered by id."""
    stmt = select(Audio).where(Audio.user_id == user_id).order_by(Audio.id)
    return list(session.execute(stmt).scalars().all())


def set_transcription(session: Session, audio_id: int, text: str) -> bool:
    """Store the transcription text for an audio.

    Write-once: rows that already carry a transcription are left untouched.

    Returns:
        True if the row was updated, False if it is missing or already transcribed.
    """
    stmt = (
        update(Audio)
        .where(Audio.id == audio_id, Audio.transcription.is_(None))
        .values(transcription=text)
    )
    result = session.execute(stmt)
    return result.rowcount == 1


def delete_audio(session: Session, user_id: int, audio_id: int) -> bool:
    """Delete a user's audio row together with any retry ledger entry.

    Returns:
        True if the audio row existed and was deleted.
    """
    audio = get_audio(session, audio_id, user_id)
    if audio is None:
        return False

    # SQLite does not enforce ON DELETE CASCADE unless foreign_keys is enabled
    session.execute(
        delete(FailedAudioTranscription).where(FailedAudioTranscription.audio_id == audio_id)
    )
    session.delete(audio)
    session.flush()
    return True
