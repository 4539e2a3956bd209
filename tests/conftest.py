"""Shared pytest fixtures for voice memo pipeline tests.

This module contains common fixtures used across multiple test files,
reducing duplication and improving test maintainability.
"""

import os
import tempfile

# Keep queue and default database files out of the working tree. Must run
# before voicememo.config is imported.
os.environ.setdefault("VOICEMEMO_DATA_DIR", tempfile.mkdtemp(prefix="voicememo-test-"))
# The API refuses to start without a transcription backend
os.environ.setdefault("VOICEMEMO_STT_BACKEND", "mock")

from pathlib import Path  # noqa: E402
from unittest.mock import patch  # noqa: E402

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from services.audio_api.main import (  # noqa: E402
    app,
    get_db_session,
    override_session_factory,
    override_storage,
)
from voicememo.db import init_db  # noqa: E402
from voicememo.huey_app import huey  # noqa: E402
from voicememo.storage import LocalAudioStorage  # noqa: E402


@pytest.fixture
def temp_db():
    """Create a temporary database for testing.

    Creates an isolated SQLite database in a temporary directory.
    The database is cleaned up after the test completes.

    Yields:
        tuple: (db_path, engine, SessionFactory)
    """
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        engine, SessionFactory = init_db(db_path)
        override_session_factory(SessionFactory)
        yield db_path, engine, SessionFactory
        engine.dispose()


@pytest.fixture
def local_storage():
    """Local audio storage rooted in a temporary uploads directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield LocalAudioStorage(Path(tmpdir) / "uploads")


@pytest.fixture
def immediate_huey():
    """Run Huey in immediate mode (in-memory storage) for the test."""
    huey.immediate = True
    try:
        yield huey
    finally:
        huey.immediate = False


@pytest.fixture
def mock_enqueue():
    """Patch the transcription enqueue so no task reaches the queue."""
    with patch("voicememo.huey_app.enqueue_transcription") as mock:
        yield mock


@pytest.fixture
def client(temp_db, local_storage, mock_enqueue):
    """Create a FastAPI test client with temp database and storage.

    Overrides the database dependency to use the temporary test database.
    Startup resume is disabled. The dependency override is cleared after
    the test completes.

    Yields:
        tuple: (test_client, SessionFactory)
    """
    db_path, engine, SessionFactory = temp_db

    def get_test_session():
        session = SessionFactory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db_session] = get_test_session
    override_storage(local_storage)

    with patch("services.audio_api.main._enqueue_resume_safe"):
        with TestClient(app) as client:
            yield client, SessionFactory

    # Clean up overrides
    app.dependency_overrides.clear()
    override_storage(None)
