"""Voice memo pipeline - Configuration constants.

No external config libraries. Paths default to the repository root and every
tunable can be overridden through the environment.
"""

import os
from enum import StrEnum
from pathlib import Path

# Repository root (parent of voicememo/)
REPO_ROOT = Path(__file__).parent.parent.resolve()


class ConfigError(RuntimeError):
    """Raised when the configured backend is missing required settings."""


def _get_int_env(name: str, default: int) -> int:
    """Get a positive integer from the environment or use the default.

    Non-numeric or non-positive values fall back to the default.
    """
    env_val = os.environ.get(name)
    if env_val:
        try:
            value = int(env_val)
            if value > 0:
                return value
        except ValueError:
            pass
    return default


def _get_data_dir() -> Path:
    env_val = os.environ.get("VOICEMEMO_DATA_DIR")
    if env_val:
        return Path(env_val).expanduser().resolve()
    return REPO_ROOT / "data"


# Data directories
DATA_DIR = _get_data_dir()
UPLOADS_DIR = DATA_DIR / "uploads"
MODELS_DIR = DATA_DIR / "models"
LEOPARD_MODELS_DIR = MODELS_DIR / "leopard"

# Database path
DB_PATH = DATA_DIR / "voicememo.db"

# Queue directory and Huey database path
QUEUE_DIR = DATA_DIR / "queue"
HUEY_DB_PATH = QUEUE_DIR / "huey.db"

# Stored audio format
AUDIO_FILE_EXTENSION = ".webm"
AUDIO_FILE_MIMETYPE = "audio/webm"

# Upload size limit in bytes (25 MB)
MAX_UPLOAD_BYTES = 25 * 1_000_000

# Language used when the caller does not send one
DEFAULT_LANGUAGE = os.environ.get("VOICEMEMO_DEFAULT_LANGUAGE", "es")

# Remote object storage: upload block size and range-read page size
AZURE_BLOCK_SIZE = 4 * 1024 * 1024
AZURE_READ_CHUNK_SIZE = 2 * 1024 * 1024

# Remote speech API
WHISPER_API_URL = "https://api.openai.com/v1/audio/transcriptions"
WHISPER_MODEL = "whisper-1"
WHISPER_TIMEOUT_SECONDS = 120.0

# Local speech engine
LEOPARD_MODEL_URL_BASE = "https://github.com/Picovoice/leopard/raw/master/lib/common"
MODEL_DOWNLOAD_TIMEOUT_SECONDS = 60.0
REPACKAGE_CONTAINER = "ogg"
FFMPEG_TIMEOUT_SECONDS = 120

# Retry policy
# A blob is abandoned once MAX_RETRY_ATTEMPTS failures have been recorded.
# Backoff is linear: the n-th recorded failure waits RETRY_BASE_DELAY_SECONDS * n.
MAX_RETRY_ATTEMPTS = 3
RETRY_BASE_DELAY_SECONDS = _get_int_env("VOICEMEMO_RETRY_BASE_DELAY_SEC", 60)

# Pacing between resumed ledger entries at startup
RESUME_PACING_SECONDS = _get_int_env("VOICEMEMO_RESUME_PACING_SEC", 60)


class StorageBackend(StrEnum):
    """Audio storage backends."""

    LOCAL = "local"
    AZURE = "azure"
    MOCK = "mock"


class SpeechToTextBackend(StrEnum):
    """Speech-to-text backends."""

    WHISPER_API = "whisper_api"
    LEOPARD = "leopard"
    MOCK = "mock"


def get_storage_backend() -> StorageBackend:
    """Resolve the storage backend for this process.

    VOICEMEMO_STORAGE_BACKEND wins when set. Otherwise the remote-object
    backend is used whenever an Azure account is configured.

    Raises:
        ConfigError: If VOICEMEMO_STORAGE_BACKEND names an unknown backend.
    """
    explicit = os.environ.get("VOICEMEMO_STORAGE_BACKEND")
    if explicit:
        try:
            return StorageBackend(explicit.lower())
        except ValueError as e:
            raise ConfigError(f"Unknown storage backend: {explicit}") from e
    if os.environ.get("AZURE_STORAGE_ACCOUNT"):
        return StorageBackend.AZURE
    return StorageBackend.LOCAL


def get_stt_backend() -> SpeechToTextBackend:
    """Resolve the speech-to-text backend for this process.

    Raises:
        ConfigError: If the backend is unknown or no credentials are configured.
    """
    explicit = os.environ.get("VOICEMEMO_STT_BACKEND")
    if explicit:
        try:
            return SpeechToTextBackend(explicit.lower())
        except ValueError as e:
            raise ConfigError(f"Unknown speech-to-text backend: {explicit}") from e
    if os.environ.get("OPENAI_API_KEY"):
        return SpeechToTextBackend.WHISPER_API
    if os.environ.get("PICOVOICE_ACCESS_KEY"):
        return SpeechToTextBackend.LEOPARD
    raise ConfigError(
        "No speech-to-text backend configured: set OPENAI_API_KEY, "
        "PICOVOICE_ACCESS_KEY or VOICEMEMO_STT_BACKEND"
    )


def require_env(name: str) -> str:
    """Get a required environment variable.

    Raises:
        ConfigError: If the variable is unset or empty.
    """
    value = os.environ.get(name)
    if not value:
        raise ConfigError(f"{name} must be set for the selected backend")
    return value
