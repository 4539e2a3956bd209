"""Voice memo pipeline - Speech-to-text backends.

Backends:
- WhisperApi: remote HTTP speech API (multipart upload, JSON response)
- PicovoiceLeopard: local native engine with per-language models that are
  downloaded on first use and cached under the models directory
- SpeechToTextMock: fixed text, for development

Dependencies:
- PicovoiceLeopard requires ffmpeg installed and in PATH

Error taxonomy (all subclass TranscriptionError, none are fatal to the caller):
- TranscriptionServiceError: remote API failure
- ModelUnavailableError: model download failed
- RepackageFailedError: ffmpeg could not remux the audio
- EngineError: native engine failure
"""

from __future__ import annotations

import logging
import subprocess
import tempfile
import threading
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any

import httpx
import pvleopard

from voicememo.config import (
    AUDIO_FILE_EXTENSION,
    AUDIO_FILE_MIMETYPE,
    DEFAULT_LANGUAGE,
    FFMPEG_TIMEOUT_SECONDS,
    LEOPARD_MODEL_URL_BASE,
    LEOPARD_MODELS_DIR,
    MODEL_DOWNLOAD_TIMEOUT_SECONDS,
    REPACKAGE_CONTAINER,
    WHISPER_API_URL,
    WHISPER_MODEL,
    WHISPER_TIMEOUT_SECONDS,
    SpeechToTextBackend,
    get_stt_backend,
    require_env,
)
from voicememo.storage import AudioStream
from voicememo.utils.atomic_io import atomic_write_chunks
from voicememo.utils.paths import leopard_model_filename, leopard_model_path

logger = logging.getLogger(__name__)


# --- Errors ---


class TranscriptionError(Exception):
    """Base exception for transcription failures."""


class TranscriptionServiceError(TranscriptionError):
    """The remote speech API failed or answered without text."""


class ModelUnavailableError(TranscriptionError):
    """The acoustic model for a language could not be downloaded."""

    def __init__(self, language: str, reason: str):
        self.language = language
        super().__init__(f"Model for language '{language}' unavailable: {reason}")


class RepackageFailedError(TranscriptionError):
    """ffmpeg failed to remux the audio into the engine's container."""


class EngineError(TranscriptionError):
    """The native speech engine failed."""


# --- Interface ---


class SpeechToText(ABC):
    """Converts a stored audio stream into text."""

    @abstractmethod
    def transcribe(self, stream: AudioStream, language: str) -> str:
        """Transcribe the audio.

        Args:
            stream: Blob bytes, consumed by this call.
            language: Two-letter language code.

        Returns:
            Transcription text.

        Raises:
            TranscriptionError: On any backend failure.
        """

    def close(self) -> None:
        """Release backend resources."""


# --- Remote API ---


class WhisperApi(SpeechToText):
    """OpenAI-compatible /audio/transcriptions client."""

    def __init__(
        self,
        api_key: str,
        client: httpx.Client | None = None,
        url: str = WHISPER_API_URL,
        model: str = WHISPER_MODEL,
    ):
        self._api_key = api_key
        self._client = client or httpx.Client(timeout=WHISPER_TIMEOUT_SECONDS)
        self.url = url
        self.model = model

    def transcribe(self, stream: AudioStream, language: str) -> str:
        # The whole blob is buffered in memory. Streaming the multipart body
        # would need a re-readable source, which remote blob streams are not.
        data = stream.read_all()

        files = {"file": (f"audio{AUDIO_FILE_EXTENSION}", data, AUDIO_FILE_MIMETYPE)}
        form = {"model": self.model, "language": language}

        try:
            response = self._client.post(
                self.url,
                headers={"Authorization": f"Bearer {self._api_key}"},
                data=form,
                files=files,
            )
        except httpx.HTTPError as e:
            raise TranscriptionServiceError(f"Request to whisper api failed: {e}") from e

        try:
            payload = response.json()
        except ValueError:
            payload = None

        if not response.is_success:
            error = payload.get("error") if isinstance(payload, dict) else None
            raise TranscriptionServiceError(
                f"Whisper api returned HTTP {response.status_code}: {error or response.text[:200]}"
            )

        if not isinstance(payload, dict):
            raise TranscriptionServiceError("Whisper api returned a non-JSON-object body")

        text = payload.get("text")
        if isinstance(text, str):
            return text

        error = payload.get("error")
        if error is not None:
            raise TranscriptionServiceError(f"Error returned from whisper api: {error}")

        raise TranscriptionServiceError("Whisper api did not return text nor error")

    def close(self) -> None:
        self._client.close()


# --- Local Native Engine ---


def leopard_model_url(language: str) -> str:
    """Public download location of the Leopard model for a language."""
    return f"{LEOPARD_MODEL_URL_BASE}/{leopard_model_filename(language)}"


def repackage(input_path: Path, output_path: Path) -> None:
    """Remux audio into the engine's container without re-encoding.

    Raises:
        RepackageFailedError: If ffmpeg is missing, times out or exits non-zero.
    """
    cmd = [
        "ffmpeg",
        "-y",
        "-v",
        "error",
        "-i",
        str(input_path),
        "-vn",
        "-c:a",
        "copy",
        str(output_path),
    ]

    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            check=False,
            timeout=FFMPEG_TIMEOUT_SECONDS,
        )
    except subprocess.TimeoutExpired as e:
        raise RepackageFailedError(
            f"ffmpeg timed out after {FFMPEG_TIMEOUT_SECONDS} seconds"
        ) from e
    except FileNotFoundError as e:
        raise RepackageFailedError("ffmpeg not found in PATH") from e
    except OSError as e:
        raise RepackageFailedError(f"ffmpeg execution failed: {e}") from e

    if result.returncode != 0:
        stderr = result.stderr.decode("utf-8", errors="replace").strip()
        raise RepackageFailedError(f"ffmpeg exited with code {result.returncode}: {stderr}")


class PicovoiceLeopard(SpeechToText):
    """Picovoice Leopard engine with on-demand per-language models.

    Engine calls are blocking, so they run on a dedicated single-thread
    executor. Engine instances are created lazily on that thread and only
    ever touched from it.
    """

    def __init__(
        self,
        access_key: str,
        models_dir: str | Path | None = None,
        http_client: httpx.Client | None = None,
        executor: ThreadPoolExecutor | None = None,
    ):
        self._access_key = access_key
        self.models_dir = Path(models_dir) if models_dir is not None else LEOPARD_MODELS_DIR
        self._http = http_client or httpx.Client(
            timeout=MODEL_DOWNLOAD_TIMEOUT_SECONDS, follow_redirects=True
        )
        self._executor = executor or ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="leopard"
        )
        self._engines: dict[str, Any] = {}
        self._model_locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    @classmethod
    def new_with_languages(cls, languages: list[str], access_key: str, **kwargs) -> PicovoiceLeopard:
        """Create the backend and make sure models for `languages` are cached."""
        leopard = cls(access_key, **kwargs)
        for language in languages:
            leopard.ensure_model(language)
        return leopard

    def _model_lock(self, language: str) -> threading.Lock:
        with self._locks_guard:
            return self._model_locks.setdefault(language, threading.Lock())

    def ensure_model(self, language: str) -> Path:
        """Return the cached model path, downloading the model if absent.

        Idempotent: existence is re-checked under a per-language lock, so
        concurrent callers download at most once.

        Raises:
            ModelUnavailableError: If the download fails.
        """
        path = leopard_model_path(language, self.models_dir)
        if path.exists():
            return path

        with self._model_lock(language):
            if path.exists():
                return path

            url = leopard_model_url(language)
            logger.info("Downloading leopard model for language=%s from %s", language, url)
            try:
                with self._http.stream("GET", url) as response:
                    response.raise_for_status()
                    size = atomic_write_chunks(response.iter_bytes(), path)
            except (httpx.HTTPError, OSError) as e:
                raise ModelUnavailableError(language, str(e)) from e

        logger.info("Saved leopard model for language=%s to %s (%d bytes)", language, path, size)
        return path

    def transcribe(self, stream: AudioStream, language: str) -> str:
        model_path = self.ensure_model(language)

        # Removed on exit whether or not the attempt succeeded
        with tempfile.TemporaryDirectory(prefix="voicememo-stt-") as tmpdir:
            input_path = Path(tmpdir) / f"input{AUDIO_FILE_EXTENSION}"
            output_path = Path(tmpdir) / f"output.{REPACKAGE_CONTAINER}"

            with open(input_path, "wb") as f:
                stream.write_to(f)

            repackage(input_path, output_path)

            future = self._executor.submit(self._process, language, model_path, output_path)
            return future.result()

    def _process(self, language: str, model_path: Path, audio_path: Path) -> str:
        try:
            engine = self._engines.get(language)
            if engine is None:
                engine = pvleopard.create(access_key=self._access_key, model_path=str(model_path))
                self._engines[language] = engine
            transcript, _words = engine.process_file(str(audio_path))
        except pvleopard.LeopardError as e:
            raise EngineError(f"Leopard failed for language '{language}': {e}") from e
        return transcript

    def close(self) -> None:
        def _delete_engines() -> None:
            for engine in self._engines.values():
                engine.delete()
            self._engines.clear()

        self._executor.submit(_delete_engines).result()
        self._executor.shutdown()
        self._http.close()


# --- Mock ---


class SpeechToTextMock(SpeechToText):
    """Returns a fixed transcription."""

    def transcribe(self, stream: AudioStream, language: str) -> str:
        size = len(stream.read_all())
        logger.info("transcribe with language %s: %d bytes", language, size)
        return "hello"


# --- Factory ---


def create_speech_to_text() -> SpeechToText:
    """Create the speech-to-text backend selected by configuration.

    Raises:
        ConfigError: If the selected backend is missing settings.
        ModelUnavailableError: If the default-language Leopard model cannot be fetched.
    """
    backend = get_stt_backend()
    if backend == SpeechToTextBackend.WHISPER_API:
        logger.info("using openai")
        return WhisperApi(require_env("OPENAI_API_KEY"))
    if backend == SpeechToTextBackend.LEOPARD:
        logger.info("using picovoice leopard")
        return PicovoiceLeopard.new_with_languages(
            [DEFAULT_LANGUAGE], require_env("PICOVOICE_ACCESS_KEY")
        )
    logger.info("using mock speech to text")
    return SpeechToTextMock()


# Credential each backend needs
BACKEND_CREDENTIALS = {
    SpeechToTextBackend.WHISPER_API: "OPENAI_API_KEY",
    SpeechToTextBackend.LEOPARD: "PICOVOICE_ACCESS_KEY",
}


def check_speech_to_text_config() -> SpeechToTextBackend:
    """Resolve the speech-to-text backend and check its credential is set.

    For processes that only enqueue work (the API) and must refuse to start
    when no worker could ever transcribe.

    Raises:
        ConfigError: If no backend is configured or its credential is missing.
    """
    backend = get_stt_backend()
    credential = BACKEND_CREDENTIALS.get(backend)
    if credential is not None:
        require_env(credential)
    return backend
