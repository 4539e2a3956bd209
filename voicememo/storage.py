"""Voice memo pipeline - Audio blob storage.

One capability interface (get / store / delete keyed by integer audio id)
over three backends:
- LocalAudioStorage: files under the uploads directory, atomic publish
- AzureAudioStorage: block blobs, staged in fixed-size blocks and committed
  with a single block list
- MockAudioStorage: logs only, for development and tests

The backend is chosen once per process by create_storage().
"""

from __future__ import annotations

import logging
import tempfile
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable, Iterator
from pathlib import Path
from typing import BinaryIO

from azure.core.exceptions import AzureError, ResourceNotFoundError
from azure.storage.blob import BlobBlock, BlobServiceClient, ContentSettings

from voicememo.config import (
    AUDIO_FILE_MIMETYPE,
    AZURE_BLOCK_SIZE,
    AZURE_READ_CHUNK_SIZE,
    UPLOADS_DIR,
    StorageBackend,
    get_storage_backend,
    require_env,
)
from voicememo.utils.atomic_io import atomic_write_chunks, cleanup_orphan_temp_files
from voicememo.utils.paths import audio_blob_name, audio_upload_path

logger = logging.getLogger(__name__)

# Read size for local files
FILE_CHUNK_SIZE = 64 * 1024


# --- Errors ---


class StorageError(Exception):
    """Backend I/O failure while reading, writing or deleting a blob."""


class AudioNotFoundError(LookupError):
    """No blob is stored under the requested audio id."""

    def __init__(self, audio_id: int):
        self.audio_id = audio_id
        super().__init__(f"Audio {audio_id} not found in storage")


# --- Stream ---


class AudioStream:
    """Ordered stream of blob bytes, independent of the backend it came from.

    Iterating yields non-empty bytes chunks in blob order. Streams are
    single-use; close() releases the underlying file or connection.
    """

    def __init__(self, chunks: Iterable[bytes], close: Callable[[], None] | None = None):
        self._chunks = chunks
        self._close = close
        self._closed = False

    @classmethod
    def from_file(cls, fileobj: BinaryIO, chunk_size: int = FILE_CHUNK_SIZE) -> AudioStream:
        """Stream an open binary file, closing it when the stream is closed."""
        return cls(iter(lambda: fileobj.read(chunk_size), b""), close=fileobj.close)

    def __iter__(self) -> Iterator[bytes]:
        try:
            for chunk in self._chunks:
                if chunk:
                    yield chunk
        finally:
            self.close()

    def read_all(self) -> bytes:
        """Drain the stream into one contiguous bytes object."""
        return b"".join(self)

    def write_to(self, fileobj: BinaryIO) -> int:
        """Copy the stream into a writable binary file.

        Returns:
            Number of bytes written.
        """
        total = 0
        for chunk in self:
            fileobj.write(chunk)
            total += len(chunk)
        return total

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._close is not None:
            self._close()

    def __enter__(self) -> AudioStream:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def rechunk(chunks: Iterable[bytes], size: int) -> Iterator[bytes]:
    """Regroup a chunk sequence into pieces of exactly `size` bytes.

    The final piece may be shorter. Empty input yields nothing.
    """
    buffer = bytearray()
    for chunk in chunks:
        buffer.extend(chunk)
        while len(buffer) >= size:
            yield bytes(buffer[:size])
            del buffer[:size]
    if buffer:
        yield bytes(buffer)


# --- Interface ---


class AudioStorage(ABC):
    """Durable get/store/delete of audio blobs keyed by audio id."""

    @abstractmethod
    def get(self, audio_id: int) -> AudioStream:
        """Open the blob for reading.

        Raises:
            AudioNotFoundError: If no blob exists for audio_id.
            StorageError: On backend failure.
        """

    @abstractmethod
    def store(self, audio_id: int, chunks: Iterable[bytes]) -> int:
        """Consume the whole input and persist it as the blob for audio_id.

        A concurrent get() never observes a partially written blob.

        Returns:
            Total bytes written.

        Raises:
            StorageError: On backend failure.
        """

    @abstractmethod
    def delete(self, audio_id: int) -> bool:
        """Delete the blob.

        Returns:
            True if deleted, False if no blob existed.

        Raises:
            StorageError: On backend failure other than a missing blob.
        """


# --- Local Filesystem ---


class LocalAudioStorage(AudioStorage):
    """Blobs stored as {root}/{audio_id}.webm.

    The root directory is created by the first store().
    """

    def __init__(self, root: str | Path | None = None):
        self.root = Path(root) if root is not None else UPLOADS_DIR

    def get_path(self, audio_id: int) -> Path:
        return audio_upload_path(audio_id, self.root)

    def get(self, audio_id: int) -> AudioStream:
        path = self.get_path(audio_id)
        try:
            fileobj = open(path, "rb")
        except FileNotFoundError as e:
            raise AudioNotFoundError(audio_id) from e
        except OSError as e:
            raise StorageError(f"Failed to open {path}: {e}") from e
        return AudioStream.from_file(fileobj)

    def store(self, audio_id: int, chunks: Iterable[bytes]) -> int:
        path = self.get_path(audio_id)
        try:
            total_bytes = atomic_write_chunks(chunks, path)
        except OSError as e:
            raise StorageError(f"Failed to save {path}: {e}") from e
        logger.debug("Stored audio %d locally (%d bytes)", audio_id, total_bytes)
        return total_bytes

    def delete(self, audio_id: int) -> bool:
        path = self.get_path(audio_id)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StorageError(f"Failed to delete {path}: {e}") from e
        return True

    def cleanup_orphans(self) -> int:
        """Remove temp files left behind by interrupted writes."""
        return cleanup_orphan_temp_files(self.root)


# --- Azure Block Blobs ---


def block_id_for(index: int) -> str:
    """Block id for the index-th block: 8 uppercase hex digits.

    Zero padding keeps lexical order equal to numeric order.
    """
    return f"{index:08X}"


class AzureAudioStorage(AudioStorage):
    """Blobs stored as block blobs named {audio_id}.webm in one container."""

    def __init__(
        self,
        account: str,
        access_key: str,
        container: str,
        service_client: BlobServiceClient | None = None,
    ):
        self.account = account
        self.container = container
        if service_client is None:
            service_client = BlobServiceClient(
                account_url=f"https://{account}.blob.core.windows.net",
                credential={"account_name": account, "account_key": access_key},
                max_single_get_size=AZURE_READ_CHUNK_SIZE,
                max_chunk_get_size=AZURE_READ_CHUNK_SIZE,
            )
        self._service = service_client

    def _get_client(self, audio_id: int):
        return self._service.get_blob_client(container=self.container, blob=audio_blob_name(audio_id))

    def get(self, audio_id: int) -> AudioStream:
        blob_client = self._get_client(audio_id)
        try:
            downloader = blob_client.download_blob(max_concurrency=1)
        except ResourceNotFoundError as e:
            raise AudioNotFoundError(audio_id) from e
        except AzureError as e:
            raise StorageError(f"Failed to read audio {audio_id}: {e}") from e
        return AudioStream(self._iter_pages(audio_id, downloader))

    @staticmethod
    def _iter_pages(audio_id: int, downloader) -> Iterator[bytes]:
        # chunks() issues the ranged reads sequentially, in blob order
        try:
            yield from downloader.chunks()
        except AzureError as e:
            raise StorageError(f"Failed while reading audio {audio_id}: {e}") from e

    def store(self, audio_id: int, chunks: Iterable[bytes]) -> int:
        blob_client = self._get_client(audio_id)
        block_list: list[BlobBlock] = []
        total_bytes = 0
        try:
            for index, block in enumerate(rechunk(chunks, AZURE_BLOCK_SIZE)):
                block_id = block_id_for(index)
                blob_client.stage_block(block_id=block_id, data=block, length=len(block))
                block_list.append(BlobBlock(block_id=block_id))
                total_bytes += len(block)

            # Nothing is visible until the block list is committed
            blob_client.commit_block_list(
                block_list,
                content_settings=ContentSettings(content_type=AUDIO_FILE_MIMETYPE),
            )
        except AzureError as e:
            raise StorageError(f"Failed to store audio {audio_id}: {e}") from e

        logger.debug(
            "Stored audio %d in container %s (%d blocks, %d bytes)",
            audio_id,
            self.container,
            len(block_list),
            total_bytes,
        )
        return total_bytes

    def delete(self, audio_id: int) -> bool:
        blob_client = self._get_client(audio_id)
        try:
            blob_client.delete_blob()
        except ResourceNotFoundError:
            return False
        except AzureError as e:
            raise StorageError(f"Failed to delete audio {audio_id}: {e}") from e
        return True


# --- Mock ---


class MockAudioStorage(AudioStorage):
    """Storage that keeps nothing. get() returns an empty stream."""

    def get(self, audio_id: int) -> AudioStream:
        logger.info("retrieving audio file %d", audio_id)
        return AudioStream.from_file(tempfile.TemporaryFile())

    def store(self, audio_id: int, chunks: Iterable[bytes]) -> int:
        logger.info("storing audio %d", audio_id)
        return 0

    def delete(self, audio_id: int) -> bool:
        logger.info("deleting audio %d", audio_id)
        return True


# --- Factory ---


def create_storage() -> AudioStorage:
    """Create the storage backend selected by configuration.

    Raises:
        ConfigError: If the selected backend is missing settings.
    """
    backend = get_storage_backend()
    if backend == StorageBackend.AZURE:
        logger.info("using azure audio storage")
        return AzureAudioStorage(
            account=require_env("AZURE_STORAGE_ACCOUNT"),
            access_key=require_env("AZURE_STORAGE_ACCESS_KEY"),
            container=require_env("AZURE_STORAGE_CONTAINER"),
        )
    if backend == StorageBackend.MOCK:
        logger.info("using mock audio storage")
        return MockAudioStorage()
    logger.info("using local audio storage")
    return LocalAudioStorage()
