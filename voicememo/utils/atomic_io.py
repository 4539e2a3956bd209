"""Voice memo pipeline - Atomic I/O utilities.

Atomic publish rule:
1. Write to temp path in same directory
2. Flush + best-effort fsync
3. Rename temp -> final (the publish boundary)

The final path either contains complete data or does not exist.
Partial writes only affect the temp file.
"""

import logging
import os
from collections.abc import Iterable
from pathlib import Path

logger = logging.getLogger(__name__)


def _write_all(fd: int, data: bytes) -> None:
    """Write all bytes to a file descriptor, handling partial writes.

    Loops until all bytes are written, handling short writes and EINTR.

    Args:
        fd: File descriptor to write to.
        data: Bytes to write.

    Raises:
        OSError: If write fails or returns 0 bytes unexpectedly.
    """
    total_written = 0
    data_len = len(data)

    while total_written < data_len:
        try:
            written = os.write(fd, data[total_written:])
            if written == 0:
                raise OSError("os.write() returned 0 bytes unexpectedly")
            total_written += written
        except InterruptedError:
            continue


def _fsync_directory(dir_path: Path) -> None:
    """Best-effort fsync on a directory so the rename is durable."""
    try:
        fd = os.open(dir_path, os.O_RDONLY | os.O_DIRECTORY)
        try:
            os.fsync(fd)
        finally:
            os.close(fd)
    except (OSError, AttributeError):
        # O_DIRECTORY is not available everywhere
        pass


def atomic_write_chunks(
    chunks: Iterable[bytes],
    final_path: str | Path,
    temp_suffix: str = ".tmp",
) -> int:
    """Atomically write a sequence of byte chunks to a file.

    The input is drained completely into a temp file before the rename, so a
    reader never observes a partially written final file. If iterating the
    chunks raises (client disconnect, network failure), the temp file is
    removed and the exception propagates.

    Args:
        chunks: Iterable of bytes chunks, consumed in order.
        final_path: Target path for the output file.
        temp_suffix: Suffix for the temporary file (default: ".tmp").

    Returns:
        Total bytes written.

    Raises:
        OSError: If write or rename fails.
    """
    final_path = Path(final_path)
    temp_path = final_path.with_suffix(final_path.suffix + temp_suffix)

    final_path.parent.mkdir(parents=True, exist_ok=True)

    total_bytes = 0
    fd = os.open(temp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o644)
    try:
        for chunk in chunks:
            if not chunk:
                continue
            _write_all(fd, chunk)
            total_bytes += len(chunk)

        os.fsync(fd)
    except BaseException:
        os.close(fd)
        try:
            os.remove(temp_path)
        except OSError:
            pass  # Best-effort cleanup
        raise
    else:
        os.close(fd)

    os.replace(temp_path, final_path)

    _fsync_directory(final_path.parent)

    return total_bytes


def cleanup_orphan_temp_files(directory: str | Path, temp_suffix: str = ".tmp") -> int:
    """Clean up orphan temp files in a directory.

    Called during startup to remove incomplete writes.

    Args:
        directory: Directory to scan for temp files.
        temp_suffix: Suffix pattern to match (default: ".tmp").

    Returns:
        Number of files removed.
    """
    directory = Path(directory)
    removed = 0

    if not directory.exists():
        return 0

    for temp_file in directory.glob(f"*{temp_suffix}"):
        try:
            temp_file.unlink()
            removed += 1
        except OSError:
            logger.debug("Could not remove orphan temp file %s", temp_file)

    return removed
