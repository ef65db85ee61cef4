"""Splitting an incoming byte stream into parts buffered on disk or in memory."""

from __future__ import annotations

import io
import os
import queue
import tempfile
import threading
from collections.abc import Iterator
from dataclasses import dataclass
from typing import BinaryIO

TEMP_DIR_USE_MEMORY = "_memory"
MEMORY_ENV_VARIABLE = "TUSD_S3STORE_TEMP_MEMORY"

_READ_BLOCK = 64 * 1024
_POLL_SECONDS = 0.05


@dataclass
class FileChunk:
    """One part read from the source, ready to be sent to S3."""

    reader: BinaryIO
    size: int
    path: str | None = None

    def close(self) -> None:
        """Release the part; a temporary file is closed and removed."""
        if self.path is None:
            return
        self.reader.close()
        os.remove(self.path)


class PartProducer:
    """Reads a source into parts of a fixed size and hands them to a consumer.

    ``produce`` is meant to run in its own thread while the consumer iterates
    over ``chunks``. Any error raised while reading is kept in ``error``.
    """

    def __init__(self, source: BinaryIO, backlog: int, tmp_dir: str) -> None:
        if os.environ.get(MEMORY_ENV_VARIABLE) == "1":
            tmp_dir = TEMP_DIR_USE_MEMORY
        self.source = source
        self.tmp_dir = tmp_dir
        self.error: BaseException | None = None
        self._queue: queue.Queue[FileChunk] = queue.Queue(maxsize=max(backlog, 1))
        self._cancelled = threading.Event()
        self._finished = threading.Event()

    def cancel(self) -> None:
        """Ask the producer to stop handing out parts."""
        self._cancelled.set()

    def produce(self, part_size: int) -> None:
        """Read parts of at most `part_size` bytes until the source ends."""
        try:
            while True:
                try:
                    chunk = self._next_part(part_size)
                except Exception as exc:  # any read failure ends production
                    self.error = exc
                    break
                if chunk is None:
                    break
                if not self._hand_over(chunk):
                    chunk.close()
                    break
        finally:
            self._finished.set()

    def chunks(self) -> Iterator[FileChunk]:
        """Yield parts as they are produced, until production has ended."""
        while True:
            try:
                yield self._queue.get(timeout=_POLL_SECONDS)
            except queue.Empty:
                if self._finished.is_set() and self._queue.empty():
                    return

    def close_unread_files(self) -> None:
        """Drain the remaining parts and release them."""
        for chunk in self.chunks():
            try:
                chunk.close()
            except OSError:
                pass

    def _hand_over(self, chunk: FileChunk) -> bool:
        while not self._cancelled.is_set():
            try:
                self._queue.put(chunk, timeout=_POLL_SECONDS)
                return True
            except queue.Full:
                continue
        return False

    def _copy(self, target: BinaryIO, limit: int) -> int:
        copied = 0
        while copied < limit:
            data = self.source.read(min(_READ_BLOCK, limit - copied))
            if not data:
                break
            target.write(data)
            copied += len(data)
        return copied

    def _next_part(self, size: int) -> FileChunk | None:
        if self.tmp_dir == TEMP_DIR_USE_MEMORY:
            buffer = io.BytesIO()
            n = self._copy(buffer, size)
            if n == 0:
                return None
            buffer.seek(0)
            return FileChunk(reader=buffer, size=n)

        handle = tempfile.NamedTemporaryFile(
            mode="w+b", prefix="tusd-s3-tmp-", dir=self.tmp_dir or None, delete=False
        )
        try:
            n = self._copy(handle, size)
            if n == 0:
                handle.close()
                os.remove(handle.name)
                return None
            handle.flush()
            handle.seek(0)
        except BaseException:
            handle.close()
            os.remove(handle.name)
            raise
        return FileChunk(reader=handle, size=n, path=handle.name)