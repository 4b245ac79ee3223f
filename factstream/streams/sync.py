"""
sync.py - Blocking fact stream writer and reader.

The writer holds an exclusive advisory lock from open() until close(); a
locked reader holds a shared lock from open() until close() or end of file.
Use both as context managers so the lock is held for the shortest time needed.

A reader only ever sees the bytes that were in the file when it was opened,
so appends made while it is iterating are picked up by the next open.

Usage:
    from factstream.streams import FactStreamReader, FactStreamWriter

    with FactStreamWriter.open(path, codec) as writer:
        writer.write_batch(facts)

    with FactStreamReader.open(path, codec) as reader:
        for fact in reader:
            ...
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import IO, Any, Iterator, List, Optional, Sequence, Union

from ..codec import FactCodec
from ..errors import FactDecodeError, LockError
from ..facts import Fact
from .locking import DEFAULT_RETRY_INTERVAL_SEC, acquire_lock, unlock

logger = logging.getLogger(__name__)

PathLike = Union[str, "os.PathLike[str]"]


def ends_mid_line(file: IO[bytes]) -> bool:
    """True when the file is non-empty and its last byte is not a newline.

    ``file`` must be opened readable (the writer uses ``"a+b"``).
    """
    fd = file.fileno()
    size = os.fstat(fd).st_size
    if size == 0:
        return False
    return os.pread(fd, 1, size - 1) != b"\n"


def write_buffer(file: IO[bytes], buffer: bytes, fsync: bool = True) -> None:
    """Write, flush, and force a pre-serialized buffer to disk.

    If a previous write was torn (crash, or an OSError partway through), the
    file ends in a partial record. That record is terminated with a newline
    first, so it stays one malformed line that readers can skip and the new
    facts start on a line of their own.
    """
    if ends_mid_line(file):
        logger.warning("Stream %s ends with a partial record; terminating it before appending", file.name)
        buffer = b"\n" + buffer
    file.write(buffer)
    file.flush()
    if fsync:
        os.fsync(file.fileno())


class FactStreamWriter:
    """Appends batches of facts to a stream file under an exclusive lock."""

    def __init__(self, path: Path, file: IO[bytes], codec: FactCodec, fsync: bool = True):
        self.path = path
        self._file: Optional[IO[bytes]] = file
        self._codec = codec
        self._fsync = fsync

    @classmethod
    def open(
        cls,
        path: PathLike,
        codec: FactCodec,
        timeout: float = 0.0,
        retry_interval: float = DEFAULT_RETRY_INTERVAL_SEC,
        fsync: bool = True,
    ) -> "FactStreamWriter":
        """Open (creating if absent) a stream for appending and lock it.

        Args:
            path: Stream file path.
            codec: Codec used to encode facts.
            timeout: Seconds to keep retrying the lock. Zero fails immediately.
            retry_interval: Seconds between lock attempts.
            fsync: Force each batch to disk before write_batch returns.

        Raises:
            AlreadyLockedError: Lock held elsewhere and timeout is zero.
            LockTimeoutError: Lock still held after ``timeout`` seconds.
            OSError: The file could not be opened.
        """
        path = Path(path)
        file = open(path, "a+b")
        try:
            acquire_lock(file, shared=False, timeout=timeout, retry_interval=retry_interval, path=path)
        except LockError:
            file.close()
            raise
        return cls(path, file, codec, fsync=fsync)

    @property
    def closed(self) -> bool:
        return self._file is None

    def write_batch(self, facts: Sequence[Fact]) -> None:
        """Write a batch of facts durably.

        The whole batch is encoded in memory first; if any fact fails to
        encode, nothing is written. On return the batch has been flushed and
        fsynced.

        Raises:
            FactSerializationError: A fact could not be encoded.
            OSError: The write or fsync failed.
        """
        if self._file is None:
            raise ValueError(f"write to closed FactStreamWriter for {self.path}")
        buffer = self._codec.serialize_batch(facts)
        if not buffer:
            return
        write_buffer(self._file, buffer, self._fsync)
        logger.debug("Wrote %d fact(s) (%d bytes) to %s", len(facts), len(buffer), self.path)

    def close(self) -> None:
        """Release the lock and close the file. Safe to call twice."""
        file, self._file = self._file, None
        if file is None:
            return
        try:
            unlock(file)
        finally:
            file.close()

    def __enter__(self) -> "FactStreamWriter":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


class FactStreamReader(Iterator[Fact]):
    """Lazily decodes facts from a stream file.

    Blank lines are skipped. A malformed line raises FactDecodeError from
    ``next()`` but does not end the iteration: calling ``next()`` again
    continues with the following line, so the caller decides whether to stop.
    Use :meth:`results` to receive errors as items instead.

    Reading stops at the file size observed at open.
    """

    def __init__(self, path: Path, file: IO[bytes], codec: FactCodec, locked: bool = True):
        self.path = path
        self._file: Optional[IO[bytes]] = file
        self._codec = codec
        self._locked = locked
        self._line_number = 0
        self._remaining = os.fstat(file.fileno()).st_size

    @classmethod
    def open(
        cls,
        path: PathLike,
        codec: FactCodec,
        timeout: float = 0.0,
        retry_interval: float = DEFAULT_RETRY_INTERVAL_SEC,
        locked: bool = True,
    ) -> "FactStreamReader":
        """Open a stream for reading.

        Args:
            locked: Take a shared lock, held until close or end of file.
                Unlocked readers never wait on writers; they may see a
                partial record if a writer is mid-append at open time.

        Raises:
            AlreadyLockedError: A writer holds the lock and timeout is zero.
            LockTimeoutError: Lock still held after ``timeout`` seconds.
            OSError: The file could not be opened (e.g. it does not exist).
        """
        path = Path(path)
        file = open(path, "rb")
        if locked:
            try:
                acquire_lock(file, shared=True, timeout=timeout, retry_interval=retry_interval, path=path)
            except LockError:
                file.close()
                raise
        return cls(path, file, codec, locked=locked)

    @property
    def line_number(self) -> int:
        """1-based number of the last line read."""
        return self._line_number

    def __iter__(self) -> "FactStreamReader":
        return self

    def __next__(self) -> Fact:
        if self._file is None:
            raise StopIteration
        while True:
            raw = self._file.readline(self._remaining) if self._remaining > 0 else b""
            if not raw:
                self.close()
                raise StopIteration
            self._remaining -= len(raw)
            self._line_number += 1
            if not raw.strip():
                continue
            return self._codec.decode(raw, self._line_number)

    def results(self) -> Iterator[Union[Fact, FactDecodeError]]:
        """Yield each fact, or the FactDecodeError for a malformed line."""
        while True:
            try:
                yield next(self)
            except StopIteration:
                return
            except FactDecodeError as e:
                yield e

    def read_all(self, skip_invalid: bool = False) -> List[Fact]:
        """Read the remaining facts into a list.

        Args:
            skip_invalid: Log and skip malformed lines instead of raising.
        """
        facts: List[Fact] = []
        for item in self.results():
            if isinstance(item, FactDecodeError):
                if not skip_invalid:
                    self.close()
                    raise item
                logger.warning("Skipping malformed fact in %s: %s", self.path, item)
                continue
            facts.append(item)
        return facts

    def close(self) -> None:
        """Release the shared lock (if held) and close the file. Safe to call twice."""
        file, self._file = self._file, None
        if file is None:
            return
        try:
            if self._locked:
                unlock(file)
        finally:
            file.close()

    def __enter__(self) -> "FactStreamReader":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()
