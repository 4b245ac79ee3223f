"""
aio.py - Suspending fact stream writer and reader.

Same contracts as the blocking versions in sync.py. Every file operation
runs in the default executor so the event loop is never blocked, and lock
retries sleep with asyncio.sleep.

Usage:
    async with await AsyncFactStreamWriter.open(path, codec) as writer:
        await writer.write_batch(facts)

    async with await AsyncFactStreamReader.open(path, codec) as reader:
        async for fact in reader:
            ...
"""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import IO, Any, AsyncIterator, Callable, List, Optional, Sequence, TypeVar, Union

from ..codec import FactCodec
from ..errors import FactDecodeError, LockError
from ..facts import Fact
from .locking import DEFAULT_RETRY_INTERVAL_SEC, acquire_lock_async, unlock
from .sync import PathLike, write_buffer

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def _run_blocking(func: Callable[..., T], *args: Any) -> T:
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, lambda: func(*args))


async def _close_locked(file: IO[bytes]) -> None:
    def _release() -> None:
        try:
            unlock(file)
        finally:
            file.close()

    await _run_blocking(_release)


class AsyncFactStreamWriter:
    """Suspending counterpart of FactStreamWriter."""

    def __init__(self, path: Path, file: IO[bytes], codec: FactCodec, fsync: bool = True):
        self.path = path
        self._file: Optional[IO[bytes]] = file
        self._codec = codec
        self._fsync = fsync

    @classmethod
    async def open(
        cls,
        path: PathLike,
        codec: FactCodec,
        timeout: float = 0.0,
        retry_interval: float = DEFAULT_RETRY_INTERVAL_SEC,
        fsync: bool = True,
    ) -> "AsyncFactStreamWriter":
        """Open (creating if absent) a stream for appending and lock it.

        Raises:
            AlreadyLockedError: Lock held elsewhere and timeout is zero.
            LockTimeoutError: Lock still held after ``timeout`` seconds.
            OSError: The file could not be opened.
        """
        path = Path(path)
        file = await _run_blocking(open, path, "a+b")
        try:
            await acquire_lock_async(
                file, shared=False, timeout=timeout, retry_interval=retry_interval, path=path
            )
        except LockError:
            await _run_blocking(file.close)
            raise
        return cls(path, file, codec, fsync=fsync)

    @property
    def closed(self) -> bool:
        return self._file is None

    async def write_batch(self, facts: Sequence[Fact]) -> None:
        """Encode the batch in memory, then write, flush and fsync it."""
        if self._file is None:
            raise ValueError(f"write to closed AsyncFactStreamWriter for {self.path}")
        buffer = self._codec.serialize_batch(facts)
        if not buffer:
            return
        await _run_blocking(write_buffer, self._file, buffer, self._fsync)
        logger.debug("Wrote %d fact(s) (%d bytes) to %s", len(facts), len(buffer), self.path)

    async def close(self) -> None:
        file, self._file = self._file, None
        if file is not None:
            await _close_locked(file)

    async def __aenter__(self) -> "AsyncFactStreamWriter":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()


class AsyncFactStreamReader:
    """Suspending counterpart of FactStreamReader.

    A malformed line raises FactDecodeError from ``__anext__`` without ending
    the iteration; the next call resumes at the following line. Reading stops
    at the file size observed at open.
    """

    def __init__(self, path: Path, file: IO[bytes], codec: FactCodec, size: int, locked: bool = True):
        self.path = path
        self._file: Optional[IO[bytes]] = file
        self._codec = codec
        self._locked = locked
        self._line_number = 0
        self._remaining = size

    @classmethod
    async def open(
        cls,
        path: PathLike,
        codec: FactCodec,
        timeout: float = 0.0,
        retry_interval: float = DEFAULT_RETRY_INTERVAL_SEC,
        locked: bool = True,
    ) -> "AsyncFactStreamReader":
        """Open a stream for reading, taking a shared lock unless ``locked`` is false."""
        path = Path(path)
        file = await _run_blocking(open, path, "rb")
        if locked:
            try:
                await acquire_lock_async(
                    file, shared=True, timeout=timeout, retry_interval=retry_interval, path=path
                )
            except LockError:
                await _run_blocking(file.close)
                raise
        size = await _run_blocking(lambda: os.fstat(file.fileno()).st_size)
        return cls(path, file, codec, size, locked=locked)

    @property
    def line_number(self) -> int:
        return self._line_number

    def __aiter__(self) -> "AsyncFactStreamReader":
        return self

    async def __anext__(self) -> Fact:
        while True:
            file = self._file
            if file is None:
                raise StopAsyncIteration
            raw = await _run_blocking(file.readline, self._remaining) if self._remaining > 0 else b""
            if not raw:
                await self.close()
                raise StopAsyncIteration
            self._remaining -= len(raw)
            self._line_number += 1
            if not raw.strip():
                continue
            return self._codec.decode(raw, self._line_number)

    async def results(self) -> AsyncIterator[Union[Fact, FactDecodeError]]:
        """Yield each fact, or the FactDecodeError for a malformed line."""
        while True:
            try:
                yield await self.__anext__()
            except StopAsyncIteration:
                return
            except FactDecodeError as e:
                yield e

    async def read_all(self, skip_invalid: bool = False) -> List[Fact]:
        facts: List[Fact] = []
        async for item in self.results():
            if isinstance(item, FactDecodeError):
                if not skip_invalid:
                    await self.close()
                    raise item
                logger.warning("Skipping malformed fact in %s: %s", self.path, item)
                continue
            facts.append(item)
        return facts

    async def close(self) -> None:
        file, self._file = self._file, None
        if file is None:
            return
        if self._locked:
            await _close_locked(file)
        else:
            await _run_blocking(file.close)

    async def __aenter__(self) -> "AsyncFactStreamReader":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()
