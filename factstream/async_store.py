"""
async_store.py - Suspending, timestamp-ordered fact store.

AsyncFactStore has the same contract as FactStore (same errors, same
ordering rule, same iteration semantics); only the calling convention
differs. Suspension points are lock-acquire retries and file reads/writes.

Usage:
    from factstream.async_store import AsyncFactStore

    store = await AsyncFactStore.open_or_create("data/tracks.facts", TrackValue)
    await store.append(Fact.now("track1", Bpm(v=128), "analyzer"))

    async with await store.iter_from(last_sync) as facts:
        async for fact in facts:
            ...
"""

from __future__ import annotations

import asyncio
import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Generic, Iterable, List, Optional, Tuple

from .codec import FactCodec
from .config import StoreConfig
from .errors import FactDecodeError
from .facts import MIN_TIMESTAMP, E, Fact, S, V, to_utc
from .store import build_codec, check_ordering
from .streams.aio import AsyncFactStreamReader, AsyncFactStreamWriter
from .streams.sync import PathLike

logger = logging.getLogger(__name__)


async def recover_latest_timestamp_async(
    path: Path, codec: FactCodec, config: StoreConfig
) -> Optional[datetime]:
    """Suspending variant of store.recover_latest_timestamp."""
    latest: Optional[datetime] = None
    skipped = 0
    async with await AsyncFactStreamReader.open(path, codec, locked=False) as reader:
        async for item in reader.results():
            if isinstance(item, FactDecodeError):
                skipped += 1
                continue
            latest = item.timestamp
    if skipped:
        logger.warning("Skipped %d malformed line(s) while recovering %s", skipped, path)
    logger.debug("Recovered latest timestamp for %s: %s", path, latest)
    return latest


class AsyncFactIterator:
    """Async iterator over the facts at or after ``since``, in file order.

    Reads without a lock, up to the file size at creation.
    """

    def __init__(self, reader: Optional[AsyncFactStreamReader], since: datetime):
        self._reader = reader
        self.since = since
        self._found_start = False

    def __aiter__(self) -> "AsyncFactIterator":
        return self

    async def __anext__(self) -> Fact:
        if self._reader is None:
            raise StopAsyncIteration
        while True:
            fact = await self._reader.__anext__()
            if self._found_start or fact.timestamp >= self.since:
                self._found_start = True
                return fact

    async def next(self) -> Optional[Fact]:
        """Return the next fact, or None at end of stream."""
        try:
            return await self.__anext__()
        except StopAsyncIteration:
            return None

    async def close(self) -> None:
        reader, self._reader = self._reader, None
        if reader is not None:
            await reader.close()

    async def __aenter__(self) -> "AsyncFactIterator":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()


class AsyncFactStore(Generic[E, V, S]):
    """Async, append-only, timestamp-ordered store of facts backed by one file.

    Appends on one instance are serialized by an asyncio.Lock; the cached
    latest timestamp has its own lock so it can be read from any thread.
    """

    def __init__(
        self,
        path: Path,
        codec: FactCodec,
        latest_timestamp: Optional[datetime] = None,
        config: Optional[StoreConfig] = None,
    ):
        self.path = path
        self.codec = codec
        self.config = config or StoreConfig()
        self._latest_timestamp = latest_timestamp
        self._latest_lock = threading.Lock()
        self._append_lock = asyncio.Lock()

    @classmethod
    async def open_or_create(
        cls,
        path: PathLike,
        value_type: Any,
        *,
        entity_type: Any = str,
        source_type: Any = str,
        config: Optional[StoreConfig] = None,
        codec: Optional[FactCodec] = None,
    ) -> "AsyncFactStore[E, V, S]":
        """Open an existing store or create a new one. See FactStore.open_or_create."""
        config = config or StoreConfig()
        codec = build_codec(value_type, entity_type, source_type, config, codec)
        path = Path(path)
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, lambda: path.parent.mkdir(parents=True, exist_ok=True))

        exists = await loop.run_in_executor(None, path.exists)
        latest = await recover_latest_timestamp_async(path, codec, config) if exists else None
        return cls(path, codec, latest, config)

    def __repr__(self) -> str:
        return f"AsyncFactStore(path={str(self.path)!r}, latest_timestamp={self.latest_timestamp!r})"

    @property
    def latest_timestamp(self) -> Optional[datetime]:
        with self._latest_lock:
            return self._latest_timestamp

    async def append(self, fact: Fact[E, V, S]) -> None:
        await self.append_batch([fact])

    async def append_batch(self, facts: Iterable[Fact[E, V, S]]) -> None:
        """Append a batch durably; rejects the whole batch if out of order.

        Raises:
            TimestampOrderingError: The batch is not in order.
            FactSerializationError: A fact could not be encoded.
            AlreadyLockedError / LockTimeoutError: The file lock is busy.
            OSError: The write failed.
        """
        batch = list(facts)
        if not batch:
            return

        async with self._append_lock:
            check_ordering(batch, self.latest_timestamp)

            async with await AsyncFactStreamWriter.open(
                self.path,
                self.codec,
                timeout=self.config.lock_timeout_sec,
                retry_interval=self.config.lock_retry_interval_sec,
                fsync=self.config.fsync,
            ) as writer:
                await writer.write_batch(batch)

            with self._latest_lock:
                self._latest_timestamp = batch[-1].timestamp

        logger.debug("Appended %d fact(s) to %s (latest=%s)", len(batch), self.path, batch[-1].timestamp)

    async def iter(self) -> AsyncFactIterator:
        return await self.iter_from(MIN_TIMESTAMP)

    async def iter_from(self, since: datetime) -> AsyncFactIterator:
        """Iterate over facts starting at the first one with ``timestamp >= since``.

        Linear scan over the facts present at the time of the call; a missing
        file yields nothing.
        """
        since = to_utc(since)
        try:
            reader = await AsyncFactStreamReader.open(self.path, self.codec, locked=False)
        except FileNotFoundError:
            reader = None
        return AsyncFactIterator(reader, since)

    async def read_all(
        self, since: datetime = MIN_TIMESTAMP, skip_invalid: bool = False
    ) -> List[Fact[E, V, S]]:
        """Collect ``iter_from(since)``; see FactStore.read_all for ``skip_invalid``."""
        facts: List[Fact[E, V, S]] = []
        async with await self.iter_from(since) as iterator:
            while True:
                try:
                    facts.append(await iterator.__anext__())
                except StopAsyncIteration:
                    break
                except FactDecodeError as e:
                    if not skip_invalid:
                        raise
                    logger.warning("Skipping malformed fact in %s: %s", self.path, e)
        return facts

    async def sync_from(
        self, since: datetime, skip_invalid: bool = False
    ) -> Tuple[List[Fact[E, V, S]], datetime]:
        """Incremental sync. See FactStore.sync_from."""
        facts = await self.read_all(since, skip_invalid)
        checkpoint = facts[-1].timestamp if facts else to_utc(since)
        return facts, checkpoint
