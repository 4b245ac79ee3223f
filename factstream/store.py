"""
store.py - Blocking, timestamp-ordered fact store.

A FactStore owns one stream file and a cached ``latest_timestamp``. Every
append is checked against that cache, so the file stays in non-decreasing
timestamp order, and iteration can resume from any point in time.

Design Philosophy:
    - The file is the source of truth; the cached timestamp is only an
      optimization, recovered by one linear scan at open.
    - Ordering is checked against the cache, not the file. All writers of a
      file must share one store instance (or coordinate externally) for the
      ordering guarantee to hold.
    - There is no index: iter_from() scans from the start of the file.

Usage:
    from factstream.store import FactStore

    store = FactStore.open_or_create("data/tracks.facts", TrackValue)
    store.append(Fact.now("track1", Bpm(v=128), "analyzer"))

    with store.iter_from(last_sync) as facts:
        for fact in facts:
            ...
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Generic, Iterable, Iterator, List, Optional, Tuple

from .codec import FactCodec
from .config import StoreConfig
from .errors import FactDecodeError, TimestampOrderingError
from .facts import MIN_TIMESTAMP, E, Fact, S, V, to_utc
from .streams.sync import FactStreamReader, FactStreamWriter, PathLike

logger = logging.getLogger(__name__)


def check_ordering(facts: List[Fact], latest: Optional[datetime]) -> None:
    """Reject a batch unless every fact is at or after the running latest.

    Raises:
        TimestampOrderingError: Carrying the offending and the latest timestamp.
    """
    for fact in facts:
        if latest is not None and fact.timestamp < latest:
            raise TimestampOrderingError(new=fact.timestamp, latest=latest)
        latest = fact.timestamp


def build_codec(
    value_type: Any,
    entity_type: Any,
    source_type: Any,
    config: StoreConfig,
    codec: Optional[FactCodec],
) -> FactCodec:
    if codec is not None:
        return codec
    return FactCodec(value_type, entity_type, source_type, allow_unknown=config.allow_unknown)


def recover_latest_timestamp(path: Path, codec: FactCodec, config: StoreConfig) -> Optional[datetime]:
    """Scan the whole file and return the last decodable fact's timestamp.

    Malformed lines are skipped so a store whose tail was torn by a crash
    can still be opened. The scan takes no lock, so it never waits on a
    writer in another process.
    """
    latest: Optional[datetime] = None
    skipped = 0
    with FactStreamReader.open(path, codec, locked=False) as reader:
        for item in reader.results():
            if isinstance(item, FactDecodeError):
                skipped += 1
                continue
            latest = item.timestamp
    if skipped:
        logger.warning("Skipped %d malformed line(s) while recovering %s", skipped, path)
    logger.debug("Recovered latest timestamp for %s: %s", path, latest)
    return latest


class FactIterator(Iterator[Fact]):
    """Lazy iterator over the facts at or after ``since``, in file order.

    Facts before the first one with ``timestamp >= since`` are skipped; after
    that every fact is yielded without further filtering. The file is read
    without a lock and only up to its size at creation, so the store can be
    appended to while an iterator is open. The file is closed at end of file,
    on close(), or on leaving a ``with`` block.

    A malformed line raises FactDecodeError; iteration may be resumed with
    another ``next()`` call.
    """

    def __init__(self, reader: Optional[FactStreamReader], since: datetime):
        self._reader = reader
        self.since = since
        self._found_start = False

    def __iter__(self) -> "FactIterator":
        return self

    def __next__(self) -> Fact:
        if self._reader is None:
            raise StopIteration
        while True:
            fact = next(self._reader)
            if self._found_start or fact.timestamp >= self.since:
                self._found_start = True
                return fact

    def close(self) -> None:
        reader, self._reader = self._reader, None
        if reader is not None:
            reader.close()

    def __enter__(self) -> "FactIterator":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


class FactStore(Generic[E, V, S]):
    """Append-only, timestamp-ordered store of facts backed by one file.

    Thread-safe for concurrent use of one instance: appends are serialized by
    an instance lock so the ordering check, the durable write and the cache
    update happen as one step. Reads of ``latest_timestamp`` take a separate
    lock and never wait on disk I/O.

    Attributes:
        path: The backing stream file.
        codec: Codec used for every line.
        config: Lock and durability settings.
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
        self._append_lock = threading.Lock()

    @classmethod
    def open_or_create(
        cls,
        path: PathLike,
        value_type: Any,
        *,
        entity_type: Any = str,
        source_type: Any = str,
        config: Optional[StoreConfig] = None,
        codec: Optional[FactCodec] = None,
    ) -> "FactStore[E, V, S]":
        """Open an existing store or create a new one.

        Creates parent directories as needed. If the file exists, its latest
        timestamp is recovered with one full scan.

        Args:
            path: Stream file path.
            value_type: Application value type (see FactCodec).
            entity_type: Entity identifier type. Defaults to str.
            source_type: Source type. Defaults to str.
            config: Lock and durability settings. Defaults to StoreConfig().
            codec: Pre-built codec; overrides the three type arguments.
        """
        config = config or StoreConfig()
        codec = build_codec(value_type, entity_type, source_type, config, codec)
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        latest = recover_latest_timestamp(path, codec, config) if path.exists() else None
        return cls(path, codec, latest, config)

    def __repr__(self) -> str:
        return f"FactStore(path={str(self.path)!r}, latest_timestamp={self.latest_timestamp!r})"

    @property
    def latest_timestamp(self) -> Optional[datetime]:
        """Timestamp of the most recent fact appended or recovered."""
        with self._latest_lock:
            return self._latest_timestamp

    def append(self, fact: Fact[E, V, S]) -> None:
        """Append a single fact, enforcing timestamp ordering."""
        self.append_batch([fact])

    def append_batch(self, facts: Iterable[Fact[E, V, S]]) -> None:
        """Append a batch of facts durably, enforcing timestamp ordering.

        Every fact must be at or after the latest timestamp and at or after
        the fact before it in the batch. Any violation rejects the whole
        batch: nothing is written and the cache is unchanged.

        Raises:
            TimestampOrderingError: The batch is not in order.
            FactSerializationError: A fact could not be encoded.
            AlreadyLockedError / LockTimeoutError: The file lock is busy.
            OSError: The write failed.
        """
        batch = list(facts)
        if not batch:
            return

        with self._append_lock:
            check_ordering(batch, self.latest_timestamp)

            with FactStreamWriter.open(
                self.path,
                self.codec,
                timeout=self.config.lock_timeout_sec,
                retry_interval=self.config.lock_retry_interval_sec,
                fsync=self.config.fsync,
            ) as writer:
                writer.write_batch(batch)

            with self._latest_lock:
                self._latest_timestamp = batch[-1].timestamp

        logger.debug("Appended %d fact(s) to %s (latest=%s)", len(batch), self.path, batch[-1].timestamp)

    def iter(self) -> FactIterator:
        """Iterate over every fact in the store."""
        return self.iter_from(MIN_TIMESTAMP)

    def iter_from(self, since: datetime) -> FactIterator:
        """Iterate over facts starting at the first one with ``timestamp >= since``.

        Performs a linear scan from the start of the file, covering the facts
        present at the time of the call. A missing file yields nothing.
        """
        since = to_utc(since)
        try:
            reader = FactStreamReader.open(self.path, self.codec, locked=False)
        except FileNotFoundError:
            reader = None
        return FactIterator(reader, since)

    def __iter__(self) -> Iterator[Fact[E, V, S]]:
        return self.iter()

    def read_all(self, since: datetime = MIN_TIMESTAMP, skip_invalid: bool = False) -> List[Fact[E, V, S]]:
        """Collect ``iter_from(since)`` into a list.

        Args:
            since: Start of the scan, as for iter_from.
            skip_invalid: Log and skip malformed lines (e.g. a record torn by
                a crash) instead of raising FactDecodeError.
        """
        facts: List[Fact[E, V, S]] = []
        with self.iter_from(since) as iterator:
            while True:
                try:
                    facts.append(next(iterator))
                except StopIteration:
                    break
                except FactDecodeError as e:
                    if not skip_invalid:
                        raise
                    logger.warning("Skipping malformed fact in %s: %s", self.path, e)
        return facts

    def sync_from(self, since: datetime, skip_invalid: bool = False) -> Tuple[List[Fact[E, V, S]], datetime]:
        """Incremental sync: facts at or after ``since`` and the next checkpoint.

        The returned checkpoint is the timestamp of the last fact read (or
        ``since`` when nothing new arrived); pass it back on the next call.
        Facts sharing the checkpoint timestamp are returned again, so
        consumers must tolerate re-delivery of that boundary.
        """
        facts = self.read_all(since, skip_invalid)
        checkpoint = facts[-1].timestamp if facts else to_utc(since)
        return facts, checkpoint
