# factstream package
# Append-only, timestamp-ordered log of immutable facts plus a generic reducer.
#
# Core components:
#   - facts: Fact, Operation, TaggedValue, UnknownAttribute
#   - codec: FactCodec (one fact <-> one JSON line)
#   - streams: locked stream writers/readers (blocking and async)
#   - store / async_store: FactStore, AsyncFactStore
#   - aggregate: FactAggregator and the fold/build engine
#
# Usage:
#     from factstream import Fact, FactStore
#     store = FactStore.open_or_create("tracks.facts", TrackValue)
#     store.append(Fact.now("track1", Bpm(v=128), "analyzer"))

import logging

from .aggregate import (
    BuildableAggregator,
    BuildReport,
    FactAggregator,
    aggregate_and_build,
    aggregate_and_build_all,
    aggregate_facts,
    aggregate_facts_async,
)
from .async_store import AsyncFactIterator, AsyncFactStore
from .codec import FactCodec, check_value_format, known_tags
from .config import StoreConfig, load_store_config
from .errors import (
    AlreadyLockedError,
    BuildError,
    FactDecodeError,
    FactSerializationError,
    FactStreamError,
    LockError,
    LockTimeoutError,
    TimestampOrderingError,
)
from .facts import MIN_TIMESTAMP, Fact, Operation, TaggedValue, UnknownAttribute
from .store import FactIterator, FactStore
from .streams import (
    AsyncFactStreamReader,
    AsyncFactStreamWriter,
    FactStreamReader,
    FactStreamWriter,
)

logging.getLogger(__name__).addHandler(logging.NullHandler())

__version__ = "0.1.0"

__all__ = [
    "AlreadyLockedError",
    "AsyncFactIterator",
    "AsyncFactStore",
    "AsyncFactStreamReader",
    "AsyncFactStreamWriter",
    "BuildError",
    "BuildReport",
    "BuildableAggregator",
    "Fact",
    "FactAggregator",
    "FactCodec",
    "FactDecodeError",
    "FactIterator",
    "FactSerializationError",
    "FactStore",
    "FactStreamError",
    "FactStreamReader",
    "FactStreamWriter",
    "LockError",
    "LockTimeoutError",
    "MIN_TIMESTAMP",
    "Operation",
    "StoreConfig",
    "TaggedValue",
    "TimestampOrderingError",
    "UnknownAttribute",
    "aggregate_and_build",
    "aggregate_and_build_all",
    "aggregate_facts",
    "aggregate_facts_async",
    "check_value_format",
    "known_tags",
    "load_store_config",
]
