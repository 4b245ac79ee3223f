# factstream/streams package
# Locked, line-oriented I/O over a fact stream file.
#
# Core components:
#   - locking: fcntl advisory locks with immediate-fail or bounded-retry modes
#   - sync: FactStreamWriter / FactStreamReader (blocking)
#   - aio: AsyncFactStreamWriter / AsyncFactStreamReader (suspending)

from .aio import AsyncFactStreamReader, AsyncFactStreamWriter
from .sync import FactStreamReader, FactStreamWriter

__all__ = [
    "AsyncFactStreamReader",
    "AsyncFactStreamWriter",
    "FactStreamReader",
    "FactStreamWriter",
]
