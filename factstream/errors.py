# factstream/errors.py
"""Exception taxonomy for fact stream I/O, ordering and aggregation."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional


class FactStreamError(Exception):
    """Base class for every error raised by factstream."""

    pass


class FactSerializationError(FactStreamError):
    """A fact could not be encoded. Nothing from the batch was written."""

    pass


class FactDecodeError(FactStreamError):
    """A single line could not be decoded into a Fact.

    Attributes:
        line_number: 1-based line number in the stream, when known.
        line: The offending raw line (stripped), when known.
    """

    def __init__(self, message: str, line_number: Optional[int] = None, line: Optional[str] = None):
        self.line_number = line_number
        self.line = line
        if line_number is not None:
            message = f"line {line_number}: {message}"
        super().__init__(message)


class LockError(FactStreamError):
    """Advisory lock on the stream file could not be acquired."""

    pass


class AlreadyLockedError(LockError):
    """Lock is held elsewhere and no wait bound was configured."""

    def __init__(self, path: Any = None):
        self.path = path
        super().__init__(f"File is already locked by another process: {path}")


class LockTimeoutError(LockError):
    """Lock could not be acquired within the configured timeout."""

    def __init__(self, timeout: float, path: Any = None):
        self.timeout = timeout
        self.path = path
        super().__init__(f"Failed to acquire lock on {path} within {timeout:.3f}s")


class TimestampOrderingError(FactStreamError):
    """A batch contained a fact older than the store's latest timestamp.

    The whole batch is rejected; the file and cached timestamp are unchanged.
    """

    def __init__(self, new: datetime, latest: datetime):
        self.new = new
        self.latest = latest
        super().__init__(
            f"Timestamp ordering violation: new fact at {new.isoformat()} "
            f"is before latest {latest.isoformat()}"
        )


class BuildError(FactStreamError):
    """Finalizing an aggregator into its output type failed.

    Attributes:
        entity: The entity whose aggregator failed to build.
        fact_count: Number of facts folded into that aggregator.
        cause: The underlying exception raised by ``build()``.
    """

    def __init__(self, entity: Any, fact_count: int, cause: BaseException):
        self.entity = entity
        self.fact_count = fact_count
        self.cause = cause
        super().__init__(
            f"Failed to build entity {entity!r} after {fact_count} fact(s): {cause}"
        )
