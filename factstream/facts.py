# factstream/facts.py
"""
facts.py - Core data model for the fact stream.

A Fact is an immutable 5-tuple ``(entity, value, timestamp, source, operation)``.
Corrections are never made in place: a withdrawn value is expressed by
appending a new fact with ``Operation.RETRACT`` carrying that value.

Values are application-defined pydantic models that serialize as a tagged
union with exactly two top-level fields, ``t`` (variant name) and ``v``
(payload):

    class Bpm(TaggedValue):
        t: Literal["Bpm"] = "Bpm"
        v: int

    class Title(TaggedValue):
        t: Literal["Title"] = "Title"
        v: str

    TrackValue = Annotated[Union[Bpm, Title], Field(discriminator="t")]

Usage:
    from factstream.facts import Fact, Operation

    fact = Fact("track1", Bpm(v=128), datetime.now(timezone.utc), "alice", Operation.ASSERT)
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Generic, Optional, TypeVar

from pydantic import BaseModel, ConfigDict

E = TypeVar("E")
V = TypeVar("V")
S = TypeVar("S")

# Field names of the tagged-union value encoding
TAG_FIELD = "t"
CONTENT_FIELD = "v"

MIN_TIMESTAMP = datetime.min.replace(tzinfo=timezone.utc)


class Operation(str, Enum):
    """Whether a fact adds/updates a value or withdraws it."""

    ASSERT = "Assert"
    RETRACT = "Retract"


def to_utc(ts: datetime) -> datetime:
    """Normalize a datetime to aware UTC. Naive values are taken as UTC."""
    if not isinstance(ts, datetime):
        raise TypeError(f"timestamp must be a datetime, got {type(ts).__name__}")
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


class TaggedValue(BaseModel):
    """Base class for application value variants.

    Subclasses declare ``t`` as a ``Literal`` naming the variant (with that
    name as default) and ``v`` as the payload. Extra fields are forbidden so
    a variant always encodes as exactly ``{"t": ..., "v": ...}``.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    @property
    def tag(self) -> str:
        return getattr(self, TAG_FIELD)

    @property
    def content(self) -> Any:
        return getattr(self, CONTENT_FIELD)


class UnknownAttribute(BaseModel):
    """Fallback for a value whose tag the current schema does not know.

    Preserves the tag and the raw JSON payload so older readers keep working
    against streams written by newer writers.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    t: str
    v: Any = None

    @property
    def tag(self) -> str:
        return self.t

    @property
    def content(self) -> Any:
        return self.v


@dataclass(frozen=True)
class Fact(Generic[E, V, S]):
    """An immutable assertion or retraction about one entity's attribute.

    Attributes:
        entity: Identifier of the subject the fact is about.
        value: Tagged value (a TaggedValue variant or UnknownAttribute).
        timestamp: When the fact holds; always aware UTC.
        source: Who or what produced the fact.
        operation: Assert or Retract.
    """

    entity: E
    value: V
    timestamp: datetime
    source: S
    operation: Operation = Operation.ASSERT

    def __post_init__(self) -> None:
        object.__setattr__(self, "timestamp", to_utc(self.timestamp))
        object.__setattr__(self, "operation", Operation(self.operation))

    @classmethod
    def now(
        cls,
        entity: E,
        value: V,
        source: S,
        operation: Operation = Operation.ASSERT,
    ) -> "Fact[E, V, S]":
        """Create a fact stamped with the current UTC time."""
        return cls(entity, value, datetime.now(timezone.utc), source, operation)

    @property
    def is_assert(self) -> bool:
        return self.operation is Operation.ASSERT

    @property
    def is_retract(self) -> bool:
        return self.operation is Operation.RETRACT

    def retraction(self, timestamp: Optional[datetime] = None, source: Optional[S] = None) -> "Fact[E, V, S]":
        """Return a new fact withdrawing this fact's value.

        Args:
            timestamp: When the retraction happens. Defaults to now.
            source: Who retracts. Defaults to this fact's source.
        """
        return replace(
            self,
            timestamp=timestamp if timestamp is not None else datetime.now(timezone.utc),
            source=self.source if source is None else source,
            operation=Operation.RETRACT,
        )
