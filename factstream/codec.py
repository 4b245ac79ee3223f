# factstream/codec.py
"""
codec.py - One fact <-> one line of text.

Each fact is written as a compact JSON array terminated by a single newline:

    ["some_song",{"t":"Title","v":"a_title"},"2024-01-15T10:30:00Z","alice","Assert"]

JSON string escaping guarantees that line-breaks embedded in any payload never
produce a second physical newline, so a stream can be split on ``\\n`` safely.

Usage:
    from factstream.codec import FactCodec

    codec = FactCodec(TrackValue)
    line = codec.encode(fact)          # bytes, ends with b"\\n"
    fact = codec.decode(line)          # raises FactDecodeError on bad input
"""

from __future__ import annotations

import json
import re
import types
from datetime import datetime
from typing import (
    Annotated,
    Any,
    FrozenSet,
    Generic,
    Iterable,
    List,
    Literal,
    Optional,
    Union,
    get_args,
    get_origin,
)

from pydantic import BaseModel, TypeAdapter, ValidationError
from pydantic_core import PydanticSerializationError

from .errors import FactDecodeError, FactSerializationError
from .facts import CONTENT_FIELD, TAG_FIELD, E, Fact, Operation, S, UnknownAttribute, V, to_utc

_UNION_ORIGINS = (Union, types.UnionType)
_FRACTION_RE = re.compile(r"\.(\d+)")


# -----------------------------------------------------------------------------
# Timestamp helpers
# -----------------------------------------------------------------------------


def format_timestamp(ts: datetime) -> str:
    """Render a timestamp as ISO-8601 UTC with a ``Z`` suffix.

    Fractional seconds are only included when non-zero, with 3 digits for
    whole milliseconds and 6 otherwise.
    """
    ts = to_utc(ts).replace(tzinfo=None)
    if not ts.microsecond:
        timespec = "seconds"
    elif ts.microsecond % 1000 == 0:
        timespec = "milliseconds"
    else:
        timespec = "microseconds"
    return ts.isoformat(timespec=timespec) + "Z"


def parse_timestamp(text: str) -> datetime:
    """Parse an ISO-8601 timestamp into an aware UTC datetime.

    Accepts a ``Z`` suffix or numeric offset. Fractions longer than
    microsecond precision are truncated.
    """
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    text = _FRACTION_RE.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
    return to_utc(datetime.fromisoformat(text))


# -----------------------------------------------------------------------------
# Value shape helpers
# -----------------------------------------------------------------------------


def _variants(value_type: Any) -> List[Any]:
    origin = get_origin(value_type)
    if origin is Annotated:
        return _variants(get_args(value_type)[0])
    if origin in _UNION_ORIGINS:
        result: List[Any] = []
        for arg in get_args(value_type):
            result.extend(_variants(arg))
        return result
    return [value_type]


def known_tags(value_type: Any) -> Optional[FrozenSet[str]]:
    """Return the tags statically declared by a value type.

    Walks ``Union``/``Annotated`` wrappers and reads the ``Literal`` annotation
    of each variant's tag field. Returns None when the set cannot be
    determined (e.g. a variant is not a pydantic model).
    """
    tags = set()
    for variant in _variants(value_type):
        if variant is UnknownAttribute:
            continue
        if not (isinstance(variant, type) and issubclass(variant, BaseModel)):
            return None
        field = variant.model_fields.get(TAG_FIELD)
        if field is None or get_origin(field.annotation) is not Literal:
            return None
        tags.update(get_args(field.annotation))
    return frozenset(tags)


def check_value_format(encoded: Any) -> None:
    """Validate that an encoded value is exactly a 2-field tagged union.

    Raises:
        FactSerializationError: If the shape is anything else.
    """
    if not isinstance(encoded, dict) or set(encoded) != {TAG_FIELD, CONTENT_FIELD}:
        raise FactSerializationError(
            f"value must serialize as an object with exactly the fields "
            f"'{TAG_FIELD}' and '{CONTENT_FIELD}', got {encoded!r}"
        )
    if not isinstance(encoded[TAG_FIELD], str):
        raise FactSerializationError(f"value tag must be a string, got {encoded[TAG_FIELD]!r}")


# -----------------------------------------------------------------------------
# Codec
# -----------------------------------------------------------------------------


class FactCodec(Generic[E, V, S]):
    """Encodes facts to lines and decodes lines back to facts.

    Args:
        value_type: The application value type, typically a discriminated
            union of TaggedValue subclasses. Pass ``UnknownAttribute`` to read
            any stream without a schema.
        entity_type: Type of the entity identifier. Defaults to str.
        source_type: Type of the source field. Defaults to str.
        allow_unknown: Decode unrecognised tags as UnknownAttribute instead of
            failing the line.
    """

    def __init__(
        self,
        value_type: Any,
        entity_type: Any = str,
        source_type: Any = str,
        allow_unknown: bool = True,
    ):
        self.value_type = value_type
        self.entity_type = entity_type
        self.source_type = source_type
        self.allow_unknown = allow_unknown
        self._value_adapter: TypeAdapter = TypeAdapter(value_type)
        self._entity_adapter: TypeAdapter = TypeAdapter(entity_type)
        self._source_adapter: TypeAdapter = TypeAdapter(source_type)
        self._unknown_only = value_type is UnknownAttribute
        self._known_tags = None if self._unknown_only else known_tags(value_type)

    def __repr__(self) -> str:
        return f"FactCodec(value_type={self.value_type!r}, allow_unknown={self.allow_unknown})"

    # -- encode ---------------------------------------------------------------

    def _dump_value(self, value: Any) -> Any:
        if isinstance(value, BaseModel):
            return value.model_dump(mode="json")
        return self._value_adapter.dump_python(value, mode="json")

    def to_record(self, fact: Fact[E, V, S]) -> List[Any]:
        """Convert a fact to its 5-element JSON-compatible record."""
        try:
            entity = self._entity_adapter.dump_python(fact.entity, mode="json")
            value = self._dump_value(fact.value)
            source = self._source_adapter.dump_python(fact.source, mode="json")
        except (PydanticSerializationError, TypeError, ValueError) as e:
            raise FactSerializationError(f"Failed to serialize fact for {fact.entity!r}: {e}") from e
        check_value_format(value)
        return [entity, value, format_timestamp(fact.timestamp), source, fact.operation.value]

    def encode(self, fact: Fact[E, V, S]) -> bytes:
        """Encode a fact as one UTF-8 line terminated by ``\\n``."""
        record = self.to_record(fact)
        try:
            text = json.dumps(record, ensure_ascii=False, separators=(",", ":"), allow_nan=False)
        except (TypeError, ValueError) as e:
            raise FactSerializationError(f"Failed to serialize fact for {fact.entity!r}: {e}") from e
        return text.encode("utf-8") + b"\n"

    def serialize_batch(self, facts: Iterable[Fact[E, V, S]]) -> bytes:
        """Encode a whole batch into one buffer.

        Every fact is encoded before anything is returned, so a failure on any
        fact means no bytes for the batch at all.
        """
        return b"".join(self.encode(fact) for fact in facts)

    # -- decode ---------------------------------------------------------------

    def _decode_value(self, raw: Any, line_number: Optional[int], line: str) -> Any:
        if not isinstance(raw, dict) or set(raw) != {TAG_FIELD, CONTENT_FIELD}:
            raise FactDecodeError(
                f"value must be an object with exactly the fields '{TAG_FIELD}' and '{CONTENT_FIELD}'",
                line_number,
                line,
            )
        tag = raw[TAG_FIELD]
        if not isinstance(tag, str):
            raise FactDecodeError(f"value tag must be a string, got {tag!r}", line_number, line)

        if self._unknown_only:
            return UnknownAttribute(t=tag, v=raw[CONTENT_FIELD])
        if self._known_tags is not None and tag not in self._known_tags:
            if self.allow_unknown:
                return UnknownAttribute(t=tag, v=raw[CONTENT_FIELD])
            raise FactDecodeError(f"unknown value tag {tag!r}", line_number, line)

        try:
            return self._value_adapter.validate_python(raw)
        except ValidationError as e:
            raise FactDecodeError(f"invalid value for tag {tag!r}: {e}", line_number, line) from e

    def decode(self, line: Union[str, bytes], line_number: Optional[int] = None) -> Fact[E, V, S]:
        """Decode one line into a Fact.

        Args:
            line: The raw line, with or without its trailing newline.
            line_number: Optional 1-based position used in error messages.

        Raises:
            FactDecodeError: If the line is not a well-formed fact record.
        """
        if isinstance(line, bytes):
            try:
                line = line.decode("utf-8")
            except UnicodeDecodeError as e:
                raise FactDecodeError(f"invalid UTF-8: {e}", line_number) from e
        text = line.strip()

        try:
            record = json.loads(text)
        except json.JSONDecodeError as e:
            raise FactDecodeError(f"invalid JSON: {e}", line_number, text) from e

        if not isinstance(record, list) or len(record) != 5:
            raise FactDecodeError("record must be a 5-element array", line_number, text)
        entity_raw, value_raw, ts_raw, source_raw, op_raw = record

        try:
            entity = self._entity_adapter.validate_python(entity_raw)
            source = self._source_adapter.validate_python(source_raw)
        except ValidationError as e:
            raise FactDecodeError(f"invalid entity or source: {e}", line_number, text) from e

        value = self._decode_value(value_raw, line_number, text)

        if not isinstance(ts_raw, str):
            raise FactDecodeError(f"timestamp must be a string, got {ts_raw!r}", line_number, text)
        try:
            timestamp = parse_timestamp(ts_raw)
        except ValueError as e:
            raise FactDecodeError(f"invalid timestamp {ts_raw!r}: {e}", line_number, text) from e

        try:
            operation = Operation(op_raw)
        except ValueError as e:
            raise FactDecodeError(f"invalid operation {op_raw!r}", line_number, text) from e

        return Fact(entity, value, timestamp, source, operation)
