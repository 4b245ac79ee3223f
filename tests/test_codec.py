"""Tests for factstream.codec: one fact per line of JSON."""

from datetime import datetime, timezone
from typing import Any

import pytest
from pydantic import BaseModel

from factstream.codec import (
    FactCodec,
    check_value_format,
    format_timestamp,
    known_tags,
    parse_timestamp,
)
from factstream.errors import FactDecodeError, FactSerializationError
from factstream.facts import Fact, Operation, UnknownAttribute

from track_values import Bpm, Count, Description, Point, Position, Title, TrackValue, at, make_fact

WELL_FORMED_LINES = [
    '["some_song",{"t":"Title","v":"a_title"},"2024-01-15T10:30:00Z","alice","Assert"]\n',
    '["some_song",{"t":"Bpm","v":12350},"2024-01-16T10:30:00Z","alice","Assert"]\n',
    '["track1",{"t":"Description","v":"Line 1\\nLine 2\\nLine 3"},"2024-01-15T10:00:00Z","alice","Retract"]\n',
    '["track1",{"t":"Position","v":{"x":1.5,"y":-2.0}},"2024-01-15T10:00:00.250Z","bob","Assert"]\n',
    '["café",{"t":"Title","v":"Déjà vu"},"2024-01-15T10:00:00Z","élise","Assert"]\n',
    '["track2",{"t":"Bpm","v":128},"2024-01-15T10:00:00.123456Z","alice","Assert"]\n',
]


class TestDecode:
    """Tests for FactCodec.decode."""

    def test_string_variant(self, codec):
        fact = codec.decode(WELL_FORMED_LINES[0])

        assert fact == Fact(
            "some_song",
            Title(v="a_title"),
            datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc),
            "alice",
            Operation.ASSERT,
        )

    def test_numeric_variant(self, codec):
        fact = codec.decode(WELL_FORMED_LINES[1])

        assert fact.value == Bpm(v=12350)
        assert fact.timestamp == datetime(2024, 1, 16, 10, 30, tzinfo=timezone.utc)

    def test_nested_variant(self, codec):
        fact = codec.decode(WELL_FORMED_LINES[3])

        assert fact.value == Position(v=Point(x=1.5, y=-2.0))
        assert fact.timestamp.microsecond == 250000

    def test_accepts_bytes(self, codec):
        fact = codec.decode(WELL_FORMED_LINES[0].encode("utf-8"))

        assert fact.value == Title(v="a_title")

    def test_unknown_tag_decodes_to_unknown_attribute(self, codec):
        line = '["some_song",{"t":"NewAttribute","v":"some_value"},"2024-01-15T10:30:00Z","alice","Assert"]'
        fact = codec.decode(line)

        assert fact.value == UnknownAttribute(t="NewAttribute", v="some_value")

    def test_unknown_tag_with_number(self):
        codec = FactCodec(UnknownAttribute)
        line = '["some_song",{"t":"NewAttribute","v":42},"2024-01-15T10:30:00Z","alice","Assert"]'
        fact = codec.decode(line)

        assert fact.entity == "some_song"
        assert fact.value.tag == "NewAttribute"
        assert fact.value.content == 42

    def test_unknown_tag_rejected_when_fallback_disabled(self):
        codec = FactCodec(TrackValue, allow_unknown=False)
        line = '["some_song",{"t":"NewAttribute","v":1},"2024-01-15T10:30:00Z","alice","Assert"]'

        with pytest.raises(FactDecodeError, match="unknown value tag"):
            codec.decode(line)

    @pytest.mark.parametrize(
        "line",
        [
            "not json",
            '{"entity":"track1"}',
            '["track1",{"t":"Bpm","v":1},"2024-01-15T10:00:00Z","alice"]',
            '["track1",{"t":"Bpm","v":1,"x":2},"2024-01-15T10:00:00Z","alice","Assert"]',
            '["track1",{"t":"Bpm"},"2024-01-15T10:00:00Z","alice","Assert"]',
            '["track1","Bpm","2024-01-15T10:00:00Z","alice","Assert"]',
            '["track1",{"t":7,"v":1},"2024-01-15T10:00:00Z","alice","Assert"]',
            '["track1",{"t":"Bpm","v":"fast"},"2024-01-15T10:00:00Z","alice","Assert"]',
            '["track1",{"t":"Bpm","v":1},"yesterday","alice","Assert"]',
            '["track1",{"t":"Bpm","v":1},1705312800,"alice","Assert"]',
            '["track1",{"t":"Bpm","v":1},"2024-01-15T10:00:00Z","alice","Delete"]',
        ],
    )
    def test_malformed_lines_raise(self, codec, line):
        with pytest.raises(FactDecodeError):
            codec.decode(line)

    def test_error_carries_line_number(self, codec):
        with pytest.raises(FactDecodeError) as exc_info:
            codec.decode("{broken", line_number=7)

        assert exc_info.value.line_number == 7
        assert "line 7" in str(exc_info.value)


class TestEncode:
    """Tests for FactCodec.encode and batch serialization."""

    def test_compact_single_line(self, codec):
        fact = make_fact("some_song", Title(v="a_title"), datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc))

        assert codec.encode(fact) == WELL_FORMED_LINES[0].encode("utf-8")

    def test_newlines_in_values_are_escaped(self, codec):
        fact = make_fact("track1", Description(v="Line 1\nLine 2\r\nLine 3"), at(10))
        encoded = codec.encode(fact)

        assert encoded.count(b"\n") == 1
        assert encoded.endswith(b"\n")
        assert b"\\n" in encoded
        assert codec.decode(encoded) == fact

    def test_unknown_attribute_is_preserved(self, codec):
        line = '["track1",{"t":"Mood","v":{"energy":0.8,"labels":["dark","driving"]}},"2024-01-15T10:00:00Z","alice","Assert"]\n'

        fact = codec.decode(line)

        assert fact.value == UnknownAttribute(t="Mood", v={"energy": 0.8, "labels": ["dark", "driving"]})
        assert codec.encode(fact) == line.encode("utf-8")

    def test_rejects_value_with_extra_fields(self, codec):
        class Wide(BaseModel):
            t: str
            v: int
            extra: int

        fact = make_fact("track1", Wide(t="Wide", v=1, extra=2), at(10))

        with pytest.raises(FactSerializationError):
            codec.encode(fact)

    def test_serialize_batch_fails_as_a_whole(self, codec):
        class Wide(BaseModel):
            t: str
            v: int
            extra: int

        facts = [
            make_fact("track1", Bpm(v=128), at(10)),
            make_fact("track1", Wide(t="Wide", v=1, extra=2), at(11)),
        ]

        with pytest.raises(FactSerializationError):
            codec.serialize_batch(facts)

    def test_serialize_batch_concatenates_lines(self, count_codec, count_facts):
        buffer = count_codec.serialize_batch(count_facts)

        assert buffer.count(b"\n") == 3
        assert buffer.splitlines(keepends=True)[1] == count_codec.encode(count_facts[1])


class TestRoundTrip:
    """encode(decode(line)) reproduces the line byte for byte."""

    @pytest.mark.parametrize("line", WELL_FORMED_LINES)
    def test_line_round_trip(self, codec, line):
        assert codec.encode(codec.decode(line)) == line.encode("utf-8")


class TestHelpers:
    """Tests for timestamp and value-shape helpers."""

    def test_format_timestamp_without_fraction(self):
        assert format_timestamp(at(10, 30)) == "2024-01-15T10:30:00Z"

    def test_format_timestamp_with_fraction(self):
        ts = datetime(2024, 1, 15, 10, 30, 0, 123456, tzinfo=timezone.utc)

        assert format_timestamp(ts) == "2024-01-15T10:30:00.123456Z"

    def test_format_timestamp_whole_milliseconds(self):
        ts = datetime(2024, 1, 15, 10, 30, 0, 250000, tzinfo=timezone.utc)

        assert format_timestamp(ts) == "2024-01-15T10:30:00.250Z"

    def test_millisecond_line_round_trip(self, codec):
        line = '["track1",{"t":"Bpm","v":128},"2024-01-15T10:30:00.250Z","alice","Assert"]\n'

        assert codec.decode(line).timestamp.microsecond == 250000
        assert codec.encode(codec.decode(line)) == line.encode("utf-8")

    @pytest.mark.parametrize(
        "text, expected",
        [
            ("2024-01-15T10:30:00Z", datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc)),
            ("2024-01-15T12:30:00+02:00", datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc)),
            ("2024-01-15T10:30:00.5Z", datetime(2024, 1, 15, 10, 30, 0, 500000, tzinfo=timezone.utc)),
            ("2024-01-15T10:30:00.123456789Z", datetime(2024, 1, 15, 10, 30, 0, 123456, tzinfo=timezone.utc)),
        ],
    )
    def test_parse_timestamp(self, text, expected):
        assert parse_timestamp(text) == expected

    def test_known_tags_of_union(self):
        assert known_tags(TrackValue) == frozenset({"Bpm", "Title", "Tag", "Description", "Position"})

    def test_known_tags_of_single_variant(self):
        assert known_tags(Count) == frozenset({"Count"})

    def test_known_tags_undeterminable(self):
        assert known_tags(Any) is None

    def test_check_value_format(self):
        check_value_format({"t": "Bpm", "v": 1})

        with pytest.raises(FactSerializationError):
            check_value_format({"t": "Bpm", "v": 1, "x": 2})
        with pytest.raises(FactSerializationError):
            check_value_format("Bpm")
        with pytest.raises(FactSerializationError):
            check_value_format({"t": 1, "v": 1})
