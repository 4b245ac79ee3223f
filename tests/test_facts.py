"""Tests for factstream.facts: the immutable Fact record and value shapes."""

import dataclasses
from datetime import datetime, timedelta, timezone

import pytest

from factstream.facts import MIN_TIMESTAMP, Fact, Operation, UnknownAttribute

from track_values import Bpm, Tag, at


class TestFact:
    """Tests for Fact construction and immutability."""

    def test_accessors(self):
        fact = Fact("track1", Bpm(v=128), at(10), "alice", Operation.ASSERT)

        assert fact.entity == "track1"
        assert fact.value == Bpm(v=128)
        assert fact.timestamp == at(10)
        assert fact.source == "alice"
        assert fact.operation is Operation.ASSERT
        assert fact.is_assert and not fact.is_retract

    def test_is_immutable(self):
        fact = Fact("track1", Bpm(v=128), at(10), "alice")

        with pytest.raises(dataclasses.FrozenInstanceError):
            fact.entity = "track2"
        with pytest.raises(Exception):
            fact.value.v = 130

    def test_naive_timestamp_is_taken_as_utc(self):
        fact = Fact("track1", Bpm(v=128), datetime(2024, 1, 15, 10, 0), "alice")

        assert fact.timestamp == at(10)
        assert fact.timestamp.tzinfo is timezone.utc

    def test_offset_timestamp_is_normalized_to_utc(self):
        plus_two = timezone(timedelta(hours=2))
        fact = Fact("track1", Bpm(v=128), datetime(2024, 1, 15, 12, 0, tzinfo=plus_two), "alice")

        assert fact.timestamp == at(10)
        assert fact.timestamp.utcoffset() == timedelta(0)

    def test_rejects_non_datetime_timestamp(self):
        with pytest.raises(TypeError):
            Fact("track1", Bpm(v=128), "2024-01-15T10:00:00Z", "alice")

    def test_operation_accepts_token(self):
        fact = Fact("track1", Bpm(v=128), at(10), "alice", "Retract")

        assert fact.operation is Operation.RETRACT

    def test_retraction_is_a_new_fact(self):
        original = Fact("track1", Tag(v="techno"), at(10), "alice")
        retraction = original.retraction(timestamp=at(11))

        assert original.operation is Operation.ASSERT
        assert retraction.operation is Operation.RETRACT
        assert retraction.value == original.value
        assert retraction.entity == original.entity
        assert retraction.source == "alice"
        assert retraction.timestamp == at(11)

    def test_now_uses_current_utc_time(self):
        before = datetime.now(timezone.utc)
        fact = Fact.now("track1", Bpm(v=128), "alice")
        after = datetime.now(timezone.utc)

        assert before <= fact.timestamp <= after

    def test_min_timestamp_precedes_everything(self):
        assert MIN_TIMESTAMP < at(0, day=1)


class TestValues:
    """Tests for the tagged value shapes."""

    def test_tagged_value_dumps_two_fields(self):
        assert Bpm(v=128).model_dump(mode="json") == {"t": "Bpm", "v": 128}
        assert Bpm(v=128).tag == "Bpm"
        assert Bpm(v=128).content == 128

    def test_tagged_value_forbids_extra_fields(self):
        with pytest.raises(Exception):
            Bpm(v=128, extra=1)

    def test_unknown_attribute_exposes_tag_and_content(self):
        unknown = UnknownAttribute(t="Mood", v={"energy": 0.8})

        assert unknown.tag == "Mood"
        assert unknown.content == {"energy": 0.8}
