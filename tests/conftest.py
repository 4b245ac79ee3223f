"""Shared fixtures for factstream tests."""

from pathlib import Path
from typing import List

import pytest

from factstream.codec import FactCodec
from factstream.facts import Fact

from track_values import Count, TrackValue, at, make_fact


@pytest.fixture
def stream_path(tmp_path: Path) -> Path:
    """Path of a not-yet-existing stream file."""
    return tmp_path / "facts.stream"


@pytest.fixture
def codec() -> FactCodec:
    return FactCodec(TrackValue)


@pytest.fixture
def count_codec() -> FactCodec:
    return FactCodec(Count)


@pytest.fixture
def count_facts() -> List[Fact]:
    """Three facts one minute apart, in timestamp order."""
    return [
        make_fact("item1", Count(v=1), at(10, 0), "source1"),
        make_fact("item2", Count(v=2), at(10, 1), "source1"),
        make_fact("item3", Count(v=3), at(10, 2), "source1"),
    ]
