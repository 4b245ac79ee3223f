"""
aggregate.py - Fold a fact sequence into per-entity state.

Applications implement a FactAggregator that knows how one entity's state
reacts to asserted and retracted values. The engine owns dispatch only:
cardinality ("latest wins" vs. "accumulates") is the aggregator's business.

Usage:
    from factstream.aggregate import FactAggregator, aggregate_facts

    class TrackAggregator(FactAggregator):
        def __init__(self):
            self.bpm = None
            self.tags = []

        def on_assert(self, value, source):
            if isinstance(value, Bpm):
                self.bpm = value.v
            elif isinstance(value, Tag) and value.v not in self.tags:
                self.tags.append(value.v)

        def on_retract(self, value, source):
            if isinstance(value, Tag):
                self.tags = [t for t in self.tags if t != value.v]

    tracks = aggregate_facts(store.iter(), TrackAggregator)
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterable, Callable, Dict, Generic, Iterable, Tuple, TypeVar

from .errors import BuildError
from .facts import E, Fact, Operation, S, UnknownAttribute, V

logger = logging.getLogger(__name__)

A = TypeVar("A", bound="FactAggregator")
O = TypeVar("O")


class FactAggregator(ABC, Generic[V, S]):
    """Reducer for the facts of a single entity.

    One instance is created per entity on first reference, by calling the
    factory passed to the engine with no arguments.
    """

    @abstractmethod
    def on_assert(self, value: V, source: S) -> None:
        """Apply an asserted value."""

    @abstractmethod
    def on_retract(self, value: V, source: S) -> None:
        """Apply a retracted value."""

    def on_assert_unknown(self, tag: str, content: Any, source: S) -> None:
        """Apply an asserted value whose tag the schema does not know."""

    def on_retract_unknown(self, tag: str, content: Any, source: S) -> None:
        """Apply a retracted value whose tag the schema does not know."""


class BuildableAggregator(FactAggregator[V, S], Generic[V, S, O]):
    """Aggregator that can be finalized into a validated output."""

    @abstractmethod
    def build(self) -> O:
        """Produce the final output. Called at most once, after all folding.

        Raise any exception (typically a pydantic ValidationError) when the
        accumulated state is incomplete or invalid.
        """


@dataclass
class BuildReport(Generic[E, O]):
    """Outcome of building every aggregator without short-circuiting."""

    outputs: Dict[E, O] = field(default_factory=dict)
    failures: Dict[E, BuildError] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failures


def apply_fact(aggregator: FactAggregator, fact: Fact) -> None:
    """Dispatch one fact to an aggregator by operation and value kind."""
    value = fact.value
    if isinstance(value, UnknownAttribute):
        if fact.operation is Operation.ASSERT:
            aggregator.on_assert_unknown(value.tag, value.content, fact.source)
        else:
            aggregator.on_retract_unknown(value.tag, value.content, fact.source)
    elif fact.operation is Operation.ASSERT:
        aggregator.on_assert(value, fact.source)
    else:
        aggregator.on_retract(value, fact.source)


def _fold_one(
    aggregators: Dict[Any, A],
    counts: Dict[Any, int],
    fact: Fact,
    aggregator_factory: Callable[[], A],
) -> None:
    aggregator = aggregators.get(fact.entity)
    if aggregator is None:
        aggregator = aggregators[fact.entity] = aggregator_factory()
    apply_fact(aggregator, fact)
    counts[fact.entity] = counts.get(fact.entity, 0) + 1


def _fold(
    facts: Iterable[Fact], aggregator_factory: Callable[[], A]
) -> Tuple[Dict[Any, A], Dict[Any, int]]:
    aggregators: Dict[Any, A] = {}
    counts: Dict[Any, int] = {}
    for fact in facts:
        _fold_one(aggregators, counts, fact, aggregator_factory)
    return aggregators, counts


def aggregate_facts(facts: Iterable[Fact], aggregator_factory: Callable[[], A]) -> Dict[Any, A]:
    """Fold facts, in input order, into one aggregator per entity.

    Args:
        facts: Any iterable of facts, typically a store iterator.
        aggregator_factory: Zero-argument callable (usually the class).

    Returns:
        Mapping of entity to its aggregator, in first-seen order.
    """
    aggregators, counts = _fold(facts, aggregator_factory)
    logger.debug("Aggregated %d fact(s) into %d entities", sum(counts.values()), len(aggregators))
    return aggregators


async def aggregate_facts_async(
    facts: AsyncIterable[Fact], aggregator_factory: Callable[[], A]
) -> Dict[Any, A]:
    """aggregate_facts over an async iterable such as AsyncFactIterator.

    Each fact is folded as soon as it arrives; the sequence is never buffered.
    """
    aggregators: Dict[Any, A] = {}
    counts: Dict[Any, int] = {}
    async for fact in facts:
        _fold_one(aggregators, counts, fact, aggregator_factory)
    logger.debug("Aggregated %d fact(s) into %d entities", sum(counts.values()), len(aggregators))
    return aggregators


def _build_one(entity: Any, aggregator: BuildableAggregator, fact_count: int) -> Any:
    try:
        return aggregator.build()
    except Exception as e:
        raise BuildError(entity, fact_count, e) from e


def aggregate_and_build(
    facts: Iterable[Fact], aggregator_factory: Callable[[], BuildableAggregator]
) -> Dict[Any, Any]:
    """Fold every fact, then build each entity's output exactly once.

    Building starts only after all facts are folded. The first failure
    aborts the whole call.

    Raises:
        BuildError: With the failing entity, its fact count and the cause.
    """
    aggregators, counts = _fold(facts, aggregator_factory)
    return {
        entity: _build_one(entity, aggregator, counts[entity])
        for entity, aggregator in aggregators.items()
    }


def aggregate_and_build_all(
    facts: Iterable[Fact], aggregator_factory: Callable[[], BuildableAggregator]
) -> BuildReport:
    """Like aggregate_and_build, but report every failure alongside successes."""
    aggregators, counts = _fold(facts, aggregator_factory)
    report: BuildReport = BuildReport()
    for entity, aggregator in aggregators.items():
        try:
            report.outputs[entity] = _build_one(entity, aggregator, counts[entity])
        except BuildError as e:
            logger.warning("%s", e)
            report.failures[entity] = e
    return report
