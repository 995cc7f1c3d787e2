"""
dispatch-orchestrator — unit tests for the dependency graph builder

File: tests/unit/planning/test_dependency_graph.py
Last updated: 2026-10-16

Purpose
- Validate edge resolution, skip handling, cycle detection and wave grouping.

What this test file should cover
- Both relation directions produce the same symmetric edge.
- Edges to unknown, skipped or self identifiers are dropped.
- Property: the built graph never has dangling or asymmetric edges.
"""

from __future__ import annotations

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from dispatch_orchestrator.domain.models import RawItem, Relation, RelationType, WorkItemStatus
from dispatch_orchestrator.planning.dependency_graph import (
    DependencyGraphBuilder,
    build_dispatch_queue,
    dispatch_waves,
    find_cycles,
)


def _item(
    identifier: str,
    *,
    blocks: tuple[str, ...] = (),
    blocked_by: tuple[str, ...] = (),
    labels: tuple[str, ...] = (),
) -> RawItem:
    relations = [Relation(RelationType.BLOCKS, other) for other in blocks]
    relations.extend(Relation(RelationType.BLOCKED_BY, other) for other in blocked_by)
    return RawItem(
        identifier=identifier,
        issue_id=f"id-{identifier}",
        title=f"Item {identifier}",
        labels=labels,
        relations=tuple(relations),
    )


def _diamond() -> list[RawItem]:
    return [
        _item("A", blocks=("B", "C")),
        _item("B", blocks=("D",)),
        _item("C", blocked_by=("A",)),
        _item("D", blocked_by=("C",)),
    ]


@pytest.mark.unit
def test_diamond_edges_are_symmetric_and_deduplicated() -> None:
    issues = build_dispatch_queue(_diamond())

    assert list(issues) == ["A", "B", "C", "D"]
    assert issues["A"].depends_on == set()
    assert issues["A"].unblocks == {"B", "C"}
    assert issues["C"].depends_on == {"A"}
    assert issues["D"].depends_on == {"B", "C"}
    assert issues["B"].unblocks == {"D"}
    assert all(item.status is WorkItemStatus.PENDING for item in issues.values())


@pytest.mark.unit
def test_skipped_items_keep_no_edges() -> None:
    issues = build_dispatch_queue(
        [
            _item("EPIC-1", blocks=("A",), labels=("Epic",)),
            _item("A", blocks=("B",)),
            _item("B", blocked_by=("EPIC-1",)),
        ]
    )

    assert issues["EPIC-1"].status is WorkItemStatus.SKIPPED
    assert issues["EPIC-1"].unblocks == set()
    assert issues["A"].depends_on == set()
    assert issues["B"].depends_on == {"A"}


@pytest.mark.unit
def test_unknown_and_self_references_are_dropped() -> None:
    issues = build_dispatch_queue(
        [
            _item("A", blocks=("A", "GHOST")),
            _item("B", blocked_by=("MISSING",)),
        ]
    )

    assert issues["A"].unblocks == set()
    assert issues["A"].depends_on == set()
    assert issues["B"].depends_on == set()


@pytest.mark.unit
def test_custom_skip_pattern_is_case_insensitive() -> None:
    builder = DependencyGraphBuilder(r"^(tracking|meta)$")

    assert builder.is_skipped(_item("X", labels=("TRACKING",)))
    assert not builder.is_skipped(_item("Y", labels=("tracking-ui",)))


@pytest.mark.unit
def test_duplicate_identifiers_are_rejected() -> None:
    with pytest.raises(ValueError, match="duplicate work item identifier: A"):
        build_dispatch_queue([_item("A"), _item("A")])


@pytest.mark.unit
def test_find_cycles_reports_canonical_closed_paths() -> None:
    issues = build_dispatch_queue(
        [
            _item("C", blocks=("A",)),
            _item("A", blocks=("B",)),
            _item("B", blocks=("C",)),
            _item("D", blocked_by=("A",)),
        ]
    )

    assert find_cycles(issues) == (("A", "B", "C", "A"),)
    assert find_cycles(build_dispatch_queue(_diamond())) == ()


@pytest.mark.unit
def test_dispatch_waves_follow_dependencies_and_skip_cycles() -> None:
    assert dispatch_waves(build_dispatch_queue(_diamond())) == (("A",), ("B", "C"), ("D",))

    cyclic = build_dispatch_queue(
        [
            _item("A", blocks=("B",)),
            _item("B", blocks=("A",)),
            _item("C"),
            _item("E", labels=("epic",)),
        ]
    )
    assert dispatch_waves(cyclic) == (("C",),)


_IDENTIFIERS = [f"T-{index}" for index in range(8)]


@st.composite
def _raw_items(draw: st.DrawFn) -> list[RawItem]:
    count = draw(st.integers(min_value=1, max_value=len(_IDENTIFIERS)))
    names = _IDENTIFIERS[:count]
    others = st.sampled_from([*_IDENTIFIERS, "OUTSIDE"])
    items: list[RawItem] = []
    for name in names:
        items.append(
            _item(
                name,
                blocks=tuple(draw(st.lists(others, max_size=3))),
                blocked_by=tuple(draw(st.lists(others, max_size=3))),
                labels=("epic",) if draw(st.booleans()) and draw(st.booleans()) else (),
            )
        )
    return items


@pytest.mark.unit
@settings(max_examples=75, deadline=None)
@given(_raw_items())
def test_built_graph_has_no_dangling_or_asymmetric_edges(items: list[RawItem]) -> None:
    issues = build_dispatch_queue(items)

    assert list(issues) == [item.identifier for item in items]
    for identifier, item in issues.items():
        assert identifier not in item.depends_on
        for dependency in item.depends_on:
            assert dependency in issues
            assert identifier in issues[dependency].unblocks
            assert issues[dependency].status is not WorkItemStatus.SKIPPED
        for blocked in item.unblocks:
            assert blocked in issues
            assert identifier in issues[blocked].depends_on
        if item.status is WorkItemStatus.SKIPPED:
            assert item.depends_on == set()
            assert item.unblocks == set()
