from __future__ import annotations

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from dispatch_orchestrator.domain.models import WorkItem, WorkItemStatus
from dispatch_orchestrator.planning.readiness import (
    get_active_count,
    get_ready_issues,
    is_project_dispatch_complete,
    is_project_stuck,
    progress_counts,
    stuck_identifiers,
)


def _graph(edges: dict[str, set[str]], **statuses: WorkItemStatus) -> dict[str, WorkItem]:
    """Build a graph from ``{identifier: depends_on}``; unspecified statuses are pending."""

    issues = {
        identifier: WorkItem(
            identifier=identifier,
            issue_id=f"id-{identifier}",
            depends_on=set(depends_on),
            status=statuses.get(identifier, WorkItemStatus.PENDING),
        )
        for identifier, depends_on in edges.items()
    }
    for identifier, item in issues.items():
        for dependency in item.depends_on:
            issues[dependency].unblocks.add(identifier)
    return issues


DIAMOND = {"A": set(), "B": {"A"}, "C": {"A"}, "D": {"B", "C"}}


@pytest.mark.unit
def test_ready_issues_preserve_listing_order() -> None:
    issues = _graph(DIAMOND, A=WorkItemStatus.DONE)

    assert [item.identifier for item in get_ready_issues(issues)] == ["B", "C"]


@pytest.mark.unit
def test_item_waits_for_every_dependency() -> None:
    issues = _graph(DIAMOND, A=WorkItemStatus.DONE, B=WorkItemStatus.DONE)

    assert [item.identifier for item in get_ready_issues(issues)] == ["C"]


@pytest.mark.unit
def test_skipped_or_stuck_dependencies_never_satisfy_readiness() -> None:
    issues = _graph({"A": set(), "B": {"A"}}, A=WorkItemStatus.STUCK)

    assert get_ready_issues(issues) == []


@pytest.mark.unit
def test_active_count_only_counts_dispatched() -> None:
    issues = _graph(
        DIAMOND,
        A=WorkItemStatus.DONE,
        B=WorkItemStatus.DISPATCHED,
        C=WorkItemStatus.DISPATCHED,
    )

    assert get_active_count(issues) == 2


@pytest.mark.unit
def test_completion_treats_done_stuck_and_skipped_as_terminal() -> None:
    issues = _graph(
        DIAMOND,
        A=WorkItemStatus.DONE,
        B=WorkItemStatus.STUCK,
        C=WorkItemStatus.SKIPPED,
        D=WorkItemStatus.DONE,
    )

    assert is_project_dispatch_complete(issues)
    assert is_project_dispatch_complete({})
    assert not is_project_dispatch_complete(_graph(DIAMOND))


@pytest.mark.unit
def test_project_is_stuck_when_every_pending_item_descends_from_a_stuck_item() -> None:
    issues = _graph(DIAMOND, A=WorkItemStatus.DONE, B=WorkItemStatus.STUCK, C=WorkItemStatus.DONE)

    assert is_project_stuck(issues)
    assert stuck_identifiers(issues) == ["B"]


@pytest.mark.unit
def test_transitive_stuck_ancestor_counts() -> None:
    issues = _graph(
        {"A": set(), "B": {"A"}, "C": {"B"}},
        A=WorkItemStatus.STUCK,
    )

    assert is_project_stuck(issues)


@pytest.mark.unit
def test_independent_pending_item_keeps_project_alive() -> None:
    issues = _graph(
        {"A": set(), "B": {"A"}, "C": set()},
        A=WorkItemStatus.STUCK,
    )

    assert not is_project_stuck(issues)


@pytest.mark.unit
def test_in_flight_items_keep_project_alive() -> None:
    issues = _graph(
        {"A": set(), "B": {"A"}, "C": set()},
        A=WorkItemStatus.STUCK,
        C=WorkItemStatus.DISPATCHED,
    )

    assert not is_project_stuck(issues)


@pytest.mark.unit
def test_no_stuck_items_means_not_stuck() -> None:
    assert not is_project_stuck(_graph(DIAMOND, A=WorkItemStatus.DONE))


@pytest.mark.unit
def test_progress_counts_exclude_skipped_items() -> None:
    issues = _graph(
        DIAMOND,
        A=WorkItemStatus.DONE,
        B=WorkItemStatus.SKIPPED,
        C=WorkItemStatus.DISPATCHED,
    )

    counts = progress_counts(issues)

    assert (counts.done, counts.total, counts.stuck, counts.dispatched) == (1, 3, 0, 1)
    assert counts.render() == "1/3 complete"


_STATUSES = st.sampled_from(list(WorkItemStatus))


@pytest.mark.unit
@settings(max_examples=100, deadline=None)
@given(st.fixed_dictionaries({name: _STATUSES for name in DIAMOND}))
def test_completing_a_dispatched_item_never_shrinks_the_ready_set(
    statuses: dict[str, WorkItemStatus],
) -> None:
    issues = _graph(DIAMOND, **statuses)
    before = {item.identifier for item in get_ready_issues(issues)}

    for item in issues.values():
        if item.status is WorkItemStatus.DISPATCHED:
            item.status = WorkItemStatus.DONE
    after = {item.identifier for item in get_ready_issues(issues)}

    assert before <= after
