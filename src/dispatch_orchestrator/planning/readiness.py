"""Pure readiness queries over a project's work-item map.

These functions never mutate their input. ``done`` is the only status that
satisfies a dependency; skipped items never appear in ``depends_on`` so they
need no special case here.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass

from dispatch_orchestrator.domain.models import (
    TERMINAL_WORK_ITEM_STATUSES,
    WorkItem,
    WorkItemStatus,
)


@dataclass(frozen=True, slots=True)
class ProgressCounts:
    done: int
    total: int
    stuck: int
    dispatched: int

    def render(self) -> str:
        return f"{self.done}/{self.total} complete"


def get_ready_issues(issues: Mapping[str, WorkItem]) -> list[WorkItem]:
    """Pending items whose whole dependency set is done, in listing order."""

    ready: list[WorkItem] = []
    for item in issues.values():
        if item.status is not WorkItemStatus.PENDING:
            continue
        if all(_is_done(issues, dependency) for dependency in item.depends_on):
            ready.append(item)
    return ready


def get_active_count(issues: Mapping[str, WorkItem]) -> int:
    return sum(1 for item in issues.values() if item.status is WorkItemStatus.DISPATCHED)


def is_project_dispatch_complete(issues: Mapping[str, WorkItem]) -> bool:
    """True when every item is done, stuck or skipped. Empty maps are complete."""

    return all(item.status in TERMINAL_WORK_ITEM_STATUSES for item in issues.values())


def is_project_stuck(issues: Mapping[str, WorkItem]) -> bool:
    """
    True when no further progress is possible because of stuck items.

    Requires: nothing dispatched, at least one stuck item, and every pending
    item has a stuck item among its (transitive) dependencies. A single
    pending item without a stuck ancestor keeps the project alive.
    """

    if get_active_count(issues) > 0:
        return False
    if not any(item.status is WorkItemStatus.STUCK for item in issues.values()):
        return False

    memo: dict[str, bool] = {}
    return all(
        _has_stuck_ancestor(issues, item.identifier, memo)
        for item in issues.values()
        if item.status is WorkItemStatus.PENDING
    )


def stuck_identifiers(issues: Mapping[str, WorkItem]) -> list[str]:
    return [item.identifier for item in issues.values() if item.status is WorkItemStatus.STUCK]


def progress_counts(issues: Mapping[str, WorkItem]) -> ProgressCounts:
    """Done/total counters; skipped items are excluded from ``total``."""

    statuses = [item.status for item in issues.values()]
    return ProgressCounts(
        done=statuses.count(WorkItemStatus.DONE),
        total=sum(1 for status in statuses if status is not WorkItemStatus.SKIPPED),
        stuck=statuses.count(WorkItemStatus.STUCK),
        dispatched=statuses.count(WorkItemStatus.DISPATCHED),
    )


def _is_done(issues: Mapping[str, WorkItem], identifier: str) -> bool:
    dependency = issues.get(identifier)
    return dependency is not None and dependency.status is WorkItemStatus.DONE


def _has_stuck_ancestor(
    issues: Mapping[str, WorkItem],
    identifier: str,
    memo: dict[str, bool],
) -> bool:
    if identifier in memo:
        return memo[identifier]

    # Iterative DFS; nodes on the current path count as "no" so cycles terminate.
    memo[identifier] = False
    stack: list[str] = [identifier]
    order: list[str] = []
    seen: set[str] = {identifier}
    while stack:
        current = stack.pop()
        order.append(current)
        for dependency in issues[current].depends_on:
            parent = issues.get(dependency)
            if parent is None:
                continue
            if parent.status is WorkItemStatus.STUCK:
                memo[identifier] = True
                return True
            if dependency in memo:
                if memo[dependency]:
                    memo[identifier] = True
                    return True
                continue
            if dependency not in seen:
                seen.add(dependency)
                stack.append(dependency)

    for visited in order:
        memo[visited] = False
    return False


__all__ = [
    "ProgressCounts",
    "get_active_count",
    "get_ready_issues",
    "is_project_dispatch_complete",
    "is_project_stuck",
    "progress_counts",
    "stuck_identifiers",
]
