"""Dependency graph construction from tracker items and relation edges.

Items whose labels match the skip pattern (``epic`` by default, case-insensitive)
are kept in the graph with status ``skipped`` and excised from every edge. Their
dependents lose that dependency entirely; they do not inherit the skipped
item's own predecessors.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Iterator, Mapping, Sequence
from typing import Final

from dispatch_orchestrator.domain.models import (
    RawItem,
    RelationType,
    WorkItem,
    WorkItemStatus,
)

DEFAULT_SKIP_LABEL_PATTERN: Final[str] = "epic"


class DependencyGraphBuilder:
    """Turn a flat item list plus relation edges into per-item dependency sets."""

    __slots__ = ("_skip_pattern",)

    def __init__(self, skip_label_pattern: str | re.Pattern[str] = DEFAULT_SKIP_LABEL_PATTERN) -> None:
        if isinstance(skip_label_pattern, re.Pattern):
            self._skip_pattern = skip_label_pattern
        else:
            self._skip_pattern = re.compile(skip_label_pattern, re.IGNORECASE)

    @property
    def skip_pattern(self) -> re.Pattern[str]:
        return self._skip_pattern

    def is_skipped(self, item: RawItem) -> bool:
        return any(self._skip_pattern.search(label) for label in item.labels)

    def build(self, items: Iterable[RawItem]) -> dict[str, WorkItem]:
        """
        Build the dispatch queue keyed by identifier, preserving listing order.

        Edges that reference identifiers outside ``items``, touch a skipped item,
        or point an item at itself are dropped. Cycles are not rejected here.
        """

        materialized = list(items)
        queue: dict[str, WorkItem] = {}
        for item in materialized:
            if item.identifier in queue:
                raise ValueError(f"duplicate work item identifier: {item.identifier}")
            queue[item.identifier] = WorkItem(
                identifier=item.identifier,
                issue_id=item.issue_id,
                title=item.title,
                status=WorkItemStatus.SKIPPED if self.is_skipped(item) else WorkItemStatus.PENDING,
            )

        for item in materialized:
            for relation in item.relations:
                if relation.type is RelationType.BLOCKS:
                    _link(queue, blocker=item.identifier, blocked=relation.related_identifier)
                else:
                    _link(queue, blocker=relation.related_identifier, blocked=item.identifier)

        return queue


def build_dispatch_queue(
    items: Iterable[RawItem],
    *,
    skip_label_pattern: str | re.Pattern[str] = DEFAULT_SKIP_LABEL_PATTERN,
) -> dict[str, WorkItem]:
    """Convenience wrapper around :class:`DependencyGraphBuilder`."""

    return DependencyGraphBuilder(skip_label_pattern).build(items)


def find_cycles(issues: Mapping[str, WorkItem]) -> tuple[tuple[str, ...], ...]:
    """
    Detect dependency cycles.

    Returns closed paths along ``unblocks`` edges, e.g. ``("A", "B", "A")``,
    canonicalized and sorted so repeated calls are deterministic.
    """

    state: dict[str, int] = {}
    stack: list[str] = []
    stack_index: dict[str, int] = {}
    cycles: dict[tuple[str, ...], None] = {}

    def children(node: str) -> Iterator[str]:
        return iter(sorted(child for child in issues[node].unblocks if child in issues))

    for start in sorted(issues):
        if state.get(start, 0) != 0:
            continue

        state[start] = 1
        stack_index[start] = len(stack)
        stack.append(start)
        frames: list[tuple[str, Iterator[str]]] = [(start, children(start))]

        while frames:
            node, child_iter = frames[-1]
            try:
                child = next(child_iter)
            except StopIteration:
                frames.pop()
                state[node] = 2
                stack.pop()
                del stack_index[node]
                continue

            child_state = state.get(child, 0)
            if child_state == 0:
                state[child] = 1
                stack_index[child] = len(stack)
                stack.append(child)
                frames.append((child, children(child)))
            elif child_state == 1:
                cycle = tuple(stack[stack_index[child] :] + [child])
                cycles[_canonicalize_cycle(cycle)] = None

    return tuple(sorted(cycles))


def dispatch_waves(issues: Mapping[str, WorkItem]) -> tuple[tuple[str, ...], ...]:
    """
    Group non-skipped items into waves that become ready together.

    Wave ``n`` holds the items whose dependencies all sit in earlier waves,
    assuming every dispatched item completes. Items on a cycle never appear.
    """

    remaining = [
        identifier
        for identifier, item in issues.items()
        if item.status is not WorkItemStatus.SKIPPED
    ]
    placed: set[str] = set()
    waves: list[tuple[str, ...]] = []
    while remaining:
        wave = tuple(
            identifier
            for identifier in remaining
            if all(dependency in placed for dependency in issues[identifier].depends_on)
        )
        if not wave:
            break
        waves.append(wave)
        placed.update(wave)
        remaining = [identifier for identifier in remaining if identifier not in placed]
    return tuple(waves)


def _link(queue: dict[str, WorkItem], *, blocker: str, blocked: str) -> None:
    if blocker == blocked:
        return
    blocker_item = queue.get(blocker)
    blocked_item = queue.get(blocked)
    if blocker_item is None or blocked_item is None:
        return
    if WorkItemStatus.SKIPPED in (blocker_item.status, blocked_item.status):
        return
    blocker_item.unblocks.add(blocked)
    blocked_item.depends_on.add(blocker)


def _canonicalize_cycle(cycle: Sequence[str]) -> tuple[str, ...]:
    core = tuple(cycle[:-1])
    best = core
    for offset in range(1, len(core)):
        rotated = core[offset:] + core[:offset]
        if rotated < best:
            best = rotated
    return best + (best[0],)


__all__ = [
    "DEFAULT_SKIP_LABEL_PATTERN",
    "DependencyGraphBuilder",
    "build_dispatch_queue",
    "dispatch_waves",
    "find_cycles",
]
