"""
dispatch-orchestrator — unit tests for the project orchestrator

File: tests/unit/control_plane/test_orchestrator.py
Last updated: 2026-10-16

Purpose
- Validate graph-level scheduling with a recording launch function in place of
  real pipelines.

What this test file should cover
- Ready items are admitted in listing order up to the concurrency cap.
- Completion and stuck callbacks are idempotent and ignored once the project finished.
- Rejected launches go back to pending, also when the launch raises; empty and
  all-skipped projects.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

import pytest

from dispatch_orchestrator.control_plane.notify import Notifier
from dispatch_orchestrator.control_plane.orchestrator import ProjectOrchestrator
from dispatch_orchestrator.domain.models import (
    DispatchRecord,
    DispatchStatus,
    ProjectStatus,
    RawItem,
    Relation,
    RelationType,
    WorkItem,
    WorkItemStatus,
)
from dispatch_orchestrator.integration_plane.interfaces import (
    NotifyKind,
    NotifyPayload,
    TrackerProject,
)
from dispatch_orchestrator.persistence.project_store import ProjectDispatchStore
from dispatch_orchestrator.utils.concurrency import TaskSupervisor


def _raw(identifier: str, *blocked_by: str, labels: tuple[str, ...] = ()) -> RawItem:
    return RawItem(
        identifier=identifier,
        issue_id=f"id-{identifier}",
        title=f"Item {identifier}",
        labels=labels,
        relations=tuple(Relation(RelationType.BLOCKED_BY, other) for other in blocked_by),
    )


DIAMOND = (_raw("A"), _raw("B", "A"), _raw("C", "A"), _raw("D", "B", "C"))


@dataclass
class FakeTracker:
    projects: dict[str, TrackerProject] = field(default_factory=dict)
    fetches: list[str] = field(default_factory=list)
    updates: list[tuple[str, str]] = field(default_factory=list)

    async def fetch_project(self, project_id: str) -> TrackerProject:
        self.fetches.append(project_id)
        return self.projects[project_id]

    async def post_update(self, identifier: str, message: str) -> None:
        self.updates.append((identifier, message))


class Harness:
    def __init__(self, tmp_path: Path, *items: RawItem, max_concurrent: int = 3) -> None:
        self.tracker = FakeTracker(
            {"proj": TrackerProject("proj", "Checkout", tuple(items), root_identifier="ROOT-1")}
        )
        self.store = ProjectDispatchStore(tmp_path / "projects.json")
        self.supervisor = TaskSupervisor()
        self.launched: list[str] = []
        self.reject: set[str] = set()
        self.fail: set[str] = set()
        self.notifications: list[tuple[NotifyKind, NotifyPayload]] = []
        self.orchestrator = ProjectOrchestrator(
            tracker=self.tracker,
            store=self.store,
            launch=self.launch,
            notifier=Notifier(self.notify, self.supervisor),
            default_max_concurrent=max_concurrent,
        )

    async def launch(self, project_id: str, item: WorkItem) -> bool:
        if item.identifier in self.reject:
            return False
        if item.identifier in self.fail:
            raise OSError(f"cannot spawn pipeline for {item.identifier}")
        self.launched.append(item.identifier)
        return True

    async def notify(self, kind: NotifyKind, payload: NotifyPayload) -> None:
        self.notifications.append((kind, payload))

    def statuses(self) -> dict[str, WorkItemStatus]:
        state = self.store.read_project_dispatch("proj")
        assert state is not None
        return {key: item.status for key, item in state.issues.items()}

    def project_status(self) -> ProjectStatus:
        state = self.store.read_project_dispatch("proj")
        assert state is not None
        return state.status


@pytest.mark.unit
@pytest.mark.asyncio
async def test_diamond_is_dispatched_in_dependency_order(tmp_path: Path) -> None:
    harness = Harness(tmp_path, *DIAMOND)
    orchestrator = harness.orchestrator

    state = await orchestrator.start_project_dispatch("proj")
    assert state is not None
    assert harness.launched == ["A"]

    await orchestrator.on_item_completed("proj", "A")
    assert harness.launched == ["A", "B", "C"]

    await orchestrator.on_item_completed("proj", "B")
    assert harness.launched == ["A", "B", "C"]
    assert harness.statuses()["D"] is WorkItemStatus.PENDING

    await orchestrator.on_item_completed("proj", "C")
    assert harness.launched == ["A", "B", "C", "D"]

    await orchestrator.on_item_completed("proj", "D")
    await harness.supervisor.join(timeout_seconds=1.0)

    assert harness.project_status() is ProjectStatus.COMPLETED
    assert harness.tracker.updates == [
        ("ROOT-1", "Project dispatch completed: 4/4 complete.")
    ]
    kinds = [kind for kind, _ in harness.notifications]
    assert kinds.count(NotifyKind.PROJECT_PROGRESS) == 3
    assert kinds[-1] is NotifyKind.PROJECT_COMPLETE


@pytest.mark.unit
@pytest.mark.asyncio
async def test_duplicate_callbacks_are_no_ops(tmp_path: Path) -> None:
    harness = Harness(tmp_path, *DIAMOND)
    await harness.orchestrator.start_project_dispatch("proj")
    await harness.orchestrator.on_item_completed("proj", "A")

    await harness.orchestrator.on_item_completed("proj", "A")
    await harness.orchestrator.on_item_completed("proj", "UNKNOWN")

    assert harness.launched == ["A", "B", "C"]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_concurrency_cap_limits_each_round(tmp_path: Path) -> None:
    harness = Harness(tmp_path, *(_raw(f"T-{index}") for index in range(5)), max_concurrent=2)

    await harness.orchestrator.start_project_dispatch("proj")
    assert harness.launched == ["T-0", "T-1"]

    await harness.orchestrator.on_item_completed("proj", "T-1")
    assert harness.launched == ["T-0", "T-1", "T-2"]
    assert await harness.orchestrator.dispatch_ready_issues("proj") == []


@pytest.mark.unit
@pytest.mark.asyncio
async def test_explicit_max_concurrent_overrides_default(tmp_path: Path) -> None:
    harness = Harness(tmp_path, *(_raw(f"T-{index}") for index in range(5)), max_concurrent=2)

    state = await harness.orchestrator.start_project_dispatch("proj", max_concurrent=4)

    assert state is not None
    assert state.max_concurrent == 4
    assert len(harness.launched) == 4


@pytest.mark.unit
@pytest.mark.asyncio
async def test_rejected_launch_is_reverted_to_pending(tmp_path: Path) -> None:
    harness = Harness(tmp_path, _raw("A"), _raw("B"))
    harness.reject.add("B")

    await harness.orchestrator.start_project_dispatch("proj")

    assert harness.launched == ["A"]
    assert harness.statuses() == {"A": WorkItemStatus.DISPATCHED, "B": WorkItemStatus.PENDING}

    harness.reject.clear()
    assert await harness.orchestrator.dispatch_ready_issues("proj") == ["B"]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_raising_launch_releases_unlaunched_claims(tmp_path: Path) -> None:
    harness = Harness(tmp_path, _raw("A"), _raw("B"), _raw("C"))
    harness.fail.add("B")

    with pytest.raises(OSError, match="cannot spawn pipeline for B"):
        await harness.orchestrator.start_project_dispatch("proj")

    assert harness.launched == ["A"]
    assert harness.statuses() == {
        "A": WorkItemStatus.DISPATCHED,
        "B": WorkItemStatus.PENDING,
        "C": WorkItemStatus.PENDING,
    }

    # A restarted process resumes the project and picks the released items up.
    harness.fail.clear()
    restarted = ProjectOrchestrator(
        tracker=harness.tracker,
        store=ProjectDispatchStore(harness.store.path),
        launch=harness.launch,
        notifier=Notifier(harness.notify, harness.supervisor),
    )
    resumed = await restarted.start_project_dispatch("proj")

    assert resumed is not None
    assert harness.launched == ["A", "B", "C"]
    assert set(harness.statuses().values()) == {WorkItemStatus.DISPATCHED}


@pytest.mark.unit
@pytest.mark.asyncio
async def test_stuck_item_blocks_descendants_and_sticks_project(tmp_path: Path) -> None:
    harness = Harness(tmp_path, *DIAMOND)
    await harness.orchestrator.start_project_dispatch("proj")

    await harness.orchestrator.on_item_stuck("proj", "A")
    await harness.supervisor.join(timeout_seconds=1.0)

    assert harness.project_status() is ProjectStatus.STUCK
    assert harness.launched == ["A"]
    kind, payload = harness.notifications[-1]
    assert kind is NotifyKind.PROJECT_STUCK
    assert payload.reason == "stuck: A"
    assert harness.tracker.updates[-1][1].endswith("stuck items: A.")

    await harness.orchestrator.on_item_completed("proj", "A")
    assert harness.project_status() is ProjectStatus.STUCK


@pytest.mark.unit
@pytest.mark.asyncio
async def test_stuck_branch_lets_independent_work_continue(tmp_path: Path) -> None:
    harness = Harness(tmp_path, _raw("A"), _raw("B", "A"), _raw("C"))
    await harness.orchestrator.start_project_dispatch("proj")
    assert harness.launched == ["A", "C"]

    await harness.orchestrator.on_item_stuck("proj", "A")
    assert harness.project_status() is ProjectStatus.DISPATCHING

    await harness.orchestrator.on_item_completed("proj", "C")
    assert harness.project_status() is ProjectStatus.STUCK
    assert harness.statuses()["B"] is WorkItemStatus.PENDING


@pytest.mark.unit
@pytest.mark.asyncio
async def test_terminal_records_map_onto_callbacks(tmp_path: Path) -> None:
    harness = Harness(tmp_path, _raw("A"), _raw("B", "A"))
    await harness.orchestrator.start_project_dispatch("proj")

    await harness.orchestrator.handle_terminal(
        DispatchRecord(identifier="A", issue_id="id-A", status=DispatchStatus.FAILED, project_id="proj")
    )
    await harness.orchestrator.handle_terminal(
        DispatchRecord(identifier="B", issue_id="id-B", status=DispatchStatus.DONE)
    )

    assert harness.statuses()["A"] is WorkItemStatus.STUCK
    assert harness.project_status() is ProjectStatus.STUCK


@pytest.mark.unit
@pytest.mark.asyncio
async def test_all_skipped_project_completes_immediately(tmp_path: Path) -> None:
    harness = Harness(tmp_path, _raw("EPIC-1", labels=("Epic",)), _raw("EPIC-2", labels=("epic",)))

    state = await harness.orchestrator.start_project_dispatch("proj")
    await harness.supervisor.join(timeout_seconds=1.0)

    assert state is not None
    assert state.status is ProjectStatus.COMPLETED
    assert harness.launched == []
    assert harness.tracker.updates == [("ROOT-1", "Project dispatch completed: 0/0 complete.")]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_empty_project_is_not_started(tmp_path: Path) -> None:
    harness = Harness(tmp_path)

    assert await harness.orchestrator.start_project_dispatch("proj") is None
    assert harness.store.read_project_dispatch("proj") is None


@pytest.mark.unit
@pytest.mark.asyncio
async def test_restart_resumes_a_dispatching_project(tmp_path: Path) -> None:
    harness = Harness(tmp_path, *DIAMOND)
    await harness.orchestrator.start_project_dispatch("proj")

    resumed = await harness.orchestrator.start_project_dispatch("proj")

    assert resumed is not None
    assert harness.tracker.fetches == ["proj"]
    assert harness.launched == ["A"]


@pytest.mark.unit
def test_default_max_concurrent_must_be_positive(tmp_path: Path) -> None:
    with pytest.raises(ValueError, match="default_max_concurrent must be > 0"):
        Harness(tmp_path, max_concurrent=0)
