"""
dispatch-orchestrator — runtime wiring tests

File: tests/unit/control_plane/test_runtime.py
Last updated: 2026-10-16

Purpose
- Drive a whole project through the wired runtime: trigger, dependency-ordered
  dispatch, pipeline, terminal callbacks and the final tracker update.

What this test file should cover
- Config to settings translation.
- A diamond project completing in dependency order.
- A stuck item blocking its dependants and finishing the project as stuck.
- Shutdown cancelling the monitor task.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

import pytest

from dispatch_orchestrator.config.schema import default_config, merge_config
from dispatch_orchestrator.control_plane.dispatcher import TriggerAction, TriggerEvent, TriggerResult
from dispatch_orchestrator.control_plane.runtime import build_runtime, settings_from_config
from dispatch_orchestrator.domain.models import DispatchStatus, ProjectStatus, WorkItemStatus
from dispatch_orchestrator.integration_plane.interfaces import (
    AuditVerdict,
    NotifyKind,
    NotifyPayload,
    WorkOutcome,
    WorkRequest,
)
from dispatch_orchestrator.integration_plane.manifest import (
    ManifestIssueTracker,
    parse_project_manifest,
)
from dispatch_orchestrator.utils.concurrency import ActivityMonitor

DIAMOND = {
    "project": {"id": "proj-diamond", "name": "Diamond", "root": "ROOT-1"},
    "items": [
        {"identifier": "ROOT-1", "labels": ["Epic"]},
        {"identifier": "A", "blocks": ["B", "C"]},
        {"identifier": "B", "blocks": ["D"]},
        {"identifier": "C"},
        {"identifier": "D", "blocked_by": ["C"]},
    ],
}


@dataclass
class RecordingExecutor:
    failing: set[str] = field(default_factory=set)
    work: list[tuple[str, int]] = field(default_factory=list)

    async def run_work(self, request: WorkRequest, activity: ActivityMonitor) -> WorkOutcome:
        self.work.append((request.identifier, request.attempt))
        activity.touch()
        return WorkOutcome(success=True, output=f"worked on {request.identifier}")

    async def run_audit(self, request: WorkRequest, outcome: WorkOutcome) -> AuditVerdict:
        if request.identifier in self.failing:
            return AuditVerdict(passed=False, gaps=("missing tests",))
        return AuditVerdict(passed=True)


class FakeProvisioner:
    async def provision(self, identifier: str, *, issue_id: str) -> str:
        return f"/workspaces/{identifier}"


class Harness:
    def __init__(self, tmp_path: Path, *, failing: set[str] | None = None) -> None:
        config = merge_config(
            default_config(),
            {
                "store": {
                    "state_path": (tmp_path / "dispatch-state.json").as_posix(),
                    "project_state_path": (tmp_path / "project-state.json").as_posix(),
                }
            },
        )
        self.settings = settings_from_config(config)
        self.tracker = ManifestIssueTracker([parse_project_manifest(DIAMOND)])
        self.executor = RecordingExecutor(failing=failing or set())
        self.notifications: list[tuple[NotifyKind, NotifyPayload]] = []
        self.runtime = build_runtime(
            self.settings,
            tracker=self.tracker,
            executor=self.executor,
            provisioner=FakeProvisioner(),
            notify=self.notify,
        )

    async def notify(self, kind: NotifyKind, payload: NotifyPayload) -> None:
        self.notifications.append((kind, payload))

    async def start(self) -> TriggerResult:
        return await self.runtime.dispatcher.handle_trigger(
            TriggerEvent(
                action=TriggerAction.START_PROJECT,
                project_id="proj-diamond",
                event_id="evt-start",
            )
        )


@pytest.mark.unit
def test_settings_from_config_uses_defaults(tmp_path: Path) -> None:
    settings = Harness(tmp_path).settings

    assert settings.state_path == tmp_path / "dispatch-state.json"
    assert settings.max_concurrent == 3
    assert settings.skip_label_pattern == "epic"
    assert settings.pipeline.max_rework_attempts == 2
    assert settings.guard.stale_dispatch_seconds == 1800.0
    assert settings.maintenance.stale_dispatch_seconds == 7200.0


@pytest.mark.unit
def test_runtime_settings_validate() -> None:
    with pytest.raises(ValueError, match="max_concurrent must be > 0"):
        settings_from_config(
            merge_config(default_config(), {"dispatch": {"max_concurrent": 0}})
        )


@pytest.mark.unit
@pytest.mark.asyncio
async def test_diamond_project_completes_in_dependency_order(tmp_path: Path) -> None:
    harness = Harness(tmp_path)

    assert await harness.start() is TriggerResult.ACCEPTED
    await harness.runtime.drain(timeout_seconds=5.0)

    order = [identifier for identifier, _ in harness.executor.work]
    assert order[0] == "A"
    assert sorted(order[1:3]) == ["B", "C"]
    assert order[3] == "D"

    state = harness.runtime.project_store.read_project_dispatch("proj-diamond")
    assert state is not None
    assert state.status is ProjectStatus.COMPLETED
    assert state.issues["ROOT-1"].status is WorkItemStatus.SKIPPED
    assert all(
        state.issues[key].status is WorkItemStatus.DONE for key in ("A", "B", "C", "D")
    )
    assert harness.runtime.store.list_active_dispatches() == []
    assert harness.tracker.updates[-1] == (
        "ROOT-1",
        "Project dispatch completed: 4/4 complete.",
    )
    assert [kind for kind, _ in harness.notifications].count(NotifyKind.PROJECT_COMPLETE) == 1
    assert not harness.runtime.guard.is_active("D")


@pytest.mark.unit
@pytest.mark.asyncio
async def test_stuck_item_blocks_dependants_and_finishes_project_stuck(tmp_path: Path) -> None:
    harness = Harness(tmp_path, failing={"C"})

    await harness.start()
    await harness.runtime.drain(timeout_seconds=5.0)

    assert [attempt for identifier, attempt in harness.executor.work if identifier == "C"] == [0, 1, 2]
    assert "D" not in [identifier for identifier, _ in harness.executor.work]

    completed = harness.runtime.store.get_completed_dispatch("C")
    assert completed is not None
    assert completed.status is DispatchStatus.STUCK
    assert completed.stuck_reason == "audit_failed_3x"

    state = harness.runtime.project_store.read_project_dispatch("proj-diamond")
    assert state is not None
    assert state.status is ProjectStatus.STUCK
    assert state.issues["D"].status is WorkItemStatus.PENDING
    assert harness.tracker.updates[-1] == (
        "ROOT-1",
        "Project dispatch stuck at 2/4 complete; stuck items: C.",
    )


@pytest.mark.unit
@pytest.mark.asyncio
async def test_duplicate_start_delivery_is_ignored(tmp_path: Path) -> None:
    harness = Harness(tmp_path)

    assert await harness.start() is TriggerResult.ACCEPTED
    assert await harness.start() is TriggerResult.DUPLICATE
    await harness.runtime.drain(timeout_seconds=5.0)

    assert [identifier for identifier, _ in harness.executor.work].count("A") == 1


@pytest.mark.unit
@pytest.mark.asyncio
async def test_shutdown_cancels_monitor(tmp_path: Path) -> None:
    harness = Harness(tmp_path)

    task = harness.runtime.start_monitor()
    assert harness.runtime.supervisor.active_count == 1

    await harness.runtime.shutdown()

    assert harness.runtime.cancel_token.is_cancelled
    assert task.done()
    assert harness.runtime.supervisor.active_count == 0
