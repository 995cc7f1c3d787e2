from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from dispatch_orchestrator.control_plane.guard import ConcurrencyGuard
from dispatch_orchestrator.control_plane.monitor import DispatchMonitor, MaintenanceSettings
from dispatch_orchestrator.control_plane.notify import Notifier
from dispatch_orchestrator.domain.models import DispatchRecord, DispatchStatus
from dispatch_orchestrator.integration_plane.interfaces import NotifyKind, NotifyPayload
from dispatch_orchestrator.persistence.dispatch_store import DispatchStateStore
from dispatch_orchestrator.utils.concurrency import CancellationToken, TaskSupervisor

NOW = datetime(2026, 10, 16, 12, 0, tzinfo=UTC)


class Harness:
    def __init__(self, tmp_path: Path, **settings: float) -> None:
        self.store = DispatchStateStore(tmp_path / "dispatch-state.json", clock=lambda: NOW)
        self.guard = ConcurrencyGuard(utc_clock=lambda: NOW)
        self.supervisor = TaskSupervisor()
        self.notifications: list[tuple[NotifyKind, NotifyPayload]] = []
        self.terminal: list[DispatchRecord] = []
        self.monitor = DispatchMonitor(
            store=self.store,
            guard=self.guard,
            notifier=Notifier(self.notify, self.supervisor),
            on_terminal=self.on_terminal,
            settings=MaintenanceSettings(**settings),
            utc_clock=lambda: NOW,
        )

    async def notify(self, kind: NotifyKind, payload: NotifyPayload) -> None:
        self.notifications.append((kind, payload))

    async def on_terminal(self, record: DispatchRecord) -> None:
        self.terminal.append(record)

    def register(self, identifier: str, age: timedelta) -> None:
        self.store.register_dispatch(
            DispatchRecord(
                identifier=identifier,
                issue_id=f"id-{identifier}",
                status=DispatchStatus.WORKING,
                dispatched_at=NOW - age,
                project_id="checkout",
            )
        )


@pytest.mark.unit
@pytest.mark.asyncio
async def test_tick_escalates_stale_and_zombie_dispatches(tmp_path: Path) -> None:
    harness = Harness(tmp_path)
    harness.register("STALE", timedelta(hours=3, minutes=20))
    harness.register("ZOMBIE", timedelta(minutes=45))
    harness.register("FRESH", timedelta(minutes=5))

    report = await harness.monitor.tick()
    await harness.supervisor.join(timeout_seconds=1.0)

    assert sorted(report.escalated) == [("STALE", "stale_3h"), ("ZOMBIE", "zombie_session")]
    assert harness.store.get_completed_dispatch("STALE").status is DispatchStatus.STUCK  # type: ignore[union-attr]
    assert harness.store.get_active_dispatch("FRESH") is not None
    assert sorted(record.identifier for record in harness.terminal) == ["STALE", "ZOMBIE"]
    assert {kind for kind, _ in harness.notifications} == {NotifyKind.ESCALATION}


@pytest.mark.unit
@pytest.mark.asyncio
async def test_tick_skips_dispatches_owned_by_this_process(tmp_path: Path) -> None:
    harness = Harness(tmp_path)
    assert harness.guard.try_admit("OWNED", harness.store).admitted
    harness.register("OWNED", timedelta(hours=5))

    report = await harness.monitor.tick()

    assert report.escalated == ()
    assert harness.store.get_active_dispatch("OWNED") is not None


@pytest.mark.unit
@pytest.mark.asyncio
async def test_tick_prunes_completed_past_retention(tmp_path: Path) -> None:
    harness = Harness(tmp_path, completed_retention_seconds=3600.0)
    harness.register("OLD", timedelta(days=1))
    harness.store.complete_dispatch("OLD", DispatchStatus.DONE)

    later = DispatchMonitor(
        store=harness.store,
        guard=harness.guard,
        notifier=Notifier(None, harness.supervisor),
        settings=MaintenanceSettings(completed_retention_seconds=3600.0),
        utc_clock=lambda: NOW + timedelta(hours=2),
    )
    report = await later.tick()

    assert report.pruned == 1
    assert harness.store.get_completed_dispatch("OLD") is None


@pytest.mark.unit
@pytest.mark.asyncio
async def test_run_stops_when_token_is_cancelled(tmp_path: Path) -> None:
    harness = Harness(tmp_path, interval_seconds=0.01)
    harness.register("ZOMBIE", timedelta(hours=1))
    token = CancellationToken()

    task = asyncio.create_task(harness.monitor.run(token))
    await asyncio.sleep(0.05)
    token.cancel()
    await asyncio.wait_for(task, timeout=1.0)

    assert [record.identifier for record in harness.terminal] == ["ZOMBIE"]


@pytest.mark.unit
def test_maintenance_settings_validate() -> None:
    with pytest.raises(ValueError, match="zombie_dispatch_seconds must be > 0"):
        MaintenanceSettings(zombie_dispatch_seconds=0)
