"""
dispatch-orchestrator — runtime wiring.

File: src/dispatch_orchestrator/control_plane/runtime.py
Last updated: 2026-10-16

Purpose
- Build the stores, guard, dispatcher, orchestrator and monitor from one
  validated configuration and hand them back as a single runtime object.

Functional requirements
- Exactly one guard and one task supervisor per runtime; every component that
  needs them receives the same instance.
- Terminal records from pipelines and from the monitor both reach the
  project orchestrator.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog

from dispatch_orchestrator.control_plane.dispatcher import Dispatcher
from dispatch_orchestrator.control_plane.guard import ConcurrencyGuard, GuardSettings
from dispatch_orchestrator.control_plane.monitor import DispatchMonitor, MaintenanceSettings
from dispatch_orchestrator.control_plane.notify import Notifier
from dispatch_orchestrator.control_plane.orchestrator import ProjectOrchestrator
from dispatch_orchestrator.control_plane.pipeline import PipelineSettings
from dispatch_orchestrator.persistence.dispatch_store import DispatchStateStore
from dispatch_orchestrator.persistence.file_lock import LockOptions
from dispatch_orchestrator.persistence.project_store import ProjectDispatchStore
from dispatch_orchestrator.utils.concurrency import CancellationToken, TaskSupervisor

if TYPE_CHECKING:
    import asyncio

    from dispatch_orchestrator.integration_plane.interfaces import (
        IssueTrackerClient,
        NotifyFn,
        WorkExecutor,
        WorkspaceProvisioner,
    )


@dataclass(frozen=True, slots=True)
class RuntimeSettings:
    state_path: Path
    project_state_path: Path
    max_concurrent: int = 3
    skip_label_pattern: str = "epic"
    max_processed_events: int = 200
    lock: LockOptions = field(default_factory=LockOptions)
    pipeline: PipelineSettings = field(default_factory=PipelineSettings)
    guard: GuardSettings = field(default_factory=GuardSettings)
    maintenance: MaintenanceSettings = field(default_factory=MaintenanceSettings)

    def __post_init__(self) -> None:
        if self.max_concurrent <= 0:
            raise ValueError("max_concurrent must be > 0")
        if self.max_processed_events <= 0:
            raise ValueError("max_processed_events must be > 0")


def settings_from_config(config: Mapping[str, Any]) -> RuntimeSettings:
    """Translate a validated config mapping into runtime settings."""

    dispatch = config["dispatch"]
    watchdog = config["watchdog"]
    guard = config["guard"]
    store = config["store"]
    maintenance = config["maintenance"]
    return RuntimeSettings(
        state_path=Path(store["state_path"]),
        project_state_path=Path(store["project_state_path"]),
        max_concurrent=dispatch["max_concurrent"],
        skip_label_pattern=dispatch["skip_label_pattern"],
        max_processed_events=store["max_processed_events"],
        lock=LockOptions(
            stale_seconds=store["lock_stale_seconds"],
            retry_seconds=store["lock_retry_seconds"],
            timeout_seconds=store["lock_timeout_seconds"],
        ),
        pipeline=PipelineSettings(
            max_rework_attempts=dispatch["max_rework_attempts"],
            inactivity_seconds=watchdog["inactivity_seconds"],
            max_total_seconds=watchdog["max_total_seconds"],
        ),
        guard=GuardSettings(
            dedup_ttl_seconds=guard["dedup_ttl_seconds"],
            sweep_interval_seconds=guard["sweep_interval_seconds"],
            stale_dispatch_seconds=guard["stale_dispatch_seconds"],
        ),
        maintenance=MaintenanceSettings(
            interval_seconds=maintenance["interval_seconds"],
            stale_dispatch_seconds=maintenance["stale_dispatch_seconds"],
            zombie_dispatch_seconds=maintenance["zombie_dispatch_seconds"],
            completed_retention_seconds=maintenance["completed_retention_seconds"],
        ),
    )


@dataclass(slots=True)
class DispatchRuntime:
    settings: RuntimeSettings
    store: DispatchStateStore
    project_store: ProjectDispatchStore
    guard: ConcurrencyGuard
    supervisor: TaskSupervisor
    notifier: Notifier
    dispatcher: Dispatcher
    orchestrator: ProjectOrchestrator
    monitor: DispatchMonitor
    cancel_token: CancellationToken
    logger: Any = None

    def start_monitor(self) -> asyncio.Task[None]:
        """Run the maintenance loop as a supervised background task."""

        return self.supervisor.spawn(self.monitor.run(self.cancel_token), name="dispatch-monitor")

    async def drain(self, timeout_seconds: float | None = None) -> None:
        """Wait for every in-flight pipeline and notification to finish."""

        await self.supervisor.join(timeout_seconds)

    async def shutdown(self) -> None:
        """
        Signal cancellation and cancel every supervised task.

        Pipelines interrupted here leave their records active; the next
        admission of the same identifier reclaims them once they are stale.
        """

        self.cancel_token.cancel()
        await self.supervisor.shutdown()
        if self.logger is not None:
            self.logger.info("runtime_stopped", active=len(self.store.list_active_dispatches()))


def build_runtime(
    settings: RuntimeSettings,
    *,
    tracker: IssueTrackerClient,
    executor: WorkExecutor,
    provisioner: WorkspaceProvisioner,
    notify: NotifyFn | None = None,
    logger: Any | None = None,
) -> DispatchRuntime:
    log = logger if logger is not None else structlog.get_logger(__name__)
    cancel_token = CancellationToken()
    supervisor = TaskSupervisor(logger=log)
    notifier = Notifier(notify, supervisor, logger=log)
    store = DispatchStateStore(
        settings.state_path,
        lock_options=settings.lock,
        max_processed_events=settings.max_processed_events,
        logger=log,
    )
    project_store = ProjectDispatchStore(
        settings.project_state_path, lock_options=settings.lock, logger=log
    )
    guard = ConcurrencyGuard(settings.guard, logger=log)
    dispatcher = Dispatcher(
        store=store,
        guard=guard,
        supervisor=supervisor,
        executor=executor,
        provisioner=provisioner,
        notifier=notifier,
        settings=settings.pipeline,
        tracker=tracker,
        cancel_token=cancel_token,
        logger=log,
    )
    orchestrator = ProjectOrchestrator(
        tracker=tracker,
        store=project_store,
        launch=dispatcher.launch,
        notifier=notifier,
        skip_label_pattern=settings.skip_label_pattern,
        default_max_concurrent=settings.max_concurrent,
        logger=log,
    )
    dispatcher.attach_orchestrator(orchestrator)
    monitor = DispatchMonitor(
        store=store,
        guard=guard,
        notifier=notifier,
        on_terminal=orchestrator.handle_terminal,
        settings=settings.maintenance,
        logger=log,
    )
    log.info(
        "runtime_built",
        state_path=str(settings.state_path),
        project_state_path=str(settings.project_state_path),
        max_concurrent=settings.max_concurrent,
    )
    return DispatchRuntime(
        settings=settings,
        store=store,
        project_store=project_store,
        guard=guard,
        supervisor=supervisor,
        notifier=notifier,
        dispatcher=dispatcher,
        orchestrator=orchestrator,
        monitor=monitor,
        cancel_token=cancel_token,
        logger=log,
    )


__all__ = ["DispatchRuntime", "RuntimeSettings", "build_runtime", "settings_from_config"]
