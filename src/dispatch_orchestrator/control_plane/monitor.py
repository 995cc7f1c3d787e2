"""Periodic maintenance of the dispatch store: escalation of abandoned dispatches and pruning."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import structlog

from dispatch_orchestrator.domain.models import DispatchStatus, utc_now
from dispatch_orchestrator.integration_plane.interfaces import NotifyKind, NotifyPayload
from dispatch_orchestrator.persistence.dispatch_store import DEFAULT_COMPLETED_RETENTION_SECONDS
from dispatch_orchestrator.utils.concurrency import run_with_timeout

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import datetime

    from dispatch_orchestrator.control_plane.guard import ConcurrencyGuard
    from dispatch_orchestrator.control_plane.notify import Notifier
    from dispatch_orchestrator.control_plane.pipeline import TerminalCallback
    from dispatch_orchestrator.domain.models import DispatchRecord
    from dispatch_orchestrator.persistence.dispatch_store import DispatchStateStore
    from dispatch_orchestrator.utils.concurrency import CancellationToken


@dataclass(frozen=True, slots=True)
class MaintenanceSettings:
    interval_seconds: float = 300.0
    stale_dispatch_seconds: float = 2 * 60 * 60.0
    zombie_dispatch_seconds: float = 30 * 60.0
    completed_retention_seconds: float = DEFAULT_COMPLETED_RETENTION_SECONDS

    def __post_init__(self) -> None:
        for name in (
            "interval_seconds",
            "stale_dispatch_seconds",
            "zombie_dispatch_seconds",
            "completed_retention_seconds",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be > 0")


@dataclass(frozen=True, slots=True)
class TickReport:
    escalated: tuple[tuple[str, str], ...] = ()
    pruned: int = 0


class DispatchMonitor:
    """
    Escalates active dispatches that no execution in this process owns.

    Records older than ``stale_dispatch_seconds`` are stuck with
    ``stale_<hours>h``; younger ones past ``zombie_dispatch_seconds`` with
    ``zombie_session``. Escalated records are handed to ``on_terminal`` so the
    owning project sees them as stuck items.
    """

    def __init__(
        self,
        *,
        store: DispatchStateStore,
        guard: ConcurrencyGuard,
        notifier: Notifier,
        on_terminal: TerminalCallback | None = None,
        settings: MaintenanceSettings | None = None,
        utc_clock: Callable[[], datetime] = utc_now,
        logger: Any | None = None,
    ) -> None:
        self._store = store
        self._guard = guard
        self._notifier = notifier
        self._on_terminal = on_terminal
        self._settings = settings or MaintenanceSettings()
        self._utc_clock = utc_clock
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def settings(self) -> MaintenanceSettings:
        return self._settings

    async def tick(self) -> TickReport:
        now = self._utc_clock()
        escalated: list[tuple[str, str]] = []
        for record in self._store.list_active_dispatches():
            if self._guard.is_active(record.identifier):
                continue
            reason = self._escalation_reason(record, now)
            if reason is None:
                continue

            completed = self._store.complete_dispatch(
                record.identifier, DispatchStatus.STUCK, {"stuck_reason": reason}
            )
            if completed is None:
                continue
            escalated.append((completed.identifier, reason))
            self._logger.warning(
                "dispatch_escalated",
                identifier=completed.identifier,
                project_id=completed.project_id,
                stuck_reason=reason,
                previous_status=record.status.value,
            )
            self._notifier.fire(
                NotifyKind.ESCALATION,
                NotifyPayload(
                    identifier=completed.identifier,
                    title=completed.title,
                    status=completed.status.value,
                    attempt=completed.attempt,
                    reason=reason,
                ),
            )
            if self._on_terminal is not None:
                await self._on_terminal(completed)

        pruned = self._store.prune_completed(self._settings.completed_retention_seconds, now=now)
        return TickReport(escalated=tuple(escalated), pruned=pruned)

    async def run(self, token: CancellationToken) -> None:
        """Tick every ``interval_seconds`` until ``token`` is cancelled."""

        self._logger.info("monitor_started", interval_seconds=self._settings.interval_seconds)
        while not token.is_cancelled:
            try:
                report = await self.tick()
            except Exception as exc:  # noqa: BLE001 - one failed tick must not stop maintenance.
                self._logger.error("monitor_tick_failed", error=repr(exc))
            else:
                if report.escalated or report.pruned:
                    self._logger.info(
                        "monitor_tick",
                        escalated=len(report.escalated),
                        pruned=report.pruned,
                    )
            try:
                await run_with_timeout(token.wait(), self._settings.interval_seconds)
            except TimeoutError:
                continue
        self._logger.info("monitor_stopped")

    def _escalation_reason(self, record: DispatchRecord, now: datetime) -> str | None:
        age = record.age_seconds(now)
        if age > self._settings.stale_dispatch_seconds:
            return f"stale_{int(age // 3600)}h"
        if age > self._settings.zombie_dispatch_seconds:
            return "zombie_session"
        return None


__all__ = ["DispatchMonitor", "MaintenanceSettings", "TickReport"]
