"""Fire-and-forget delivery of lifecycle notifications."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from dispatch_orchestrator.integration_plane.interfaces import (
        NotifyFn,
        NotifyKind,
        NotifyPayload,
    )
    from dispatch_orchestrator.utils.concurrency import TaskSupervisor


class Notifier:
    """Schedules each notification as a supervised task; delivery errors are logged only."""

    def __init__(
        self,
        notify: NotifyFn | None,
        supervisor: TaskSupervisor,
        *,
        logger: Any | None = None,
    ) -> None:
        self._notify = notify
        self._supervisor = supervisor
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def fire(self, kind: NotifyKind, payload: NotifyPayload) -> None:
        if self._notify is None:
            return
        self._supervisor.spawn(
            self._deliver(kind, payload),
            name=f"notify:{kind.value}:{payload.identifier}",
        )

    async def _deliver(self, kind: NotifyKind, payload: NotifyPayload) -> None:
        assert self._notify is not None
        try:
            await self._notify(kind, payload)
        except Exception as exc:  # noqa: BLE001 - notification sinks must never affect dispatch.
            self._logger.warning(
                "notify_failed",
                kind=kind.value,
                identifier=payload.identifier,
                error=repr(exc),
            )


__all__ = ["Notifier"]
