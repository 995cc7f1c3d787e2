"""
Admission and launch of execution pipelines, plus external trigger handling.

The dispatcher is the single place where an identifier moves from "ready" to
"executing": it asks the guard for admission, registers the dispatch record,
and hands an :class:`InnerExecutionPipeline` to the task supervisor. The guard
slot is released when the pipeline task ends, whatever the outcome.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from enum import StrEnum
from functools import partial
from typing import TYPE_CHECKING, Any

import structlog

from dispatch_orchestrator.control_plane.guard import action_key, session_key, webhook_key
from dispatch_orchestrator.control_plane.pipeline import InnerExecutionPipeline, PipelineSettings
from dispatch_orchestrator.domain.models import DispatchRecord, DispatchStatus, WorkItem
from dispatch_orchestrator.integration_plane.interfaces import NotifyKind, NotifyPayload

if TYPE_CHECKING:
    from collections.abc import Callable

    from dispatch_orchestrator.control_plane.guard import Admission, ConcurrencyGuard
    from dispatch_orchestrator.control_plane.notify import Notifier
    from dispatch_orchestrator.control_plane.orchestrator import ProjectOrchestrator
    from dispatch_orchestrator.integration_plane.interfaces import (
        IssueTrackerClient,
        WorkExecutor,
        WorkspaceProvisioner,
    )
    from dispatch_orchestrator.persistence.dispatch_store import DispatchStateStore
    from dispatch_orchestrator.utils.concurrency import CancellationToken, TaskSupervisor


class TriggerAction(StrEnum):
    START_PROJECT = "start_project"
    DISPATCH_ITEM = "dispatch_item"


class TriggerResult(StrEnum):
    ACCEPTED = "accepted"
    DUPLICATE = "duplicate"
    REJECTED = "rejected"


@dataclass(frozen=True, slots=True)
class TriggerEvent:
    """One external delivery (webhook, session callback or operator command)."""

    action: TriggerAction
    project_id: str | None = None
    identifier: str | None = None
    issue_id: str | None = None
    title: str = ""
    event_id: str | None = None
    session_id: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "action", TriggerAction(self.action))
        if self.action is TriggerAction.START_PROJECT and not self.project_id:
            raise ValueError("project_id is required to start a project dispatch")
        if self.action is TriggerAction.DISPATCH_ITEM and not self.identifier:
            raise ValueError("identifier is required to dispatch an item")

    def dedup_key(self) -> str:
        if self.event_id:
            return webhook_key(self.event_id)
        if self.session_id:
            return session_key(self.session_id)
        target = self.identifier or self.project_id
        assert target is not None
        return action_key(self.action.value, target)

    @property
    def is_delivery(self) -> bool:
        """Whether the key names one concrete delivery rather than a derived action."""

        return bool(self.event_id or self.session_id)


class Dispatcher:
    def __init__(
        self,
        *,
        store: DispatchStateStore,
        guard: ConcurrencyGuard,
        supervisor: TaskSupervisor,
        executor: WorkExecutor,
        provisioner: WorkspaceProvisioner,
        notifier: Notifier,
        settings: PipelineSettings | None = None,
        tracker: IssueTrackerClient | None = None,
        cancel_token: CancellationToken | None = None,
        clock: Callable[[], float] = time.monotonic,
        logger: Any | None = None,
    ) -> None:
        self._store = store
        self._guard = guard
        self._supervisor = supervisor
        self._executor = executor
        self._provisioner = provisioner
        self._notifier = notifier
        self._settings = settings or PipelineSettings()
        self._tracker = tracker
        self._cancel_token = cancel_token
        self._clock = clock
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._orchestrator: ProjectOrchestrator | None = None

    def attach_orchestrator(self, orchestrator: ProjectOrchestrator) -> None:
        """Route terminal records and project triggers to ``orchestrator``."""

        self._orchestrator = orchestrator

    def dispatch(
        self,
        item: WorkItem,
        *,
        project_id: str | None = None,
        tier: str = "medium",
        model: str | None = None,
    ) -> Admission:
        """Admit ``item`` and start its pipeline in the background."""

        identifier = item.identifier
        admission = self._guard.try_admit(identifier, self._store)
        if not admission.admitted:
            return admission

        try:
            record = self._store.register_dispatch(
                DispatchRecord(
                    identifier=identifier,
                    issue_id=item.issue_id,
                    title=item.title,
                    project_id=project_id,
                    tier=tier,
                    model=model,
                )
            )
        except Exception:
            self._guard.release(identifier)
            raise

        self._notifier.fire(
            NotifyKind.DISPATCH,
            NotifyPayload(
                identifier=identifier,
                title=record.title,
                status=record.status.value,
                attempt=record.attempt,
            ),
        )
        pipeline = InnerExecutionPipeline(
            record,
            store=self._store,
            executor=self._executor,
            provisioner=self._provisioner,
            notifier=self._notifier,
            on_terminal=self._route_terminal,
            settings=self._settings,
            tracker=self._tracker,
            cancel_token=self._cancel_token,
            clock=self._clock,
        )
        self._supervisor.spawn(
            pipeline.run(),
            name=f"pipeline:{identifier}",
            on_error=partial(self._on_pipeline_error, identifier),
            on_done=partial(self._guard.release, identifier),
        )
        self._logger.info(
            "dispatch_admitted",
            identifier=identifier,
            project_id=project_id,
            outcome=admission.outcome.value,
        )
        return admission

    async def launch(self, project_id: str, item: WorkItem) -> bool:
        """Launch adapter used by the project orchestrator."""

        return self.dispatch(item, project_id=project_id).admitted

    async def handle_trigger(self, event: TriggerEvent) -> TriggerResult:
        """
        Process an at-least-once delivered trigger.

        The key is checked against the in-memory dedup cache first. Delivery
        keys (event or session ids) are also recorded in the persisted
        processed-event list, so their duplicates are suppressed across
        restarts. Derived action keys only live for the dedup TTL.
        """

        key = event.dedup_key()
        if self._guard.was_recently_processed(key):
            self._logger.info("trigger_duplicate", event_key=key, source="memory")
            return TriggerResult.DUPLICATE
        if event.is_delivery and not self._store.mark_event_processed(key):
            self._logger.info("trigger_duplicate", event_key=key, source="store")
            return TriggerResult.DUPLICATE

        self._logger.info("trigger_accepted", event_key=key, action=event.action.value)
        if event.action is TriggerAction.START_PROJECT:
            if self._orchestrator is None:
                raise RuntimeError("no project orchestrator attached")
            assert event.project_id is not None
            state = await self._orchestrator.start_project_dispatch(event.project_id)
            return TriggerResult.ACCEPTED if state is not None else TriggerResult.REJECTED

        assert event.identifier is not None
        item = WorkItem(
            identifier=event.identifier,
            issue_id=event.issue_id or event.identifier,
            title=event.title,
        )
        admission = self.dispatch(item, project_id=event.project_id)
        return TriggerResult.ACCEPTED if admission.admitted else TriggerResult.REJECTED

    async def _route_terminal(self, record: DispatchRecord) -> None:
        if self._orchestrator is not None:
            await self._orchestrator.handle_terminal(record)

    async def _on_pipeline_error(self, identifier: str, exc: BaseException) -> None:
        reason = f"error:{type(exc).__name__}"
        completed = self._store.complete_dispatch(
            identifier, DispatchStatus.FAILED, {"stuck_reason": reason}
        )
        if completed is not None:
            self._logger.error(
                "pipeline_crashed", identifier=identifier, stuck_reason=reason, error=repr(exc)
            )
            await self._route_terminal(completed)


__all__ = [
    "Dispatcher",
    "TriggerAction",
    "TriggerEvent",
    "TriggerResult",
]
