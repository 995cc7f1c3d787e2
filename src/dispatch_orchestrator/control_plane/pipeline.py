"""
dispatch-orchestrator — inner execution pipeline.

File: src/dispatch_orchestrator/control_plane/pipeline.py
Last updated: 2026-10-16

Purpose
- Drive one DispatchRecord through ``dispatched -> working -> auditing`` until it
  reaches ``done``, ``stuck`` or ``failed``.

Functional requirements
- Every status change is a compare-and-swap against the persisted record.
- A silent work invocation is killed by the inactivity watchdog and retried once
  within the same attempt; a second kill ends the dispatch as ``stuck``.
- A failed audit schedules a rework with ``attempt + 1`` until the rework bound is
  exhausted, after which the dispatch ends as ``stuck``.
- Any other exception ends the dispatch as ``failed`` with ``error:<ExceptionType>``.
- The terminal callback fires exactly once, after the record has moved to the
  completed namespace. It does not fire when another actor completed the record.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Final

import structlog

from dispatch_orchestrator.domain.models import DispatchStatus, SessionMapping, SessionPhase
from dispatch_orchestrator.integration_plane.interfaces import (
    NotifyKind,
    NotifyPayload,
    WorkRequest,
)
from dispatch_orchestrator.observability.logging import correlation_scope
from dispatch_orchestrator.persistence.dispatch_store import TransitionError
from dispatch_orchestrator.utils.concurrency import (
    InactivityTimeoutError,
    run_with_inactivity_watchdog,
)

if TYPE_CHECKING:
    from dispatch_orchestrator.control_plane.notify import Notifier
    from dispatch_orchestrator.domain.models import DispatchRecord
    from dispatch_orchestrator.integration_plane.interfaces import (
        AuditVerdict,
        IssueTrackerClient,
        WorkExecutor,
        WorkOutcome,
        WorkspaceProvisioner,
    )
    from dispatch_orchestrator.persistence.dispatch_store import DispatchStateStore
    from dispatch_orchestrator.utils.concurrency import ActivityMonitor, CancellationToken

TerminalCallback = Callable[["DispatchRecord"], Awaitable[None]]

WATCHDOG_KILLS_PER_ATTEMPT: Final[int] = 2


@dataclass(frozen=True, slots=True)
class PipelineSettings:
    max_rework_attempts: int = 2
    inactivity_seconds: float = 120.0
    max_total_seconds: float | None = 7200.0

    def __post_init__(self) -> None:
        if self.max_rework_attempts < 0:
            raise ValueError("max_rework_attempts must be >= 0")
        if self.inactivity_seconds <= 0:
            raise ValueError("inactivity_seconds must be > 0")
        if self.max_total_seconds is not None and self.max_total_seconds <= 0:
            raise ValueError("max_total_seconds must be > 0")


def worker_session_ref(identifier: str, attempt: int) -> str:
    return f"worker-{identifier}-{attempt}"


def audit_session_ref(identifier: str, attempt: int) -> str:
    return f"audit-{identifier}-{attempt}"


class InnerExecutionPipeline:
    """Worker/audit state machine for a single registered dispatch record."""

    def __init__(
        self,
        record: DispatchRecord,
        *,
        store: DispatchStateStore,
        executor: WorkExecutor,
        provisioner: WorkspaceProvisioner,
        notifier: Notifier,
        on_terminal: TerminalCallback,
        settings: PipelineSettings | None = None,
        tracker: IssueTrackerClient | None = None,
        cancel_token: CancellationToken | None = None,
        clock: Callable[[], float] = time.monotonic,
        logger: Any | None = None,
    ) -> None:
        self._record = record
        self._store = store
        self._executor = executor
        self._provisioner = provisioner
        self._notifier = notifier
        self._on_terminal = on_terminal
        self._settings = settings or PipelineSettings()
        self._tracker = tracker
        self._cancel_token = cancel_token
        self._clock = clock
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._terminal_fired = False

    @property
    def identifier(self) -> str:
        return self._record.identifier

    async def run(self) -> DispatchRecord | None:
        """
        Execute until a terminal status; returns the completed record.

        ``None`` means another actor completed the dispatch first. Cancellation
        propagates and leaves the record active for staleness reclaim.
        """

        with correlation_scope(
            project_id=self._record.project_id,
            work_item=self._record.identifier,
        ):
            completed = await self._drive()
        if completed is not None:
            await self._fire_terminal(completed)
        return completed

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    async def _drive(self) -> DispatchRecord | None:
        identifier = self._record.identifier
        try:
            return await self._execute()
        except asyncio.CancelledError:
            self._logger.warning("pipeline_cancelled", identifier=identifier)
            raise
        except TransitionError as exc:
            if exc.actual is None:
                self._logger.warning(
                    "pipeline_superseded",
                    identifier=identifier,
                    expected=exc.expected.value,
                    target=exc.target.value,
                )
                return None
            return await self._fail(exc)
        except Exception as exc:
            return await self._fail(exc)

    async def _execute(self) -> DispatchRecord | None:
        record = self._record
        identifier = record.identifier

        workspace_ref = record.workspace_ref
        if workspace_ref is None:
            workspace_ref = await self._provisioner.provision(identifier, issue_id=record.issue_id)
            self._logger.info(
                "workspace_provisioned", identifier=identifier, workspace_ref=workspace_ref
            )

        from_status = record.status
        previous_verdict: AuditVerdict | None = None
        while True:
            attempt = record.attempt
            session_ref = worker_session_ref(identifier, attempt)
            record = self._store.transition_dispatch(
                identifier,
                from_status,
                DispatchStatus.WORKING,
                {"workspace_ref": workspace_ref, "session_ref": session_ref},
            )
            self._store.register_session_mapping(
                session_ref, SessionMapping(identifier, SessionPhase.WORKER, attempt)
            )
            self._notify(NotifyKind.WORKING, record)

            request = WorkRequest(
                identifier=identifier,
                issue_id=record.issue_id,
                title=record.title,
                attempt=attempt,
                workspace_ref=workspace_ref,
                session_ref=session_ref,
                tier=record.tier,
                model=record.model,
                previous_verdict=previous_verdict,
            )
            try:
                outcome = await self._run_work(request)
            except TimeoutError:
                self._logger.warning(
                    "work_runtime_exceeded",
                    identifier=identifier,
                    attempt=attempt,
                    limit_seconds=self._settings.max_total_seconds,
                )
                return await self._finish(
                    DispatchStatus.WORKING,
                    DispatchStatus.STUCK,
                    stuck_reason="max_runtime_exceeded",
                )
            if outcome is None:
                return await self._finish(
                    DispatchStatus.WORKING,
                    DispatchStatus.STUCK,
                    stuck_reason=f"watchdog_kill_{WATCHDOG_KILLS_PER_ATTEMPT}x",
                )

            audit_ref = audit_session_ref(identifier, attempt)
            record = self._store.transition_dispatch(
                identifier,
                DispatchStatus.WORKING,
                DispatchStatus.AUDITING,
                {"session_ref": audit_ref},
            )
            self._store.register_session_mapping(
                audit_ref, SessionMapping(identifier, SessionPhase.AUDIT, attempt)
            )
            self._notify(NotifyKind.AUDITING, record)

            verdict = await self._executor.run_audit(
                WorkRequest(
                    identifier=identifier,
                    issue_id=record.issue_id,
                    title=record.title,
                    attempt=attempt,
                    workspace_ref=workspace_ref,
                    session_ref=audit_ref,
                    tier=record.tier,
                    model=record.model,
                    previous_verdict=previous_verdict,
                ),
                outcome,
            )
            self._logger.info(
                "audit_verdict",
                identifier=identifier,
                attempt=attempt,
                passed=verdict.passed,
                worker_success=outcome.success,
            )

            if verdict.passed:
                self._notify(NotifyKind.AUDIT_PASS, record, verdict=verdict)
                return await self._finish(
                    DispatchStatus.AUDITING,
                    DispatchStatus.DONE,
                    last_verdict=verdict.render(),
                )

            self._notify(NotifyKind.AUDIT_FAIL, record, verdict=verdict)
            next_attempt = attempt + 1
            if next_attempt > self._settings.max_rework_attempts:
                return await self._finish(
                    DispatchStatus.AUDITING,
                    DispatchStatus.STUCK,
                    stuck_reason=f"audit_failed_{next_attempt}x",
                    last_verdict=verdict.render(),
                )

            record = self._store.transition_dispatch(
                identifier,
                DispatchStatus.AUDITING,
                DispatchStatus.REWORK,
                {"attempt": next_attempt, "last_verdict": verdict.render()},
            )
            self._logger.info("rework_scheduled", identifier=identifier, attempt=next_attempt)
            previous_verdict = verdict
            from_status = DispatchStatus.REWORK

    async def _run_work(self, request: WorkRequest) -> WorkOutcome | None:
        """Run one attempt; ``None`` when the watchdog killed every try."""

        async def invoke(activity: ActivityMonitor) -> WorkOutcome:
            return await self._executor.run_work(request, activity)

        for kill in range(1, WATCHDOG_KILLS_PER_ATTEMPT + 1):
            try:
                return await run_with_inactivity_watchdog(
                    invoke,
                    inactivity_seconds=self._settings.inactivity_seconds,
                    max_total_seconds=self._settings.max_total_seconds,
                    cancel_token=self._cancel_token,
                    clock=self._clock,
                )
            except InactivityTimeoutError as exc:
                self._logger.warning(
                    "watchdog_kill",
                    identifier=request.identifier,
                    attempt=request.attempt,
                    kill=kill,
                    silence_seconds=round(exc.silence_seconds, 1),
                )
                self._notifier.fire(
                    NotifyKind.WATCHDOG_KILL,
                    NotifyPayload(
                        identifier=request.identifier,
                        title=request.title,
                        status=DispatchStatus.WORKING.value,
                        attempt=request.attempt,
                        reason=f"inactive_{int(exc.threshold_seconds)}s",
                    ),
                )
        return None

    # ------------------------------------------------------------------
    # Terminal handling
    # ------------------------------------------------------------------

    async def _finish(
        self,
        from_status: DispatchStatus,
        status: DispatchStatus,
        *,
        stuck_reason: str | None = None,
        last_verdict: str | None = None,
    ) -> DispatchRecord | None:
        updates: dict[str, object] = {}
        if stuck_reason is not None:
            updates["stuck_reason"] = stuck_reason
        if last_verdict is not None:
            updates["last_verdict"] = last_verdict

        # One write: a terminal record never sits in the active namespace.
        completed = self._store.complete_dispatch(
            self._record.identifier, status, updates, from_status=from_status
        )
        if completed is None:
            return None

        if status is DispatchStatus.DONE:
            message = f"Dispatch done after {completed.attempt + 1} attempt(s)."
        else:
            self._notify(NotifyKind.STUCK, completed, reason=stuck_reason)
            message = (
                f"Dispatch stuck after {completed.attempt + 1} attempt(s): {stuck_reason}."
                f" Last verdict: {completed.last_verdict or 'none'}"
            )
        await self._post_update(message)
        return completed

    async def _fail(self, exc: BaseException) -> DispatchRecord | None:
        identifier = self._record.identifier
        reason = f"error:{type(exc).__name__}"
        self._logger.error(
            "pipeline_failed",
            identifier=identifier,
            error=repr(exc),
            stuck_reason=reason,
        )
        completed = self._store.complete_dispatch(
            identifier, DispatchStatus.FAILED, {"stuck_reason": reason}
        )
        if completed is None:
            return None
        self._notify(NotifyKind.FAILED, completed, reason=reason)
        await self._post_update(f"Dispatch failed on attempt {completed.attempt + 1}: {reason}.")
        return completed

    async def _fire_terminal(self, record: DispatchRecord) -> None:
        if self._terminal_fired:
            return
        self._terminal_fired = True
        await self._on_terminal(record)

    async def _post_update(self, message: str) -> None:
        if self._tracker is None:
            return
        try:
            await self._tracker.post_update(self._record.identifier, message)
        except Exception as exc:  # noqa: BLE001 - tracker notes never change the outcome.
            self._logger.warning(
                "tracker_update_failed", identifier=self._record.identifier, error=repr(exc)
            )

    def _notify(
        self,
        kind: NotifyKind,
        record: DispatchRecord,
        *,
        reason: str | None = None,
        verdict: AuditVerdict | None = None,
    ) -> None:
        self._notifier.fire(
            kind,
            NotifyPayload(
                identifier=record.identifier,
                title=record.title,
                status=record.status.value,
                attempt=record.attempt,
                reason=reason,
                verdict=verdict,
            ),
        )


__all__ = [
    "WATCHDOG_KILLS_PER_ATTEMPT",
    "InnerExecutionPipeline",
    "PipelineSettings",
    "TerminalCallback",
    "audit_session_ref",
    "worker_session_ref",
]
