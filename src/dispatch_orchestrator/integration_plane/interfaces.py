"""
dispatch-orchestrator — collaborator contracts.

File: src/dispatch_orchestrator/integration_plane/interfaces.py
Last updated: 2026-10-16

Purpose
- Define the protocols the dispatch core consumes: issue tracker, work executor,
  workspace provisioner and notification sink, plus the value objects they exchange.

Functional requirements
- The core depends only on these protocols; tracker, agent and VCS specifics live in
  implementations outside this package.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from dispatch_orchestrator.domain.models import RawItem
    from dispatch_orchestrator.utils.concurrency import ActivityMonitor


class NotifyKind(StrEnum):
    DISPATCH = "dispatch"
    WORKING = "working"
    AUDITING = "auditing"
    AUDIT_PASS = "audit_pass"
    AUDIT_FAIL = "audit_fail"
    ESCALATION = "escalation"
    STUCK = "stuck"
    FAILED = "failed"
    WATCHDOG_KILL = "watchdog_kill"
    PROJECT_PROGRESS = "project_progress"
    PROJECT_COMPLETE = "project_complete"
    PROJECT_STUCK = "project_stuck"


@dataclass(frozen=True, slots=True)
class AuditVerdict:
    """Outcome of the verification step for one attempt."""

    passed: bool
    summary: str = ""
    gaps: tuple[str, ...] = ()

    def render(self) -> str:
        if self.passed:
            return "pass" if not self.summary else f"pass: {self.summary}"
        detail = "; ".join(self.gaps) or self.summary or "no details"
        return f"fail: {detail}"

    def to_dict(self) -> dict[str, object]:
        return {"pass": self.passed, "summary": self.summary, "gaps": list(self.gaps)}


@dataclass(frozen=True, slots=True)
class NotifyPayload:
    identifier: str
    title: str
    status: str
    attempt: int | None = None
    reason: str | None = None
    verdict: AuditVerdict | None = None

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "identifier": self.identifier,
            "title": self.title,
            "status": self.status,
        }
        if self.attempt is not None:
            payload["attempt"] = self.attempt
        if self.reason is not None:
            payload["reason"] = self.reason
        if self.verdict is not None:
            payload["verdict"] = self.verdict.to_dict()
        return payload


NotifyFn = Callable[[NotifyKind, NotifyPayload], Awaitable[None]]


@dataclass(frozen=True, slots=True)
class TrackerProject:
    project_id: str
    name: str
    items: tuple[RawItem, ...] = ()
    root_identifier: str | None = None


@dataclass(frozen=True, slots=True)
class WorkRequest:
    """Everything a work or audit invocation needs for one attempt."""

    identifier: str
    issue_id: str
    title: str
    attempt: int
    workspace_ref: str
    session_ref: str
    tier: str = "medium"
    model: str | None = None
    previous_verdict: AuditVerdict | None = None


@dataclass(frozen=True, slots=True)
class WorkOutcome:
    success: bool
    output: str = ""
    metadata: dict[str, object] = field(default_factory=dict)


@runtime_checkable
class IssueTrackerClient(Protocol):
    async def fetch_project(self, project_id: str) -> TrackerProject:
        """Return project metadata with every item and its relation edges."""
        ...

    async def post_update(self, identifier: str, message: str) -> None:
        """Post a status/progress note on an item."""
        ...


@runtime_checkable
class WorkExecutor(Protocol):
    async def run_work(self, request: WorkRequest, activity: ActivityMonitor) -> WorkOutcome:
        """
        Perform one attempt of work in ``request.workspace_ref``.

        Implementations call ``activity.touch()`` whenever the underlying agent
        produces observable output; silence beyond the watchdog threshold
        cancels the call.
        """
        ...

    async def run_audit(self, request: WorkRequest, outcome: WorkOutcome) -> AuditVerdict:
        """Verify the attempt. Unparseable audit output must be reported as a failed verdict."""
        ...


@runtime_checkable
class WorkspaceProvisioner(Protocol):
    async def provision(self, identifier: str, *, issue_id: str) -> str:
        """Allocate or reuse an isolated environment and return its opaque reference."""
        ...


__all__ = [
    "AuditVerdict",
    "IssueTrackerClient",
    "NotifyFn",
    "NotifyKind",
    "NotifyPayload",
    "TrackerProject",
    "WorkExecutor",
    "WorkOutcome",
    "WorkRequest",
    "WorkspaceProvisioner",
]
