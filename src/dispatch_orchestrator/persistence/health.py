"""
dispatch-orchestrator — dispatch state diagnostics.

File: src/dispatch_orchestrator/persistence/health.py
Last updated: 2026-10-16

Purpose
- Inspect the persisted dispatch state for conditions an operator should act on.

Functional requirements
- Report stale active records, orphaned workspace references, completed records
  past retention, stale lock markers and dispatches interrupted mid-work.
- In fix mode, prune expired completed records and remove stale lock markers.
  Active records are never modified here.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog

from dispatch_orchestrator.domain.models import utc_now
from dispatch_orchestrator.persistence.dispatch_store import (
    DEFAULT_COMPLETED_RETENTION_SECONDS,
    DispatchStateError,
)
from dispatch_orchestrator.persistence.file_lock import (
    lock_age_seconds,
    lock_path_for,
    remove_stale_lock,
)

if TYPE_CHECKING:
    from datetime import datetime

    from dispatch_orchestrator.domain.models import DispatchState
    from dispatch_orchestrator.persistence.dispatch_store import DispatchStateStore
    from dispatch_orchestrator.persistence.project_store import ProjectDispatchStore


class HealthSeverity(StrEnum):
    OK = "ok"
    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class HealthFinding:
    check: str
    severity: HealthSeverity
    detail: str
    identifiers: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, object]:
        return {
            "check": self.check,
            "severity": self.severity.value,
            "detail": self.detail,
            "identifiers": list(self.identifiers),
        }


@dataclass(frozen=True, slots=True)
class HealthReport:
    findings: tuple[HealthFinding, ...]
    fixed: tuple[str, ...] = ()

    @property
    def healthy(self) -> bool:
        return all(finding.severity is HealthSeverity.OK for finding in self.findings)

    def to_dict(self) -> dict[str, object]:
        return {
            "healthy": self.healthy,
            "findings": [finding.to_dict() for finding in self.findings],
            "fixed": list(self.fixed),
        }


def check_dispatch_health(
    store: DispatchStateStore,
    *,
    project_store: ProjectDispatchStore | None = None,
    stale_dispatch_seconds: float = 2 * 60 * 60.0,
    completed_retention_seconds: float = DEFAULT_COMPLETED_RETENTION_SECONDS,
    lock_stale_seconds: float = 30.0,
    fix: bool = False,
    now: datetime | None = None,
    logger: Any | None = None,
) -> HealthReport:
    """Run every dispatch-state check; with ``fix`` apply the safe remediations."""

    log = logger if logger is not None else structlog.get_logger(__name__)
    reference = utc_now() if now is None else now
    findings: list[HealthFinding] = []
    fixed: list[str] = []

    # Locks are checked before any read; acquiring reclaims stale markers silently.
    state_files = [store.path]
    if project_store is not None:
        state_files.append(project_store.path)
    findings.append(_check_locks(state_files, lock_stale_seconds, fix=fix, fixed=fixed))

    try:
        state = store.read()
    except DispatchStateError as exc:
        findings.append(HealthFinding("state_file", HealthSeverity.ERROR, str(exc)))
        return HealthReport(findings=tuple(findings), fixed=tuple(fixed))
    findings.append(
        HealthFinding(
            "state_file",
            HealthSeverity.OK,
            f"{len(state.active)} active, {len(state.completed)} completed, "
            f"{len(state.processed_events)} processed event(s)",
        )
    )

    findings.append(_check_stale(store, stale_dispatch_seconds, reference))
    findings.append(_check_workspaces(state))

    expired = sorted(
        identifier
        for identifier, record in state.completed.items()
        if ((reference - (record.completed_at or record.dispatched_at)).total_seconds())
        > completed_retention_seconds
    )
    if not expired:
        findings.append(HealthFinding("expired_completed", HealthSeverity.OK, "none"))
    else:
        findings.append(
            HealthFinding(
                "expired_completed",
                HealthSeverity.WARNING,
                f"{len(expired)} completed record(s) past retention",
                tuple(expired),
            )
        )
        if fix:
            pruned = store.prune_completed(completed_retention_seconds, now=reference)
            fixed.append(f"pruned {pruned} completed record(s)")

    recoverable = sorted(record.identifier for record in store.list_recoverable_dispatches())
    if recoverable:
        findings.append(
            HealthFinding(
                "recoverable_dispatches",
                HealthSeverity.WARNING,
                "working dispatches whose audit never started",
                tuple(recoverable),
            )
        )
    else:
        findings.append(HealthFinding("recoverable_dispatches", HealthSeverity.OK, "none"))

    report = HealthReport(findings=tuple(findings), fixed=tuple(fixed))
    log.info(
        "dispatch_health_checked",
        healthy=report.healthy,
        problems=[item.check for item in findings if item.severity is not HealthSeverity.OK],
        fixed=list(fixed),
    )
    return report


def _check_locks(
    state_files: list[Path],
    stale_seconds: float,
    *,
    fix: bool,
    fixed: list[str],
) -> HealthFinding:
    stale: list[str] = []
    wall_now = time.time()
    for path in state_files:
        marker = lock_path_for(path)
        age = lock_age_seconds(marker, now=wall_now)
        if age is None or age <= stale_seconds:
            continue
        stale.append(marker.as_posix())
        if fix and remove_stale_lock(path, stale_seconds):
            fixed.append(f"removed stale lock {marker.as_posix()}")
    if not stale:
        return HealthFinding("stale_locks", HealthSeverity.OK, "none")
    return HealthFinding(
        "stale_locks",
        HealthSeverity.WARNING,
        f"lock marker(s) older than {stale_seconds:g}s",
        tuple(stale),
    )


def _check_stale(store: DispatchStateStore, max_age_seconds: float, now: datetime) -> HealthFinding:
    stale = sorted(
        record.identifier for record in store.list_stale_dispatches(max_age_seconds, now=now)
    )
    if not stale:
        return HealthFinding("stale_dispatches", HealthSeverity.OK, "none")
    return HealthFinding(
        "stale_dispatches",
        HealthSeverity.WARNING,
        f"active longer than {max_age_seconds:g}s",
        tuple(stale),
    )


def _check_workspaces(state: DispatchState) -> HealthFinding:
    # Only references that are local paths can be verified; other schemes are opaque.
    orphaned = sorted(
        record.identifier
        for record in state.active.values()
        if record.workspace_ref
        and Path(record.workspace_ref).is_absolute()
        and not Path(record.workspace_ref).exists()
    )
    if not orphaned:
        return HealthFinding("orphaned_workspaces", HealthSeverity.OK, "none")
    return HealthFinding(
        "orphaned_workspaces",
        HealthSeverity.WARNING,
        "workspace path no longer exists",
        tuple(orphaned),
    )


__all__ = ["HealthFinding", "HealthReport", "HealthSeverity", "check_dispatch_health"]
