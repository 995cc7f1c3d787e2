"""Dataclass domain models for dependency-aware dispatch with canonical serialization.

Two independent state types live here on purpose:

- ``WorkItem`` / ``ProjectDispatchState`` carry the coarse graph-level status
  (``pending -> dispatched -> done | stuck``) owned by the project orchestrator.
- ``DispatchRecord`` carries the fine-grained execution status
  (``dispatched -> working -> auditing -> ...``) owned by the execution pipeline.

Persisted payloads use the camelCase keys of the on-disk state files.
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum, StrEnum
from typing import Final, NoReturn, TypeVar

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

TEnum = TypeVar("TEnum", bound=Enum)

DISPATCH_STATE_VERSION: Final[int] = 2


class WorkItemStatus(StrEnum):
    PENDING = "pending"
    DISPATCHED = "dispatched"
    DONE = "done"
    STUCK = "stuck"
    SKIPPED = "skipped"


class ProjectStatus(StrEnum):
    DISPATCHING = "dispatching"
    COMPLETED = "completed"
    STUCK = "stuck"


class DispatchStatus(StrEnum):
    DISPATCHED = "dispatched"
    WORKING = "working"
    AUDITING = "auditing"
    DONE = "done"
    REWORK = "rework"
    STUCK = "stuck"
    FAILED = "failed"


class SessionPhase(StrEnum):
    WORKER = "worker"
    AUDIT = "audit"


class RelationType(StrEnum):
    BLOCKS = "blocks"
    BLOCKED_BY = "blocked_by"


TERMINAL_WORK_ITEM_STATUSES: Final[frozenset[WorkItemStatus]] = frozenset(
    {WorkItemStatus.DONE, WorkItemStatus.STUCK, WorkItemStatus.SKIPPED}
)

TERMINAL_DISPATCH_STATUSES: Final[frozenset[DispatchStatus]] = frozenset(
    {DispatchStatus.DONE, DispatchStatus.STUCK, DispatchStatus.FAILED}
)

VALID_TRANSITIONS: Final[Mapping[DispatchStatus, frozenset[DispatchStatus]]] = {
    DispatchStatus.DISPATCHED: frozenset(
        {DispatchStatus.WORKING, DispatchStatus.FAILED, DispatchStatus.STUCK}
    ),
    DispatchStatus.WORKING: frozenset(
        {DispatchStatus.AUDITING, DispatchStatus.FAILED, DispatchStatus.STUCK}
    ),
    DispatchStatus.AUDITING: frozenset(
        {
            DispatchStatus.DONE,
            DispatchStatus.REWORK,
            DispatchStatus.FAILED,
            DispatchStatus.STUCK,
        }
    ),
    DispatchStatus.REWORK: frozenset(
        {DispatchStatus.WORKING, DispatchStatus.FAILED, DispatchStatus.STUCK}
    ),
    DispatchStatus.DONE: frozenset(),
    DispatchStatus.STUCK: frozenset(),
    DispatchStatus.FAILED: frozenset(),
}


def is_valid_transition(current: DispatchStatus, target: DispatchStatus) -> bool:
    """Return ``True`` when ``current -> target`` is an allowed dispatch transition."""

    return target in VALID_TRANSITIONS.get(current, frozenset())


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


# ---------------------------------------------------------------------------
# Graph-level models
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Relation:
    """One relation edge as reported by the issue tracker."""

    type: RelationType
    related_identifier: str

    def __post_init__(self) -> None:
        object.__setattr__(self, "type", _as_enum(RelationType, self.type, "Relation.type"))
        object.__setattr__(
            self,
            "related_identifier",
            _as_str(self.related_identifier, "Relation.related_identifier"),
        )


@dataclass(frozen=True, slots=True)
class RawItem:
    """Tracker item before dependency resolution."""

    identifier: str
    issue_id: str
    title: str = ""
    labels: tuple[str, ...] = ()
    relations: tuple[Relation, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "identifier", _as_str(self.identifier, "RawItem.identifier"))
        object.__setattr__(self, "issue_id", _as_str(self.issue_id, "RawItem.issue_id"))
        object.__setattr__(self, "labels", tuple(self.labels))
        object.__setattr__(self, "relations", tuple(self.relations))


@dataclass(slots=True)
class WorkItem:
    identifier: str
    issue_id: str
    depends_on: set[str] = field(default_factory=set)
    unblocks: set[str] = field(default_factory=set)
    status: WorkItemStatus = WorkItemStatus.PENDING
    completed_at: datetime | None = None
    title: str = ""

    def __post_init__(self) -> None:
        self.identifier = _as_str(self.identifier, "WorkItem.identifier")
        self.issue_id = _as_str(self.issue_id, "WorkItem.issue_id")
        self.depends_on = set(self.depends_on)
        self.unblocks = set(self.unblocks)
        self.status = _as_enum(WorkItemStatus, self.status, "WorkItem.status")
        if self.completed_at is not None:
            self.completed_at = _as_datetime(self.completed_at, "WorkItem.completed_at")

    def to_dict(self) -> dict[str, JSONValue]:
        payload: dict[str, JSONValue] = {
            "identifier": self.identifier,
            "issueId": self.issue_id,
            "title": self.title,
            "dependsOn": sorted(self.depends_on),
            "unblocks": sorted(self.unblocks),
            "dispatchStatus": self.status.value,
        }
        if self.completed_at is not None:
            payload["completedAt"] = _to_iso(self.completed_at)
        return payload

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> WorkItem:
        parsed = _expect_object(data, "WorkItem", required={"identifier", "issueId"})
        completed_raw = parsed.get("completedAt")
        return cls(
            identifier=_as_str(parsed["identifier"], "WorkItem.identifier"),
            issue_id=_as_str(parsed["issueId"], "WorkItem.issueId"),
            title=_as_str(parsed.get("title", ""), "WorkItem.title", min_len=0),
            depends_on=set(_as_str_list(parsed.get("dependsOn", []), "WorkItem.dependsOn")),
            unblocks=set(_as_str_list(parsed.get("unblocks", []), "WorkItem.unblocks")),
            status=_as_enum(
                WorkItemStatus,
                parsed.get("dispatchStatus", WorkItemStatus.PENDING.value),
                "WorkItem.dispatchStatus",
            ),
            completed_at=None
            if completed_raw is None
            else _as_datetime(completed_raw, "WorkItem.completedAt"),
        )


@dataclass(slots=True)
class ProjectDispatchState:
    """Per-project dependency graph plus its scheduling status."""

    project_id: str
    project_name: str
    root_identifier: str
    issues: dict[str, WorkItem] = field(default_factory=dict)
    status: ProjectStatus = ProjectStatus.DISPATCHING
    max_concurrent: int = 3
    started_at: datetime = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        self.project_id = _as_str(self.project_id, "ProjectDispatchState.project_id")
        self.status = _as_enum(ProjectStatus, self.status, "ProjectDispatchState.status")
        if isinstance(self.max_concurrent, bool) or not isinstance(self.max_concurrent, int):
            raise ValueError("max_concurrent must be an integer")
        if self.max_concurrent <= 0:
            raise ValueError("max_concurrent must be > 0")
        self.started_at = _as_datetime(self.started_at, "ProjectDispatchState.started_at")

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "projectId": self.project_id,
            "projectName": self.project_name,
            "rootIdentifier": self.root_identifier,
            "status": self.status.value,
            "startedAt": _to_iso(self.started_at),
            "maxConcurrent": self.max_concurrent,
            "issues": {key: item.to_dict() for key, item in self.issues.items()},
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> ProjectDispatchState:
        parsed = _expect_object(
            data,
            "ProjectDispatchState",
            required={"projectId", "status", "issues"},
        )
        issues_raw = parsed["issues"]
        if not isinstance(issues_raw, Mapping):
            _fail("ProjectDispatchState.issues", "expected object")
        issues: dict[str, WorkItem] = {}
        for key, value in issues_raw.items():
            if not isinstance(value, Mapping):
                _fail(f"ProjectDispatchState.issues.{key}", "expected object")
            issues[str(key)] = WorkItem.from_dict(value)
        project_id = _as_str(parsed["projectId"], "ProjectDispatchState.projectId")
        return cls(
            project_id=project_id,
            project_name=_as_str(
                parsed.get("projectName", project_id), "ProjectDispatchState.projectName", min_len=0
            ),
            root_identifier=_as_str(
                parsed.get("rootIdentifier", project_id),
                "ProjectDispatchState.rootIdentifier",
                min_len=0,
            ),
            status=_as_enum(ProjectStatus, parsed["status"], "ProjectDispatchState.status"),
            started_at=_as_datetime(
                parsed.get("startedAt", _to_iso(utc_now())), "ProjectDispatchState.startedAt"
            ),
            max_concurrent=_as_int(
                parsed.get("maxConcurrent", 3), "ProjectDispatchState.maxConcurrent", minimum=1
            ),
            issues=issues,
        )


# ---------------------------------------------------------------------------
# Execution-level models
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class DispatchRecord:
    """One execution of a work item through the worker/audit pipeline."""

    identifier: str
    issue_id: str
    status: DispatchStatus = DispatchStatus.DISPATCHED
    attempt: int = 0
    dispatched_at: datetime = field(default_factory=utc_now)
    workspace_ref: str | None = None
    tier: str = "medium"
    model: str | None = None
    project_id: str | None = None
    title: str = ""
    session_ref: str | None = None
    completed_at: datetime | None = None
    stuck_reason: str | None = None
    last_verdict: str | None = None

    def __post_init__(self) -> None:
        self.identifier = _as_str(self.identifier, "DispatchRecord.identifier")
        self.issue_id = _as_str(self.issue_id, "DispatchRecord.issue_id")
        self.status = _as_enum(DispatchStatus, self.status, "DispatchRecord.status")
        self.attempt = _as_int(self.attempt, "DispatchRecord.attempt", minimum=0)
        self.dispatched_at = _as_datetime(self.dispatched_at, "DispatchRecord.dispatched_at")
        if self.completed_at is not None:
            self.completed_at = _as_datetime(self.completed_at, "DispatchRecord.completed_at")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_DISPATCH_STATUSES

    def age_seconds(self, now: datetime | None = None) -> float:
        reference = utc_now() if now is None else now
        return (reference - self.dispatched_at).total_seconds()

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "identifier": self.identifier,
            "issueId": self.issue_id,
            "status": self.status.value,
            "attempt": self.attempt,
            "dispatchedAt": _to_iso(self.dispatched_at),
            "workspaceRef": self.workspace_ref,
            "tier": self.tier,
            "model": self.model,
            "project": self.project_id,
            "title": self.title,
            "sessionRef": self.session_ref,
            "completedAt": None if self.completed_at is None else _to_iso(self.completed_at),
            "stuckReason": self.stuck_reason,
            "lastVerdict": self.last_verdict,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> DispatchRecord:
        parsed = _expect_object(data, "DispatchRecord", required={"identifier", "issueId"})
        completed_raw = parsed.get("completedAt")
        return cls(
            identifier=_as_str(parsed["identifier"], "DispatchRecord.identifier"),
            issue_id=_as_str(parsed["issueId"], "DispatchRecord.issueId"),
            status=_as_enum(
                DispatchStatus,
                parsed.get("status", DispatchStatus.DISPATCHED.value),
                "DispatchRecord.status",
            ),
            attempt=_as_int(parsed.get("attempt", 0), "DispatchRecord.attempt", minimum=0),
            dispatched_at=_as_datetime(
                parsed.get("dispatchedAt", _to_iso(utc_now())), "DispatchRecord.dispatchedAt"
            ),
            workspace_ref=_as_optional_str(parsed.get("workspaceRef"), "DispatchRecord.workspaceRef"),
            tier=_as_str(parsed.get("tier", "medium"), "DispatchRecord.tier"),
            model=_as_optional_str(parsed.get("model"), "DispatchRecord.model"),
            project_id=_as_optional_str(parsed.get("project"), "DispatchRecord.project"),
            title=_as_str(parsed.get("title", ""), "DispatchRecord.title", min_len=0),
            session_ref=_as_optional_str(parsed.get("sessionRef"), "DispatchRecord.sessionRef"),
            completed_at=None
            if completed_raw is None
            else _as_datetime(completed_raw, "DispatchRecord.completedAt"),
            stuck_reason=_as_optional_str(parsed.get("stuckReason"), "DispatchRecord.stuckReason"),
            last_verdict=_as_optional_str(parsed.get("lastVerdict"), "DispatchRecord.lastVerdict"),
        )


@dataclass(frozen=True, slots=True)
class SessionMapping:
    identifier: str
    phase: SessionPhase
    attempt: int

    def to_dict(self) -> dict[str, JSONValue]:
        return {"identifier": self.identifier, "phase": self.phase.value, "attempt": self.attempt}

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> SessionMapping:
        parsed = _expect_object(data, "SessionMapping", required={"identifier", "phase"})
        return cls(
            identifier=_as_str(parsed["identifier"], "SessionMapping.identifier"),
            phase=_as_enum(SessionPhase, parsed["phase"], "SessionMapping.phase"),
            attempt=_as_int(parsed.get("attempt", 0), "SessionMapping.attempt", minimum=0),
        )


@dataclass(slots=True)
class DispatchState:
    """Root of the persisted dispatch store."""

    active: dict[str, DispatchRecord] = field(default_factory=dict)
    completed: dict[str, DispatchRecord] = field(default_factory=dict)
    session_map: dict[str, SessionMapping] = field(default_factory=dict)
    processed_events: list[str] = field(default_factory=list)
    version: int = DISPATCH_STATE_VERSION

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "version": self.version,
            "dispatches": {
                "active": {key: record.to_dict() for key, record in self.active.items()},
                "completed": {key: record.to_dict() for key, record in self.completed.items()},
            },
            "sessionMap": {key: mapping.to_dict() for key, mapping in self.session_map.items()},
            "processedEvents": list(self.processed_events),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> DispatchState:
        parsed = _expect_object(data, "DispatchState", required={"dispatches"})
        dispatches = parsed["dispatches"]
        if not isinstance(dispatches, Mapping):
            _fail("DispatchState.dispatches", "expected object")

        def records(key: str) -> dict[str, DispatchRecord]:
            raw = dispatches.get(key, {})
            if not isinstance(raw, Mapping):
                _fail(f"DispatchState.dispatches.{key}", "expected object")
            return {
                str(name): DispatchRecord.from_dict(_as_mapping(value, f"dispatches.{key}.{name}"))
                for name, value in raw.items()
            }

        session_raw = parsed.get("sessionMap", {})
        if not isinstance(session_raw, Mapping):
            _fail("DispatchState.sessionMap", "expected object")

        return cls(
            version=_as_int(parsed.get("version", DISPATCH_STATE_VERSION), "DispatchState.version"),
            active=records("active"),
            completed=records("completed"),
            session_map={
                str(key): SessionMapping.from_dict(_as_mapping(value, f"sessionMap.{key}"))
                for key, value in session_raw.items()
            },
            processed_events=_as_str_list(
                parsed.get("processedEvents", []), "DispatchState.processedEvents"
            ),
        )


# ---------------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------------


def _fail(path: str, message: str) -> NoReturn:
    raise ValueError(f"{path}: {message}")


def _expect_object(value: object, path: str, *, required: set[str]) -> dict[str, object]:
    if not isinstance(value, Mapping):
        _fail(path, f"expected object, got {type(value).__name__}")
    parsed = {str(key): item for key, item in value.items()}
    missing = sorted(key for key in required if key not in parsed)
    if missing:
        _fail(path, f"missing required fields: {missing}")
    return parsed


def _as_mapping(value: object, path: str) -> Mapping[str, object]:
    if not isinstance(value, Mapping):
        _fail(path, f"expected object, got {type(value).__name__}")
    return value


def _as_str(value: object, path: str, *, min_len: int = 1) -> str:
    if not isinstance(value, str):
        _fail(path, f"expected string, got {type(value).__name__}")
    normalized = value.strip()
    if len(normalized) < min_len:
        _fail(path, f"must be at least {min_len} character(s)")
    return normalized


def _as_optional_str(value: object, path: str) -> str | None:
    if value is None:
        return None
    return _as_str(value, path)


def _as_int(value: object, path: str, *, minimum: int | None = None) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        _fail(path, f"expected integer, got {type(value).__name__}")
    if isinstance(value, float):
        if not math.isfinite(value) or not value.is_integer():
            _fail(path, "expected integer")
        value = int(value)
    if minimum is not None and value < minimum:
        _fail(path, f"must be >= {minimum}")
    return value


def _as_str_list(value: object, path: str) -> list[str]:
    if not isinstance(value, (list, tuple)):
        _fail(path, f"expected array, got {type(value).__name__}")
    return [_as_str(item, f"{path}[{index}]") for index, item in enumerate(value)]


def _as_datetime(value: object, path: str) -> datetime:
    parsed: datetime
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        text = value[:-1] + "+00:00" if value.endswith("Z") else value
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            _fail(path, f"invalid ISO-8601 datetime: {value!r} ({exc})")
    else:
        _fail(path, f"expected datetime or ISO-8601 string, got {type(value).__name__}")

    if parsed.tzinfo is None or parsed.utcoffset() is None:
        _fail(path, "datetime must be timezone-aware UTC")
    return parsed.astimezone(UTC)


def _as_enum(enum_type: type[TEnum], value: object, path: str) -> TEnum:
    if isinstance(value, enum_type):
        return value
    if not isinstance(value, str):
        _fail(path, f"expected string enum value, got {type(value).__name__}")
    try:
        return enum_type(value)
    except ValueError:
        allowed = ", ".join(sorted(str(item.value) for item in enum_type))
        _fail(path, f"invalid value {value!r}; expected one of: {allowed}")


def _to_iso(value: datetime) -> str:
    return value.astimezone(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


__all__ = [
    "DISPATCH_STATE_VERSION",
    "TERMINAL_DISPATCH_STATUSES",
    "TERMINAL_WORK_ITEM_STATUSES",
    "VALID_TRANSITIONS",
    "DispatchRecord",
    "DispatchState",
    "DispatchStatus",
    "ProjectDispatchState",
    "ProjectStatus",
    "RawItem",
    "Relation",
    "RelationType",
    "SessionMapping",
    "SessionPhase",
    "WorkItem",
    "WorkItemStatus",
    "is_valid_transition",
    "utc_now",
]
