"""
dispatch-orchestrator domain package.

File: src/dispatch_orchestrator/domain/__init__.py
Last updated: 2026-10-16

Purpose
- Domain types shared across planes: WorkItem, ProjectDispatchState, DispatchRecord,
  DispatchState, status enums and the dispatch transition table.

Functional requirements
- Domain objects must be serializable and versioned.
- Keep domain layer free of IO side effects.
"""

from dispatch_orchestrator.domain.models import (
    DISPATCH_STATE_VERSION,
    TERMINAL_DISPATCH_STATUSES,
    TERMINAL_WORK_ITEM_STATUSES,
    VALID_TRANSITIONS,
    DispatchRecord,
    DispatchState,
    DispatchStatus,
    ProjectDispatchState,
    ProjectStatus,
    RawItem,
    Relation,
    RelationType,
    SessionMapping,
    SessionPhase,
    WorkItem,
    WorkItemStatus,
    is_valid_transition,
    utc_now,
)

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
