"""
dispatch-orchestrator persistence layer.

File: src/dispatch_orchestrator/persistence/__init__.py
Last updated: 2026-10-16

Purpose
- File-backed stores for dispatch records and project graphs, the lock marker
  protocol they share, and operator diagnostics over the stored state.

Functional requirements
- Every read-modify-write holds the per-file lock and writes atomically.
"""

from dispatch_orchestrator.persistence.dispatch_store import (
    DEFAULT_COMPLETED_RETENTION_SECONDS,
    DEFAULT_MAX_PROCESSED_EVENTS,
    DispatchStateError,
    DispatchStateStore,
    TransitionError,
    migrate_state,
)
from dispatch_orchestrator.persistence.file_lock import (
    LockOptions,
    LockTimeoutError,
    file_lock,
    lock_path_for,
    remove_stale_lock,
)
from dispatch_orchestrator.persistence.health import (
    HealthFinding,
    HealthReport,
    HealthSeverity,
    check_dispatch_health,
)
from dispatch_orchestrator.persistence.json_state import LockedJsonFile
from dispatch_orchestrator.persistence.project_store import (
    PROJECT_STATE_VERSION,
    ProjectDispatchStore,
)

__all__ = [
    "DEFAULT_COMPLETED_RETENTION_SECONDS",
    "DEFAULT_MAX_PROCESSED_EVENTS",
    "DispatchStateError",
    "DispatchStateStore",
    "HealthFinding",
    "HealthReport",
    "HealthSeverity",
    "LockOptions",
    "LockTimeoutError",
    "LockedJsonFile",
    "PROJECT_STATE_VERSION",
    "ProjectDispatchStore",
    "TransitionError",
    "check_dispatch_health",
    "file_lock",
    "lock_path_for",
    "migrate_state",
    "remove_stale_lock",
]
