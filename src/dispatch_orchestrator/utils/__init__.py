"""Utility exports for filesystem and concurrency helpers."""

from dispatch_orchestrator.utils.concurrency import (
    ActivityMonitor,
    CancellationToken,
    InactivityTimeoutError,
    TaskSupervisor,
    run_with_inactivity_watchdog,
    run_with_timeout,
)
from dispatch_orchestrator.utils.fs import (
    atomic_write,
    ensure_parent_dir,
    quarantine_file,
    read_text_or_none,
)

__all__ = [
    "ActivityMonitor",
    "CancellationToken",
    "InactivityTimeoutError",
    "TaskSupervisor",
    "atomic_write",
    "ensure_parent_dir",
    "quarantine_file",
    "read_text_or_none",
    "run_with_inactivity_watchdog",
    "run_with_timeout",
]
