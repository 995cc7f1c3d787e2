"""
dispatch-orchestrator planning layer.

File: src/dispatch_orchestrator/planning/__init__.py
Last updated: 2026-10-16

Purpose
- Dependency graph construction from tracker items and pure readiness queries.

Functional requirements
- Output a dependency map over non-skipped items with no dangling edges.
- Readiness queries are side-effect free and preserve listing order.
"""

from dispatch_orchestrator.planning.dependency_graph import (
    DEFAULT_SKIP_LABEL_PATTERN,
    DependencyGraphBuilder,
    build_dispatch_queue,
    dispatch_waves,
    find_cycles,
)
from dispatch_orchestrator.planning.readiness import (
    ProgressCounts,
    get_active_count,
    get_ready_issues,
    is_project_dispatch_complete,
    is_project_stuck,
    progress_counts,
    stuck_identifiers,
)

__all__ = [
    "DEFAULT_SKIP_LABEL_PATTERN",
    "DependencyGraphBuilder",
    "ProgressCounts",
    "build_dispatch_queue",
    "dispatch_waves",
    "find_cycles",
    "get_active_count",
    "get_ready_issues",
    "is_project_dispatch_complete",
    "is_project_stuck",
    "progress_counts",
    "stuck_identifiers",
]
