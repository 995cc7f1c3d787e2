"""
dispatch-orchestrator — package root.

File: src/dispatch_orchestrator/__init__.py
Last updated: 2026-10-16

Purpose
- Dependency-aware dispatch of tracker work items through a worker/audit
  pipeline, with file-backed state that survives restarts.

Functional requirements
- Must not have side effects at import time (no config loading, no logging init).
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
