"""
dispatch-orchestrator control plane.

File: src/dispatch_orchestrator/control_plane/__init__.py
Last updated: 2026-10-16

Purpose
- Admission, execution and graph-level orchestration of dispatches.

Functional requirements
- At most one execution per identifier in this process (ConcurrencyGuard).
- Every execution ends in exactly one terminal status and one terminal callback.
"""

from dispatch_orchestrator.control_plane.dispatcher import (
    Dispatcher,
    TriggerAction,
    TriggerEvent,
    TriggerResult,
)
from dispatch_orchestrator.control_plane.guard import (
    Admission,
    AdmissionOutcome,
    ConcurrencyGuard,
    GuardSettings,
)
from dispatch_orchestrator.control_plane.monitor import (
    DispatchMonitor,
    MaintenanceSettings,
    TickReport,
)
from dispatch_orchestrator.control_plane.notify import Notifier
from dispatch_orchestrator.control_plane.orchestrator import ProjectOrchestrator
from dispatch_orchestrator.control_plane.pipeline import InnerExecutionPipeline, PipelineSettings
from dispatch_orchestrator.control_plane.runtime import (
    DispatchRuntime,
    RuntimeSettings,
    build_runtime,
    settings_from_config,
)

__all__ = [
    "Admission",
    "AdmissionOutcome",
    "ConcurrencyGuard",
    "DispatchMonitor",
    "DispatchRuntime",
    "Dispatcher",
    "GuardSettings",
    "InnerExecutionPipeline",
    "MaintenanceSettings",
    "Notifier",
    "PipelineSettings",
    "ProjectOrchestrator",
    "RuntimeSettings",
    "TickReport",
    "TriggerAction",
    "TriggerEvent",
    "TriggerResult",
    "build_runtime",
    "settings_from_config",
]
