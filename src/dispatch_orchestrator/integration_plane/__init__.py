"""Collaborator protocols consumed by the dispatch core, plus the YAML manifest tracker."""

from dispatch_orchestrator.integration_plane.interfaces import (
    AuditVerdict,
    IssueTrackerClient,
    NotifyFn,
    NotifyKind,
    NotifyPayload,
    TrackerProject,
    WorkExecutor,
    WorkOutcome,
    WorkRequest,
    WorkspaceProvisioner,
)
from dispatch_orchestrator.integration_plane.manifest import (
    ManifestError,
    ManifestIssueTracker,
    load_project_manifest,
    parse_project_manifest,
)

__all__ = [
    "AuditVerdict",
    "IssueTrackerClient",
    "ManifestError",
    "ManifestIssueTracker",
    "NotifyFn",
    "NotifyKind",
    "NotifyPayload",
    "TrackerProject",
    "WorkExecutor",
    "WorkOutcome",
    "WorkRequest",
    "WorkspaceProvisioner",
    "load_project_manifest",
    "parse_project_manifest",
]
