"""YAML project manifests and a manifest-backed issue tracker for local runs.

Manifest layout::

    project:
      id: proj-checkout
      name: Checkout revamp
      root: CHK-1
    items:
      - identifier: CHK-2
        id: 5b0c...
        title: Payment form
        labels: [frontend]
        blocks: [CHK-4]
        blocked_by: []
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any, cast

import structlog
import yaml

from dispatch_orchestrator.domain.models import RawItem, Relation, RelationType
from dispatch_orchestrator.integration_plane.interfaces import TrackerProject


class ManifestError(ValueError):
    """Raised when a project manifest cannot be parsed."""


def load_project_manifest(path: str | Path) -> TrackerProject:
    manifest_path = Path(path)
    try:
        with manifest_path.open("r", encoding="utf-8") as handle:
            loaded = cast("object", yaml.safe_load(handle))
    except FileNotFoundError as exc:
        raise ManifestError(f"{manifest_path}: manifest not found") from exc
    except yaml.YAMLError as exc:
        raise ManifestError(f"{manifest_path}: invalid YAML ({exc})") from exc
    return parse_project_manifest(loaded, source=manifest_path.name)


def parse_project_manifest(data: object, *, source: str = "<manifest>") -> TrackerProject:
    root = _as_mapping(data, source)
    project = _as_mapping(root.get("project"), f"{source}.project")
    project_id = _as_text(project.get("id"), f"{source}.project.id")
    name = _as_text(project.get("name", project_id), f"{source}.project.name")
    root_identifier = project.get("root")
    if root_identifier is not None:
        root_identifier = _as_text(root_identifier, f"{source}.project.root")

    raw_items = root.get("items", [])
    if not isinstance(raw_items, list):
        raise ManifestError(f"{source}.items: expected a sequence, got {type(raw_items).__name__}")

    items = tuple(
        _parse_item(entry, location=f"{source}.items[{index}]")
        for index, entry in enumerate(raw_items)
    )
    return TrackerProject(
        project_id=project_id,
        name=name,
        items=items,
        root_identifier=root_identifier,
    )


class ManifestIssueTracker:
    """IssueTrackerClient over in-memory manifests; updates are recorded and logged."""

    def __init__(
        self,
        projects: Iterable[TrackerProject],
        *,
        logger: Any | None = None,
    ) -> None:
        self._projects = {project.project_id: project for project in projects}
        self._updates: list[tuple[str, str]] = []
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @classmethod
    def from_paths(cls, paths: Iterable[str | Path]) -> ManifestIssueTracker:
        return cls(load_project_manifest(path) for path in paths)

    @property
    def updates(self) -> tuple[tuple[str, str], ...]:
        return tuple(self._updates)

    async def fetch_project(self, project_id: str) -> TrackerProject:
        try:
            return self._projects[project_id]
        except KeyError:
            raise LookupError(f"unknown project: {project_id}") from None

    async def post_update(self, identifier: str, message: str) -> None:
        self._updates.append((identifier, message))
        self._logger.info("tracker_update", identifier=identifier, body=message)


def _parse_item(value: object, *, location: str) -> RawItem:
    entry = _as_mapping(value, location)
    identifier = _as_text(entry.get("identifier"), f"{location}.identifier")
    relations = [
        Relation(RelationType.BLOCKS, related)
        for related in _as_text_list(entry.get("blocks", []), f"{location}.blocks")
    ]
    relations.extend(
        Relation(RelationType.BLOCKED_BY, related)
        for related in _as_text_list(entry.get("blocked_by", []), f"{location}.blocked_by")
    )
    return RawItem(
        identifier=identifier,
        issue_id=_as_text(entry.get("id", identifier), f"{location}.id"),
        title=str(entry.get("title", "")),
        labels=tuple(_as_text_list(entry.get("labels", []), f"{location}.labels")),
        relations=tuple(relations),
    )


def _as_mapping(value: object, location: str) -> Mapping[str, object]:
    if not isinstance(value, Mapping):
        raise ManifestError(f"{location}: expected a mapping, got {type(value).__name__}")
    return value


def _as_text(value: object, location: str) -> str:
    if isinstance(value, bool) or not isinstance(value, (str, int)):
        raise ManifestError(f"{location}: expected a string")
    text = str(value).strip()
    if not text:
        raise ManifestError(f"{location}: must not be empty")
    return text


def _as_text_list(value: object, location: str) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ManifestError(f"{location}: expected a sequence, got {type(value).__name__}")
    return [_as_text(item, f"{location}[{index}]") for index, item in enumerate(value)]


__all__ = [
    "ManifestError",
    "ManifestIssueTracker",
    "load_project_manifest",
    "parse_project_manifest",
]
