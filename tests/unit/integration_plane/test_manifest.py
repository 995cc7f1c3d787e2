from __future__ import annotations

from pathlib import Path

import pytest

from dispatch_orchestrator.domain.models import RelationType
from dispatch_orchestrator.integration_plane.interfaces import IssueTrackerClient
from dispatch_orchestrator.integration_plane.manifest import (
    ManifestError,
    ManifestIssueTracker,
    load_project_manifest,
    parse_project_manifest,
)

MANIFEST = """
project:
  id: proj-checkout
  name: Checkout revamp
  root: CHK-1
items:
  - identifier: CHK-1
    title: Checkout epic
    labels: [Epic]
  - identifier: CHK-2
    id: 5b0c-2
    title: Payment form
    labels: [frontend]
    blocks: [CHK-4]
  - identifier: CHK-4
    title: Receipt email
    blocked_by: [CHK-3]
"""


class RecordingLogger:
    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, object]]] = []

    def info(self, event: str, **fields: object) -> None:
        self.events.append((event, fields))


@pytest.mark.unit
def test_load_project_manifest_reads_items_and_relations(tmp_path: Path) -> None:
    path = tmp_path / "checkout.yaml"
    path.write_text(MANIFEST, encoding="utf-8")

    project = load_project_manifest(path)

    assert project.project_id == "proj-checkout"
    assert project.name == "Checkout revamp"
    assert project.root_identifier == "CHK-1"
    assert [item.identifier for item in project.items] == ["CHK-1", "CHK-2", "CHK-4"]

    epic, form, receipt = project.items
    assert epic.issue_id == "CHK-1"
    assert epic.labels == ("Epic",)
    assert form.issue_id == "5b0c-2"
    assert [(rel.type, rel.related_identifier) for rel in form.relations] == [
        (RelationType.BLOCKS, "CHK-4")
    ]
    assert [(rel.type, rel.related_identifier) for rel in receipt.relations] == [
        (RelationType.BLOCKED_BY, "CHK-3")
    ]


@pytest.mark.unit
def test_project_name_defaults_to_id_and_items_may_be_absent() -> None:
    project = parse_project_manifest({"project": {"id": 42}})

    assert project.project_id == "42"
    assert project.name == "42"
    assert project.items == ()
    assert project.root_identifier is None


@pytest.mark.unit
def test_missing_manifest_is_reported(tmp_path: Path) -> None:
    with pytest.raises(ManifestError, match="manifest not found"):
        load_project_manifest(tmp_path / "absent.yaml")


@pytest.mark.unit
def test_invalid_yaml_is_reported(tmp_path: Path) -> None:
    path = tmp_path / "broken.yaml"
    path.write_text("project: [unclosed\n", encoding="utf-8")

    with pytest.raises(ManifestError, match="invalid YAML"):
        load_project_manifest(path)


@pytest.mark.unit
@pytest.mark.parametrize(
    ("data", "message"),
    [
        (["not", "a", "mapping"], r"<manifest>: expected a mapping, got list"),
        ({"project": {"id": "p"}, "items": {"CHK-1": {}}}, r"<manifest>\.items: expected a sequence"),
        ({"project": {"id": "p"}, "items": [{"identifier": "  "}]}, r"items\[0\]\.identifier: must not be empty"),
        (
            {"project": {"id": "p"}, "items": [{"identifier": "A", "blocks": "B"}]},
            r"items\[0\]\.blocks: expected a sequence, got str",
        ),
        ({"project": {"id": True}}, r"<manifest>\.project\.id: expected a string"),
    ],
)
def test_malformed_manifests_name_the_location(data: object, message: str) -> None:
    with pytest.raises(ManifestError, match=message):
        parse_project_manifest(data)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_manifest_tracker_serves_projects_and_records_updates(tmp_path: Path) -> None:
    path = tmp_path / "checkout.yaml"
    path.write_text(MANIFEST, encoding="utf-8")
    logger = RecordingLogger()
    tracker = ManifestIssueTracker([load_project_manifest(path)], logger=logger)

    assert isinstance(tracker, IssueTrackerClient)
    project = await tracker.fetch_project("proj-checkout")
    assert project.name == "Checkout revamp"

    await tracker.post_update("CHK-1", "Project dispatch started")

    assert tracker.updates == (("CHK-1", "Project dispatch started"),)
    assert logger.events == [
        ("tracker_update", {"identifier": "CHK-1", "body": "Project dispatch started"})
    ]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_unknown_project_raises_lookup_error(tmp_path: Path) -> None:
    path = tmp_path / "checkout.yaml"
    path.write_text(MANIFEST, encoding="utf-8")
    tracker = ManifestIssueTracker.from_paths([path])

    with pytest.raises(LookupError, match="unknown project: billing"):
        await tracker.fetch_project("billing")
