"""Command-line interface: inspect dispatch state, plan manifests, dump config."""

from __future__ import annotations

import argparse
import json
import sys
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, TextIO

import yaml

from dispatch_orchestrator.config import (
    ConfigLoadError,
    ConfigValidationError,
    dump_effective_config,
    load_config,
)
from dispatch_orchestrator.domain.models import WorkItemStatus, utc_now
from dispatch_orchestrator.integration_plane.manifest import load_project_manifest
from dispatch_orchestrator.observability.logging import setup_logging
from dispatch_orchestrator.persistence import (
    DispatchStateStore,
    LockOptions,
    ProjectDispatchStore,
    check_dispatch_health,
)
from dispatch_orchestrator.planning import (
    DependencyGraphBuilder,
    dispatch_waves,
    find_cycles,
    progress_counts,
)
from dispatch_orchestrator.ui.render import CLIRenderer


@dataclass(frozen=True, slots=True)
class CLIError(RuntimeError):
    """A command refused to run; printed as ``error: ...`` and turned into ``exit_code``."""

    message: str
    exit_code: int = 1

    def __str__(self) -> str:
        return self.message


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Return the parser for ``doctor``, ``status``, ``plan`` and ``config``."""

    parser = argparse.ArgumentParser(
        prog="dispatch-orchestrator",
        description=(
            "dispatch-orchestrator — dependency-aware dispatch of tracker work items.\n\n"
            "Common workflows:\n"
            "  dispatch-orchestrator plan project.yaml   Show dispatch waves of a manifest\n"
            "  dispatch-orchestrator status              Show projects and active dispatches\n"
            "  dispatch-orchestrator doctor --fix        Check and repair dispatch state\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to dispatch TOML config (default: ./dispatch.toml if present).",
    )
    common.add_argument(
        "--set",
        dest="overrides",
        action="append",
        default=[],
        metavar="SECTION.KEY=VALUE",
        help="Override one config value; may be repeated.",
    )
    common.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        default=False,
        help="Write structured logs for this command under observability.log_dir.",
    )
    common.add_argument(
        "--no-color",
        action="store_true",
        default=False,
        help="Disable colored output (also respects NO_COLOR env var).",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # doctor --------------------------------------------------------------
    doctor_parser = subparsers.add_parser(
        "doctor",
        parents=[common],
        help="Check dispatch state health",
        description=(
            "Report stale dispatches, orphaned workspaces, expired completed records,\n"
            "stale lock markers and dispatches interrupted mid-work.\n\n"
            "Examples:\n"
            "  dispatch-orchestrator doctor\n"
            "  dispatch-orchestrator doctor --fix --json\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    doctor_parser.add_argument(
        "--fix",
        action="store_true",
        help="Prune expired completed records and remove stale lock markers",
    )
    doctor_parser.add_argument("--json", action="store_true", help="Emit JSON output")
    doctor_parser.set_defaults(handler=_cmd_doctor)

    # status --------------------------------------------------------------
    status_parser = subparsers.add_parser(
        "status",
        parents=[common],
        help="Show project progress and active dispatches",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    status_parser.add_argument("--project", default=None, help="Only show this project ID")
    status_parser.add_argument("--json", action="store_true", help="Emit JSON output")
    status_parser.set_defaults(handler=_cmd_status)

    # plan ----------------------------------------------------------------
    plan_parser = subparsers.add_parser(
        "plan",
        parents=[common],
        help="Show the dispatch waves of a project manifest",
        description=(
            "Build the dependency graph of a YAML project manifest and print the\n"
            "waves in which its items become ready, plus skipped items and cycles.\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    plan_parser.add_argument("manifest", help="Path to the YAML project manifest")
    plan_parser.add_argument("--json", action="store_true", help="Emit JSON output")
    plan_parser.set_defaults(handler=_cmd_plan)

    # config --------------------------------------------------------------
    config_parser = subparsers.add_parser(
        "config",
        parents=[common],
        help="Show effective configuration",
        description=(
            "Display the effective config after merging defaults, file, env and --set.\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    config_parser.set_defaults(handler=_cmd_config)

    return parser


# ---------------------------------------------------------------------------
# Entrypoints
# ---------------------------------------------------------------------------


def run_cli(argv: Sequence[str] | None = None, *, stream: TextIO | None = None) -> int:
    """Run one CLI command; output goes to ``stream`` (stdout by default)."""

    parser = build_parser()
    namespace = parser.parse_args(list(argv) if argv is not None else None)
    namespace.stream = stream if stream is not None else sys.stdout
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return 2

    try:
        result = handler(namespace)
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code
    return int(result)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_doctor(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    _maybe_start_logging(args, config, command="doctor")
    store, project_store = _open_stores(config)

    report = check_dispatch_health(
        store,
        project_store=project_store,
        stale_dispatch_seconds=config["maintenance"]["stale_dispatch_seconds"],
        completed_retention_seconds=config["maintenance"]["completed_retention_seconds"],
        lock_stale_seconds=config["store"]["lock_stale_seconds"],
        fix=_flag(args, "fix"),
    )
    exit_code = 0 if report.healthy else 1

    if _flag(args, "json"):
        _emit_json(args, {"command": "doctor", **report.to_dict()})
        return exit_code

    renderer = _get_renderer(args)
    renderer.heading("dispatch-orchestrator doctor")
    renderer.kv("State file", store.path.as_posix())
    for finding in report.findings:
        label = f"{finding.check}: {finding.detail}"
        if finding.identifiers:
            label += f" ({', '.join(finding.identifiers)})"
        renderer.check(finding.severity.value, label)
    if report.fixed:
        renderer.section("Fixed:")
        renderer.items(report.fixed)
    if report.healthy:
        renderer.text("\nAll checks passed.")
    elif not _flag(args, "fix"):
        renderer.text("\nSome checks need attention; rerun with --fix to apply safe repairs.")
    return exit_code


def _cmd_status(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    _maybe_start_logging(args, config, command="status")
    store, project_store = _open_stores(config)

    only_project = _optional_str(getattr(args, "project", None))
    projects = [
        state
        for state in project_store.list_project_dispatches()
        if only_project is None or state.project_id == only_project
    ]
    if only_project is not None and not projects:
        raise CLIError(f"unknown project: {only_project}", exit_code=2)

    state = store.read()
    now = utc_now()
    project_rows: list[dict[str, object]] = []
    for project in projects:
        counts = progress_counts(project.issues)
        project_rows.append(
            {
                "project_id": project.project_id,
                "name": project.project_name,
                "status": project.status.value,
                "done": counts.done,
                "total": counts.total,
                "stuck": counts.stuck,
                "dispatched": counts.dispatched,
                "max_concurrent": project.max_concurrent,
            }
        )
    active = [
        record
        for record in state.active.values()
        if only_project is None or record.project_id == only_project
    ]
    active_rows: list[dict[str, object]] = [
        {
            "identifier": record.identifier,
            "project_id": record.project_id,
            "status": record.status.value,
            "attempt": record.attempt,
            "age_seconds": round(record.age_seconds(now), 1),
        }
        for record in active
    ]

    if _flag(args, "json"):
        _emit_json(
            args,
            {
                "command": "status",
                "projects": project_rows,
                "active": active_rows,
                "completed": len(state.completed),
            },
        )
        return 0

    renderer = _get_renderer(args)
    if not project_rows and not active_rows:
        renderer.text(f"No dispatch state found in {store.path.as_posix()}")
        return 0
    renderer.table(
        ("PROJECT", "STATUS", "PROGRESS", "STUCK", "IN FLIGHT"),
        [
            (
                str(row["project_id"]),
                str(row["status"]),
                f"{row['done']}/{row['total']}",
                str(row["stuck"]),
                str(row["dispatched"]),
            )
            for row in project_rows
        ],
        title="Projects:",
    )
    renderer.table(
        ("IDENTIFIER", "PROJECT", "STATUS", "ATTEMPT", "AGE"),
        [
            (
                record.identifier,
                record.project_id or "-",
                record.status.value,
                str(record.attempt),
                _format_age(record.age_seconds(now)),
            )
            for record in active
        ],
        title="Active dispatches:",
    )
    renderer.section(f"Completed records: {len(state.completed)}")
    return 0


def _cmd_plan(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    _maybe_start_logging(args, config, command="plan")
    project = load_project_manifest(Path(args.manifest))

    builder = DependencyGraphBuilder(config["dispatch"]["skip_label_pattern"])
    issues = builder.build(project.items)
    waves = dispatch_waves(issues)
    cycles = find_cycles(issues)
    skipped = [key for key, item in issues.items() if item.status is WorkItemStatus.SKIPPED]
    planned = {identifier for wave in waves for identifier in wave}
    unreachable = [
        key
        for key, item in issues.items()
        if item.status is not WorkItemStatus.SKIPPED and key not in planned
    ]

    if _flag(args, "json"):
        _emit_json(
            args,
            {
                "command": "plan",
                "project_id": project.project_id,
                "name": project.name,
                "waves": [list(wave) for wave in waves],
                "skipped": skipped,
                "cycles": [list(cycle) for cycle in cycles],
                "unreachable": unreachable,
                "depends_on": {
                    key: sorted(item.depends_on)
                    for key, item in issues.items()
                    if item.status is not WorkItemStatus.SKIPPED
                },
            },
        )
        return 0

    renderer = _get_renderer(args)
    renderer.heading(f"{project.name} ({project.project_id})")
    for index, wave in enumerate(waves, start=1):
        renderer.kv(f"Wave {index}", ", ".join(wave))
    if skipped:
        renderer.section("Skipped:")
        renderer.items(skipped)
    if cycles:
        renderer.section("Dependency cycles (never dispatched):")
        renderer.items([" -> ".join(cycle) for cycle in cycles])
    if unreachable:
        renderer.section("Blocked forever:")
        renderer.items(unreachable)
    return 0


def _cmd_config(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    _get_stream(args).write(dump_effective_config(config) + "\n")
    return 0


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _load_effective_config(args: argparse.Namespace) -> dict[str, Any]:
    config_path = _optional_str(getattr(args, "config_path", None))
    try:
        return load_config(config_path, cli_overrides=_parse_overrides(args.overrides))
    except (ConfigLoadError, ConfigValidationError) as exc:
        raise CLIError(str(exc), exit_code=2) from exc


def _parse_overrides(raw: Sequence[str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for entry in raw:
        key, sep, value = entry.partition("=")
        key = key.strip()
        if not sep or not key or "." not in key:
            raise CLIError(f"invalid --set value {entry!r}; expected SECTION.KEY=VALUE", 2)
        # YAML scalar rules give ints, floats and booleans their natural types.
        try:
            overrides[key] = yaml.safe_load(value) if value.strip() else value
        except yaml.YAMLError as exc:
            raise CLIError(f"invalid --set value {entry!r}: {exc}", 2) from exc
    return overrides


def _open_stores(config: Mapping[str, Any]) -> tuple[DispatchStateStore, ProjectDispatchStore]:
    store_config = config["store"]
    lock_options = LockOptions(
        stale_seconds=store_config["lock_stale_seconds"],
        retry_seconds=store_config["lock_retry_seconds"],
        timeout_seconds=store_config["lock_timeout_seconds"],
    )
    return (
        DispatchStateStore(
            store_config["state_path"],
            lock_options=lock_options,
            max_processed_events=store_config["max_processed_events"],
        ),
        ProjectDispatchStore(store_config["project_state_path"], lock_options=lock_options),
    )


def _maybe_start_logging(
    args: argparse.Namespace, config: Mapping[str, Any], *, command: str
) -> None:
    if not _flag(args, "verbose"):
        return
    run_id = f"cli-{command}-{datetime.now(UTC).strftime('%Y%m%dT%H%M%S')}"
    observability = {**config["observability"], "log_to_stdout": False}
    handle = setup_logging(observability, run_id=run_id)
    print(f"logging to {handle.log_path.as_posix()}", file=sys.stderr)


def _format_age(seconds: float) -> str:
    if seconds < 120:
        return f"{int(seconds)}s"
    if seconds < 2 * 3600:
        return f"{int(seconds // 60)}m"
    return f"{seconds / 3600:.1f}h"


def _get_stream(args: argparse.Namespace) -> TextIO:
    stream = getattr(args, "stream", None)
    return stream if stream is not None else sys.stdout


def _get_renderer(args: argparse.Namespace) -> CLIRenderer:
    return CLIRenderer(no_color=_flag(args, "no_color"), stream=_get_stream(args))


def _emit_json(args: argparse.Namespace, payload: Mapping[str, object]) -> None:
    _get_stream(args).write(json.dumps(payload, sort_keys=True, indent=2) + "\n")


def _optional_str(value: object) -> str | None:
    if not isinstance(value, str):
        return None
    cleaned = value.strip()
    return cleaned or None


def _flag(args: argparse.Namespace, name: str) -> bool:
    value = getattr(args, name, False)
    return bool(value)


__all__ = ["CLIError", "build_parser", "run_cli"]
