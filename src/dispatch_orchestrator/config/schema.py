"""
dispatch-orchestrator — configuration schema.

Built-in defaults for every section of ``dispatch.toml`` and the rules each
field must satisfy. Validation walks a per-section rule table, collects every
problem as a ``ConfigValidationIssue`` (dotted path plus reason) and rejects
keys the table does not know.
"""

from __future__ import annotations

import copy
import math
import re
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final, Literal, TypedDict

CONFIG_SCHEMA_VERSION: Final[int] = 1

LOG_LEVELS: Final[tuple[str, ...]] = ("DEBUG", "INFO", "WARNING", "ERROR")

# Config paths that are normalized relative to the config file location.
PATH_FIELDS: Final[tuple[tuple[str, str], ...]] = (
    ("store", "state_path"),
    ("store", "project_state_path"),
    ("observability", "log_dir"),
)


class MetaConfig(TypedDict):
    schema_version: int


class DispatchConfig(TypedDict):
    max_concurrent: int
    max_rework_attempts: int
    skip_label_pattern: str


class WatchdogConfig(TypedDict):
    inactivity_seconds: float
    max_total_seconds: float


class GuardConfig(TypedDict):
    dedup_ttl_seconds: float
    sweep_interval_seconds: float
    stale_dispatch_seconds: float


class StoreConfig(TypedDict):
    state_path: str
    project_state_path: str
    lock_stale_seconds: float
    lock_retry_seconds: float
    lock_timeout_seconds: float
    max_processed_events: int


class MaintenanceConfig(TypedDict):
    interval_seconds: float
    stale_dispatch_seconds: float
    zombie_dispatch_seconds: float
    completed_retention_seconds: float


class ObservabilityConfig(TypedDict):
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"]
    log_dir: str
    log_to_stdout: bool


class DispatchOrchestratorConfig(TypedDict):
    meta: MetaConfig
    dispatch: DispatchConfig
    watchdog: WatchdogConfig
    guard: GuardConfig
    store: StoreConfig
    maintenance: MaintenanceConfig
    observability: ObservabilityConfig


DEFAULT_CONFIG: Final[DispatchOrchestratorConfig] = {
    "meta": {
        "schema_version": CONFIG_SCHEMA_VERSION,
    },
    "dispatch": {
        "max_concurrent": 3,
        "max_rework_attempts": 2,
        "skip_label_pattern": "epic",
    },
    "watchdog": {
        "inactivity_seconds": 120.0,
        "max_total_seconds": 7200.0,
    },
    "guard": {
        "dedup_ttl_seconds": 60.0,
        "sweep_interval_seconds": 10.0,
        "stale_dispatch_seconds": 1800.0,
    },
    "store": {
        "state_path": "state/dispatch-state.json",
        "project_state_path": "state/project-dispatch.json",
        "lock_stale_seconds": 30.0,
        "lock_retry_seconds": 0.05,
        "lock_timeout_seconds": 10.0,
        "max_processed_events": 200,
    },
    "maintenance": {
        "interval_seconds": 300.0,
        "stale_dispatch_seconds": 7200.0,
        "zombie_dispatch_seconds": 1800.0,
        "completed_retention_seconds": 604800.0,
    },
    "observability": {
        "log_level": "INFO",
        "log_dir": "logs",
        "log_to_stdout": True,
    },
}


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    """One rejected field: dotted path plus a human readable reason."""

    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ValueError):
    """Raised by ``assert_valid_config``; carries every issue found."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        lines = [f"- {issue.path}: {issue.message}" for issue in self.issues]
        super().__init__("invalid config:\n" + ("\n".join(lines) or "unknown validation failure"))


class _Rejected(Exception):
    """Internal signal from a field check; the message becomes the issue text."""


FieldCheck = Callable[[object], Any]


def _type_name(value: object) -> str:
    return type(value).__name__


def _integer(minimum: int) -> FieldCheck:
    def check(value: object) -> int:
        # bool is an int subclass, but ``true`` is never a count.
        if isinstance(value, bool) or not isinstance(value, int):
            raise _Rejected(f"expected integer, got {_type_name(value)}")
        if value < minimum:
            raise _Rejected(f"must be >= {minimum}")
        return value

    return check


def _seconds(value: object) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise _Rejected(f"expected number, got {_type_name(value)}")
    seconds = float(value)
    if not math.isfinite(seconds):
        raise _Rejected("must be finite")
    if seconds <= 0:
        raise _Rejected("must be > 0")
    return seconds


def _text(value: object) -> str:
    if not isinstance(value, str):
        raise _Rejected(f"expected string, got {_type_name(value)}")
    stripped = value.strip()
    if not stripped:
        raise _Rejected("must not be empty")
    return stripped


def _filesystem_path(value: object) -> str:
    text = _text(value)
    if "\x00" in text:
        raise _Rejected("must not contain NUL bytes")
    return text


def _label_pattern(value: object) -> str:
    pattern = _text(value)
    try:
        re.compile(pattern)
    except re.error as exc:
        raise _Rejected(f"invalid regular expression: {exc}") from None
    return pattern


def _flag(value: object) -> bool:
    if not isinstance(value, bool):
        raise _Rejected(f"expected boolean, got {_type_name(value)}")
    return value


def _log_level(value: object) -> str:
    level = _text(value)
    if level not in LOG_LEVELS:
        raise _Rejected(f"invalid value {level!r}; expected one of: {', '.join(sorted(LOG_LEVELS))}")
    return level


def _schema_version(value: object) -> int:
    version = _integer(1)(value)
    if version != CONFIG_SCHEMA_VERSION:
        raise _Rejected(migration_guidance(version))
    return version


# Section order here is the order issues are reported in.
_SECTION_RULES: Final[dict[str, dict[str, FieldCheck]]] = {
    "meta": {"schema_version": _schema_version},
    "dispatch": {
        "max_concurrent": _integer(1),
        "max_rework_attempts": _integer(0),
        "skip_label_pattern": _label_pattern,
    },
    "watchdog": {"inactivity_seconds": _seconds, "max_total_seconds": _seconds},
    "guard": {
        "dedup_ttl_seconds": _seconds,
        "sweep_interval_seconds": _seconds,
        "stale_dispatch_seconds": _seconds,
    },
    "store": {
        "state_path": _filesystem_path,
        "project_state_path": _filesystem_path,
        "lock_stale_seconds": _seconds,
        "lock_retry_seconds": _seconds,
        "lock_timeout_seconds": _seconds,
        "max_processed_events": _integer(1),
    },
    "maintenance": {
        "interval_seconds": _seconds,
        "stale_dispatch_seconds": _seconds,
        "zombie_dispatch_seconds": _seconds,
        "completed_retention_seconds": _seconds,
    },
    "observability": {
        "log_level": _log_level,
        "log_dir": _filesystem_path,
        "log_to_stdout": _flag,
    },
}

# (section, bounded field, bounding field): bounded must not exceed bounding.
_UPPER_BOUNDS: Final[tuple[tuple[str, str, str], ...]] = (
    ("watchdog", "inactivity_seconds", "max_total_seconds"),
    ("maintenance", "zombie_dispatch_seconds", "stale_dispatch_seconds"),
    ("guard", "sweep_interval_seconds", "dedup_ttl_seconds"),
)


def default_config() -> DispatchOrchestratorConfig:
    return copy.deepcopy(DEFAULT_CONFIG)


def migration_guidance(found_version: int) -> str:
    """Explain what to do about a ``meta.schema_version`` that does not match."""

    if found_version == CONFIG_SCHEMA_VERSION:
        return "schema version is current"
    direction = "older" if found_version < CONFIG_SCHEMA_VERSION else "newer"
    advice = (
        "upgrade dispatch.toml to the current schema"
        if direction == "older"
        else "upgrade the dispatch-orchestrator runtime"
    )
    return f"schema version {found_version} is {direction} than supported {CONFIG_SCHEMA_VERSION}; {advice}"


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deep-merge ``overlay`` onto a copy of ``base``; neither input is mutated."""

    merged: dict[str, Any] = {key: copy.deepcopy(value) for key, value in base.items()}
    for key, value in overlay.items():
        if isinstance(value, Mapping):
            current = merged.get(key)
            merged[key] = merge_config(current if isinstance(current, Mapping) else {}, value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def validate_config(config: Mapping[str, object] | object) -> ConfigValidationResult:
    """
    Check ``config`` against the section rules.

    All issues are collected before returning. Cross-field bounds are only
    checked once every individual field is valid. On success the returned
    config has numbers normalized to float and strings stripped.
    """

    if not isinstance(config, Mapping):
        issue = ConfigValidationIssue("<root>", f"expected object, got {_type_name(config)}")
        return ConfigValidationResult(config=None, issues=(issue,))

    issues: list[ConfigValidationIssue] = [
        ConfigValidationIssue(name, "unknown field")
        for name in sorted(str(key) for key in config if key not in _SECTION_RULES)
    ]
    normalized: dict[str, Any] = {}
    for section, rules in _SECTION_RULES.items():
        payload = config.get(section)
        if payload is None:
            issues.append(ConfigValidationIssue(section, "missing required section"))
        elif not isinstance(payload, Mapping):
            issues.append(ConfigValidationIssue(section, f"expected object, got {_type_name(payload)}"))
        else:
            normalized[section] = _check_section(section, payload, rules, issues)

    if not issues:
        for section, bounded, bounding in _UPPER_BOUNDS:
            values = normalized[section]
            if values[bounded] > values[bounding]:
                issues.append(
                    ConfigValidationIssue(
                        f"{section}.{bounded}", f"must not exceed {section}.{bounding}"
                    )
                )

    if issues:
        return ConfigValidationResult(config=None, issues=tuple(issues))
    return ConfigValidationResult(config=normalized, issues=())


def assert_valid_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    result = validate_config(config)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def _check_section(
    section: str,
    payload: Mapping[object, object],
    rules: Mapping[str, FieldCheck],
    issues: list[ConfigValidationIssue],
) -> dict[str, Any]:
    issues.extend(
        ConfigValidationIssue(f"{section}.{name}", "unknown field")
        for name in sorted(str(key) for key in payload if key not in rules)
    )
    values: dict[str, Any] = {}
    for name, check in rules.items():
        path = f"{section}.{name}"
        if name not in payload:
            issues.append(ConfigValidationIssue(path, "missing required field"))
            continue
        try:
            values[name] = check(payload[name])
        except _Rejected as exc:
            issues.append(ConfigValidationIssue(path, str(exc)))
    return values


__all__ = [
    "CONFIG_SCHEMA_VERSION",
    "DEFAULT_CONFIG",
    "LOG_LEVELS",
    "PATH_FIELDS",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DispatchOrchestratorConfig",
    "assert_valid_config",
    "default_config",
    "merge_config",
    "migration_guidance",
    "validate_config",
]
