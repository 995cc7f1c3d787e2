"""
dispatch-orchestrator — runtime config loader.

File: src/dispatch_orchestrator/config/loader.py
Last updated: 2026-10-16

Purpose
- Build the effective configuration from four layers: built-in defaults, the
  ``dispatch.toml`` file, ``DISPATCH_*`` environment variables and ``--set``
  overrides from the command line.

Functional requirements
- Later layers win: CLI > env > file > defaults.
- A missing ``./dispatch.toml`` means "defaults only"; a missing explicit path is an error.
- Environment values are coerced to the type of the default they replace.
- Store and log paths are resolved against the directory of the config file.
"""

from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any, Final

from dispatch_orchestrator.config.schema import (
    PATH_FIELDS,
    assert_valid_config,
    default_config,
    merge_config,
)

DEFAULT_CONFIG_FILE: Final[str] = "dispatch.toml"
ENV_PREFIX: Final[str] = "DISPATCH_"

_TRUTHY: Final[frozenset[str]] = frozenset({"1", "true", "yes", "on"})
_FALSY: Final[frozenset[str]] = frozenset({"0", "false", "no", "off"})


class ConfigLoadError(ValueError):
    """Config file unreadable, or an override that cannot be applied."""


def load_config(
    config_path: str | Path | None = None,
    *,
    cli_overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Return the validated effective config with all path fields made absolute."""

    explicit = config_path is not None
    source = (
        Path(config_path).expanduser().resolve()
        if explicit
        else (Path.cwd() / DEFAULT_CONFIG_FILE).resolve()
    )

    # The file layer is validated on its own so its mistakes are reported
    # against the file rather than against a later override.
    config = assert_valid_config(merge_config(default_config(), _read_toml(source, explicit)))
    config = merge_config(config, env_overrides(config, os.environ if environ is None else environ))
    config = merge_config(config, _cli_layer(cli_overrides or {}))
    config = assert_valid_config(config)
    return normalize_paths(config, base_dir=source.parent)


def env_name_for_path(path: tuple[str, ...]) -> str:
    return ENV_PREFIX + "_".join(part.upper() for part in path)


def env_overrides(config: Mapping[str, Any], environ: Mapping[str, str]) -> dict[str, Any]:
    """
    Collect ``DISPATCH_<SECTION>_<KEY>`` variables that name a known setting.

    Variables with the prefix that match no setting are ignored.
    """

    overrides: dict[str, Any] = {}
    for section, fields in sorted(config.items()):
        if not isinstance(fields, Mapping):
            continue
        for key, current in sorted(fields.items()):
            name = env_name_for_path((section, key))
            raw = environ.get(name)
            if raw is None:
                continue
            coerce = _coercer_for(current)
            if coerce is None:
                continue
            try:
                value = coerce(raw.strip())
            except ValueError as exc:
                raise ConfigLoadError(f"{name} -> {section}.{key} {exc}") from None
            overrides.setdefault(section, {})[key] = value
    return overrides


def normalize_paths(config: Mapping[str, Any], *, base_dir: Path) -> dict[str, Any]:
    """Return a copy of ``config`` with every path field absolute and normalized."""

    normalized = merge_config({}, config)
    for section, key in PATH_FIELDS:
        raw = normalized.get(section, {}).get(key)
        if not isinstance(raw, str):
            continue
        candidate = Path(os.path.expandvars(raw)).expanduser()
        if not candidate.is_absolute():
            candidate = base_dir / candidate
        normalized[section][key] = Path(os.path.normpath(candidate)).as_posix()
    return normalized


def dump_effective_config(config: Mapping[str, object]) -> str:
    return json.dumps(config, sort_keys=True, indent=2, ensure_ascii=False)


def _read_toml(path: Path, required: bool) -> dict[str, Any]:
    try:
        with path.open("rb") as handle:
            return tomllib.load(handle)
    except FileNotFoundError:
        if required:
            raise ConfigLoadError(f"config file not found: {path}") from None
        return {}
    except tomllib.TOMLDecodeError as exc:
        raise ConfigLoadError(f"invalid TOML in {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigLoadError(f"unable to read config file {path}: {exc}") from exc


def _cli_layer(overrides: Mapping[str, object]) -> dict[str, Any]:
    layer: dict[str, Any] = {}
    for dotted, value in sorted(overrides.items()):
        section, _, key = dotted.partition(".")
        if not section or not key or "." in key:
            raise ConfigLoadError(f"invalid override key {dotted!r}; expected SECTION.KEY")
        layer.setdefault(section, {})[key] = value
    return layer


def _coercer_for(default: object) -> Callable[[str], object] | None:
    # bool first: it is a subclass of int.
    if isinstance(default, bool):
        return _parse_bool
    if isinstance(default, int):
        return _parse_int
    if isinstance(default, float):
        return _parse_float
    if isinstance(default, str):
        return str
    return None


def _parse_bool(raw: str) -> bool:
    lowered = raw.lower()
    if lowered in _TRUTHY:
        return True
    if lowered in _FALSY:
        return False
    raise ValueError("must be a boolean (true/false/1/0/yes/no/on/off)")


def _parse_int(raw: str) -> int:
    try:
        return int(raw)
    except ValueError:
        raise ValueError("must be an integer") from None


def _parse_float(raw: str) -> float:
    try:
        return float(raw)
    except ValueError:
        raise ValueError("must be a number") from None


__all__ = [
    "ConfigLoadError",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "dump_effective_config",
    "env_name_for_path",
    "env_overrides",
    "load_config",
    "normalize_paths",
]
