"""
dispatch-orchestrator config package public API.

File: src/dispatch_orchestrator/config/__init__.py
Last updated: 2026-10-16

Purpose
- Export config loading and validation entrypoints and public error types.

Functional requirements
- Support loading from ``dispatch.toml`` + ``DISPATCH_`` env overrides.
- Fail fast with clear structured validation and load errors.
"""

from dispatch_orchestrator.config.loader import (
    DEFAULT_CONFIG_FILE,
    ENV_PREFIX,
    ConfigLoadError,
    dump_effective_config,
    env_name_for_path,
    load_config,
    normalize_paths,
)
from dispatch_orchestrator.config.schema import (
    CONFIG_SCHEMA_VERSION,
    DEFAULT_CONFIG,
    PATH_FIELDS,
    ConfigValidationError,
    ConfigValidationIssue,
    ConfigValidationResult,
    DispatchOrchestratorConfig,
    assert_valid_config,
    default_config,
    merge_config,
    migration_guidance,
    validate_config,
)

__all__ = [
    "CONFIG_SCHEMA_VERSION",
    "ConfigLoadError",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "DEFAULT_CONFIG_FILE",
    "DispatchOrchestratorConfig",
    "ENV_PREFIX",
    "PATH_FIELDS",
    "assert_valid_config",
    "default_config",
    "dump_effective_config",
    "env_name_for_path",
    "load_config",
    "merge_config",
    "migration_guidance",
    "normalize_paths",
    "validate_config",
]
