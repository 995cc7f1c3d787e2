"""Process entrypoint: run the CLI and turn escaped exceptions into exit codes."""

from __future__ import annotations

import sys
import traceback
from enum import IntEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence


class ExitCode(IntEnum):
    SUCCESS = 0
    UNHEALTHY = 1
    CONFIG_ERROR = 2
    STATE_ERROR = 3
    INTERNAL_ERROR = 4


def cli_entrypoint(argv: Sequence[str] | None = None) -> int:
    """Entrypoint for ``python -m dispatch_orchestrator`` and the console script."""

    from dispatch_orchestrator.ui.cli import run_cli

    try:
        code = run_cli(argv)
    except SystemExit as exc:
        # argparse exits with 2 on usage errors and 0 after --help.
        code = exc.code
    except Exception as exc:  # noqa: BLE001 - process boundary.
        exit_code = classify_exception(exc)
        if exit_code is ExitCode.INTERNAL_ERROR:
            traceback.print_exception(exc, file=sys.stderr)
        else:
            print(f"error: {str(exc).strip() or type(exc).__name__}", file=sys.stderr)
        return int(exit_code)

    if code is None:
        return int(ExitCode.SUCCESS)
    if isinstance(code, int) and code in ExitCode._value2member_map_:
        return code
    if isinstance(code, str) and code.strip():
        print(code.strip(), file=sys.stderr)
    return int(ExitCode.INTERNAL_ERROR)


def classify_exception(exc: BaseException) -> ExitCode:
    """Map an exception, or anything in its cause chain, onto the exit-code contract."""

    from dispatch_orchestrator.config import ConfigLoadError, ConfigValidationError
    from dispatch_orchestrator.integration_plane.manifest import ManifestError
    from dispatch_orchestrator.persistence import DispatchStateError, LockTimeoutError

    state_errors = (DispatchStateError, LockTimeoutError)
    input_errors = (ConfigLoadError, ConfigValidationError, ManifestError)

    chain = list(_cause_chain(exc))
    if any(isinstance(item, state_errors) for item in chain):
        return ExitCode.STATE_ERROR
    if any(isinstance(item, input_errors) for item in chain):
        return ExitCode.CONFIG_ERROR
    if any(isinstance(item, (OSError, ValueError)) for item in chain):
        return ExitCode.CONFIG_ERROR
    return ExitCode.INTERNAL_ERROR


def _cause_chain(exc: BaseException) -> Iterator[BaseException]:
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        if current.__cause__ is not None:
            current = current.__cause__
        elif not current.__suppress_context__:
            current = current.__context__
        else:
            current = None


__all__ = ["ExitCode", "classify_exception", "cli_entrypoint"]
