"""
dispatch-orchestrator — terminal output for CLI commands.

Every line goes through one writer bound to an injectable stream, so command
handlers can be driven from tests with a ``StringIO``. ANSI color is only used
when the stream is a TTY, ``NO_COLOR`` is unset and ``--no-color`` was not given.
"""

from __future__ import annotations

import os
import sys
from typing import TYPE_CHECKING, Final, TextIO

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

_RESET: Final[str] = "\x1b[0m"
_BOLD: Final[str] = "\x1b[1m"

# severity -> (tag, ANSI color); tags are padded so labels line up.
CHECK_TAGS: Final[dict[str, tuple[str, str]]] = {
    "ok": ("OK", "\x1b[32m"),
    "warning": ("WARN", "\x1b[33m"),
    "error": ("FAIL", "\x1b[31m"),
}
_TAG_WIDTH: Final[int] = 6


def wants_color(stream: TextIO, *, disabled: bool = False) -> bool:
    if disabled or os.environ.get("NO_COLOR"):
        return False
    isatty = getattr(stream, "isatty", None)
    return bool(isatty is not None and isatty())


def layout_table(headers: Sequence[str], rows: Iterable[Sequence[object]]) -> list[str]:
    """Left-align ``rows`` under ``headers``; short rows are padded, long rows truncated."""

    width = len(headers)
    cells = [[str(value) for value in row][:width] for row in rows]
    cells = [row + [""] * (width - len(row)) for row in cells]
    widths = [max([len(header), *(len(row[col]) for row in cells)]) for col, header in enumerate(headers)]

    def line(values: Sequence[str]) -> str:
        return "  ".join(value.ljust(size) for value, size in zip(values, widths)).rstrip()

    return [line(list(headers)), line(["-" * size for size in widths]), *(line(row) for row in cells)]


class CLIRenderer:
    """Plain-text writer used by every human-readable command output."""

    def __init__(self, *, no_color: bool = False, stream: TextIO | None = None) -> None:
        self._stream = stream if stream is not None else sys.stdout
        self._color = wants_color(self._stream, disabled=no_color)

    def heading(self, text: str) -> None:
        self._write(self._paint(text, _BOLD))

    def kv(self, key: str, value: object) -> None:
        self._write(f"{key}: {value}")

    def text(self, line: str) -> None:
        self._write(line)

    def section(self, title: str) -> None:
        self._write("")
        self._write(title)

    def items(self, entries: Iterable[str], *, prefix: str = "- ") -> None:
        for entry in entries:
            self._write(f"  {prefix}{entry}")

    def check(self, severity: str, label: str) -> None:
        """One doctor line, e.g. ``  OK    stale_locks: none``."""

        tag, color = CHECK_TAGS.get(severity, CHECK_TAGS["error"])
        padding = " " * (_TAG_WIDTH - len(tag))
        self._write(f"  {self._paint(tag, color)}{padding}{label}")

    def table(
        self,
        headers: Sequence[str],
        rows: Sequence[Sequence[object]],
        *,
        title: str | None = None,
    ) -> None:
        if not rows:
            return
        if title:
            self.section(title)
        for line in layout_table(headers, rows):
            self._write(f"  {line}")

    def _paint(self, text: str, color: str) -> str:
        return f"{color}{text}{_RESET}" if self._color else text

    def _write(self, line: str) -> None:
        self._stream.write(f"{line}\n")


__all__ = ["CHECK_TAGS", "CLIRenderer", "layout_table", "wants_color"]
