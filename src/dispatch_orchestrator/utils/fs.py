"""
dispatch-orchestrator — state file helpers

File: src/dispatch_orchestrator/utils/fs.py
Last updated: 2026-10-16

Purpose
- Crash-safe replacement of the JSON state documents and forensics for unreadable ones.

Functional requirements
- A state document is replaced in one ``os.replace`` from a sibling temp file, so a
  reader that skips the lock sees either the old or the new document.
- Unreadable documents are moved aside under a timestamped name, never overwritten.
"""

from __future__ import annotations

import os
import tempfile
import time
from collections.abc import Callable
from pathlib import Path

PathLike = str | os.PathLike[str]


def ensure_parent_dir(path: PathLike) -> Path:
    """Create the directory that will hold ``path`` and return ``path`` as a Path."""

    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    return target


def read_text_or_none(path: PathLike) -> str | None:
    """Return the UTF-8 content of ``path``, or ``None`` if the document does not exist yet."""

    try:
        return Path(path).read_text(encoding="utf-8")
    except FileNotFoundError:
        return None


def atomic_write(path: PathLike, text: str) -> None:
    """
    Replace ``path`` with ``text``.

    The temp file lives next to the target so the final rename never crosses
    filesystems; it is removed again if anything fails before the rename.
    """

    target = ensure_parent_dir(path)
    with tempfile.NamedTemporaryFile(
        "w",
        encoding="utf-8",
        dir=target.parent,
        prefix=f".{target.name}.",
        suffix=".tmp",
        delete=False,
    ) as handle:
        staged = Path(handle.name)
        try:
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
        except BaseException:
            handle.close()
            staged.unlink(missing_ok=True)
            raise

    try:
        os.replace(staged, target)
    except BaseException:
        staged.unlink(missing_ok=True)
        raise
    _sync_directory(target.parent)


def quarantine_file(
    path: PathLike,
    label: str,
    *,
    clock_ms: Callable[[], int] | None = None,
) -> Path | None:
    """
    Move ``path`` to ``<name>.<label>.<epoch_ms>`` beside it.

    Returns the new location, or ``None`` when another process already moved
    or removed the file.
    """

    source = Path(path)
    stamp = clock_ms() if clock_ms is not None else int(time.time() * 1000)
    destination = source.with_name(f"{source.name}.{label}.{stamp}")
    try:
        os.replace(source, destination)
    except FileNotFoundError:
        return None
    return destination


def _sync_directory(directory: Path) -> None:
    # Directory fsync makes the rename durable; Windows and some filesystems refuse it.
    if os.name == "nt":
        return
    try:
        fd = os.open(directory, os.O_RDONLY | getattr(os, "O_DIRECTORY", 0))
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        pass
    finally:
        os.close(fd)


__all__ = [
    "atomic_write",
    "ensure_parent_dir",
    "quarantine_file",
    "read_text_or_none",
]
