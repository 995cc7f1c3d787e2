"""
dispatch-orchestrator — advisory lock markers for shared state files.

File: src/dispatch_orchestrator/persistence/file_lock.py
Last updated: 2026-10-16

Purpose
- Serialize read-modify-write cycles on a state file across processes.

Functional requirements
- The lock is a marker file ``<path>.lock`` created with ``O_CREAT | O_EXCL`` and holding
  the acquisition time (epoch seconds).
- A marker older than the staleness threshold is assumed to belong to a crashed holder
  and is removed.
- After the acquire timeout the marker is force-removed once as a last resort.
- ``file_lock`` releases on every exit path.
"""

from __future__ import annotations

import contextlib
import os
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Final

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator

LOCK_SUFFIX: Final[str] = ".lock"


class LockTimeoutError(TimeoutError):
    """Raised when a lock marker cannot be created even after forced removal."""


@dataclass(frozen=True, slots=True)
class LockOptions:
    stale_seconds: float = 30.0
    retry_seconds: float = 0.05
    timeout_seconds: float = 10.0

    def __post_init__(self) -> None:
        if self.stale_seconds <= 0:
            raise ValueError("stale_seconds must be > 0")
        if self.retry_seconds <= 0:
            raise ValueError("retry_seconds must be > 0")
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")


def lock_path_for(path: str | os.PathLike[str]) -> Path:
    target = Path(path)
    return target.with_name(target.name + LOCK_SUFFIX)


def lock_age_seconds(lock_path: Path, *, now: float | None = None) -> float | None:
    """
    Age of a lock marker in seconds, or ``None`` when no marker exists.

    The timestamp written inside the marker wins; the file mtime is the fallback
    for markers whose content is unreadable.
    """

    reference = time.time() if now is None else now
    try:
        content = lock_path.read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        return None
    except OSError:
        content = ""

    try:
        acquired_at = float(content)
    except ValueError:
        try:
            acquired_at = lock_path.stat().st_mtime
        except FileNotFoundError:
            return None
    return max(reference - acquired_at, 0.0)


def is_lock_stale(lock_path: Path, stale_seconds: float, *, now: float | None = None) -> bool:
    age = lock_age_seconds(lock_path, now=now)
    return age is not None and age > stale_seconds


def remove_stale_lock(path: str | os.PathLike[str], stale_seconds: float = 30.0) -> bool:
    """Remove the lock marker of ``path`` if it is stale. Returns ``True`` when removed."""

    marker = lock_path_for(path)
    if not is_lock_stale(marker, stale_seconds):
        return False
    with contextlib.suppress(FileNotFoundError):
        marker.unlink()
    return True


def acquire_file_lock(
    path: str | os.PathLike[str],
    options: LockOptions | None = None,
    *,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> Path:
    """Block until the lock marker for ``path`` is held and return its location."""

    opts = options or LockOptions()
    marker = lock_path_for(path)
    deadline = clock() + opts.timeout_seconds

    while clock() < deadline:
        if _try_create(marker):
            return marker
        if is_lock_stale(marker, opts.stale_seconds):
            with contextlib.suppress(FileNotFoundError):
                marker.unlink()
            continue
        sleep(opts.retry_seconds)

    # Last resort: the holder is presumed dead even though the marker is fresh.
    with contextlib.suppress(FileNotFoundError):
        marker.unlink()
    if _try_create(marker):
        return marker
    raise LockTimeoutError(f"unable to acquire lock {marker} within {opts.timeout_seconds}s")


def release_file_lock(path: str | os.PathLike[str]) -> None:
    with contextlib.suppress(FileNotFoundError):
        lock_path_for(path).unlink()


@contextmanager
def file_lock(
    path: str | os.PathLike[str],
    options: LockOptions | None = None,
) -> Iterator[Path]:
    """Scoped acquisition: acquire, yield the marker path, release on all paths."""

    marker = acquire_file_lock(path, options)
    try:
        yield marker
    finally:
        release_file_lock(path)


def _try_create(marker: Path) -> bool:
    try:
        fd = os.open(marker, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
    except FileExistsError:
        return False
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        handle.write(repr(time.time()))
    return True


__all__ = [
    "LOCK_SUFFIX",
    "LockOptions",
    "LockTimeoutError",
    "acquire_file_lock",
    "file_lock",
    "is_lock_stale",
    "lock_age_seconds",
    "lock_path_for",
    "release_file_lock",
    "remove_stale_lock",
]
