"""Lock-guarded JSON documents with atomic replacement."""

from __future__ import annotations

import json
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog

from dispatch_orchestrator.persistence.file_lock import LockOptions, file_lock, lock_path_for
from dispatch_orchestrator.utils.fs import (
    atomic_write,
    ensure_parent_dir,
    quarantine_file,
    read_text_or_none,
)

if TYPE_CHECKING:
    import os
    from collections.abc import Iterator, Mapping


class LockedJsonFile:
    """
    One JSON object on disk shared by several writers.

    Readers never take the lock: writes go through ``atomic_write`` so a reader
    always sees either the previous or the next complete document. Writers wrap
    their read-modify-write cycle in :meth:`locked`.
    """

    __slots__ = ("_path", "_lock_options", "_logger")

    def __init__(
        self,
        path: str | os.PathLike[str],
        *,
        lock_options: LockOptions | None = None,
        logger: Any | None = None,
    ) -> None:
        self._path = Path(path)
        self._lock_options = lock_options or LockOptions()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def path(self) -> Path:
        return self._path

    @property
    def lock_path(self) -> Path:
        return lock_path_for(self._path)

    @property
    def lock_options(self) -> LockOptions:
        return self._lock_options

    def load(self) -> dict[str, Any] | None:
        """
        Return the parsed document, or ``None`` when it is missing or unreadable.

        Unparseable content is moved to ``<path>.corrupted.<epoch_ms>`` so the
        next write starts from a clean slate without destroying evidence.
        """

        raw = read_text_or_none(self._path)
        if raw is None:
            return None

        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            self._quarantine(f"invalid JSON: {exc}")
            return None

        if not isinstance(parsed, dict):
            self._quarantine(f"root must be an object, got {type(parsed).__name__}")
            return None
        return parsed

    def save(self, payload: Mapping[str, Any]) -> None:
        rendered = json.dumps(payload, indent=2, ensure_ascii=False)
        atomic_write(self._path, rendered + "\n")

    @contextmanager
    def locked(self) -> Iterator[None]:
        ensure_parent_dir(self._path)
        with file_lock(self._path, self._lock_options):
            yield

    def _quarantine(self, reason: str) -> None:
        moved_to = quarantine_file(self._path, "corrupted")
        self._logger.warning(
            "state_file_corrupted",
            path=str(self._path),
            reason=reason,
            moved_to=None if moved_to is None else str(moved_to),
        )


__all__ = ["LockedJsonFile"]
