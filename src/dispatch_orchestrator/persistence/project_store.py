"""Persistence of per-project dispatch graphs, keyed by project id, in a sibling state file."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Final

import structlog

from dispatch_orchestrator.domain.models import ProjectDispatchState
from dispatch_orchestrator.persistence.dispatch_store import DispatchStateError
from dispatch_orchestrator.persistence.json_state import LockedJsonFile

if TYPE_CHECKING:
    import os
    from collections.abc import Callable
    from pathlib import Path

    from dispatch_orchestrator.persistence.file_lock import LockOptions

PROJECT_STATE_VERSION: Final[int] = 1


class ProjectDispatchStore:
    """Read and write :class:`ProjectDispatchState` documents side by side."""

    def __init__(
        self,
        path: str | os.PathLike[str],
        *,
        lock_options: LockOptions | None = None,
        logger: Any | None = None,
    ) -> None:
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._file = LockedJsonFile(path, lock_options=lock_options, logger=self._logger)

    @property
    def path(self) -> Path:
        return self._file.path

    @property
    def lock_path(self) -> Path:
        return self._file.lock_path

    def read_project_dispatch(self, project_id: str) -> ProjectDispatchState | None:
        raw = self._projects(self._file.load()).get(project_id)
        if raw is None:
            return None
        return self._parse(project_id, raw)

    def write_project_dispatch(self, state: ProjectDispatchState) -> None:
        with self._file.locked():
            payload = self._file.load() or {}
            projects = dict(self._projects(payload))
            projects[state.project_id] = state.to_dict()
            self._file.save({"version": PROJECT_STATE_VERSION, "projects": projects})

    def update_project_dispatch(
        self,
        project_id: str,
        fn: Callable[[ProjectDispatchState], bool],
    ) -> ProjectDispatchState | None:
        """
        Read-modify-write one project under the state file lock.

        ``fn`` mutates the state in place and returns whether it changed
        anything. The updated state is returned only when it was saved; a
        missing project is never passed to ``fn``.
        """

        with self._file.locked():
            payload = self._file.load() or {}
            projects = dict(self._projects(payload))
            raw = projects.get(project_id)
            if raw is None:
                return None
            state = self._parse(project_id, raw)
            if not fn(state):
                return None
            projects[project_id] = state.to_dict()
            self._file.save({"version": PROJECT_STATE_VERSION, "projects": projects})
        return state

    def delete_project_dispatch(self, project_id: str) -> bool:
        with self._file.locked():
            payload = self._file.load() or {}
            projects = dict(self._projects(payload))
            if projects.pop(project_id, None) is None:
                return False
            self._file.save({"version": PROJECT_STATE_VERSION, "projects": projects})
        return True

    def list_project_dispatches(self) -> list[ProjectDispatchState]:
        projects = self._projects(self._file.load())
        return [self._parse(project_id, raw) for project_id, raw in projects.items()]

    def _projects(self, payload: dict[str, Any] | None) -> dict[str, Any]:
        if payload is None:
            return {}
        version = payload.get("version", PROJECT_STATE_VERSION)
        if version != PROJECT_STATE_VERSION:
            raise DispatchStateError(f"unknown project dispatch state version: {version!r}")
        projects = payload.get("projects", {})
        if not isinstance(projects, dict):
            raise DispatchStateError(f"invalid project dispatch state in {self.path}: projects")
        return projects

    def _parse(self, project_id: str, raw: object) -> ProjectDispatchState:
        if not isinstance(raw, dict):
            raise DispatchStateError(f"invalid project dispatch entry {project_id!r}")
        try:
            return ProjectDispatchState.from_dict(raw)
        except ValueError as exc:
            raise DispatchStateError(f"invalid project dispatch entry {project_id!r}: {exc}") from exc


__all__ = ["PROJECT_STATE_VERSION", "ProjectDispatchStore"]
