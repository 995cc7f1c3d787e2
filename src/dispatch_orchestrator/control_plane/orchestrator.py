"""
dispatch-orchestrator — project orchestrator.

File: src/dispatch_orchestrator/control_plane/orchestrator.py
Last updated: 2026-10-16

Purpose
- Own the graph-level lifecycle of one project: build the dependency graph once,
  admit ready items up to the concurrency cap, and react to item completion and
  stuck callbacks until the project is completed or stuck.

Functional requirements
- Items are admitted first-ready-first-dispatched in listing order.
- Readiness is recomputed only after the triggering status change is persisted.
- Callbacks are no-ops once the project left ``dispatching``.
- Bookkeeping for one project is serialized by a per-project lock in-process and
  every read-modify-write runs under the state file lock across processes; the
  pipelines themselves run concurrently and are never cancelled from here.
- Items claimed for a round but never launched go back to ``pending``, even
  when the launch itself raises.

Non-functional requirements
- Store and tracker errors propagate to the caller; nothing is swallowed except
  notification and tracker-note delivery.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

import structlog

from dispatch_orchestrator.domain.models import (
    DispatchStatus,
    ProjectDispatchState,
    ProjectStatus,
    WorkItem,
    WorkItemStatus,
    utc_now,
)
from dispatch_orchestrator.integration_plane.interfaces import NotifyKind, NotifyPayload
from dispatch_orchestrator.planning.dependency_graph import (
    DEFAULT_SKIP_LABEL_PATTERN,
    DependencyGraphBuilder,
    find_cycles,
)
from dispatch_orchestrator.planning.readiness import (
    get_active_count,
    get_ready_issues,
    is_project_dispatch_complete,
    is_project_stuck,
    progress_counts,
    stuck_identifiers,
)

if TYPE_CHECKING:
    from dispatch_orchestrator.control_plane.notify import Notifier
    from dispatch_orchestrator.domain.models import DispatchRecord
    from dispatch_orchestrator.integration_plane.interfaces import IssueTrackerClient
    from dispatch_orchestrator.persistence.project_store import ProjectDispatchStore


LaunchFn = Callable[[str, WorkItem], Awaitable[bool]]


class ProjectOrchestrator:
    def __init__(
        self,
        *,
        tracker: IssueTrackerClient,
        store: ProjectDispatchStore,
        launch: LaunchFn,
        notifier: Notifier,
        skip_label_pattern: str = DEFAULT_SKIP_LABEL_PATTERN,
        default_max_concurrent: int = 3,
        logger: Any | None = None,
    ) -> None:
        if default_max_concurrent <= 0:
            raise ValueError("default_max_concurrent must be > 0")
        self._tracker = tracker
        self._store = store
        self._launch = launch
        self._notifier = notifier
        self._builder = DependencyGraphBuilder(skip_label_pattern)
        self._default_max_concurrent = default_max_concurrent
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._locks: dict[str, asyncio.Lock] = {}

    async def start_project_dispatch(
        self,
        project_id: str,
        *,
        max_concurrent: int | None = None,
    ) -> ProjectDispatchState | None:
        """
        Build and persist the project's graph, then run the first dispatch round.

        A project already ``dispatching`` is resumed rather than rebuilt. Returns
        ``None`` when the project has no items.
        """

        async with self._lock_for(project_id):
            existing = self._store.read_project_dispatch(project_id)
            if existing is not None and existing.status is ProjectStatus.DISPATCHING:
                self._logger.info("project_dispatch_resumed", project_id=project_id)
                await self._dispatch_ready(project_id)
                return self._store.read_project_dispatch(project_id)

            project = await self._tracker.fetch_project(project_id)
            issues = self._builder.build(project.items)
            if not issues:
                self._logger.warning("project_has_no_items", project_id=project_id)
                return None

            cycles = find_cycles(issues)
            if cycles:
                self._logger.warning(
                    "dependency_cycle_detected",
                    project_id=project_id,
                    cycles=[list(cycle) for cycle in cycles],
                )

            state = ProjectDispatchState(
                project_id=project_id,
                project_name=project.name,
                root_identifier=project.root_identifier or project_id,
                issues=issues,
                max_concurrent=max_concurrent or self._default_max_concurrent,
            )
            self._store.write_project_dispatch(state)
            counts = progress_counts(state.issues)
            self._logger.info(
                "project_dispatch_started",
                project_id=project_id,
                total=counts.total,
                skipped=len(issues) - counts.total,
                max_concurrent=state.max_concurrent,
            )

            if is_project_dispatch_complete(state.issues):
                await self._finalize(project_id, ProjectStatus.COMPLETED)
            else:
                await self._dispatch_ready(project_id)
            return self._store.read_project_dispatch(project_id)

    async def dispatch_ready_issues(self, project_id: str) -> list[str]:
        """Re-enter the dispatch loop; returns the identifiers launched."""

        async with self._lock_for(project_id):
            return await self._dispatch_ready(project_id)

    async def on_item_completed(self, project_id: str, identifier: str) -> None:
        async with self._lock_for(project_id):
            state = self._record_item_status(project_id, identifier, WorkItemStatus.DONE)
            if state is None:
                return

            if is_project_dispatch_complete(state.issues):
                await self._finalize(project_id, ProjectStatus.COMPLETED)
                return
            if is_project_stuck(state.issues):
                await self._finalize(project_id, ProjectStatus.STUCK)
                return

            self._notify_progress(state)
            await self._dispatch_ready(project_id)

    async def on_item_stuck(self, project_id: str, identifier: str) -> None:
        async with self._lock_for(project_id):
            state = self._record_item_status(project_id, identifier, WorkItemStatus.STUCK)
            if state is None:
                return

            if is_project_stuck(state.issues):
                await self._finalize(project_id, ProjectStatus.STUCK)
                return

            self._notify_progress(state)
            await self._dispatch_ready(project_id)

    async def handle_terminal(self, record: DispatchRecord) -> None:
        """Map a terminal dispatch record onto the graph-level callbacks."""

        if record.project_id is None:
            return
        if record.status is DispatchStatus.DONE:
            await self.on_item_completed(record.project_id, record.identifier)
        else:
            await self.on_item_stuck(record.project_id, record.identifier)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _lock_for(self, project_id: str) -> asyncio.Lock:
        lock = self._locks.get(project_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[project_id] = lock
        return lock

    def _record_item_status(
        self,
        project_id: str,
        identifier: str,
        target: WorkItemStatus,
    ) -> ProjectDispatchState | None:
        """Persist one callback's item status; ``None`` when the callback is ignored."""

        seen = False

        def apply(state: ProjectDispatchState) -> bool:
            nonlocal seen
            seen = True
            if state.status is not ProjectStatus.DISPATCHING:
                self._logger.debug(
                    "callback_ignored",
                    project_id=project_id,
                    identifier=identifier,
                    project_status=state.status.value,
                )
                return False
            item = state.issues.get(identifier)
            if item is None:
                self._logger.warning(
                    "callback_for_unknown_item", project_id=project_id, identifier=identifier
                )
                return False
            if item.status is target:
                return False
            item.status = target
            if target is WorkItemStatus.DONE:
                item.completed_at = utc_now()
            return True

        state = self._store.update_project_dispatch(project_id, apply)
        if not seen:
            self._logger.warning("callback_for_unknown_project", project_id=project_id)
        return state

    async def _dispatch_ready(self, project_id: str) -> list[str]:
        admitted: list[WorkItem] = []
        ready_count = 0

        def claim(state: ProjectDispatchState) -> bool:
            nonlocal ready_count
            if state.status is not ProjectStatus.DISPATCHING:
                return False
            ready = get_ready_issues(state.issues)
            ready_count = len(ready)
            slots = max(state.max_concurrent - get_active_count(state.issues), 0)
            admitted.extend(ready[:slots])
            for item in admitted:
                item.status = WorkItemStatus.DISPATCHED
            return bool(admitted)

        if self._store.update_project_dispatch(project_id, claim) is None:
            return []

        launched: list[str] = []
        rejected: list[str] = []
        try:
            for item in admitted:
                if await self._launch(project_id, item):
                    launched.append(item.identifier)
                else:
                    rejected.append(item.identifier)
        except BaseException as exc:
            # Claimed items without a pipeline would count as in flight forever.
            unlaunched = [item.identifier for item in admitted if item.identifier not in launched]
            self._release_claims(project_id, unlaunched)
            self._logger.error(
                "launch_failed",
                project_id=project_id,
                launched=launched,
                released=unlaunched,
                error=repr(exc),
            )
            raise

        if rejected:
            self._release_claims(project_id, rejected)
            self._logger.warning("launch_rejected", project_id=project_id, identifiers=rejected)

        self._logger.info(
            "dispatch_round",
            project_id=project_id,
            launched=launched,
            ready=ready_count,
            active=len(admitted) - len(rejected),
        )
        return launched

    def _release_claims(self, project_id: str, identifiers: list[str]) -> None:
        def release(state: ProjectDispatchState) -> bool:
            changed = False
            for identifier in identifiers:
                item = state.issues.get(identifier)
                if item is not None and item.status is WorkItemStatus.DISPATCHED:
                    item.status = WorkItemStatus.PENDING
                    changed = True
            return changed

        if identifiers:
            self._store.update_project_dispatch(project_id, release)

    async def _finalize(self, project_id: str, status: ProjectStatus) -> None:
        def settle(current: ProjectDispatchState) -> bool:
            if current.status is not ProjectStatus.DISPATCHING:
                return False
            current.status = status
            return True

        state = self._store.update_project_dispatch(project_id, settle)
        if state is None:
            return

        counts = progress_counts(state.issues)
        if status is ProjectStatus.COMPLETED:
            kind = NotifyKind.PROJECT_COMPLETE
            reason = counts.render()
            message = f"Project dispatch completed: {counts.render()}."
        else:
            kind = NotifyKind.PROJECT_STUCK
            blocked = ", ".join(stuck_identifiers(state.issues))
            reason = f"stuck: {blocked}"
            message = f"Project dispatch stuck at {counts.render()}; stuck items: {blocked}."

        self._logger.info(
            "project_dispatch_finished",
            project_id=state.project_id,
            status=status.value,
            done=counts.done,
            total=counts.total,
            stuck=counts.stuck,
        )
        self._notifier.fire(
            kind,
            NotifyPayload(
                identifier=state.project_id,
                title=state.project_name,
                status=status.value,
                reason=reason,
            ),
        )
        try:
            await self._tracker.post_update(state.root_identifier, message)
        except Exception as exc:  # noqa: BLE001 - the project outcome is already persisted.
            self._logger.warning(
                "tracker_update_failed", identifier=state.root_identifier, error=repr(exc)
            )

    def _notify_progress(self, state: ProjectDispatchState) -> None:
        self._notifier.fire(
            NotifyKind.PROJECT_PROGRESS,
            NotifyPayload(
                identifier=state.project_id,
                title=state.project_name,
                status=state.status.value,
                reason=progress_counts(state.issues).render(),
            ),
        )


__all__ = ["LaunchFn", "ProjectOrchestrator"]
