"""
dispatch-orchestrator — durable dispatch store.

File: src/dispatch_orchestrator/persistence/dispatch_store.py
Last updated: 2026-10-16

Purpose
- Persist active and completed dispatch records, the session reverse-lookup map and
  processed trigger keys in one versioned JSON file.

Functional requirements
- Every mutation is a read-modify-write under the file lock followed by an atomic replace.
- An identifier is never active and completed at the same time.
- Status changes requested through ``transition_dispatch`` are compare-and-swap against the
  persisted status and the transition table.
- Version-less files are migrated; unknown versions are rejected; corrupt files are moved
  aside and the store restarts empty.

Non-functional requirements
- Synchronous file IO. Calls from the event loop are short and never interleave within a
  process; the lock marker only arbitrates between processes.
"""

from __future__ import annotations

import copy
import dataclasses
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Final, TypeVar

import structlog

from dispatch_orchestrator.domain.models import (
    DISPATCH_STATE_VERSION,
    TERMINAL_DISPATCH_STATUSES,
    DispatchRecord,
    DispatchState,
    DispatchStatus,
    SessionMapping,
    SessionPhase,
    is_valid_transition,
    utc_now,
)
from dispatch_orchestrator.persistence.json_state import LockedJsonFile

if TYPE_CHECKING:
    import os
    from collections.abc import Callable, Mapping
    from pathlib import Path

    from dispatch_orchestrator.persistence.file_lock import LockOptions

T = TypeVar("T")

DEFAULT_MAX_PROCESSED_EVENTS: Final[int] = 200
DEFAULT_COMPLETED_RETENTION_SECONDS: Final[float] = 7 * 24 * 60 * 60.0

_UPDATABLE_FIELDS: Final[frozenset[str]] = frozenset(
    {
        "attempt",
        "workspace_ref",
        "tier",
        "model",
        "title",
        "session_ref",
        "stuck_reason",
        "last_verdict",
    }
)


class DispatchStateError(RuntimeError):
    """Raised for state files this runtime cannot interpret."""


class TransitionError(RuntimeError):
    """Raised when a compare-and-swap status transition is rejected."""

    def __init__(
        self,
        identifier: str,
        *,
        expected: DispatchStatus,
        actual: DispatchStatus | None,
        target: DispatchStatus,
    ) -> None:
        self.identifier = identifier
        self.expected = expected
        self.actual = actual
        self.target = target
        if actual is None:
            detail = "no active dispatch"
        elif actual is not expected:
            detail = f"status is {actual.value}, expected {expected.value}"
        else:
            detail = f"{expected.value} -> {target.value} is not an allowed transition"
        super().__init__(f"transition rejected for {identifier}: {detail}")


def migrate_state(raw: Mapping[str, Any]) -> dict[str, Any]:
    """Upgrade a raw state payload to the current version."""

    payload = copy.deepcopy(dict(raw))
    version = payload.get("version", 1)
    if version == DISPATCH_STATE_VERSION:
        return payload
    if version != 1:
        raise DispatchStateError(f"unknown dispatch state version: {version!r}")

    dispatches = payload.setdefault("dispatches", {})
    dispatches.setdefault("active", {})
    dispatches.setdefault("completed", {})
    payload.setdefault("sessionMap", {})
    payload.setdefault("processedEvents", [])
    for record in dispatches["active"].values():
        if not isinstance(record, dict):
            continue
        record.setdefault("attempt", 0)
        if record.get("status") == "running":
            record["status"] = DispatchStatus.WORKING.value
    payload["version"] = DISPATCH_STATE_VERSION
    return payload


class DispatchStateStore:
    """Lock-guarded, atomically replaced store of dispatch records."""

    def __init__(
        self,
        path: str | os.PathLike[str],
        *,
        lock_options: LockOptions | None = None,
        max_processed_events: int = DEFAULT_MAX_PROCESSED_EVENTS,
        clock: Callable[[], datetime] = utc_now,
        logger: Any | None = None,
    ) -> None:
        if max_processed_events <= 0:
            raise ValueError("max_processed_events must be > 0")
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._file = LockedJsonFile(path, lock_options=lock_options, logger=self._logger)
        self._max_processed_events = max_processed_events
        self._clock = clock

    @property
    def path(self) -> Path:
        return self._file.path

    @property
    def lock_path(self) -> Path:
        return self._file.lock_path

    # ------------------------------------------------------------------
    # Core read / read-modify-write
    # ------------------------------------------------------------------

    def read(self) -> DispatchState:
        """Return a full snapshot. Missing or corrupt files read as an empty state."""

        return self._decode(self._file.load())

    def mutate(self, fn: Callable[[DispatchState], T]) -> T:
        """
        Apply ``fn`` to the current state under the lock and persist the result.

        Nothing is written when ``fn`` raises.
        """

        with self._file.locked():
            state = self._decode(self._file.load())
            result = fn(state)
            if len(state.processed_events) > self._max_processed_events:
                state.processed_events = state.processed_events[-self._max_processed_events :]
            self._file.save(state.to_dict())
        return result

    # ------------------------------------------------------------------
    # Mutation entry points
    # ------------------------------------------------------------------

    def register_dispatch(self, record: DispatchRecord) -> DispatchRecord:
        def apply(state: DispatchState) -> DispatchRecord:
            state.completed.pop(record.identifier, None)
            state.active[record.identifier] = record
            return record

        registered = self.mutate(apply)
        self._logger.info(
            "dispatch_registered",
            identifier=record.identifier,
            project_id=record.project_id,
            attempt=record.attempt,
        )
        return registered

    def update_dispatch_status(
        self,
        identifier: str,
        status: DispatchStatus,
        updates: Mapping[str, object] | None = None,
    ) -> DispatchRecord | None:
        """Unconditionally set the status of an active record. ``None`` when not active."""

        fields = _checked_updates(updates)

        def apply(state: DispatchState) -> DispatchRecord | None:
            current = state.active.get(identifier)
            if current is None:
                return None
            updated = dataclasses.replace(current, status=status, **fields)
            state.active[identifier] = updated
            return updated

        return self.mutate(apply)

    def transition_dispatch(
        self,
        identifier: str,
        from_status: DispatchStatus,
        to_status: DispatchStatus,
        updates: Mapping[str, object] | None = None,
    ) -> DispatchRecord:
        """Compare-and-swap status change. Raises :class:`TransitionError` on mismatch."""

        fields = _checked_updates(updates)

        def apply(state: DispatchState) -> DispatchRecord:
            current = state.active.get(identifier)
            actual = None if current is None else current.status
            if current is None or actual is not from_status:
                raise TransitionError(
                    identifier, expected=from_status, actual=actual, target=to_status
                )
            if not is_valid_transition(from_status, to_status):
                raise TransitionError(
                    identifier, expected=from_status, actual=actual, target=to_status
                )
            updated = dataclasses.replace(current, status=to_status, **fields)
            state.active[identifier] = updated
            return updated

        record = self.mutate(apply)
        self._logger.debug(
            "dispatch_transition",
            identifier=identifier,
            from_status=from_status.value,
            to_status=to_status.value,
            attempt=record.attempt,
        )
        return record

    def complete_dispatch(
        self,
        identifier: str,
        status: DispatchStatus | None = None,
        updates: Mapping[str, object] | None = None,
        *,
        from_status: DispatchStatus | None = None,
    ) -> DispatchRecord | None:
        """
        Move an active record to the completed namespace.

        ``status`` defaults to the record's current status, which must then be
        terminal. Session map entries pointing at the identifier are dropped.
        With ``from_status`` the move is also a compare-and-swap transition: a
        missing record or a different current status raises
        :class:`TransitionError` and nothing is written.
        """

        fields = _checked_updates(updates)
        completed_at = self._clock()

        def apply(state: DispatchState) -> DispatchRecord | None:
            current = state.active.get(identifier)
            actual = None if current is None else current.status
            if from_status is not None and actual is not from_status:
                raise TransitionError(
                    identifier, expected=from_status, actual=actual, target=status or from_status
                )
            if current is None:
                return None
            final_status = current.status if status is None else status
            if final_status not in TERMINAL_DISPATCH_STATUSES:
                raise ValueError(f"cannot complete {identifier} with non-terminal status {final_status}")
            if from_status is not None and not is_valid_transition(from_status, final_status):
                raise TransitionError(
                    identifier, expected=from_status, actual=actual, target=final_status
                )
            del state.active[identifier]
            record = dataclasses.replace(
                current, status=final_status, completed_at=completed_at, **fields
            )
            state.completed[identifier] = record
            _drop_sessions(state, identifier)
            return record

        record = self.mutate(apply)
        if record is not None:
            self._logger.info(
                "dispatch_completed",
                identifier=identifier,
                status=record.status.value,
                attempt=record.attempt,
                stuck_reason=record.stuck_reason,
            )
        return record

    def remove_active_dispatch(self, identifier: str) -> bool:
        def apply(state: DispatchState) -> bool:
            removed = state.active.pop(identifier, None)
            if removed is None:
                return False
            _drop_sessions(state, identifier)
            return True

        removed = self.mutate(apply)
        if removed:
            self._logger.info("dispatch_removed", identifier=identifier)
        return removed

    # ------------------------------------------------------------------
    # Session map and processed events
    # ------------------------------------------------------------------

    def register_session_mapping(self, session_ref: str, mapping: SessionMapping) -> None:
        def apply(state: DispatchState) -> None:
            state.session_map[session_ref] = mapping

        self.mutate(apply)

    def lookup_session_mapping(self, session_ref: str) -> SessionMapping | None:
        return self.read().session_map.get(session_ref)

    def remove_session_mapping(self, session_ref: str) -> bool:
        def apply(state: DispatchState) -> bool:
            return state.session_map.pop(session_ref, None) is not None

        return self.mutate(apply)

    def is_event_processed(self, key: str) -> bool:
        return key in self.read().processed_events

    def mark_event_processed(self, key: str) -> bool:
        """Record ``key``. Returns ``False`` when it had already been recorded."""

        def apply(state: DispatchState) -> bool:
            if key in state.processed_events:
                return False
            state.processed_events.append(key)
            return True

        return self.mutate(apply)

    # ------------------------------------------------------------------
    # Queries and maintenance
    # ------------------------------------------------------------------

    def get_active_dispatch(self, identifier: str) -> DispatchRecord | None:
        return self.read().active.get(identifier)

    def get_completed_dispatch(self, identifier: str) -> DispatchRecord | None:
        return self.read().completed.get(identifier)

    def list_active_dispatches(self) -> list[DispatchRecord]:
        return list(self.read().active.values())

    def list_stale_dispatches(
        self, max_age_seconds: float, *, now: datetime | None = None
    ) -> list[DispatchRecord]:
        """Active records dispatched longer than ``max_age_seconds`` ago."""

        reference = self._clock() if now is None else now
        return [
            record
            for record in self.read().active.values()
            if record.age_seconds(reference) > max_age_seconds
        ]

    def list_recoverable_dispatches(self) -> list[DispatchRecord]:
        """
        ``working`` records whose worker session for the current attempt is mapped
        but whose audit never started; a restart interrupted them mid-work.
        """

        state = self.read()
        phases: dict[tuple[str, int], set[SessionPhase]] = {}
        for mapping in state.session_map.values():
            phases.setdefault((mapping.identifier, mapping.attempt), set()).add(mapping.phase)

        recoverable: list[DispatchRecord] = []
        for record in state.active.values():
            if record.status is not DispatchStatus.WORKING:
                continue
            seen = phases.get((record.identifier, record.attempt), set())
            if SessionPhase.WORKER in seen and SessionPhase.AUDIT not in seen:
                recoverable.append(record)
        return recoverable

    def prune_completed(
        self,
        max_age_seconds: float = DEFAULT_COMPLETED_RETENTION_SECONDS,
        *,
        now: datetime | None = None,
    ) -> int:
        """Delete completed records older than the retention window; return the count."""

        reference = self._clock() if now is None else now
        cutoff = reference - timedelta(seconds=max_age_seconds)

        def apply(state: DispatchState) -> int:
            expired = [
                identifier
                for identifier, record in state.completed.items()
                if (record.completed_at or record.dispatched_at) < cutoff
            ]
            for identifier in expired:
                del state.completed[identifier]
            return len(expired)

        pruned = self.mutate(apply)
        if pruned:
            self._logger.info("completed_dispatches_pruned", count=pruned)
        return pruned

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _decode(self, raw: dict[str, Any] | None) -> DispatchState:
        if raw is None:
            return DispatchState()
        migrated = migrate_state(raw)
        try:
            return DispatchState.from_dict(migrated)
        except ValueError as exc:
            raise DispatchStateError(f"invalid dispatch state in {self.path}: {exc}") from exc


def _checked_updates(updates: Mapping[str, object] | None) -> dict[str, Any]:
    if not updates:
        return {}
    unknown = sorted(set(updates) - _UPDATABLE_FIELDS)
    if unknown:
        raise ValueError(f"unsupported dispatch record update fields: {unknown}")
    return dict(updates)


def _drop_sessions(state: DispatchState, identifier: str) -> None:
    for session_ref in [
        key for key, mapping in state.session_map.items() if mapping.identifier == identifier
    ]:
        del state.session_map[session_ref]


__all__ = [
    "DEFAULT_COMPLETED_RETENTION_SECONDS",
    "DEFAULT_MAX_PROCESSED_EVENTS",
    "DispatchStateError",
    "DispatchStateStore",
    "TransitionError",
    "migrate_state",
]
