"""
Process-local admission control and trigger deduplication.

One :class:`ConcurrencyGuard` is constructed per process and passed to every
entry point. It owns two pieces of in-memory state:

- ``active_identifiers``: items executing in this process right now.
- a dedup cache of recently handled trigger keys, expired by TTL and swept on a
  fixed period instead of being scanned on every call.

Neither survives a restart. After a restart, persisted active records that are
older than the staleness threshold are reclaimed at admission time.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any

import structlog

from dispatch_orchestrator.domain.models import utc_now

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import datetime

    from dispatch_orchestrator.domain.models import DispatchRecord
    from dispatch_orchestrator.persistence.dispatch_store import DispatchStateStore


def session_key(session_id: str) -> str:
    return f"session:{session_id}"


def webhook_key(event_id: str) -> str:
    return f"webhook:{event_id}"


def action_key(action: str, identifier: str) -> str:
    return f"{action}:{identifier}"


@dataclass(frozen=True, slots=True)
class GuardSettings:
    dedup_ttl_seconds: float = 60.0
    sweep_interval_seconds: float = 10.0
    stale_dispatch_seconds: float = 30 * 60.0

    def __post_init__(self) -> None:
        if self.dedup_ttl_seconds <= 0:
            raise ValueError("dedup_ttl_seconds must be > 0")
        if self.sweep_interval_seconds <= 0:
            raise ValueError("sweep_interval_seconds must be > 0")
        if self.stale_dispatch_seconds <= 0:
            raise ValueError("stale_dispatch_seconds must be > 0")


class AdmissionOutcome(StrEnum):
    ADMITTED = "admitted"
    RECLAIMED = "reclaimed"
    IN_FLIGHT = "in_flight"
    ACTIVE_RECORD = "active_record"


@dataclass(frozen=True, slots=True)
class Admission:
    identifier: str
    outcome: AdmissionOutcome
    existing: DispatchRecord | None = None

    @property
    def admitted(self) -> bool:
        return self.outcome in (AdmissionOutcome.ADMITTED, AdmissionOutcome.RECLAIMED)


class ConcurrencyGuard:
    def __init__(
        self,
        settings: GuardSettings | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        utc_clock: Callable[[], datetime] = utc_now,
        logger: Any | None = None,
    ) -> None:
        self._settings = settings or GuardSettings()
        self._clock = clock
        self._utc_clock = utc_clock
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._active: set[str] = set()
        self._dedup: dict[str, float] = {}
        self._last_sweep = clock()

    @property
    def settings(self) -> GuardSettings:
        return self._settings

    @property
    def active_identifiers(self) -> frozenset[str]:
        return frozenset(self._active)

    @property
    def dedup_size(self) -> int:
        return len(self._dedup)

    def is_active(self, identifier: str) -> bool:
        return identifier in self._active

    def release(self, identifier: str) -> None:
        self._active.discard(identifier)

    # ------------------------------------------------------------------
    # Deduplication
    # ------------------------------------------------------------------

    def was_recently_processed(self, key: str) -> bool:
        """
        Return ``True`` if ``key`` was seen within the TTL, else record it and return ``False``.
        """

        now = self._clock()
        if now - self._last_sweep >= self._settings.sweep_interval_seconds:
            self.sweep(now)

        seen_at = self._dedup.get(key)
        if seen_at is not None and now - seen_at < self._settings.dedup_ttl_seconds:
            return True
        self._dedup[key] = now
        return False

    def sweep(self, now: float | None = None) -> int:
        """Drop expired dedup entries; returns how many were removed."""

        reference = self._clock() if now is None else now
        ttl = self._settings.dedup_ttl_seconds
        expired = [key for key, seen_at in self._dedup.items() if reference - seen_at >= ttl]
        for key in expired:
            del self._dedup[key]
        self._last_sweep = reference
        return len(expired)

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    def try_admit(self, identifier: str, store: DispatchStateStore) -> Admission:
        """
        Admit ``identifier`` for execution in this process.

        Rejected while it runs here or while a fresh persisted active record
        exists. A persisted record older than the staleness threshold that no
        execution in this process owns is removed and the item re-admitted.
        On admission the identifier is added to ``active_identifiers``; the
        caller must :meth:`release` it when the execution ends.
        """

        if identifier in self._active:
            self._logger.info("admission_rejected", identifier=identifier, reason="in_flight")
            return Admission(identifier, AdmissionOutcome.IN_FLIGHT)

        outcome = AdmissionOutcome.ADMITTED
        existing = store.get_active_dispatch(identifier)
        if existing is not None:
            age = existing.age_seconds(self._utc_clock())
            if age <= self._settings.stale_dispatch_seconds:
                self._logger.info(
                    "admission_rejected",
                    identifier=identifier,
                    reason="active_record",
                    status=existing.status.value,
                    age_seconds=round(age, 1),
                )
                return Admission(identifier, AdmissionOutcome.ACTIVE_RECORD, existing)

            store.remove_active_dispatch(identifier)
            outcome = AdmissionOutcome.RECLAIMED
            self._logger.warning(
                "stale_dispatch_reclaimed",
                identifier=identifier,
                status=existing.status.value,
                age_seconds=round(age, 1),
            )

        self._active.add(identifier)
        return Admission(identifier, outcome, existing)


__all__ = [
    "Admission",
    "AdmissionOutcome",
    "ConcurrencyGuard",
    "GuardSettings",
    "action_key",
    "session_key",
    "webhook_key",
]
