from __future__ import annotations

import os
import time
from pathlib import Path

import pytest

from dispatch_orchestrator.persistence.file_lock import (
    LockOptions,
    acquire_file_lock,
    file_lock,
    is_lock_stale,
    lock_age_seconds,
    lock_path_for,
    remove_stale_lock,
)


class _FakeClock:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.mark.unit
def test_lock_path_is_a_sibling_marker(tmp_path: Path) -> None:
    assert lock_path_for(tmp_path / "state.json") == tmp_path / "state.json.lock"


@pytest.mark.unit
def test_file_lock_creates_and_releases_marker(tmp_path: Path) -> None:
    target = tmp_path / "state.json"

    with file_lock(target) as marker:
        assert marker.exists()
        age = lock_age_seconds(marker)
        assert age is not None and age < 5.0

    assert not marker.exists()


@pytest.mark.unit
def test_file_lock_releases_on_error(tmp_path: Path) -> None:
    target = tmp_path / "state.json"

    with pytest.raises(RuntimeError), file_lock(target):
        raise RuntimeError("boom")

    assert not lock_path_for(target).exists()


@pytest.mark.unit
def test_stale_marker_is_reclaimed_without_waiting(tmp_path: Path) -> None:
    target = tmp_path / "state.json"
    marker = lock_path_for(target)
    marker.write_text(repr(time.time() - 120.0), encoding="utf-8")
    clock = _FakeClock()

    acquired = acquire_file_lock(target, LockOptions(stale_seconds=30.0), sleep=clock.sleep, clock=clock)

    assert acquired == marker
    assert clock.sleeps == []
    assert lock_age_seconds(marker) < 5.0  # type: ignore[operator]


@pytest.mark.unit
def test_fresh_marker_is_force_removed_after_timeout(tmp_path: Path) -> None:
    target = tmp_path / "state.json"
    marker = lock_path_for(target)
    marker.write_text(repr(time.time()), encoding="utf-8")
    clock = _FakeClock()
    options = LockOptions(stale_seconds=30.0, retry_seconds=0.5, timeout_seconds=2.0)

    acquired = acquire_file_lock(target, options, sleep=clock.sleep, clock=clock)

    assert acquired == marker
    assert clock.sleeps == [0.5, 0.5, 0.5, 0.5]


@pytest.mark.unit
def test_unreadable_marker_content_falls_back_to_mtime(tmp_path: Path) -> None:
    marker = tmp_path / "state.json.lock"
    marker.write_text("not-a-timestamp", encoding="utf-8")
    old = time.time() - 600.0
    os.utime(marker, (old, old))

    assert is_lock_stale(marker, 30.0)
    assert remove_stale_lock(tmp_path / "state.json", 30.0)
    assert not marker.exists()


@pytest.mark.unit
def test_missing_marker_has_no_age(tmp_path: Path) -> None:
    assert lock_age_seconds(tmp_path / "absent.lock") is None
    assert not remove_stale_lock(tmp_path / "absent")


@pytest.mark.unit
def test_lock_options_validate_positive_values() -> None:
    with pytest.raises(ValueError, match="timeout_seconds must be > 0"):
        LockOptions(timeout_seconds=0)
