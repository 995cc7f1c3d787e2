"""Concurrency primitives: timeouts, inactivity watchdog and supervised tasks."""

from __future__ import annotations

import asyncio
import gc
import sys
import warnings
from contextlib import contextmanager
from types import SimpleNamespace
from typing import TYPE_CHECKING

import pytest

from dispatch_orchestrator.utils.concurrency import (
    ActivityMonitor,
    CancellationToken,
    InactivityTimeoutError,
    TaskSupervisor,
    run_with_inactivity_watchdog,
    run_with_timeout,
)

if TYPE_CHECKING:
    from collections.abc import Iterator


@contextmanager
def _capture_unraisable() -> Iterator[list[SimpleNamespace]]:
    captured: list[SimpleNamespace] = []
    original = sys.unraisablehook

    def hook(unraisable: object) -> None:
        entry = cast_unraisable(unraisable)
        captured.append(entry)

    sys.unraisablehook = hook
    try:
        yield captured
    finally:
        sys.unraisablehook = original


def cast_unraisable(unraisable: object) -> SimpleNamespace:
    if isinstance(unraisable, SimpleNamespace):
        return unraisable

    namespace = SimpleNamespace(
        exc_type=getattr(unraisable, "exc_type", None),
        exc_value=getattr(unraisable, "exc_value", None),
        err_msg=getattr(unraisable, "err_msg", None),
        object=getattr(unraisable, "object", None),
    )
    return namespace


async def _slow() -> int:
    await asyncio.sleep(0.01)
    return 1


async def _slower() -> int:
    await asyncio.sleep(0.05)
    return 1


@pytest.mark.unit
@pytest.mark.asyncio
async def test_run_with_timeout_does_not_leak_coroutine_on_early_cancel() -> None:
    token = CancellationToken()
    token.cancel()

    with _capture_unraisable() as leaked, warnings.catch_warnings():
        warnings.simplefilter("error", RuntimeWarning)
        coro = _slow()
        with pytest.raises(asyncio.CancelledError):
            await run_with_timeout(coro, 1.0, token)
        del coro
        gc.collect()

    assert leaked == []


@pytest.mark.unit
@pytest.mark.asyncio
async def test_run_with_timeout_timeout_path_does_not_leak_coroutine() -> None:
    with _capture_unraisable() as leaked, warnings.catch_warnings():
        warnings.simplefilter("error", RuntimeWarning)
        with pytest.raises(TimeoutError):
            await run_with_timeout(_slower(), 0.001, None)
        gc.collect()

    assert leaked == []


@pytest.mark.unit
@pytest.mark.asyncio
async def test_watchdog_returns_result_while_activity_continues() -> None:
    async def chatty(activity: ActivityMonitor) -> str:
        for _ in range(6):
            await asyncio.sleep(0.02)
            activity.touch()
        return "finished"

    result = await run_with_inactivity_watchdog(chatty, inactivity_seconds=0.08)

    assert result == "finished"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_watchdog_kills_silent_invocation() -> None:
    cancelled = asyncio.Event()

    async def silent(activity: ActivityMonitor) -> str:
        try:
            await asyncio.sleep(5.0)
        except asyncio.CancelledError:
            cancelled.set()
            raise
        return "never"

    with pytest.raises(InactivityTimeoutError) as excinfo:
        await run_with_inactivity_watchdog(silent, inactivity_seconds=0.05)

    assert excinfo.value.threshold_seconds == 0.05
    assert excinfo.value.silence_seconds >= 0.05
    assert cancelled.is_set()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_watchdog_enforces_total_runtime_despite_activity() -> None:
    async def endless(activity: ActivityMonitor) -> str:
        while True:
            await asyncio.sleep(0.01)
            activity.touch()

    with pytest.raises(TimeoutError) as excinfo:
        await run_with_inactivity_watchdog(
            endless, inactivity_seconds=1.0, max_total_seconds=0.1
        )

    assert not isinstance(excinfo.value, InactivityTimeoutError)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_watchdog_honours_cancellation_token() -> None:
    token = CancellationToken()

    async def waits(activity: ActivityMonitor) -> str:
        await asyncio.sleep(5.0)
        return "never"

    asyncio.get_running_loop().call_later(0.02, token.cancel)
    with pytest.raises(asyncio.CancelledError):
        await run_with_inactivity_watchdog(waits, inactivity_seconds=1.0, cancel_token=token)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_watchdog_rejects_non_positive_thresholds() -> None:
    async def noop(activity: ActivityMonitor) -> None:
        return None

    with pytest.raises(ValueError, match="inactivity_seconds must be > 0"):
        await run_with_inactivity_watchdog(noop, inactivity_seconds=0)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_supervisor_records_failures_and_runs_handlers() -> None:
    supervisor = TaskSupervisor()
    handled: list[str] = []
    finished: list[str] = []

    async def boom() -> None:
        raise RuntimeError("delivery failed")

    async def handler(exc: BaseException) -> None:
        handled.append(str(exc))

    supervisor.spawn(boom(), name="boom", on_error=handler, on_done=lambda: finished.append("boom"))
    supervisor.spawn(asyncio.sleep(0.01), name="sleep", on_done=lambda: finished.append("sleep"))
    await supervisor.join(timeout_seconds=1.0)

    assert handled == ["delivery failed"]
    assert sorted(finished) == ["boom", "sleep"]
    assert [type(error) for error in supervisor.errors] == [RuntimeError]
    assert supervisor.active_count == 0


@pytest.mark.unit
@pytest.mark.asyncio
async def test_supervisor_join_waits_for_nested_spawns() -> None:
    supervisor = TaskSupervisor()
    order: list[str] = []

    async def child() -> None:
        await asyncio.sleep(0.01)
        order.append("child")

    async def parent() -> None:
        order.append("parent")
        supervisor.spawn(child(), name="child")

    supervisor.spawn(parent(), name="parent")
    await supervisor.join()

    assert order == ["parent", "child"]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_supervisor_shutdown_cancels_running_tasks() -> None:
    supervisor = TaskSupervisor()
    task = supervisor.spawn(asyncio.sleep(10.0), name="long")
    await asyncio.sleep(0)

    await supervisor.shutdown()

    assert task.cancelled()
    assert supervisor.errors == ()
