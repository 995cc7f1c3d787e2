"""Timeouts, inactivity watchdogs and supervised background tasks for the dispatch loop."""

from __future__ import annotations

import asyncio
import inspect
import time
from contextlib import suppress
from typing import TYPE_CHECKING, Any, TypeVar

import structlog

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

T = TypeVar("T")


class CancellationToken:
    """Cooperative cancellation token backed by ``asyncio.Event``."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise asyncio.CancelledError("operation cancelled")


class InactivityTimeoutError(TimeoutError):
    """Raised when a watched invocation stays silent past its inactivity threshold."""

    def __init__(self, silence_seconds: float, threshold_seconds: float) -> None:
        self.silence_seconds = silence_seconds
        self.threshold_seconds = threshold_seconds
        super().__init__(
            f"no activity for {silence_seconds:.1f}s (threshold {threshold_seconds:.1f}s)"
        )


class ActivityMonitor:
    """Heartbeat that a watched invocation touches whenever it shows progress."""

    __slots__ = ("_clock", "_last_activity", "_touches")

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._last_activity = clock()
        self._touches = 0

    def touch(self) -> None:
        self._last_activity = self._clock()
        self._touches += 1

    @property
    def touches(self) -> int:
        return self._touches

    def silence_seconds(self) -> float:
        return max(self._clock() - self._last_activity, 0.0)


class _Race:
    """
    A unit of work raced against a cancellation token.

    Leaving the ``async with`` block cancels and drains whatever is still
    running, so callers only decide which error to raise.
    """

    def __init__(self, work: Awaitable[T], token: CancellationToken | None) -> None:
        self.work: asyncio.Task[T] = asyncio.create_task(_await_value(work))
        self._token = token
        self._waiter = asyncio.create_task(token.wait()) if token is not None else None

    @property
    def cancelled(self) -> bool:
        return self._token is not None and self._token.is_cancelled

    async def settle(self, timeout_seconds: float) -> bool:
        """Wait up to ``timeout_seconds``; True once the work has finished."""

        contenders = {self.work} if self._waiter is None else {self.work, self._waiter}
        await asyncio.wait(
            contenders, timeout=max(timeout_seconds, 0.0), return_when=asyncio.FIRST_COMPLETED
        )
        return self.work.done()

    async def __aenter__(self) -> _Race:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        if not self.work.done():
            await _cancel_and_drain(self.work)
        if self._waiter is not None:
            await _cancel_and_drain(self._waiter)


async def run_with_timeout(
    coroutine: Awaitable[T],
    timeout_seconds: float,
    cancel_token: CancellationToken | None = None,
) -> T:
    """Await ``coroutine`` for at most ``timeout_seconds``; a cancelled token aborts it early."""

    if timeout_seconds <= 0:
        _close_unscheduled_coroutine(coroutine)
        raise ValueError("timeout_seconds must be > 0")
    if cancel_token is not None and cancel_token.is_cancelled:
        _close_unscheduled_coroutine(coroutine)
        raise asyncio.CancelledError("operation cancelled")

    async with _Race(coroutine, cancel_token) as race:
        if await race.settle(timeout_seconds):
            return race.work.result()
        if race.cancelled:
            raise asyncio.CancelledError("operation cancelled")
        raise TimeoutError(f"no result within {timeout_seconds} seconds")


async def run_with_inactivity_watchdog(
    factory: Callable[[ActivityMonitor], Awaitable[T]],
    *,
    inactivity_seconds: float,
    max_total_seconds: float | None = None,
    cancel_token: CancellationToken | None = None,
    clock: Callable[[], float] = time.monotonic,
) -> T:
    """
    Run ``factory(monitor)`` and abort it once ``monitor`` has been silent too long.

    The invocation is expected to call ``monitor.touch()`` whenever it observes
    output. Raises :class:`InactivityTimeoutError` on silence, ``TimeoutError``
    once ``max_total_seconds`` elapsed regardless of activity.
    """
    if inactivity_seconds <= 0:
        raise ValueError("inactivity_seconds must be > 0")
    if max_total_seconds is not None and max_total_seconds <= 0:
        raise ValueError("max_total_seconds must be > 0")
    if cancel_token is not None:
        cancel_token.raise_if_cancelled()

    monitor = ActivityMonitor(clock)
    deadline = None if max_total_seconds is None else clock() + max_total_seconds

    async with _Race(factory(monitor), cancel_token) as race:
        while True:
            wait_for = inactivity_seconds - monitor.silence_seconds()
            if deadline is not None:
                wait_for = min(wait_for, deadline - clock())
            if await race.settle(wait_for):
                return race.work.result()
            if race.cancelled:
                raise asyncio.CancelledError("operation cancelled")

            silence = monitor.silence_seconds()
            if silence >= inactivity_seconds:
                raise InactivityTimeoutError(silence, inactivity_seconds)
            if deadline is not None and clock() >= deadline:
                raise TimeoutError(f"operation exceeded {max_total_seconds} seconds")


class TaskSupervisor:
    """
    Owner of fire-and-forget background tasks.

    Failures are never dropped: each one is logged, kept in :attr:`errors`, and
    handed to the ``on_error`` handler given at spawn time. Tests await
    :meth:`join` to observe every task spawned so far, including tasks spawned
    by those tasks.
    """

    def __init__(self, *, logger: Any | None = None) -> None:
        self._tasks: set[asyncio.Task[Any]] = set()
        self._errors: list[BaseException] = []
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def active_count(self) -> int:
        return len(self._tasks)

    @property
    def errors(self) -> tuple[BaseException, ...]:
        return tuple(self._errors)

    def spawn(
        self,
        coroutine: Awaitable[T],
        *,
        name: str,
        on_error: Callable[[BaseException], Awaitable[None] | None] | None = None,
        on_done: Callable[[], None] | None = None,
    ) -> asyncio.Task[T | None]:
        task: asyncio.Task[T | None] = asyncio.create_task(
            self._supervise(coroutine, name=name, on_error=on_error, on_done=on_done),
            name=name,
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def join(self, timeout_seconds: float | None = None) -> None:
        """Wait until no supervised task is left running."""

        async def _drain() -> None:
            while self._tasks:
                await asyncio.wait(set(self._tasks))

        if timeout_seconds is None:
            await _drain()
            return
        await run_with_timeout(_drain(), timeout_seconds)

    async def shutdown(self) -> None:
        """Cancel every supervised task and wait for them to unwind."""

        pending = set(self._tasks)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def _supervise(
        self,
        coroutine: Awaitable[T],
        *,
        name: str,
        on_error: Callable[[BaseException], Awaitable[None] | None] | None,
        on_done: Callable[[], None] | None,
    ) -> T | None:
        try:
            return await coroutine
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._errors.append(exc)
            self._logger.error("supervised_task_failed", task_name=name, error=repr(exc))
            if on_error is not None:
                await self._run_error_handler(on_error, exc, name)
            return None
        finally:
            if on_done is not None:
                on_done()

    async def _run_error_handler(
        self,
        handler: Callable[[BaseException], Awaitable[None] | None],
        exc: BaseException,
        name: str,
    ) -> None:
        try:
            result = handler(exc)
            if inspect.isawaitable(result):
                await result
        except Exception as handler_exc:
            self._errors.append(handler_exc)
            self._logger.error(
                "supervised_task_error_handler_failed",
                task_name=name,
                error=repr(handler_exc),
            )


async def _await_value(awaitable: Awaitable[T]) -> T:
    return await awaitable


async def _cancel_and_drain(task: asyncio.Task[Any]) -> None:
    task.cancel()
    with suppress(asyncio.CancelledError):
        await task


def _close_unscheduled_coroutine(awaitable: Awaitable[object]) -> None:
    # Never scheduled; close it so GC does not warn about an unawaited coroutine.
    if inspect.iscoroutine(awaitable):
        awaitable.close()


__all__ = [
    "ActivityMonitor",
    "CancellationToken",
    "InactivityTimeoutError",
    "TaskSupervisor",
    "run_with_inactivity_watchdog",
    "run_with_timeout",
]
