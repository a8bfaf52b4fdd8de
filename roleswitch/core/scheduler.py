"""Scheduled, cancellable tasks for the transition countdown and the sync tick.

Two implementations share the ``ScheduledTask`` handle:

- ``AsyncioScheduler`` runs callbacks as asyncio tasks (production).
- ``ManualScheduler`` keeps timers in a list and fires them when a test calls
  ``advance()``, moving a ``VirtualClock`` forward as it goes.

Callbacks may be plain functions or coroutine functions.
"""

from __future__ import annotations

import asyncio
import inspect
import itertools
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Protocol

import structlog

from roleswitch.core.clock import VirtualClock

logger = structlog.get_logger(__name__)

Callback = Callable[[], Awaitable[None] | None]


class ScheduledTask:
    """Handle returned by every scheduler: a name plus a cancel function."""

    def __init__(self, name: str, cancel_fn: Callable[[], None]) -> None:
        self.name = name
        self._cancel_fn = cancel_fn
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        self._cancel_fn()


class Scheduler(Protocol):
    def call_later(self, delay: float, callback: Callback, *, name: str = "") -> ScheduledTask: ...

    def call_every(self, interval: float, callback: Callback, *, name: str = "") -> ScheduledTask: ...


async def _invoke(callback: Callback) -> None:
    result = callback()
    if inspect.isawaitable(result):
        await result


class AsyncioScheduler:
    """Runs callbacks on the running event loop. Must be used from async code."""

    def call_later(self, delay: float, callback: Callback, *, name: str = "") -> ScheduledTask:
        async def runner() -> None:
            await asyncio.sleep(delay)
            try:
                await _invoke(callback)
            except Exception as exc:
                logger.error("scheduled_task_failed", task=name, error=str(exc), exc_info=True)

        task = asyncio.create_task(runner(), name=name or None)
        return ScheduledTask(name, task.cancel)

    def call_every(self, interval: float, callback: Callback, *, name: str = "") -> ScheduledTask:
        async def runner() -> None:
            while True:
                await asyncio.sleep(interval)
                try:
                    await _invoke(callback)
                except Exception as exc:
                    # Periodic work keeps ticking; the next interval is the retry.
                    logger.error("scheduled_task_failed", task=name, error=str(exc), exc_info=True)

        task = asyncio.create_task(runner(), name=name or None)
        return ScheduledTask(name, task.cancel)


@dataclass
class _Timer:
    due: datetime
    seq: int
    callback: Callback
    interval: float | None
    handle: ScheduledTask | None = field(default=None)


class ManualScheduler:
    """Deterministic scheduler: nothing fires until ``advance()`` is awaited."""

    def __init__(self, clock: VirtualClock) -> None:
        self.clock = clock
        self._timers: list[_Timer] = []
        self._seq = itertools.count()

    @property
    def pending(self) -> int:
        return len(self._timers)

    def _add(self, delay: float, callback: Callback, interval: float | None, name: str) -> ScheduledTask:
        timer = _Timer(
            due=self.clock.now() + timedelta(seconds=delay),
            seq=next(self._seq),
            callback=callback,
            interval=interval,
        )
        timer.handle = ScheduledTask(name, lambda: self._remove(timer))
        self._timers.append(timer)
        return timer.handle

    def _remove(self, timer: _Timer) -> None:
        if timer in self._timers:
            self._timers.remove(timer)

    def call_later(self, delay: float, callback: Callback, *, name: str = "") -> ScheduledTask:
        return self._add(delay, callback, None, name)

    def call_every(self, interval: float, callback: Callback, *, name: str = "") -> ScheduledTask:
        return self._add(interval, callback, interval, name)

    async def advance(self, seconds: float) -> None:
        """Move the clock forward, firing every timer that falls due on the way."""
        target = self.clock.now() + timedelta(seconds=seconds)
        while True:
            due = [t for t in self._timers if t.due <= target]
            if not due:
                break
            timer = min(due, key=lambda t: (t.due, t.seq))
            self.clock.advance_to(timer.due)
            self._timers.remove(timer)
            if timer.interval is not None:
                timer.due = timer.due + timedelta(seconds=timer.interval)
                timer.seq = next(self._seq)
                self._timers.append(timer)
            await _invoke(timer.callback)
        self.clock.advance_to(target)
