"""Owned background work: detached prefetch tasks and periodic sweeps.

Both classes keep a reference to every task they start (so nothing is
garbage collected mid-flight) and can be shut down cleanly, which lets
tests start and stop independent proxy runtimes without leaking timers.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Coroutine
from contextlib import suppress
from dataclasses import dataclass
from typing import Any

import structlog

log = structlog.get_logger(__name__)


class TaskSpawner:
    """Fire-and-forget task launcher whose failures end up in the log only."""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[Any]] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def spawn(
        self, coro: Coroutine[Any, Any, Any], *, name: str
    ) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.warning(
                "background_task_failed",
                task=task.get_name(),
                error=repr(exc),
                exc_info=exc,
            )

    async def drain(self, *, timeout: float | None = None) -> bool:
        """Wait for in-flight tasks (including ones they spawn).

        Returns True when everything finished within *timeout*.
        """
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while self._tasks:
            remaining = None if deadline is None else deadline - loop.time()
            if remaining is not None and remaining <= 0:
                return False
            _, pending = await asyncio.wait(set(self._tasks), timeout=remaining)
            if pending and deadline is not None and loop.time() >= deadline:
                return False
        return True

    async def aclose(self, *, timeout: float = 5.0) -> None:
        """Give tasks *timeout* seconds to finish, then cancel the rest."""
        if await self.drain(timeout=timeout):
            return
        log.info("background_tasks_cancelling", pending=len(self._tasks))
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)


@dataclass(frozen=True)
class _Sweep:
    name: str
    interval: float
    fn: Callable[[], object]


class PeriodicSweeper:
    """Runs synchronous cleanup callables on fixed intervals.

    Each sweep gets its own task; a failing sweep is logged and retried at
    the next interval.  On cancellation each task exits from its
    current sleep.
    """

    def __init__(self) -> None:
        self._sweeps: list[_Sweep] = []
        self._tasks: list[asyncio.Task[None]] = []

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    def add(self, name: str, interval: float, fn: Callable[[], object]) -> None:
        if self._tasks:
            raise RuntimeError("cannot add sweeps after start()")
        self._sweeps.append(_Sweep(name=name, interval=interval, fn=fn))

    def start(self) -> None:
        if self._tasks:
            return
        for sweep in self._sweeps:
            self._tasks.append(
                asyncio.create_task(self._run_forever(sweep), name=f"sweep:{sweep.name}")
            )
        log.info("sweeps_started", sweeps=[s.name for s in self._sweeps])

    async def _run_forever(self, sweep: _Sweep) -> None:
        try:
            while True:
                await asyncio.sleep(sweep.interval)
                try:
                    result = sweep.fn()
                    log.debug("sweep_completed", sweep=sweep.name, remaining=result)
                except Exception:
                    log.error("sweep_failed", sweep=sweep.name, exc_info=True)
        except asyncio.CancelledError:
            log.debug("sweep_cancelled", sweep=sweep.name)
            raise

    async def stop(self) -> None:
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        for task in tasks:
            with suppress(asyncio.CancelledError):
                await task
        if tasks:
            log.info("sweeps_stopped")
