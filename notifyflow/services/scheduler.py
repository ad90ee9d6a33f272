from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable


logger = logging.getLogger(__name__)


@dataclass(eq=False)
class ScheduledCall:
    name: str
    func: Callable[..., Awaitable[Any]]
    args: tuple[Any, ...]
    flush_on_close: bool
    task: asyncio.Task | None = None
    fired: bool = False
    done: asyncio.Event = field(default_factory=asyncio.Event)


class Scheduler:
    """Timer and ticker tasks owned by one service, stopped together on shutdown.

    On close, tickers stop re-arming and a tick in progress may finish within
    the grace period. ``call_later`` continuations marked ``flush_on_close``
    then run immediately so no confirmation or retry republish is silently
    dropped; everything else is cancelled.
    """

    def __init__(self, name: str = "scheduler") -> None:
        self.name = name
        self._calls: set[ScheduledCall] = set()
        self._tickers: set[asyncio.Task] = set()
        self._closed = False
        self._stopping = asyncio.Event()

    @property
    def pending(self) -> int:
        return sum(1 for call in self._calls if not call.fired)

    def call_later(
        self,
        delay_s: float,
        func: Callable[..., Awaitable[Any]],
        *args: Any,
        name: str | None = None,
        flush_on_close: bool = True,
    ) -> ScheduledCall:
        if self._closed:
            raise RuntimeError(f"{self.name} is closed")
        call = ScheduledCall(
            name=name or getattr(func, "__name__", "call"),
            func=func,
            args=args,
            flush_on_close=flush_on_close,
        )
        call.task = asyncio.create_task(self._run_later(call, max(0.0, delay_s)), name=f"{self.name}:{call.name}")
        self._calls.add(call)
        return call

    async def _run_later(self, call: ScheduledCall, delay_s: float) -> None:
        try:
            await asyncio.sleep(delay_s)
            await self._fire(call)
        finally:
            self._calls.discard(call)
            call.done.set()

    async def _fire(self, call: ScheduledCall) -> None:
        if call.fired:
            return
        call.fired = True
        try:
            await call.func(*call.args)
        except asyncio.CancelledError:
            raise
        except Exception:  # noqa: BLE001 - continuations log and never kill the scheduler
            logger.exception("scheduled_call_failed scheduler=%s call=%s", self.name, call.name)

    def every(
        self,
        interval_s: float,
        func: Callable[[], Awaitable[Any]],
        *,
        name: str | None = None,
        run_immediately: bool = False,
    ) -> asyncio.Task:
        if self._closed or self._stopping.is_set():
            raise RuntimeError(f"{self.name} is closed")
        label = name or getattr(func, "__name__", "tick")
        task = asyncio.create_task(
            self._tick_loop(max(0.01, interval_s), func, label, run_immediately),
            name=f"{self.name}:{label}",
        )
        self._tickers.add(task)
        task.add_done_callback(self._tickers.discard)
        return task

    async def _idle(self, interval_s: float) -> bool:
        # Sleep between ticks; False once the scheduler is stopping.
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=interval_s)
        except asyncio.TimeoutError:
            return True
        return False

    async def _tick_loop(
        self, interval_s: float, func: Callable[[], Awaitable[Any]], label: str, run_immediately: bool
    ) -> None:
        if not run_immediately and not await self._idle(interval_s):
            return
        while not self._stopping.is_set():
            try:
                await func()
            except asyncio.CancelledError:
                raise
            except Exception:  # noqa: BLE001 - keep the ticker alive while surfacing failures in logs
                logger.exception("scheduled_tick_failed scheduler=%s tick=%s", self.name, label)
            if not await self._idle(interval_s):
                return

    async def join(self) -> None:
        """Wait until every pending one-shot call has run."""
        while self._calls:
            await asyncio.gather(*(call.done.wait() for call in list(self._calls)))

    async def close(self, grace_s: float = 10.0) -> None:
        """Stop tickers, then flush or cancel one-shot calls, all within ``grace_s``.

        A tick already running (a sweep mid-delivery) is allowed to finish
        until the grace period runs out; continuations it schedules while
        draining are still accepted and flushed below.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + max(0.0, grace_s)
        self._stopping.set()
        tickers = list(self._tickers)
        if tickers:
            _done, running = await asyncio.wait(tickers, timeout=max(0.0, deadline - loop.time()))
            for task in running:
                logger.warning("scheduler_tick_cancelled scheduler=%s task=%s", self.name, task.get_name())
                task.cancel()
            if running:
                await asyncio.gather(*running, return_exceptions=True)
        self._closed = True
        calls = list(self._calls)
        flushed = [call for call in calls if call.flush_on_close and not call.fired]
        for call in calls:
            if call.task is not None and not call.fired:
                call.task.cancel()
        if calls:
            await asyncio.gather(*(call.task for call in calls if call.task is not None), return_exceptions=True)
        if flushed:
            logger.info("scheduler_flush scheduler=%s calls=%s", self.name, len(flushed))
            try:
                await asyncio.wait_for(
                    asyncio.gather(*(self._fire(call) for call in flushed)),
                    timeout=max(0.0, deadline - loop.time()),
                )
            except asyncio.TimeoutError:
                logger.warning("scheduler_flush_timeout scheduler=%s", self.name)
        self._calls.clear()
