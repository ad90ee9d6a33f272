from __future__ import annotations

import asyncio

import pytest

from notifyflow.services.scheduler import Scheduler


@pytest.mark.asyncio
async def test_call_later_runs_after_delay_and_join_waits() -> None:
    scheduler = Scheduler(name="test")
    seen: list[str] = []

    async def record(value: str) -> None:
        seen.append(value)

    scheduler.call_later(0.02, record, "late")
    scheduler.call_later(0.0, record, "early")
    assert scheduler.pending == 2
    await scheduler.join()
    assert seen == ["early", "late"]
    assert scheduler.pending == 0
    await scheduler.close()


@pytest.mark.asyncio
async def test_close_flushes_pending_continuations_immediately() -> None:
    scheduler = Scheduler(name="test")
    seen: list[str] = []

    async def record(value: str) -> None:
        seen.append(value)

    scheduler.call_later(60, record, "confirm")
    scheduler.call_later(60, record, "dropped", flush_on_close=False)
    await asyncio.wait_for(scheduler.close(grace_s=1.0), timeout=2.0)
    assert seen == ["confirm"]
    with pytest.raises(RuntimeError):
        scheduler.call_later(0, record, "after-close")


@pytest.mark.asyncio
async def test_failed_call_does_not_break_scheduler() -> None:
    scheduler = Scheduler(name="test")
    seen: list[str] = []

    async def boom() -> None:
        raise ValueError("boom")

    async def record() -> None:
        seen.append("ok")

    scheduler.call_later(0, boom)
    scheduler.call_later(0.01, record)
    await scheduler.join()
    assert seen == ["ok"]
    await scheduler.close()


@pytest.mark.asyncio
async def test_every_keeps_ticking_after_errors_until_closed() -> None:
    scheduler = Scheduler(name="test")
    ticks = {"count": 0}

    async def tick() -> None:
        ticks["count"] += 1
        if ticks["count"] == 1:
            raise RuntimeError("first tick fails")

    task = scheduler.every(0.01, tick, name="sweep", run_immediately=True)
    for _ in range(100):
        if ticks["count"] >= 3:
            break
        await asyncio.sleep(0.01)
    assert ticks["count"] >= 3
    await scheduler.close()
    assert task.done()
    settled = ticks["count"]
    await asyncio.sleep(0.03)
    assert ticks["count"] == settled


@pytest.mark.asyncio
async def test_close_lets_in_flight_tick_finish_and_flushes_its_continuations() -> None:
    scheduler = Scheduler(name="test")
    started = asyncio.Event()
    seen: list[str] = []

    async def confirm() -> None:
        seen.append("confirmed")

    async def slow_tick() -> None:
        started.set()
        await asyncio.sleep(0.1)
        seen.append("tick-finished")
        scheduler.call_later(60, confirm, name="confirm")

    scheduler.every(60, slow_tick, name="sweep", run_immediately=True)
    await started.wait()
    await asyncio.wait_for(scheduler.close(grace_s=5.0), timeout=2.0)
    assert seen == ["tick-finished", "confirmed"]


@pytest.mark.asyncio
async def test_close_cancels_tick_that_outlives_grace() -> None:
    scheduler = Scheduler(name="test")
    started = asyncio.Event()
    outcome: list[str] = []

    async def stuck_tick() -> None:
        started.set()
        try:
            await asyncio.sleep(30)
        except asyncio.CancelledError:
            outcome.append("cancelled")
            raise

    task = scheduler.every(60, stuck_tick, run_immediately=True)
    await started.wait()
    await asyncio.wait_for(scheduler.close(grace_s=0.05), timeout=2.0)
    assert outcome == ["cancelled"]
    assert task.done()


@pytest.mark.asyncio
async def test_idle_ticker_stops_without_waiting_out_its_interval() -> None:
    scheduler = Scheduler(name="test")
    ticks: list[int] = []

    async def tick() -> None:
        ticks.append(1)

    task = scheduler.every(60, tick)
    await asyncio.sleep(0.01)
    await asyncio.wait_for(scheduler.close(grace_s=5.0), timeout=1.0)
    assert task.done()
    assert ticks == []
    with pytest.raises(RuntimeError):
        scheduler.every(1, tick)
