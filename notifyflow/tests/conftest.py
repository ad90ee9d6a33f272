from __future__ import annotations

import pytest

from notifyflow.core.config import Settings
from notifyflow.persistence.db import Store
from notifyflow.runtime import build_runtime
from notifyflow.services.telemetry import reset_counters
from notifyflow.tests.utils.fakes import FakeJobQueue, FakeRedis, ScriptedTransport


@pytest.fixture(autouse=True)
def reset_telemetry() -> None:
    # Counters are process-global; isolate them per test.
    reset_counters()
    yield
    reset_counters()


@pytest.fixture
def settings(tmp_path) -> Settings:
    # Millisecond delays keep retry and confirmation timers fast without changing their shape.
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'notifyflow.db'}",
        redis_url="redis://localhost:6379/15",
        stream_partitions=2,
        stream_block_ms=20,
        stream_reconnect_max_attempts=2,
        stream_reconnect_base_ms=1,
        stream_reconnect_max_ms=2,
        notify_backoff_base_s=0.02,
        notify_confirm_delay_s=0.01,
        notify_sweep_stale_after_s=0,
        batch_backoff_base_s=2.0,
        shutdown_grace_s=1.0,
    )


@pytest.fixture
async def store(settings: Settings) -> Store:
    store = Store.from_url(settings.database_url)
    await store.create_schema()
    yield store
    await store.dispose()


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def transport() -> ScriptedTransport:
    return ScriptedTransport()


@pytest.fixture
def job_queue() -> FakeJobQueue:
    return FakeJobQueue()


@pytest.fixture
async def runtime(settings, store, fake_redis, transport, job_queue):
    runtime = await build_runtime(
        settings,
        store=store,
        redis=fake_redis,
        transport=transport,
        job_queue=job_queue,
        create_queue=False,
    )
    yield runtime
    await runtime.close()
