from __future__ import annotations

import asyncio
import json
from datetime import timedelta

import pytest
from sqlalchemy import update

from notifyflow.core.errors import StreamError, ValidationError
from notifyflow.core.timeutil import utc_now
from notifyflow.domain.models import Notification, NotificationStatus
from notifyflow.services.delivery import AttemptOutcome
from notifyflow.services.stream import DEAD_LETTER_TOPIC, NOTIFICATIONS_TOPIC
from notifyflow.services.telemetry import get_counter
from notifyflow.tests.utils.fakes import wait_for


def _status_is(runtime, notification_id: str, status: NotificationStatus):
    async def _check() -> bool:
        view = await runtime.notifications.get_by_id(notification_id, cached=False)
        return view is not None and view.status == status.value

    return _check


async def _event_types(runtime, notification_id: str) -> list[str]:
    return [event.event_type for event in await runtime.events.for_aggregate(notification_id)]


def _dead_letters(runtime, fake_redis) -> list[dict]:
    rows = fake_redis.entries(f"{runtime.stream.prefix}:{DEAD_LETTER_TOPIC}:")
    return [json.loads(fields["value"]) for _entry_id, fields in rows]


@pytest.mark.asyncio
async def test_happy_path_reaches_delivered(runtime, transport) -> None:
    await runtime.consumer.start()
    view = await runtime.notifications.create("Welcome aboard", owner_id="user-1")

    await wait_for(_status_is(runtime, view.id, NotificationStatus.DELIVERED))
    final = await runtime.notifications.get_by_id(view.id, cached=False)
    assert final.retry_count == 0
    assert final.sent_at is not None and final.delivered_at is not None
    assert transport.attempts == [view.id]
    assert await _event_types(runtime, view.id) == [
        "notification.created",
        "notification.sent",
        "notification.delivered",
    ]


@pytest.mark.asyncio
async def test_transient_failure_retries_then_delivers(runtime, transport) -> None:
    transport.outcomes = [False]
    await runtime.consumer.start()
    view = await runtime.notifications.create("Retry me", owner_id="user-1")

    await wait_for(_status_is(runtime, view.id, NotificationStatus.DELIVERED))
    final = await runtime.notifications.get_by_id(view.id, cached=False)
    assert final.retry_count == 1
    assert transport.attempts == [view.id, view.id]
    assert await _event_types(runtime, view.id) == [
        "notification.created",
        "notification.retry_scheduled",
        "notification.sent",
        "notification.delivered",
    ]
    assert get_counter("notification_retries_total") == 1


@pytest.mark.asyncio
async def test_exhaustion_marks_failed_and_dead_letters_once(runtime, transport, fake_redis) -> None:
    transport.default = False
    await runtime.consumer.start()
    view = await runtime.notifications.create("Never arrives", owner_id="user-1")

    await wait_for(_status_is(runtime, view.id, NotificationStatus.FAILED))
    final = await runtime.notifications.get_by_id(view.id, cached=False)
    assert final.retry_count == runtime.settings.notify_max_attempts
    assert final.error_message == f"carrier rejected {view.id}"
    assert len(transport.attempts) == runtime.settings.notify_max_attempts

    await asyncio.sleep(0.05)
    letters = _dead_letters(runtime, fake_redis)
    assert len(letters) == 1
    assert letters[0]["originalTopic"] == NOTIFICATIONS_TOPIC
    assert json.loads(letters[0]["message"])["id"] == view.id
    assert letters[0]["error"] == f"carrier rejected {view.id}"
    types = await _event_types(runtime, view.id)
    assert types.count("notification.retry_scheduled") == 2
    assert types[-1] == "notification.failed"


@pytest.mark.asyncio
async def test_replayed_message_after_delivery_is_a_no_op(runtime, transport) -> None:
    view = await runtime.notifications.create("Once only")
    message = view.to_message().model_dump(by_alias=True, exclude_none=True)

    assert await runtime.consumer.handle_message(message) == AttemptOutcome.SENT
    await runtime.scheduler.join()
    assert await runtime.consumer.handle_message(message) == AttemptOutcome.SKIPPED
    assert transport.attempts == [view.id]
    assert await _event_types(runtime, view.id) == [
        "notification.created",
        "notification.sent",
        "notification.delivered",
    ]


@pytest.mark.asyncio
async def test_replay_while_sent_only_rearms_confirmation(runtime, transport) -> None:
    view = await runtime.notifications.create("Half way")
    await runtime.notifications.update_status(view.id, NotificationStatus.SENT)

    outcome = await runtime.consumer.handle_message(view.to_message())
    assert outcome == AttemptOutcome.SKIPPED
    assert transport.attempts == []
    await runtime.scheduler.join()
    delivered = await runtime.notifications.get_by_id(view.id, cached=False)
    assert delivered.status == NotificationStatus.DELIVERED.value


@pytest.mark.asyncio
async def test_unknown_notification_is_skipped(runtime, transport) -> None:
    outcome = await runtime.consumer.handle_message({"id": "does-not-exist", "message": "ghost"})
    assert outcome == AttemptOutcome.SKIPPED
    assert transport.attempts == []


@pytest.mark.asyncio
async def test_malformed_message_raises_validation_error(runtime) -> None:
    with pytest.raises(ValidationError):
        await runtime.consumer.handle_message({"message": "missing id"})


@pytest.mark.asyncio
async def test_stuck_at_limit_is_failed_exactly_once(runtime, transport, fake_redis, store) -> None:
    view = await runtime.notifications.create("Stuck")
    limit = runtime.settings.notify_max_attempts
    async with store.session() as session:
        await session.execute(update(Notification).where(Notification.id == view.id).values(retry_count=limit))
        await session.commit()
    await runtime.notifications.record_retry_scheduled(
        view, retry_count=limit - 1, delay_s=0.02, error="carrier rejected on attempt 2"
    )

    first = await runtime.consumer.handle_message(view.to_message())
    second = await runtime.consumer.handle_message(view.to_message())
    assert first == AttemptOutcome.FAILED
    assert second == AttemptOutcome.SKIPPED
    assert transport.attempts == []
    letters = _dead_letters(runtime, fake_redis)
    assert len(letters) == 1
    assert letters[0]["error"] == "carrier rejected on attempt 2"
    final = await runtime.notifications.get_by_id(view.id, cached=False)
    assert final.status == NotificationStatus.FAILED.value
    assert final.error_message == "carrier rejected on attempt 2"


@pytest.mark.asyncio
async def test_counted_but_unrecorded_failure_keeps_transport_cause(runtime, transport, fake_redis) -> None:
    transport.default = False
    view = await runtime.notifications.create("Interrupted")
    limit = runtime.settings.notify_max_attempts
    for _ in range(limit - 1):
        assert await runtime.consumer.handle_message(view.to_message()) == AttemptOutcome.RETRY_SCHEDULED
    # The last failure is counted, then the worker stops before writing FAILED.
    assert await runtime.notifications.record_failed_attempt(view.id, max_attempts=limit) == limit

    outcome = await runtime.consumer.handle_message(view.to_message())
    assert outcome == AttemptOutcome.FAILED
    assert len(transport.attempts) == limit - 1
    final = await runtime.notifications.get_by_id(view.id, cached=False)
    assert final.error_message == f"carrier rejected {view.id}"
    assert final.error_message != "attempts exhausted"
    assert _dead_letters(runtime, fake_redis)[0]["error"] == f"carrier rejected {view.id}"


@pytest.mark.asyncio
async def test_stuck_at_limit_without_history_uses_generic_cause(runtime, store) -> None:
    view = await runtime.notifications.create("No history")
    async with store.session() as session:
        await session.execute(
            update(Notification)
            .where(Notification.id == view.id)
            .values(retry_count=runtime.settings.notify_max_attempts)
        )
        await session.commit()

    assert await runtime.consumer.handle_message(view.to_message()) == AttemptOutcome.FAILED
    final = await runtime.notifications.get_by_id(view.id, cached=False)
    assert final.error_message == "attempts exhausted"


@pytest.mark.asyncio
async def test_racing_successful_attempts_send_once(runtime, transport) -> None:
    transport.delay_s = 0.05
    view = await runtime.notifications.create("Raced")

    outcomes = await asyncio.gather(*(runtime.consumer.handle_message(view.to_message()) for _ in range(5)))
    assert outcomes.count(AttemptOutcome.SENT) == 1
    assert outcomes.count(AttemptOutcome.SKIPPED) == 4
    await runtime.scheduler.join()

    final = await runtime.notifications.get_by_id(view.id, cached=False)
    assert final.status == NotificationStatus.DELIVERED.value
    assert final.retry_count == 0
    types = await _event_types(runtime, view.id)
    assert types.count("notification.sent") == 1
    assert types.count("notification.delivered") == 1


@pytest.mark.asyncio
async def test_racing_final_failures_fail_and_dead_letter_once(runtime, transport, fake_redis, store) -> None:
    transport.default = False
    transport.delay_s = 0.02
    limit = runtime.settings.notify_max_attempts
    view = await runtime.notifications.create("Raced failure")
    async with store.session() as session:
        await session.execute(update(Notification).where(Notification.id == view.id).values(retry_count=limit - 1))
        await session.commit()

    outcomes = await asyncio.gather(*(runtime.consumer.handle_message(view.to_message()) for _ in range(5)))
    assert outcomes.count(AttemptOutcome.FAILED) == 1
    assert AttemptOutcome.RETRY_SCHEDULED not in outcomes

    final = await runtime.notifications.get_by_id(view.id, cached=False)
    assert final.status == NotificationStatus.FAILED.value
    assert final.retry_count == limit
    assert final.error_message == f"carrier rejected {view.id}"
    assert len(_dead_letters(runtime, fake_redis)) == 1
    types = await _event_types(runtime, view.id)
    assert types.count("notification.failed") == 1
    assert "notification.retry_scheduled" not in types


@pytest.mark.asyncio
async def test_closing_scheduler_lets_running_sweep_finish_delivery(runtime, transport) -> None:
    transport.delay_s = 0.2
    view = await runtime.notifications.create("Slow carrier")

    async def _attempted() -> bool:
        return transport.attempts == [view.id]

    runtime.scheduler.every(60, runtime.consumer.sweep, name="notification-sweep", run_immediately=True)
    await wait_for(_attempted)
    await runtime.scheduler.close(grace_s=5.0)

    assert [message.id for message in transport.delivered] == [view.id]
    final = await runtime.notifications.get_by_id(view.id, cached=False)
    assert final.status == NotificationStatus.DELIVERED.value


@pytest.mark.asyncio
async def test_failed_attempt_count_never_exceeds_limit(runtime) -> None:
    view = await runtime.notifications.create("Counting")
    limit = runtime.settings.notify_max_attempts
    counts = [await runtime.notifications.record_failed_attempt(view.id, max_attempts=limit) for _ in range(limit + 2)]
    assert counts == [1, 2, 3, None, None]
    final = await runtime.notifications.get_by_id(view.id, cached=False)
    assert final.retry_count == limit


@pytest.mark.asyncio
async def test_sweep_recovers_notification_whose_publish_failed(runtime, transport, fake_redis) -> None:
    fake_redis.down = True
    with pytest.raises(StreamError):
        await runtime.notifications.create("Publish lost")
    fake_redis.down = False
    pending, _total = await runtime.notifications.list()
    assert len(pending) == 1 and pending[0].status == NotificationStatus.PENDING.value

    result = await runtime.consumer.sweep()
    assert result.scanned == 1
    assert result.outcomes[AttemptOutcome.SENT.value] == 1
    await runtime.scheduler.join()
    delivered = await runtime.notifications.get_by_id(pending[0].id, cached=False)
    assert delivered.status == NotificationStatus.DELIVERED.value
    assert runtime.stream.is_connected is True


@pytest.mark.asyncio
async def test_sweep_orders_oldest_first_and_skips_fresh_rows(runtime, transport, store) -> None:
    older = await runtime.notifications.create("older")
    newer = await runtime.notifications.create("newer")
    fresh = await runtime.notifications.create("fresh")
    stale_at = utc_now() - timedelta(minutes=5)
    async with store.session() as session:
        await session.execute(
            update(Notification).where(Notification.id.in_([older.id, newer.id])).values(updated_at=stale_at)
        )
        await session.execute(
            update(Notification).where(Notification.id == fresh.id).values(updated_at=utc_now() + timedelta(minutes=5))
        )
        await session.commit()

    runtime.settings.notify_sweep_concurrency = 1
    result = await runtime.consumer.sweep()
    assert result.scanned == 2
    assert transport.attempts == [older.id, newer.id]
    untouched = await runtime.notifications.get_by_id(fresh.id, cached=False)
    assert untouched.status == NotificationStatus.PENDING.value


@pytest.mark.asyncio
async def test_sweep_schedules_retry_for_failing_rows(runtime, transport) -> None:
    transport.default = False
    view = await runtime.notifications.create("sweep failure")
    result = await runtime.consumer.sweep()
    assert result.outcomes[AttemptOutcome.RETRY_SCHEDULED.value] == 1
    assert result.errors == 0
    current = await runtime.notifications.get_by_id(view.id, cached=False)
    assert current.retry_count == 1
    assert current.status == NotificationStatus.PENDING.value
