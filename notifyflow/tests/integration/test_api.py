from __future__ import annotations

import httpx
import pytest

from notifyflow.apps.api.main import create_app


@pytest.fixture
async def client(runtime):
    app = create_app(runtime)
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        yield client


@pytest.mark.asyncio
async def test_create_and_fetch_notification(client) -> None:
    response = await client.post(
        "/v1/notifications",
        json={"message": "Build finished", "type": "success", "ownerId": "user-1", "metadata": {"build": 42}},
        headers={"X-Request-Id": "req-123"},
    )
    assert response.status_code == 201
    assert response.headers["X-Request-Id"] == "req-123"
    body = response.json()
    assert body["meta"] == {"request_id": "req-123", "api_version": "v1"}
    created = body["data"]
    assert created["status"] == "pending"
    assert created["owner_id"] == "user-1"

    fetched = await client.get(f"/v1/notifications/{created['id']}")
    assert fetched.status_code == 200
    assert fetched.json()["data"]["message"] == "Build finished"

    events = await client.get(f"/v1/notifications/{created['id']}/events")
    assert [event["event_type"] for event in events.json()["data"]] == ["notification.created"]
    assert events.json()["data"][0]["metadata"]["correlation_id"] == "req-123"


@pytest.mark.asyncio
async def test_list_and_stats(client) -> None:
    for index in range(3):
        await client.post("/v1/notifications", json={"message": f"note {index}", "ownerId": "user-1"})
    await client.post("/v1/notifications", json={"message": "someone else", "ownerId": "user-2"})

    listing = await client.get("/v1/notifications", params={"limit": 2, "offset": 0})
    data = listing.json()["data"]
    assert data["total"] == 4 and data["limit"] == 2 and data["offset"] == 0
    assert [item["message"] for item in data["items"]] == ["someone else", "note 2"]

    owned = await client.get("/v1/notifications", params={"ownerId": "user-2"})
    assert owned.json()["data"]["total"] == 1

    stats = await client.get("/v1/notifications/stats")
    assert stats.json()["data"] == {"pending": 4, "sent": 0, "delivered": 0, "failed": 0, "total": 4}


@pytest.mark.asyncio
async def test_domain_validation_error_maps_to_400(client) -> None:
    response = await client.post("/v1/notifications", json={"message": "   "})
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    response = await client.post("/v1/notifications", json={"message": "hi", "type": "fax"})
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_request_validation_error_maps_to_422(client) -> None:
    response = await client.post("/v1/notifications", json={"type": "info"})
    assert response.status_code == 422
    assert response.json()["error"]["code"] == "REQUEST_VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_unknown_notification_is_404(client) -> None:
    response = await client.get("/v1/notifications/missing")
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "NOT_FOUND"


@pytest.mark.asyncio
async def test_stream_outage_returns_503_with_notification_id(client, fake_redis, runtime) -> None:
    fake_redis.down = True
    response = await client.post("/v1/notifications", json={"message": "queued later"})
    fake_redis.down = False
    assert response.status_code == 503
    error = response.json()["error"]
    assert error["code"] == "STREAM_UNAVAILABLE"
    assert error["message"] == "Service temporarily unavailable"
    notification_id = error["details"]["notification_id"]
    stored = await runtime.notifications.get_by_id(notification_id, cached=False)
    assert stored.status == "pending"


@pytest.mark.asyncio
async def test_event_feed_filters(client) -> None:
    created = (await client.post("/v1/notifications", json={"message": "feed"})).json()["data"]
    response = await client.get("/v1/events", params={"types": "notification.created, notification.sent"})
    assert [event["aggregate_id"] for event in response.json()["data"]] == [created["id"]]

    empty = await client.get("/v1/events", params={"types": "batch_job.started"})
    assert empty.json()["data"] == []

    unprocessed = (await client.get("/v1/events/unprocessed")).json()["data"]
    event_id = unprocessed[0]["id"]
    marked = await client.post(f"/v1/events/{event_id}/processed")
    assert marked.json()["data"] == {"id": event_id, "processed": True}
    again = await client.post(f"/v1/events/{event_id}/processed")
    assert again.status_code == 404


@pytest.mark.asyncio
async def test_batch_job_lifecycle(client, job_queue) -> None:
    response = await client.post(
        "/v1/batch-jobs",
        json={"type": "data_cleanup", "parameters": {"retentionDays": 14}, "scheduledAt": "2030-01-01T02:00:00Z"},
    )
    assert response.status_code == 202
    job = response.json()["data"]
    assert job["status"] == "pending"
    assert job["progress"] == 0
    assert job_queue.calls[0][2]["_job_id"] == job["id"]

    listing = await client.get("/v1/batch-jobs", params={"status": "pending"})
    assert [item["id"] for item in listing.json()["data"]] == [job["id"]]

    cancelled = await client.post(f"/v1/batch-jobs/{job['id']}/cancel")
    assert cancelled.status_code == 200
    assert cancelled.json()["data"]["status"] == "cancelled"

    conflict = await client.post(f"/v1/batch-jobs/{job['id']}/cancel")
    assert conflict.status_code == 409
    assert conflict.json()["error"]["code"] == "CONFLICT"

    missing = await client.post("/v1/batch-jobs/missing/cancel")
    assert missing.status_code == 404
    assert (await client.get("/v1/batch-jobs/missing")).status_code == 404


@pytest.mark.asyncio
async def test_batch_job_validation_and_queue_outage(client, job_queue) -> None:
    bad = await client.post("/v1/batch-jobs", json={"type": "notification_digest", "parameters": {}})
    assert bad.status_code == 400
    job_queue.fail = True
    down = await client.post("/v1/batch-jobs", json={"type": "user_sync"})
    assert down.status_code == 503
    assert down.json()["error"]["code"] == "JOB_QUEUE_UNAVAILABLE"


@pytest.mark.asyncio
async def test_health_reports_dependencies(client, fake_redis) -> None:
    healthy = await client.get("/health")
    assert healthy.status_code == 200
    assert healthy.json() == {
        "status": "ok",
        "checks": {"database": True, "cache": True, "stream": True},
    }

    versioned = await client.get("/v1/health")
    assert versioned.json()["data"]["status"] == "ok"

    fake_redis.down = True
    await client.post("/v1/notifications", json={"message": "trip the stream"})
    degraded = await client.get("/health")
    fake_redis.down = False
    assert degraded.status_code == 503
    assert degraded.json()["checks"]["cache"] is False
    assert degraded.json()["checks"]["stream"] is False


@pytest.mark.asyncio
async def test_metrics_expose_counters_and_latency(client) -> None:
    await client.post("/v1/notifications", json={"message": "count me", "type": "push"})
    counters = (await client.get("/v1/metrics/counters")).json()["data"]
    assert counters["notifications_sent_total.push"] == 1

    latency = (await client.get("/v1/metrics/latency", params={"window_s": 60})).json()["data"]
    assert latency["window_s"] == 60
    assert latency["request_p95_ms"] is not None
    assert latency["delivery"] == {}


def _resolve(schema: dict, spec: dict) -> dict:
    ref = schema.get("$ref")
    if ref is None:
        return schema
    return spec["components"]["schemas"][ref.rsplit("/", 1)[-1]]


@pytest.mark.asyncio
async def test_openapi_documents_envelopes(client) -> None:
    spec = (await client.get("/openapi.json")).json()
    get_op = spec["paths"]["/v1/notifications/{notification_id}"]["get"]

    ok = _resolve(get_op["responses"]["200"]["content"]["application/json"]["schema"], spec)
    assert set(ok["properties"]) == {"data", "meta"}
    notification = _resolve(ok["properties"]["data"], spec)
    assert {"id", "status", "retry_count", "error_message"} <= set(notification["properties"])

    missing = _resolve(get_op["responses"]["404"]["content"]["application/json"]["schema"], spec)
    assert set(missing["properties"]) == {"error", "meta"}

    cancel_op = spec["paths"]["/v1/batch-jobs/{job_id}/cancel"]["post"]
    assert {"404", "409"} <= set(cancel_op["responses"])


@pytest.mark.asyncio
async def test_request_id_is_generated_when_absent(client) -> None:
    response = await client.get("/v1/notifications")
    request_id = response.headers["X-Request-Id"]
    assert request_id
    assert response.json()["meta"]["request_id"] == request_id
