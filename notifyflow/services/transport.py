from __future__ import annotations

import asyncio
import json
import logging
import random
import time
from typing import Any, Protocol

import httpx

from notifyflow.core.config import Settings
from notifyflow.core.errors import TransportError
from notifyflow.domain.payloads import NotificationMessage
from notifyflow.services.telemetry import record_delivery


logger = logging.getLogger(__name__)


class Transport(Protocol):
    name: str

    async def deliver(self, message: NotificationMessage) -> dict[str, Any]:
        ...


class NoopTransport:
    """Accepts every notification; used for local runs and smoke tests."""

    name = "noop"

    async def deliver(self, message: NotificationMessage) -> dict[str, Any]:
        return {"status_code": 200}


class SimulatedTransport:
    """Fails a configurable fraction of deliveries to exercise the retry path."""

    name = "simulated"

    def __init__(self, *, failure_rate: float = 0.0, latency_s: float = 0.0, seed: int | None = None) -> None:
        self._failure_rate = min(1.0, max(0.0, failure_rate))
        self._latency_s = max(0.0, latency_s)
        self._random = random.Random(seed)

    async def deliver(self, message: NotificationMessage) -> dict[str, Any]:
        if self._latency_s:
            await asyncio.sleep(self._latency_s)
        if self._random.random() < self._failure_rate:
            raise TransportError(f"simulated carrier rejection for {message.id}")
        return {"status_code": 202}


class WebhookTransport:
    """POSTs the notification payload as JSON to a receiver URL."""

    name = "webhook"

    def __init__(self, url: str, *, timeout_s: float = 10.0, client: httpx.AsyncClient | None = None) -> None:
        if not url.startswith(("http://", "https://")):
            raise ValueError("webhook url must start with http:// or https://")
        self._url = url
        self._timeout_s = max(0.2, timeout_s)
        self._client = client

    async def _post(self, client: httpx.AsyncClient, body: bytes, headers: dict[str, str]) -> httpx.Response:
        response = await client.post(self._url, content=body, headers=headers)
        if response.status_code >= 400:
            raise httpx.HTTPStatusError(
                f"Receiver rejected notification delivery ({response.status_code})",
                request=response.request,
                response=response,
            )
        return response

    async def deliver(self, message: NotificationMessage) -> dict[str, Any]:
        # Deterministic serialization so receivers can dedupe on identical bodies.
        body = json.dumps(
            message.model_dump(by_alias=True, exclude_none=True), sort_keys=True, separators=(",", ":")
        ).encode("utf-8")
        headers = {
            "Content-Type": "application/json",
            "X-Notification-Id": message.id,
            "X-Notification-Type": message.type,
        }
        try:
            if self._client is not None:
                response = await self._post(self._client, body, headers)
            else:
                async with httpx.AsyncClient(timeout=self._timeout_s) as client:
                    response = await self._post(client, body, headers)
        except httpx.HTTPError as exc:
            raise TransportError(str(exc) or type(exc).__name__) from exc
        return {"status_code": int(response.status_code)}


class InstrumentedTransport:
    """Wraps a transport with a timeout, latency samples and TransportError normalization."""

    def __init__(self, inner: Transport, *, timeout_s: float) -> None:
        self.inner = inner
        self.name = inner.name
        self._timeout_s = max(0.01, timeout_s)

    async def deliver(self, message: NotificationMessage) -> dict[str, Any]:
        started = time.monotonic()
        success = False
        try:
            result = await asyncio.wait_for(self.inner.deliver(message), timeout=self._timeout_s)
            success = True
            return result
        except asyncio.TimeoutError as exc:
            raise TransportError(f"delivery timed out after {self._timeout_s}s") from exc
        except TransportError:
            raise
        except Exception as exc:  # noqa: BLE001 - every transport failure drives the retry policy
            raise TransportError(str(exc) or type(exc).__name__) from exc
        finally:
            record_delivery(
                transport=self.name,
                latency_ms=(time.monotonic() - started) * 1000.0,
                success=success,
            )


def build_transport(settings: Settings) -> Transport:
    kind = settings.notify_transport.strip().lower()
    if kind == "webhook":
        inner: Transport = WebhookTransport(settings.notify_webhook_url, timeout_s=settings.notify_delivery_timeout_s)
    elif kind == "simulated":
        inner = SimulatedTransport(failure_rate=settings.notify_simulated_failure_rate)
    elif kind == "noop":
        inner = NoopTransport()
    else:
        raise ValueError(f"unknown notify_transport: {settings.notify_transport}")
    logger.info("transport_configured kind=%s", inner.name)
    return InstrumentedTransport(inner, timeout_s=settings.notify_delivery_timeout_s)
