from __future__ import annotations


class NotifyFlowError(Exception):
    """Base error for notifyflow."""


class ValidationError(NotifyFlowError):
    """Request payload failed validation before any write."""


class StoreError(NotifyFlowError):
    """Durable store read or write failure."""


class StreamError(NotifyFlowError):
    """Event stream unavailable or publish failed after bounded retries.

    When raised from notification creation the record is already committed;
    ``notification_id`` identifies it so callers can poll status.
    """

    def __init__(self, message: str, *, notification_id: str | None = None) -> None:
        super().__init__(message)
        self.notification_id = notification_id


class TransportError(NotifyFlowError):
    """Delivery attempt to the end transport failed."""


class ExhaustionError(NotifyFlowError):
    """Notification reached the attempt limit and was parked on the dead-letter topic."""

    def __init__(self, notification_id: str, attempts: int, last_error: str) -> None:
        super().__init__(f"notification {notification_id} exhausted after {attempts} attempts: {last_error}")
        self.notification_id = notification_id
        self.attempts = attempts
        self.last_error = last_error


class JobQueueError(NotifyFlowError):
    """Batch job queue unavailable."""


class NotFoundError(NotifyFlowError):
    """Requested record does not exist."""
