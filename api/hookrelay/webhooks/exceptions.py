"""Webhook delivery exceptions."""

from __future__ import annotations


class WebhookError(Exception):
    """Base class for webhook errors."""


class ValidationError(WebhookError):
    """Endpoint configuration was rejected before persistence."""

    def __init__(self, errors: list[str]):
        self.errors = list(errors)
        super().__init__("; ".join(self.errors) or "Invalid webhook configuration")


class NotFoundError(WebhookError):
    """Requested record does not exist."""

    def __init__(self, kind: str, record_id: object):
        self.kind = kind
        self.record_id = record_id
        super().__init__(f"{kind} not found: {record_id}")


class AlreadyResolvedError(WebhookError):
    """Dead-letter entry has already been resolved."""


class InvalidStateError(WebhookError):
    """Operation is not allowed in the record's current state."""


class RetryConflictError(WebhookError):
    """Another worker currently owns the delivery's retry job."""


class DeliveryError(WebhookError):
    """Outcome of a failed delivery attempt."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        attempts: int | None = None,
    ):
        self.status_code = status_code
        self.attempts = attempts
        super().__init__(message)


class TransientDeliveryError(DeliveryError):
    """Network, timeout or retryable status; retried per policy."""


class PermanentDeliveryError(DeliveryError):
    """Status not in the retryable set; sent straight to the dead-letter store."""


class ExhaustionError(DeliveryError):
    """All attempts were used."""
