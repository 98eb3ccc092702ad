"""Error taxonomy for the billing core."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from fastapi import HTTPException, status


class CurrencyMismatchError(ValueError):
    """Raised when money in two different currencies is combined."""


@dataclass
class BillingError(Exception):
    """Represents an actionable billing failure surfaced to API callers."""

    code: str
    message: str
    status_code: int = status.HTTP_400_BAD_REQUEST
    detail: Optional[Mapping[str, Any]] = None

    def __post_init__(self) -> None:
        base_detail: Dict[str, Any] = {"error": self.code, "message": self.message}
        if self.detail:
            base_detail.update(self.detail)
        object.__setattr__(self, "_payload", base_detail)
        super().__init__(self.message)

    @property
    def payload(self) -> Mapping[str, Any]:
        """Serialized representation suitable for JSON responses."""

        return self._payload

    def to_http_exception(self) -> HTTPException:
        """Convert the domain error into a FastAPI HTTPException."""

        return HTTPException(status_code=self.status_code, detail=dict(self.payload))


@dataclass
class NotFoundError(BillingError):
    """A coupon, subscription, plan or receipt does not exist."""

    code: str = "NOT_FOUND"
    message: str = "Resource not found"
    status_code: int = status.HTTP_404_NOT_FOUND


@dataclass
class CouponConcurrencyError(BillingError):
    """Optimistic redemption retries were exhausted."""

    code: str = "CONCURRENT_USAGE_CONFLICT"
    message: str = "Coupon was modified concurrently. Please try again."
    status_code: int = status.HTTP_409_CONFLICT


@dataclass
class WebhookAuthenticationError(BillingError):
    """Webhook signature verification failed."""

    code: str = "UNAUTHENTICATED"
    message: str = "Webhook signature verification failed"
    status_code: int = status.HTTP_401_UNAUTHORIZED


@dataclass
class MalformedWebhookError(BillingError):
    """Webhook payload cannot be parsed; redelivery would not help."""

    code: str = "MALFORMED_WEBHOOK"
    message: str = "Webhook payload could not be parsed"
    status_code: int = status.HTTP_400_BAD_REQUEST


@dataclass
class TransientProcessingError(BillingError):
    """Processing failed for a reason that a retry may resolve."""

    code: str = "TRANSIENT_FAILURE"
    message: str = "Temporary failure, retry later"
    status_code: int = status.HTTP_503_SERVICE_UNAVAILABLE


@dataclass
class DuplicateRecordError(BillingError):
    """A unique constraint rejected a write."""

    code: str = "DUPLICATE_RECORD"
    message: str = "Record already exists"
    status_code: int = status.HTTP_409_CONFLICT


@dataclass
class ProviderUnavailableError(BillingError):
    """The payment provider failed transiently."""

    code: str = "PROVIDER_UNAVAILABLE"
    message: str = "Payment provider is temporarily unavailable"
    status_code: int = status.HTTP_503_SERVICE_UNAVAILABLE


@dataclass
class ProviderNotImplementedError(BillingError):
    """The selected provider does not support the requested operation."""

    code: str = "NOT_IMPLEMENTED"
    message: str = "Payment provider does not support this operation"
    status_code: int = status.HTTP_501_NOT_IMPLEMENTED


@dataclass
class ProviderRejectedError(BillingError):
    """The payment provider permanently rejected the request."""

    code: str = "PROVIDER_REJECTED"
    message: str = "Payment provider rejected the request"
    status_code: int = status.HTTP_422_UNPROCESSABLE_ENTITY


__all__ = [
    "BillingError",
    "CouponConcurrencyError",
    "CurrencyMismatchError",
    "DuplicateRecordError",
    "MalformedWebhookError",
    "NotFoundError",
    "ProviderNotImplementedError",
    "ProviderRejectedError",
    "ProviderUnavailableError",
    "TransientProcessingError",
    "WebhookAuthenticationError",
]
