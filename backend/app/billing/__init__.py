"""Billing domain package reconciling payment providers with internal state."""

from .coupons import CouponCodeGenerator, CouponEligibilityPolicy, CouponEngine, UserDirectory
from .exceptions import (
    BillingError,
    CouponConcurrencyError,
    CurrencyMismatchError,
    DuplicateRecordError,
    MalformedWebhookError,
    NotFoundError,
    ProviderNotImplementedError,
    ProviderRejectedError,
    ProviderUnavailableError,
    TransientProcessingError,
    WebhookAuthenticationError,
)
from .models import (
    BillingAuditEvent,
    BillingAuditEventType,
    Coupon,
    CouponTemplate,
    CouponUsage,
    CouponValidationReason,
    PaymentGateway,
    Receipt,
    ReceiptIssued,
    RecipientCategory,
    RedemptionResult,
    SubscriptionPlan,
    SubscriptionStatus,
    SubscriptionStatusChanged,
    UserSubscription,
    ValidationResult,
    WebhookAck,
    WebhookAckStatus,
    WebhookEvent,
    WebhookEventType,
)
from .money import IdempotencyKey, Money
from .receipts import ReceiptIssuer, ReceiptNumberGenerator
from .repository import BillingRepository, BillingStore
from .service import BillingEventLogger, BillingNotifier, BillingService
from .state_machine import SubscriptionStateMachine, TransitionOutcome
from .webhooks import WebhookNormalizer

__all__ = [
    "BillingAuditEvent",
    "BillingAuditEventType",
    "BillingError",
    "BillingEventLogger",
    "BillingNotifier",
    "BillingRepository",
    "BillingService",
    "BillingStore",
    "Coupon",
    "CouponCodeGenerator",
    "CouponConcurrencyError",
    "CouponEligibilityPolicy",
    "CouponEngine",
    "CouponTemplate",
    "CouponUsage",
    "CouponValidationReason",
    "CurrencyMismatchError",
    "DuplicateRecordError",
    "IdempotencyKey",
    "MalformedWebhookError",
    "Money",
    "NotFoundError",
    "PaymentGateway",
    "ProviderNotImplementedError",
    "ProviderRejectedError",
    "ProviderUnavailableError",
    "Receipt",
    "ReceiptIssued",
    "ReceiptIssuer",
    "ReceiptNumberGenerator",
    "RecipientCategory",
    "RedemptionResult",
    "SubscriptionPlan",
    "SubscriptionStateMachine",
    "SubscriptionStatus",
    "SubscriptionStatusChanged",
    "TransientProcessingError",
    "TransitionOutcome",
    "UserDirectory",
    "UserSubscription",
    "ValidationResult",
    "WebhookAck",
    "WebhookAckStatus",
    "WebhookAuthenticationError",
    "WebhookEvent",
    "WebhookEventType",
    "WebhookNormalizer",
]
