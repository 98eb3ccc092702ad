"""Domain models for the billing system."""
from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .money import IdempotencyKey, Money


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PaymentGateway(str, Enum):
    """Supported external payment providers."""

    STRIPE = "stripe"
    PAYSTACK = "paystack"
    CHAPA = "chapa"
    FLUTTERWAVE = "flutterwave"
    PAYPAL = "paypal"


class GatewayRefKind(str, Enum):
    """Kinds of provider-side objects we keep references to."""

    PAYMENT = "payment"
    SUBSCRIPTION = "subscription"
    CUSTOMER = "customer"


class PaymentGatewayRef(BaseModel):
    """Opaque provider identifier for a payment, subscription or customer."""

    provider: PaymentGateway
    external_id: str = Field(min_length=1)
    kind: GatewayRefKind = GatewayRefKind.SUBSCRIPTION

    model_config = ConfigDict(frozen=True)


class SubscriptionStatus(str, Enum):
    """Lifecycle states of a user subscription."""

    INCOMPLETE = "incomplete"
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    UNPAID = "unpaid"
    PAUSED = "paused"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self is SubscriptionStatus.CANCELED


class IntervalUnit(str, Enum):
    DAY = "day"
    MONTH = "month"
    YEAR = "year"


class BillingInterval(BaseModel):
    """Recurrence of a plan, e.g. every 1 month or every 12 months."""

    unit: IntervalUnit
    value: int = Field(default=1, ge=1)

    model_config = ConfigDict(frozen=True)


class PlanTier(str, Enum):
    FREE = "free"
    INDIVIDUAL = "individual"
    TEAM = "team"
    ENTERPRISE = "enterprise"


class PlanName(str, Enum):
    """Catalogue of plan names."""

    FREE = "FREE"
    STARTER_MONTHLY = "STARTER_MONTHLY"
    STARTER_YEARLY = "STARTER_YEARLY"
    PRO_MONTHLY = "PRO_MONTHLY"
    PRO_YEARLY = "PRO_YEARLY"
    PREMIUM_YEARLY = "PREMIUM_YEARLY"
    BUSINESS_MONTHLY = "BUSINESS_MONTHLY"
    BUSINESS_YEARLY = "BUSINESS_YEARLY"
    ENTERPRISE_MONTHLY = "ENTERPRISE_MONTHLY"
    ENTERPRISE_YEARLY = "ENTERPRISE_YEARLY"

    @property
    def tier(self) -> PlanTier:
        if self is PlanName.FREE:
            return PlanTier.FREE
        if self.value.startswith("BUSINESS"):
            return PlanTier.TEAM
        if self.value.startswith("ENTERPRISE"):
            return PlanTier.ENTERPRISE
        return PlanTier.INDIVIDUAL


class SubscriptionPlan(BaseModel):
    """Priced plan a user can subscribe to."""

    id: str
    name: PlanName
    price: Money
    billing_interval: BillingInterval
    document_upload_limit: int = Field(ge=0)
    ocr_page_limit: int = Field(ge=0)
    provider_plan_codes: Dict[PaymentGateway, str] = Field(default_factory=dict)
    is_active: bool = True

    model_config = ConfigDict(frozen=True)

    def plan_code_for(self, provider: PaymentGateway) -> Optional[str]:
        return self.provider_plan_codes.get(provider)


class UserSubscription(BaseModel):
    """Normalized subscription state, one row per user."""

    id: str
    user_id: str
    plan_id: str
    gateway_ref: PaymentGatewayRef
    status: SubscriptionStatus
    current_period_end: Optional[datetime] = None
    last_event_at: Optional[datetime] = None
    payment_retry_pending: bool = False
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(frozen=True)

    @property
    def is_active(self) -> bool:
        return self.status in {SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING}


class RecipientCategory(str, Enum):
    """Targeting rule deciding which users may redeem a coupon."""

    ALL_PAID_USERS = "ALL_PAID_USERS"
    INDIVIDUAL_PLAN = "INDIVIDUAL_PLAN"
    TEAM_PLAN = "TEAM_PLAN"
    ENTERPRISE_PLAN = "ENTERPRISE_PLAN"
    FREE_TIER_ACTIVE = "FREE_TIER_ACTIVE"
    EXPIRED_SUBSCRIPTION = "EXPIRED_SUBSCRIPTION"
    NEW_USERS = "NEW_USERS"
    HIGH_ACTIVITY_USERS = "HIGH_ACTIVITY_USERS"
    SPECIFIC_USERS = "SPECIFIC_USERS"


def _check_percentage(value: Decimal) -> Decimal:
    if value <= 0 or value > 100:
        raise ValueError("discount_percentage must be in (0, 100]")
    return value


class CouponTemplate(BaseModel):
    """Redemption policy that coupons are minted from."""

    id: str
    name: str
    discount_percentage: Decimal
    min_purchase_amount: Optional[Money] = None
    recipient_category: RecipientCategory = RecipientCategory.ALL_PAID_USERS
    max_usage_count: Optional[int] = Field(default=None, ge=1)
    max_usage_per_user: Optional[int] = Field(default=None, ge=1)
    validity_days: int = Field(ge=1)
    is_active: bool = True
    created_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(frozen=True)

    @field_validator("discount_percentage")
    @classmethod
    def _valid_percentage(cls, value: Decimal) -> Decimal:
        return _check_percentage(value)


class Coupon(BaseModel):
    """A redeemable code; ``version`` is its optimistic concurrency token."""

    id: str
    code: str = Field(min_length=1, max_length=50)
    template_id: Optional[str] = None
    discount_percentage: Decimal
    min_purchase_amount: Optional[Money] = None
    recipient_category: RecipientCategory = RecipientCategory.ALL_PAID_USERS
    max_usage_count: Optional[int] = Field(default=None, ge=1)
    max_usage_per_user: Optional[int] = Field(default=None, ge=1)
    current_usage_count: int = Field(default=0, ge=0)
    version: int = 0
    valid_from: datetime
    valid_until: datetime
    is_active: bool = True

    model_config = ConfigDict(frozen=True)

    @field_validator("code")
    @classmethod
    def _upper_code(cls, value: str) -> str:
        return value.strip().upper()

    @field_validator("discount_percentage")
    @classmethod
    def _valid_percentage(cls, value: Decimal) -> Decimal:
        return _check_percentage(value)

    @model_validator(mode="after")
    def _check_bounds(self) -> "Coupon":
        if self.valid_until <= self.valid_from:
            raise ValueError("valid_until must be after valid_from")
        if self.max_usage_count is not None and self.current_usage_count > self.max_usage_count:
            raise ValueError("current_usage_count exceeds max_usage_count")
        return self

    @property
    def has_reached_usage_limit(self) -> bool:
        return self.max_usage_count is not None and self.current_usage_count >= self.max_usage_count


class CouponUsage(BaseModel):
    """Append-only audit row for one successful redemption."""

    id: str
    coupon_id: str
    user_id: str
    original_amount: Money
    discount_amount: Money
    final_amount: Money
    payment_reference: str = Field(min_length=1)
    used_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(frozen=True)


class Receipt(BaseModel):
    """Proof of a successful payment; one per provider payment."""

    id: str
    user_id: str
    receipt_number: str
    provider: PaymentGateway
    external_payment_id: str
    amount: Money
    paid_at: datetime
    description: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(frozen=True)


class WebhookEventType(str, Enum):
    """Canonical event types that provider notifications are mapped onto."""

    PAYMENT_CREATED = "PAYMENT_CREATED"
    PAYMENT_SUCCEEDED = "PAYMENT_SUCCEEDED"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    PAYMENT_CANCELED = "PAYMENT_CANCELED"
    PAYMENT_REQUIRES_ACTION = "PAYMENT_REQUIRES_ACTION"
    REFUND_CREATED = "REFUND_CREATED"
    REFUND_SUCCEEDED = "REFUND_SUCCEEDED"
    REFUND_FAILED = "REFUND_FAILED"
    SUBSCRIPTION_CREATED = "SUBSCRIPTION_CREATED"
    SUBSCRIPTION_UPDATED = "SUBSCRIPTION_UPDATED"
    SUBSCRIPTION_CANCELLED = "SUBSCRIPTION_CANCELLED"
    SUBSCRIPTION_PAUSED = "SUBSCRIPTION_PAUSED"
    SUBSCRIPTION_RESUMED = "SUBSCRIPTION_RESUMED"
    SUBSCRIPTION_TRIAL_ENDING = "SUBSCRIPTION_TRIAL_ENDING"
    INVOICE_CREATED = "INVOICE_CREATED"
    INVOICE_PAID = "INVOICE_PAID"
    INVOICE_PAYMENT_FAILED = "INVOICE_PAYMENT_FAILED"
    INVOICE_UPCOMING = "INVOICE_UPCOMING"
    CUSTOMER_CREATED = "CUSTOMER_CREATED"
    CUSTOMER_UPDATED = "CUSTOMER_UPDATED"
    DISPUTE_CREATED = "DISPUTE_CREATED"
    DISPUTE_UPDATED = "DISPUTE_UPDATED"
    DISPUTE_CLOSED = "DISPUTE_CLOSED"
    UNKNOWN = "UNKNOWN"


class WebhookEvent(BaseModel):
    """Provider-agnostic representation of a webhook notification."""

    event_type: WebhookEventType
    provider: PaymentGateway
    external_event_id: str = Field(min_length=1)
    payload: Dict[str, object] = Field(default_factory=dict)
    received_at: datetime = Field(default_factory=_utcnow)
    recorded_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(frozen=True)

    @property
    def dedup_key(self) -> IdempotencyKey:
        return IdempotencyKey.for_webhook(self.provider, self.external_event_id)


class WebhookAckStatus(str, Enum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    FAILED_PERMANENT = "failed_permanent"


class WebhookAck(BaseModel):
    """Acknowledgement returned to the provider for a delivery."""

    status: WebhookAckStatus
    provider: PaymentGateway
    external_event_id: Optional[str] = None
    event_type: Optional[WebhookEventType] = None
    message: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class CouponValidationReason(str, Enum):
    """Reason codes for coupon validation failures, used for UI messaging."""

    NOT_FOUND = "NOT_FOUND"
    INVALID = "INVALID"
    EXPIRED = "EXPIRED"
    BELOW_MINIMUM = "BELOW_MINIMUM"
    USAGE_LIMIT_REACHED = "USAGE_LIMIT_REACHED"
    USER_LIMIT_REACHED = "USER_LIMIT_REACHED"
    NOT_ELIGIBLE = "NOT_ELIGIBLE"


class ValidationResult(BaseModel):
    """Outcome of a coupon eligibility check."""

    ok: bool
    reason: Optional[CouponValidationReason] = None
    message: Optional[str] = None
    coupon: Optional[Coupon] = None

    model_config = ConfigDict(frozen=True)

    @classmethod
    def valid(cls, coupon: Coupon) -> "ValidationResult":
        return cls(ok=True, coupon=coupon)

    @classmethod
    def invalid(cls, reason: CouponValidationReason, message: str) -> "ValidationResult":
        return cls(ok=False, reason=reason, message=message)


class RedemptionResult(BaseModel):
    """Outcome of a redemption; ``replayed`` marks an idempotent repeat."""

    ok: bool
    usage: Optional[CouponUsage] = None
    reason: Optional[CouponValidationReason] = None
    message: Optional[str] = None
    replayed: bool = False

    model_config = ConfigDict(frozen=True)

    @classmethod
    def redeemed(cls, usage: CouponUsage, *, replayed: bool = False) -> "RedemptionResult":
        return cls(ok=True, usage=usage, replayed=replayed)

    @classmethod
    def rejected(cls, validation: ValidationResult) -> "RedemptionResult":
        return cls(ok=False, reason=validation.reason, message=validation.message)


class BillingUserProfile(BaseModel):
    """Facts about a user that coupon targeting depends on."""

    user_id: str
    created_at: Optional[datetime] = None
    ocr_pages_used: int = 0

    model_config = ConfigDict(frozen=True)


class ReceiptIssued(BaseModel):
    """Notification emitted once a receipt is persisted."""

    user_id: str
    receipt_number: str
    amount: Money

    model_config = ConfigDict(frozen=True)


class SubscriptionStatusChanged(BaseModel):
    """Notification emitted when a subscription changes status."""

    user_id: str
    subscription_id: str
    from_status: Optional[SubscriptionStatus] = None
    to_status: SubscriptionStatus

    model_config = ConfigDict(frozen=True)


class BillingAuditEventType(str, Enum):
    """Audit event categories emitted by the billing subsystem."""

    WEBHOOK_REJECTED = "webhook_rejected"
    WEBHOOK_PERMANENT_FAILURE = "webhook_permanent_failure"
    WEBHOOK_IGNORED = "webhook_ignored"
    TRANSITION_APPLIED = "transition_applied"
    TRANSITION_IGNORED = "transition_ignored"
    COUPON_REDEEMED = "coupon_redeemed"
    COUPON_REDEMPTION_FAILED = "coupon_redemption_failed"
    COUPONS_EXPIRED = "coupons_expired"
    RECEIPT_ISSUED = "receipt_issued"
    PAYMENT_FAILED = "payment_failed"
    REFUND_RECORDED = "refund_recorded"


class BillingAuditEvent(BaseModel):
    """Structured audit event for operators and analytics."""

    event_type: BillingAuditEventType
    provider: Optional[PaymentGateway] = None
    subscription_id: Optional[str] = None
    actor_id: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(frozen=True)
