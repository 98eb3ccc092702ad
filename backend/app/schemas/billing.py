"""API schemas for billing endpoints."""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..billing import (
    Coupon,
    CouponTemplate,
    CouponValidationReason,
    Money,
    PaymentGateway,
    Receipt,
    RecipientCategory,
    RedemptionResult,
    SubscriptionStatus,
    UserSubscription,
    ValidationResult,
    WebhookAck,
    WebhookAckStatus,
    WebhookEventType,
)
from ..billing.providers import PaymentSession


class MoneyPayload(BaseModel):
    amount: Decimal = Field(gt=0)
    currency: str = Field(min_length=3, max_length=3)

    def to_money(self) -> Money:
        return Money(amount=self.amount, currency=self.currency)


class CouponValidateRequest(BaseModel):
    code: str = Field(min_length=1, max_length=50)
    user_id: str = Field(alias="userId")
    amount: MoneyPayload

    model_config = ConfigDict(populate_by_name=True)


class CouponRedeemRequest(CouponValidateRequest):
    payment_reference: str = Field(alias="paymentReference", min_length=1)


class CouponValidateResponse(BaseModel):
    valid: bool
    reason: Optional[CouponValidationReason] = None
    message: Optional[str] = None
    discount_percentage: Optional[Decimal] = Field(alias="discountPercentage", default=None)
    discount_amount: Optional[Money] = Field(alias="discountAmount", default=None)
    final_amount: Optional[Money] = Field(alias="finalAmount", default=None)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_result(cls, result: ValidationResult, amount: Money) -> "CouponValidateResponse":
        if not result.ok:
            return cls(valid=False, reason=result.reason, message=result.message)
        discount = amount.percentage(result.coupon.discount_percentage)
        return cls(
            valid=True,
            discount_percentage=result.coupon.discount_percentage,
            discount_amount=discount,
            final_amount=amount - discount,
        )


class CouponRedeemResponse(BaseModel):
    redeemed: bool
    replayed: bool = False
    reason: Optional[CouponValidationReason] = None
    message: Optional[str] = None
    usage_id: Optional[str] = Field(alias="usageId", default=None)
    discount_amount: Optional[Money] = Field(alias="discountAmount", default=None)
    final_amount: Optional[Money] = Field(alias="finalAmount", default=None)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_result(cls, result: RedemptionResult) -> "CouponRedeemResponse":
        if not result.ok:
            return cls(redeemed=False, reason=result.reason, message=result.message)
        return cls(
            redeemed=True,
            replayed=result.replayed,
            usage_id=result.usage.id,
            discount_amount=result.usage.discount_amount,
            final_amount=result.usage.final_amount,
        )


class WebhookAckResponse(BaseModel):
    status: WebhookAckStatus
    provider: PaymentGateway
    event_id: Optional[str] = Field(alias="eventId", default=None)
    event_type: Optional[WebhookEventType] = Field(alias="eventType", default=None)
    message: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_ack(cls, ack: WebhookAck) -> "WebhookAckResponse":
        return cls(
            status=ack.status,
            provider=ack.provider,
            event_id=ack.external_event_id,
            event_type=ack.event_type,
            message=ack.message,
        )


class SubscriptionStatusResponse(BaseModel):
    user_id: str = Field(alias="userId")
    subscription_id: str = Field(alias="subscriptionId")
    plan_id: str = Field(alias="planId")
    provider: PaymentGateway
    status: SubscriptionStatus
    current_period_end: Optional[datetime] = Field(alias="currentPeriodEnd", default=None)
    payment_retry_pending: bool = Field(alias="paymentRetryPending", default=False)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_subscription(cls, subscription: UserSubscription) -> "SubscriptionStatusResponse":
        return cls(
            user_id=subscription.user_id,
            subscription_id=subscription.id,
            plan_id=subscription.plan_id,
            provider=subscription.gateway_ref.provider,
            status=subscription.status,
            current_period_end=subscription.current_period_end,
            payment_retry_pending=subscription.payment_retry_pending,
        )


class ReceiptIssueRequest(BaseModel):
    user_id: str = Field(alias="userId")
    provider: PaymentGateway
    external_payment_id: str = Field(alias="externalPaymentId", min_length=1)
    amount: MoneyPayload
    paid_at: datetime = Field(alias="paidAt")
    description: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)


class ReceiptResponse(BaseModel):
    receipt_number: str = Field(alias="receiptNumber")
    user_id: str = Field(alias="userId")
    provider: PaymentGateway
    external_payment_id: str = Field(alias="externalPaymentId")
    amount: Money
    paid_at: datetime = Field(alias="paidAt")
    description: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_receipt(cls, receipt: Receipt) -> "ReceiptResponse":
        return cls(
            receipt_number=receipt.receipt_number,
            user_id=receipt.user_id,
            provider=receipt.provider,
            external_payment_id=receipt.external_payment_id,
            amount=receipt.amount,
            paid_at=receipt.paid_at,
            description=receipt.description,
        )


class CouponTemplateRequest(BaseModel):
    name: str = Field(min_length=1)
    discount_percentage: Decimal = Field(alias="discountPercentage", gt=0, le=100)
    validity_days: int = Field(alias="validityDays", ge=1)
    recipient_category: RecipientCategory = Field(
        alias="recipientCategory", default=RecipientCategory.ALL_PAID_USERS
    )
    min_purchase_amount: Optional[MoneyPayload] = Field(alias="minPurchaseAmount", default=None)
    max_usage_count: Optional[int] = Field(alias="maxUsageCount", default=None, ge=1)
    max_usage_per_user: Optional[int] = Field(alias="maxUsagePerUser", default=None, ge=1)

    model_config = ConfigDict(populate_by_name=True)


class CouponTemplateResponse(BaseModel):
    template: CouponTemplate


class MintCouponsRequest(BaseModel):
    quantity: int = Field(default=1, ge=1, le=1000)
    custom_code: Optional[str] = Field(alias="customCode", default=None)
    prefix: Optional[str] = Field(default=None, max_length=20)
    recipients: List[str] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True)


class MintCouponsResponse(BaseModel):
    coupons: List[Coupon]


class ExpireCouponsResponse(BaseModel):
    expired: int


class CheckoutRequest(BaseModel):
    user_id: str = Field(alias="userId")
    email: str = Field(min_length=3)
    plan_id: str = Field(alias="planId")
    provider: PaymentGateway
    callback_url: Optional[str] = Field(alias="callbackUrl", default=None)
    metadata: Dict[str, str] = Field(default_factory=dict)

    model_config = ConfigDict(populate_by_name=True)


class CheckoutResponse(BaseModel):
    provider: PaymentGateway
    reference: str
    authorization_url: Optional[str] = Field(alias="authorizationUrl", default=None)
    access_code: Optional[str] = Field(alias="accessCode", default=None)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_session(cls, session: PaymentSession) -> "CheckoutResponse":
        return cls(
            provider=session.provider,
            reference=session.reference,
            authorization_url=session.authorization_url,
            access_code=session.access_code,
        )
