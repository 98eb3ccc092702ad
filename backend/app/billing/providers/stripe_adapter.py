"""Stripe adapter built on the official ``stripe`` SDK."""
from __future__ import annotations

import logging
from typing import Callable, Dict, Mapping, Optional

import stripe

from ..exceptions import MalformedWebhookError
from ..models import IntervalUnit, PaymentGateway, SubscriptionPlan, SubscriptionStatus, WebhookEventType
from ..money import Money
from .base import (
    BaseProviderAdapter,
    PaymentDetails,
    PaymentSession,
    PlanCodeCache,
    ProviderCustomer,
    ProviderFailure,
    ProviderFailureKind,
    ProviderPaymentStatus,
    ProviderResult,
    ProviderSubscription,
    ProviderWebhook,
    RefundDetails,
    header_value,
    iso_or_none,
    load_json_object,
    metadata_strings,
    prune,
    to_utc,
)

logger = logging.getLogger("billing")

STRIPE_EVENT_TYPES: Dict[str, WebhookEventType] = {
    "payment_intent.created": WebhookEventType.PAYMENT_CREATED,
    "payment_intent.succeeded": WebhookEventType.PAYMENT_SUCCEEDED,
    "payment_intent.payment_failed": WebhookEventType.PAYMENT_FAILED,
    "payment_intent.canceled": WebhookEventType.PAYMENT_CANCELED,
    "payment_intent.requires_action": WebhookEventType.PAYMENT_REQUIRES_ACTION,
    "refund.created": WebhookEventType.REFUND_CREATED,
    "charge.refunded": WebhookEventType.REFUND_SUCCEEDED,
    "refund.failed": WebhookEventType.REFUND_FAILED,
    "customer.subscription.created": WebhookEventType.SUBSCRIPTION_CREATED,
    "customer.subscription.updated": WebhookEventType.SUBSCRIPTION_UPDATED,
    "customer.subscription.deleted": WebhookEventType.SUBSCRIPTION_CANCELLED,
    "customer.subscription.paused": WebhookEventType.SUBSCRIPTION_PAUSED,
    "customer.subscription.resumed": WebhookEventType.SUBSCRIPTION_RESUMED,
    "customer.subscription.trial_will_end": WebhookEventType.SUBSCRIPTION_TRIAL_ENDING,
    "invoice.created": WebhookEventType.INVOICE_CREATED,
    "invoice.paid": WebhookEventType.INVOICE_PAID,
    "invoice.payment_failed": WebhookEventType.INVOICE_PAYMENT_FAILED,
    "invoice.upcoming": WebhookEventType.INVOICE_UPCOMING,
    "customer.created": WebhookEventType.CUSTOMER_CREATED,
    "customer.updated": WebhookEventType.CUSTOMER_UPDATED,
    "charge.dispute.created": WebhookEventType.DISPUTE_CREATED,
    "charge.dispute.updated": WebhookEventType.DISPUTE_UPDATED,
    "charge.dispute.closed": WebhookEventType.DISPUTE_CLOSED,
}

_SUBSCRIPTION_STATUSES: Dict[str, SubscriptionStatus] = {
    "incomplete": SubscriptionStatus.INCOMPLETE,
    "incomplete_expired": SubscriptionStatus.CANCELED,
    "trialing": SubscriptionStatus.TRIALING,
    "active": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.UNPAID,
    "paused": SubscriptionStatus.PAUSED,
    "canceled": SubscriptionStatus.CANCELED,
}

_PAYMENT_STATUSES: Dict[str, ProviderPaymentStatus] = {
    "succeeded": ProviderPaymentStatus.SUCCEEDED,
    "canceled": ProviderPaymentStatus.CANCELED,
    "requires_payment_method": ProviderPaymentStatus.FAILED,
}

_INTERVALS = {IntervalUnit.DAY: "day", IntervalUnit.MONTH: "month", IntervalUnit.YEAR: "year"}

_TRANSIENT_ERRORS = (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError)


def _subscription_status(value: object) -> SubscriptionStatus:
    return _SUBSCRIPTION_STATUSES.get(str(value or ""), SubscriptionStatus.INCOMPLETE)


def _amount(minor_units: object, currency: object) -> Optional[Money]:
    if minor_units is None or not currency:
        return None
    return Money.from_minor_units(int(minor_units), str(currency))


def _period_end(subscription: Mapping[str, object]) -> object:
    # Newer API versions report the period on subscription items only.
    if subscription.get("current_period_end"):
        return subscription.get("current_period_end")
    items = (subscription.get("items") or {}).get("data") or []
    if items:
        return items[0].get("current_period_end")
    return None


class StripeAdapter(BaseProviderAdapter):
    """Full provider contract backed by the Stripe API."""

    gateway = PaymentGateway.STRIPE
    event_types = STRIPE_EVENT_TYPES

    def __init__(
        self,
        *,
        api_key: Optional[str],
        webhook_secret: Optional[str],
        plan_codes: Optional[PlanCodeCache] = None,
        success_url: str = "https://localhost/billing/success",
        cancel_url: str = "https://localhost/billing/cancel",
    ) -> None:
        super().__init__(plan_codes=plan_codes)
        self._api_key = api_key
        self._webhook_secret = webhook_secret
        self._success_url = success_url
        self._cancel_url = cancel_url

    def _call(self, operation: str, func: Callable[..., object], *args, **kwargs) -> ProviderResult[object]:
        if not self._api_key:
            return self._failure(operation, ProviderFailureKind.PERMANENT, "Stripe API key is not configured")
        try:
            return func(*args, api_key=self._api_key, **kwargs)
        except _TRANSIENT_ERRORS as exc:
            return self._failure(operation, ProviderFailureKind.TRANSIENT, str(exc))
        except stripe.StripeError as exc:
            status = getattr(exc, "http_status", None) or 0
            kind = ProviderFailureKind.TRANSIENT if status >= 500 or status == 429 else ProviderFailureKind.PERMANENT
            return self._failure(operation, kind, str(exc))

    def _to_subscription(self, obj: Mapping[str, object]) -> ProviderSubscription:
        items = (obj.get("items") or {}).get("data") or []
        price = items[0].get("price") if items else None
        return ProviderSubscription(
            provider=self.gateway,
            subscription_id=str(obj["id"]),
            status=_subscription_status(obj.get("status")),
            customer_id=obj.get("customer"),
            plan_code=(price or {}).get("id") if isinstance(price, Mapping) else price,
            current_period_end=to_utc(_period_end(obj)),
        )

    def _to_payment(self, obj: Mapping[str, object]) -> PaymentDetails:
        status = _PAYMENT_STATUSES.get(str(obj.get("status")), ProviderPaymentStatus.PENDING)
        return PaymentDetails(
            provider=self.gateway,
            payment_id=str(obj["id"]),
            status=status,
            amount=_amount(obj.get("amount_received") or obj.get("amount"), obj.get("currency")),
            customer_id=obj.get("customer"),
            paid_at=to_utc(obj.get("created")) if status is ProviderPaymentStatus.SUCCEEDED else None,
            metadata=metadata_strings(obj.get("metadata")),
        )

    def initialize_subscription_payment(
        self,
        *,
        email: str,
        user_id: str,
        plan: SubscriptionPlan,
        plan_code: str,
        callback_url: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> ProviderResult[PaymentSession]:
        session_metadata = {"user_id": user_id, "plan_id": plan.id, **(metadata or {})}
        session = self._call(
            "initialize_subscription_payment",
            stripe.checkout.Session.create,
            mode="subscription",
            customer_email=email,
            client_reference_id=user_id,
            line_items=[{"price": plan_code, "quantity": 1}],
            success_url=callback_url or self._success_url,
            cancel_url=self._cancel_url,
            metadata=session_metadata,
            subscription_data={"metadata": session_metadata},
        )
        if isinstance(session, ProviderFailure):
            return session
        return PaymentSession(provider=self.gateway, reference=str(session["id"]), authorization_url=session.get("url"))

    def create_payment(
        self,
        *,
        email: str,
        amount: Money,
        reference: str,
        callback_url: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> ProviderResult[PaymentSession]:
        intent = self._call(
            "create_payment",
            stripe.PaymentIntent.create,
            amount=amount.to_minor_units(),
            currency=amount.currency.lower(),
            receipt_email=email,
            metadata={"reference": reference, **(metadata or {})},
            idempotency_key=reference,
        )
        if isinstance(intent, ProviderFailure):
            return intent
        return PaymentSession(
            provider=self.gateway,
            reference=str(intent["id"]),
            access_code=intent.get("client_secret"),
        )

    def get_payment(self, payment_id: str) -> ProviderResult[PaymentDetails]:
        intent = self._call("get_payment", stripe.PaymentIntent.retrieve, payment_id)
        if isinstance(intent, ProviderFailure):
            return intent
        return self._to_payment(intent)

    def verify_payment(self, reference: str) -> ProviderResult[PaymentDetails]:
        intent = self._call("verify_payment", stripe.PaymentIntent.retrieve, reference)
        if isinstance(intent, ProviderFailure):
            return intent
        return self._to_payment(intent)

    def refund_payment(self, payment_id: str, amount: Optional[Money] = None) -> ProviderResult[RefundDetails]:
        params: Dict[str, object] = {"payment_intent": payment_id}
        if amount is not None:
            params["amount"] = amount.to_minor_units()
        refund = self._call("refund_payment", stripe.Refund.create, **params)
        if isinstance(refund, ProviderFailure):
            return refund
        return RefundDetails(
            provider=self.gateway,
            refund_id=str(refund["id"]),
            payment_id=payment_id,
            status=str(refund.get("status")),
            amount=_amount(refund.get("amount"), refund.get("currency")),
        )

    def create_subscription(
        self,
        *,
        customer_id: str,
        plan_code: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> ProviderResult[ProviderSubscription]:
        subscription = self._call(
            "create_subscription",
            stripe.Subscription.create,
            customer=customer_id,
            items=[{"price": plan_code}],
            payment_behavior="default_incomplete",
            metadata=metadata or {},
        )
        if isinstance(subscription, ProviderFailure):
            return subscription
        return self._to_subscription(subscription)

    def get_subscription(self, subscription_id: str) -> ProviderResult[ProviderSubscription]:
        subscription = self._call("get_subscription", stripe.Subscription.retrieve, subscription_id)
        if isinstance(subscription, ProviderFailure):
            return subscription
        return self._to_subscription(subscription)

    def cancel_subscription(self, subscription_id: str) -> ProviderResult[ProviderSubscription]:
        subscription = self._call("cancel_subscription", stripe.Subscription.cancel, subscription_id)
        if isinstance(subscription, ProviderFailure):
            return subscription
        return self._to_subscription(subscription)

    def change_plan(self, subscription_id: str, new_plan_code: str) -> ProviderResult[ProviderSubscription]:
        current = self._call("change_plan", stripe.Subscription.retrieve, subscription_id)
        if isinstance(current, ProviderFailure):
            return current
        items = (current.get("items") or {}).get("data") or []
        if not items:
            return self._failure("change_plan", ProviderFailureKind.PERMANENT, "subscription has no items")
        updated = self._call(
            "change_plan",
            stripe.Subscription.modify,
            subscription_id,
            items=[{"id": items[0]["id"], "price": new_plan_code}],
            proration_behavior="create_prorations",
        )
        if isinstance(updated, ProviderFailure):
            return updated
        return self._to_subscription(updated)

    def get_or_create_customer(
        self, *, email: str, user_id: str, name: Optional[str] = None
    ) -> ProviderResult[ProviderCustomer]:
        existing = self._call("get_or_create_customer", stripe.Customer.list, email=email, limit=1)
        if isinstance(existing, ProviderFailure):
            return existing
        matches = existing.get("data") or []
        if matches:
            return ProviderCustomer(provider=self.gateway, customer_id=str(matches[0]["id"]), email=email)
        params: Dict[str, object] = {"email": email, "metadata": {"user_id": user_id}}
        if name:
            params["name"] = name
        created = self._call("get_or_create_customer", stripe.Customer.create, **params)
        if isinstance(created, ProviderFailure):
            return created
        return ProviderCustomer(provider=self.gateway, customer_id=str(created["id"]), email=email)

    def _create_plan(self, plan: SubscriptionPlan) -> ProviderResult[str]:
        lookup_key = f"plan_{plan.id}"
        prices = self._call("ensure_plan_exists", stripe.Price.list, lookup_keys=[lookup_key], limit=1)
        if isinstance(prices, ProviderFailure):
            return prices
        found = prices.get("data") or []
        if found:
            return str(found[0]["id"])
        product = self._call("ensure_plan_exists", stripe.Product.create, name=plan.name.value)
        if isinstance(product, ProviderFailure):
            return product
        price = self._call(
            "ensure_plan_exists",
            stripe.Price.create,
            product=product["id"],
            unit_amount=plan.price.to_minor_units(),
            currency=plan.price.currency.lower(),
            recurring={
                "interval": _INTERVALS[plan.billing_interval.unit],
                "interval_count": plan.billing_interval.value,
            },
            lookup_key=lookup_key,
        )
        if isinstance(price, ProviderFailure):
            return price
        logger.info("Created Stripe price %s for plan %s", price["id"], plan.id)
        return str(price["id"])

    def verify_webhook_signature(self, raw_payload: bytes, headers: Mapping[str, str]) -> bool:
        signature = header_value(headers, "Stripe-Signature")
        if not signature or not self._webhook_secret:
            return False
        try:
            stripe.WebhookSignature.verify_header(
                raw_payload.decode("utf-8"), signature, self._webhook_secret
            )
        except (stripe.SignatureVerificationError, UnicodeDecodeError):
            return False
        return True

    def parse_webhook(self, raw_payload: bytes) -> ProviderWebhook:
        body = load_json_object(self.gateway, raw_payload)
        event_data = body.get("data")
        if not body.get("id") or not body.get("type") or not isinstance(event_data, dict):
            raise MalformedWebhookError(message="Stripe event is missing id, type or data")
        obj = event_data.get("object")
        return ProviderWebhook(
            provider=self.gateway,
            event_name=str(body["type"]),
            event_id=str(body["id"]),
            occurred_at=to_utc(body.get("created")),
            data=obj if isinstance(obj, dict) else {},
        )

    def canonical_payload(self, webhook: ProviderWebhook) -> Dict[str, object]:
        obj = webhook.data
        kind = obj.get("object")
        metadata = metadata_strings(obj.get("metadata"))
        if kind == "invoice":
            return self._invoice_payload(obj, metadata)
        if kind == "subscription":
            return prune(
                {
                    "subscription_id": obj.get("id"),
                    "customer_id": obj.get("customer"),
                    "user_id": metadata.get("user_id"),
                    "plan_id": metadata.get("plan_id"),
                    "status": _subscription_status(obj.get("status")).value,
                    "current_period_end": iso_or_none(_period_end(obj)),
                    "trial_end": iso_or_none(obj.get("trial_end")),
                }
            )
        money = _amount(obj.get("amount_received") or obj.get("amount"), obj.get("currency"))
        payment_id = obj.get("payment_intent") if kind in {"charge", "refund", "dispute"} else obj.get("id")
        return prune(
            {
                "payment_id": payment_id,
                "customer_id": obj.get("customer"),
                "user_id": metadata.get("user_id"),
                "plan_id": metadata.get("plan_id"),
                "amount": str(money.amount) if money else None,
                "currency": money.currency if money else None,
                "status": obj.get("status"),
                "coupon_code": metadata.get("coupon_code"),
                "original_amount": metadata.get("original_amount"),
                "paid_at": iso_or_none(obj.get("created")),
                "description": obj.get("description"),
            }
        )

    def _invoice_payload(self, invoice: Mapping[str, object], metadata: Dict[str, str]) -> Dict[str, object]:
        details = invoice.get("subscription_details") or {}
        metadata = {**metadata_strings(details.get("metadata")), **metadata}
        money = _amount(invoice.get("amount_paid"), invoice.get("currency"))
        lines = (invoice.get("lines") or {}).get("data") or []
        period_end = (lines[0].get("period") or {}).get("end") if lines else invoice.get("period_end")
        paid_at = (invoice.get("status_transitions") or {}).get("paid_at")
        return prune(
            {
                "payment_id": invoice.get("payment_intent") or invoice.get("id"),
                "subscription_id": invoice.get("subscription"),
                "customer_id": invoice.get("customer"),
                "user_id": metadata.get("user_id"),
                "plan_id": metadata.get("plan_id"),
                "amount": str(money.amount) if money else None,
                "currency": money.currency if money else None,
                "status": invoice.get("status"),
                "coupon_code": metadata.get("coupon_code"),
                "original_amount": metadata.get("original_amount"),
                "current_period_end": iso_or_none(period_end),
                "will_retry": invoice.get("next_payment_attempt") is not None,
                "paid_at": iso_or_none(paid_at or invoice.get("created")),
                "description": invoice.get("description"),
            }
        )


__all__ = ["STRIPE_EVENT_TYPES", "StripeAdapter"]
