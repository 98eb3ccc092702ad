"""Paystack adapter talking to ``api.paystack.co`` over ``httpx``."""
from __future__ import annotations

import hashlib
import logging
from typing import Dict, Mapping, Optional

import httpx

from ..exceptions import MalformedWebhookError
from ..models import IntervalUnit, PaymentGateway, SubscriptionPlan, SubscriptionStatus, WebhookEventType
from ..money import Money
from .base import (
    HttpProviderAdapter,
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
    hmac_hexdigest_matches,
    iso_or_none,
    load_json_object,
    metadata_strings,
    prune,
    to_utc,
)

logger = logging.getLogger("billing")

PAYSTACK_EVENT_TYPES: Dict[str, WebhookEventType] = {
    "charge.success": WebhookEventType.PAYMENT_SUCCEEDED,
    "charge.failed": WebhookEventType.PAYMENT_FAILED,
    "subscription.create": WebhookEventType.SUBSCRIPTION_CREATED,
    "subscription.disable": WebhookEventType.SUBSCRIPTION_CANCELLED,
    "subscription.not_renew": WebhookEventType.SUBSCRIPTION_UPDATED,
    "subscription.expiring_cards": WebhookEventType.SUBSCRIPTION_UPDATED,
    "invoice.create": WebhookEventType.INVOICE_CREATED,
    "invoice.update": WebhookEventType.INVOICE_CREATED,
    "invoice.payment_failed": WebhookEventType.INVOICE_PAYMENT_FAILED,
    "refund.pending": WebhookEventType.REFUND_CREATED,
    "refund.processed": WebhookEventType.REFUND_SUCCEEDED,
    "refund.failed": WebhookEventType.REFUND_FAILED,
    "customeridentification.success": WebhookEventType.CUSTOMER_UPDATED,
    "charge.dispute.create": WebhookEventType.DISPUTE_CREATED,
    "charge.dispute.remind": WebhookEventType.DISPUTE_UPDATED,
    "charge.dispute.resolve": WebhookEventType.DISPUTE_CLOSED,
}


def subscription_status(value: object) -> SubscriptionStatus:
    """Map a Paystack subscription status onto the internal lifecycle."""

    status = str(value or "").lower()
    if status == "active":
        return SubscriptionStatus.ACTIVE
    if status in {"non-renewing", "completed", "cancelled"}:
        return SubscriptionStatus.CANCELED
    if status == "attention":
        return SubscriptionStatus.PAST_DUE
    return SubscriptionStatus.INCOMPLETE


def _payment_status(value: object) -> ProviderPaymentStatus:
    status = str(value or "").lower()
    if status == "success":
        return ProviderPaymentStatus.SUCCEEDED
    if status in {"failed", "abandoned"}:
        return ProviderPaymentStatus.FAILED
    if status == "reversed":
        return ProviderPaymentStatus.REFUNDED
    return ProviderPaymentStatus.PENDING


def _interval(plan: SubscriptionPlan) -> Optional[str]:
    unit, value = plan.billing_interval.unit, plan.billing_interval.value
    if unit is IntervalUnit.DAY:
        return {1: "daily", 7: "weekly"}.get(value)
    if unit is IntervalUnit.MONTH:
        return {1: "monthly", 3: "quarterly", 6: "biannually", 12: "annually"}.get(value)
    if unit is IntervalUnit.YEAR and value == 1:
        return "annually"
    return None


def _money(minor_units: object, currency: object) -> Optional[Money]:
    if minor_units is None or not currency:
        return None
    return Money.from_minor_units(int(minor_units), str(currency))


def _customer_code(data: Mapping[str, object]) -> Optional[str]:
    customer = data.get("customer")
    if isinstance(customer, Mapping):
        return customer.get("customer_code")
    return customer if isinstance(customer, str) else None


def _delivery_id(event_name: str, identity: object, data: Mapping[str, object]) -> str:
    """Build a stable id for a Paystack delivery, which carries no event id.

    Invoices and subscriptions receive the same event name several times as
    their state moves on, so the object state is part of the id. Redeliveries
    of one notification carry the same state and collapse to the same id.
    """

    parts = [event_name, str(identity)]
    if event_name.startswith("invoice."):
        transaction = data.get("transaction")
        reference = transaction.get("reference") if isinstance(transaction, Mapping) else None
        parts.append("paid" if data.get("paid") else str(data.get("status") or "open").lower())
        if reference:
            parts.append(str(reference))
    elif event_name.startswith("subscription.") and data.get("status"):
        parts.append(str(data["status"]).lower())
    return ":".join(parts)


class PaystackAdapter(HttpProviderAdapter):
    """Full provider contract for Paystack, except in-place plan changes."""

    gateway = PaymentGateway.PAYSTACK
    event_types = PAYSTACK_EVENT_TYPES

    def __init__(
        self,
        *,
        secret_key: Optional[str],
        base_url: str = "https://api.paystack.co",
        client: Optional[httpx.Client] = None,
        timeout: float = 30.0,
        plan_codes: Optional[PlanCodeCache] = None,
    ) -> None:
        super().__init__(base_url=base_url, client=client, timeout=timeout, plan_codes=plan_codes)
        self._secret_key = secret_key

    def _auth_headers(self) -> ProviderResult[Dict[str, str]]:
        if not self._secret_key:
            return ProviderFailure(
                provider=self.gateway,
                operation="authenticate",
                kind=ProviderFailureKind.PERMANENT,
                message="Paystack secret key is not configured",
            )
        return {"Authorization": f"Bearer {self._secret_key}"}

    def _data(self, operation: str, method: str, path: str, **kwargs) -> ProviderResult[Optional[Dict[str, object]]]:
        body = self._request(operation, method, path, **kwargs)
        if body is None or isinstance(body, ProviderFailure):
            return body
        if body.get("status") is False:
            return self._failure(operation, ProviderFailureKind.PERMANENT, str(body.get("message")))
        data = body.get("data")
        return data if isinstance(data, dict) else {}

    def _to_payment(self, data: Mapping[str, object]) -> PaymentDetails:
        status = _payment_status(data.get("status"))
        return PaymentDetails(
            provider=self.gateway,
            payment_id=str(data.get("reference") or data.get("id")),
            status=status,
            amount=_money(data.get("amount"), data.get("currency")),
            customer_id=_customer_code(data),
            paid_at=to_utc(data.get("paid_at") or data.get("paidAt")),
            metadata=metadata_strings(data.get("metadata")),
        )

    def _to_subscription(self, data: Mapping[str, object]) -> ProviderSubscription:
        plan = data.get("plan")
        return ProviderSubscription(
            provider=self.gateway,
            subscription_id=str(data["subscription_code"]),
            status=subscription_status(data.get("status")),
            customer_id=_customer_code(data),
            plan_code=plan.get("plan_code") if isinstance(plan, Mapping) else plan,
            current_period_end=to_utc(data.get("next_payment_date")),
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
        body: Dict[str, object] = {
            "email": email,
            "amount": plan.price.to_minor_units(),
            "currency": plan.price.currency,
            "plan": plan_code,
            "metadata": {"user_id": user_id, "plan_id": plan.id, **(metadata or {})},
        }
        if callback_url:
            body["callback_url"] = callback_url
        data = self._data("initialize_subscription_payment", "POST", "/transaction/initialize", json_body=body)
        if isinstance(data, ProviderFailure):
            return data
        return PaymentSession(
            provider=self.gateway,
            reference=str(data.get("reference")),
            authorization_url=data.get("authorization_url"),
            access_code=data.get("access_code"),
        )

    def create_payment(
        self,
        *,
        email: str,
        amount: Money,
        reference: str,
        callback_url: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> ProviderResult[PaymentSession]:
        body: Dict[str, object] = {
            "email": email,
            "amount": amount.to_minor_units(),
            "currency": amount.currency,
            "reference": reference,
            "metadata": metadata or {},
        }
        if callback_url:
            body["callback_url"] = callback_url
        data = self._data("create_payment", "POST", "/transaction/initialize", json_body=body)
        if isinstance(data, ProviderFailure):
            return data
        return PaymentSession(
            provider=self.gateway,
            reference=str(data.get("reference") or reference),
            authorization_url=data.get("authorization_url"),
            access_code=data.get("access_code"),
        )

    def get_payment(self, payment_id: str) -> ProviderResult[PaymentDetails]:
        data = self._data("get_payment", "GET", f"/transaction/{payment_id}")
        if isinstance(data, ProviderFailure):
            return data
        return self._to_payment(data)

    def verify_payment(self, reference: str) -> ProviderResult[PaymentDetails]:
        data = self._data("verify_payment", "GET", f"/transaction/verify/{reference}")
        if isinstance(data, ProviderFailure):
            return data
        return self._to_payment(data)

    def refund_payment(self, payment_id: str, amount: Optional[Money] = None) -> ProviderResult[RefundDetails]:
        body: Dict[str, object] = {"transaction": payment_id}
        if amount is not None:
            body["amount"] = amount.to_minor_units()
        data = self._data("refund_payment", "POST", "/refund", json_body=body)
        if isinstance(data, ProviderFailure):
            return data
        return RefundDetails(
            provider=self.gateway,
            refund_id=str(data.get("id")),
            payment_id=payment_id,
            status=str(data.get("status")),
            amount=_money(data.get("amount"), data.get("currency")),
        )

    def create_subscription(
        self,
        *,
        customer_id: str,
        plan_code: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> ProviderResult[ProviderSubscription]:
        data = self._data(
            "create_subscription",
            "POST",
            "/subscription",
            json_body={"customer": customer_id, "plan": plan_code},
        )
        if isinstance(data, ProviderFailure):
            return data
        return self._to_subscription({"customer": customer_id, "plan": plan_code, **data})

    def get_subscription(self, subscription_id: str) -> ProviderResult[ProviderSubscription]:
        data = self._data("get_subscription", "GET", f"/subscription/{subscription_id}")
        if isinstance(data, ProviderFailure):
            return data
        return self._to_subscription(data)

    def cancel_subscription(self, subscription_id: str) -> ProviderResult[ProviderSubscription]:
        # Disabling requires the email token that only the fetch endpoint returns.
        current = self._data("cancel_subscription", "GET", f"/subscription/{subscription_id}")
        if isinstance(current, ProviderFailure):
            return current
        disabled = self._data(
            "cancel_subscription",
            "POST",
            "/subscription/disable",
            json_body={"code": subscription_id, "token": current.get("email_token")},
        )
        if isinstance(disabled, ProviderFailure):
            return disabled
        return self._to_subscription({**current, "status": "cancelled"})

    def change_plan(self, subscription_id: str, new_plan_code: str) -> ProviderResult[ProviderSubscription]:
        return ProviderFailure.not_implemented(self.gateway, "change_plan")

    def get_or_create_customer(
        self, *, email: str, user_id: str, name: Optional[str] = None
    ) -> ProviderResult[ProviderCustomer]:
        existing = self._data("get_or_create_customer", "GET", f"/customer/{email}", missing_ok=True)
        if isinstance(existing, ProviderFailure):
            return existing
        if existing and existing.get("customer_code"):
            return ProviderCustomer(provider=self.gateway, customer_id=str(existing["customer_code"]), email=email)
        body: Dict[str, object] = {"email": email, "metadata": {"user_id": user_id}}
        if name:
            first, _, last = name.partition(" ")
            body.update({"first_name": first, "last_name": last})
        created = self._data("get_or_create_customer", "POST", "/customer", json_body=body)
        if isinstance(created, ProviderFailure):
            return created
        return ProviderCustomer(provider=self.gateway, customer_id=str(created.get("customer_code")), email=email)

    def _create_plan(self, plan: SubscriptionPlan) -> ProviderResult[str]:
        interval = _interval(plan)
        if interval is None:
            return self._failure(
                "ensure_plan_exists",
                ProviderFailureKind.PERMANENT,
                f"Paystack cannot bill every {plan.billing_interval.value} {plan.billing_interval.unit.value}",
            )
        data = self._data(
            "ensure_plan_exists",
            "POST",
            "/plan",
            json_body={
                "name": plan.name.value,
                "amount": plan.price.to_minor_units(),
                "currency": plan.price.currency,
                "interval": interval,
            },
        )
        if isinstance(data, ProviderFailure):
            return data
        logger.info("Created Paystack plan %s for plan %s", data.get("plan_code"), plan.id)
        return str(data.get("plan_code"))

    def verify_webhook_signature(self, raw_payload: bytes, headers: Mapping[str, str]) -> bool:
        signature = header_value(headers, "x-paystack-signature")
        return hmac_hexdigest_matches(self._secret_key, raw_payload, signature, hashlib.sha512)

    def parse_webhook(self, raw_payload: bytes) -> ProviderWebhook:
        body = load_json_object(self.gateway, raw_payload)
        event_name = body.get("event")
        data = body.get("data")
        if not event_name or not isinstance(data, dict):
            raise MalformedWebhookError(message="Paystack event is missing event or data")
        subscription = data.get("subscription") if isinstance(data.get("subscription"), dict) else {}
        # Paystack has no event id; the affected object identifies the delivery.
        identity = (
            data.get("id")
            or data.get("reference")
            or data.get("invoice_code")
            or data.get("subscription_code")
            or subscription.get("subscription_code")
        )
        if not identity:
            raise MalformedWebhookError(message="Paystack event carries no object identifier")
        event_name = str(event_name)
        # Paystack stamps objects, not notifications: createdAt and paid_at describe the
        # subscription or charge, so deliveries are ordered by arrival.
        return ProviderWebhook(
            provider=self.gateway,
            event_name=event_name,
            event_id=_delivery_id(event_name, identity, data),
            occurred_at=None,
            data=data,
        )

    def event_type_for(self, webhook: ProviderWebhook) -> WebhookEventType:
        if webhook.event_name == "invoice.update" and webhook.data.get("paid"):
            return WebhookEventType.INVOICE_PAID
        return super().event_type_for(webhook)

    def canonical_payload(self, webhook: ProviderWebhook) -> Dict[str, object]:
        data = webhook.data
        metadata = metadata_strings(data.get("metadata"))
        plan = data.get("plan")
        plan_code = plan.get("plan_code") if isinstance(plan, Mapping) else plan
        if webhook.event_name.startswith("subscription."):
            return prune(
                {
                    "subscription_id": data.get("subscription_code"),
                    "customer_id": _customer_code(data),
                    "user_id": metadata.get("user_id"),
                    "plan_id": metadata.get("plan_id"),
                    "plan_code": plan_code,
                    "status": subscription_status(data.get("status")).value,
                    "current_period_end": iso_or_none(data.get("next_payment_date")),
                }
            )
        if webhook.event_name.startswith("invoice."):
            subscription = data.get("subscription") or {}
            transaction = data.get("transaction") or {}
            money = _money(data.get("amount"), transaction.get("currency") or data.get("currency") or "NGN")
            return prune(
                {
                    "payment_id": transaction.get("reference") or data.get("invoice_code"),
                    "subscription_id": subscription.get("subscription_code"),
                    "customer_id": _customer_code(data),
                    "user_id": metadata.get("user_id"),
                    "plan_id": metadata.get("plan_id"),
                    "amount": str(money.amount) if money else None,
                    "currency": money.currency if money else None,
                    "status": data.get("status"),
                    "current_period_end": iso_or_none(subscription.get("next_payment_date")),
                    "will_retry": subscription.get("status") in {"active", "attention"},
                    "paid_at": iso_or_none(data.get("paid_at")),
                    "description": data.get("description"),
                }
            )
        if webhook.event_name.startswith("refund."):
            money = _money(data.get("amount"), data.get("currency"))
            return prune(
                {
                    "payment_id": data.get("transaction_reference"),
                    "customer_id": _customer_code(data),
                    "amount": str(money.amount) if money else None,
                    "currency": money.currency if money else None,
                    "status": data.get("status"),
                }
            )
        money = _money(data.get("amount"), data.get("currency"))
        return prune(
            {
                "payment_id": data.get("reference"),
                "customer_id": _customer_code(data),
                "user_id": metadata.get("user_id"),
                "plan_id": metadata.get("plan_id"),
                "plan_code": plan_code,
                "amount": str(money.amount) if money else None,
                "currency": money.currency if money else None,
                "status": data.get("status"),
                "coupon_code": metadata.get("coupon_code"),
                "original_amount": metadata.get("original_amount"),
                "paid_at": iso_or_none(data.get("paid_at") or data.get("paidAt")),
                "description": data.get("gateway_response"),
            }
        )


__all__ = ["PAYSTACK_EVENT_TYPES", "PaystackAdapter", "subscription_status"]
