"""PayPal adapter for the REST v1/v2 APIs over ``httpx``."""
from __future__ import annotations

import json
import logging
import threading
import time
from typing import Dict, List, Mapping, Optional

import httpx

from ..exceptions import MalformedWebhookError, TransientProcessingError
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
    iso_or_none,
    load_json_object,
    prune,
    to_utc,
)

logger = logging.getLogger("billing")

PAYPAL_EVENT_TYPES: Dict[str, WebhookEventType] = {
    "CHECKOUT.ORDER.APPROVED": WebhookEventType.PAYMENT_CREATED,
    "PAYMENT.CAPTURE.PENDING": WebhookEventType.PAYMENT_CREATED,
    "PAYMENT.CAPTURE.COMPLETED": WebhookEventType.PAYMENT_SUCCEEDED,
    "PAYMENT.CAPTURE.DENIED": WebhookEventType.PAYMENT_FAILED,
    "PAYMENT.CAPTURE.DECLINED": WebhookEventType.PAYMENT_FAILED,
    "PAYMENT.CAPTURE.REFUNDED": WebhookEventType.REFUND_SUCCEEDED,
    "PAYMENT.CAPTURE.REVERSED": WebhookEventType.REFUND_SUCCEEDED,
    "PAYMENT.SALE.COMPLETED": WebhookEventType.INVOICE_PAID,
    "PAYMENT.SALE.REFUNDED": WebhookEventType.REFUND_SUCCEEDED,
    "BILLING.SUBSCRIPTION.CREATED": WebhookEventType.SUBSCRIPTION_CREATED,
    "BILLING.SUBSCRIPTION.ACTIVATED": WebhookEventType.SUBSCRIPTION_UPDATED,
    "BILLING.SUBSCRIPTION.UPDATED": WebhookEventType.SUBSCRIPTION_UPDATED,
    "BILLING.SUBSCRIPTION.RE-ACTIVATED": WebhookEventType.SUBSCRIPTION_RESUMED,
    "BILLING.SUBSCRIPTION.SUSPENDED": WebhookEventType.SUBSCRIPTION_PAUSED,
    "BILLING.SUBSCRIPTION.CANCELLED": WebhookEventType.SUBSCRIPTION_CANCELLED,
    "BILLING.SUBSCRIPTION.EXPIRED": WebhookEventType.SUBSCRIPTION_CANCELLED,
    "BILLING.SUBSCRIPTION.PAYMENT.FAILED": WebhookEventType.INVOICE_PAYMENT_FAILED,
    "CUSTOMER.DISPUTE.CREATED": WebhookEventType.DISPUTE_CREATED,
    "CUSTOMER.DISPUTE.UPDATED": WebhookEventType.DISPUTE_UPDATED,
    "CUSTOMER.DISPUTE.RESOLVED": WebhookEventType.DISPUTE_CLOSED,
}

_SUBSCRIPTION_STATUSES: Dict[str, SubscriptionStatus] = {
    "APPROVAL_PENDING": SubscriptionStatus.INCOMPLETE,
    "APPROVED": SubscriptionStatus.INCOMPLETE,
    "ACTIVE": SubscriptionStatus.ACTIVE,
    "SUSPENDED": SubscriptionStatus.PAUSED,
    "CANCELLED": SubscriptionStatus.CANCELED,
    "EXPIRED": SubscriptionStatus.CANCELED,
}

_ORDER_STATUSES: Dict[str, ProviderPaymentStatus] = {
    "COMPLETED": ProviderPaymentStatus.SUCCEEDED,
    "VOIDED": ProviderPaymentStatus.CANCELED,
}

_INTERVAL_UNITS = {IntervalUnit.DAY: "DAY", IntervalUnit.MONTH: "MONTH", IntervalUnit.YEAR: "YEAR"}

PAYMENT_FAILURE_THRESHOLD = 3

_VERIFY_HEADERS = {
    "auth_algo": "PAYPAL-AUTH-ALGO",
    "cert_url": "PAYPAL-CERT-URL",
    "transmission_id": "PAYPAL-TRANSMISSION-ID",
    "transmission_sig": "PAYPAL-TRANSMISSION-SIG",
    "transmission_time": "PAYPAL-TRANSMISSION-TIME",
}


def _subscription_status(value: object) -> SubscriptionStatus:
    return _SUBSCRIPTION_STATUSES.get(str(value or "").upper(), SubscriptionStatus.INCOMPLETE)


def _money(amount: object) -> Optional[Money]:
    if not isinstance(amount, Mapping):
        return None
    value = amount.get("value", amount.get("total"))
    currency = amount.get("currency_code", amount.get("currency"))
    if value is None or not currency:
        return None
    return Money.of(value, str(currency))


def _wire_amount(money: Money) -> Dict[str, str]:
    return {"currency_code": money.currency, "value": str(money.floor_to_minor_unit().amount)}


def _link(links: object, *rels: str) -> Optional[str]:
    if not isinstance(links, list):
        return None
    for link in links:
        if isinstance(link, Mapping) and link.get("rel") in rels:
            return link.get("href")
    return None


class PayPalAdapter(HttpProviderAdapter):
    """Full provider contract for PayPal with cached OAuth tokens."""

    gateway = PaymentGateway.PAYPAL
    event_types = PAYPAL_EVENT_TYPES

    def __init__(
        self,
        *,
        client_id: Optional[str],
        client_secret: Optional[str],
        webhook_id: Optional[str],
        base_url: str = "https://api-m.sandbox.paypal.com",
        client: Optional[httpx.Client] = None,
        timeout: float = 30.0,
        plan_codes: Optional[PlanCodeCache] = None,
        return_url: str = "https://localhost/billing/paypal/return",
        cancel_url: str = "https://localhost/billing/paypal/cancel",
    ) -> None:
        super().__init__(base_url=base_url, client=client, timeout=timeout, plan_codes=plan_codes)
        self._client_id = client_id
        self._client_secret = client_secret
        self._webhook_id = webhook_id
        self._return_url = return_url
        self._cancel_url = cancel_url
        self._token: Optional[str] = None
        self._token_expires_at = 0.0
        self._token_lock = threading.Lock()

    def _auth_headers(self) -> ProviderResult[Dict[str, str]]:
        token = self._access_token()
        if isinstance(token, ProviderFailure):
            return token
        return {"Authorization": f"Bearer {token}"}

    def _access_token(self) -> ProviderResult[str]:
        if not self._client_id or not self._client_secret:
            return ProviderFailure(
                provider=self.gateway,
                operation="authenticate",
                kind=ProviderFailureKind.PERMANENT,
                message="PayPal credentials are not configured",
            )
        with self._token_lock:
            # Refresh a minute before expiry.
            if self._token and time.monotonic() < self._token_expires_at - 60:
                return self._token
            try:
                response = self._client.post(
                    "/v1/oauth2/token",
                    data={"grant_type": "client_credentials"},
                    auth=(self._client_id, self._client_secret),
                )
            except httpx.HTTPError as exc:
                return self._failure("authenticate", ProviderFailureKind.TRANSIENT, str(exc))
            if response.status_code == 429 or response.status_code >= 500:
                return self._failure("authenticate", ProviderFailureKind.TRANSIENT, f"HTTP {response.status_code}")
            if response.status_code >= 400:
                return self._failure("authenticate", ProviderFailureKind.PERMANENT, f"HTTP {response.status_code}")
            body = response.json()
            self._token = str(body["access_token"])
            self._token_expires_at = time.monotonic() + float(body.get("expires_in", 3600))
            return self._token

    def _to_subscription(self, data: Mapping[str, object]) -> ProviderSubscription:
        billing_info = data.get("billing_info") or {}
        subscriber = data.get("subscriber") or {}
        return ProviderSubscription(
            provider=self.gateway,
            subscription_id=str(data["id"]),
            status=_subscription_status(data.get("status")),
            customer_id=subscriber.get("email_address"),
            plan_code=data.get("plan_id"),
            current_period_end=to_utc(billing_info.get("next_billing_time")),
            approval_url=_link(data.get("links"), "approve"),
        )

    def _to_payment(self, order: Mapping[str, object]) -> PaymentDetails:
        units: List[Mapping[str, object]] = order.get("purchase_units") or [{}]
        unit = units[0]
        status = _ORDER_STATUSES.get(str(order.get("status")), ProviderPaymentStatus.PENDING)
        payer = order.get("payer") or {}
        metadata = {"reference": str(unit["reference_id"])} if unit.get("reference_id") else {}
        return PaymentDetails(
            provider=self.gateway,
            payment_id=str(order["id"]),
            status=status,
            amount=_money(unit.get("amount")),
            customer_id=payer.get("email_address"),
            paid_at=to_utc(order.get("update_time")) if status is ProviderPaymentStatus.SUCCEEDED else None,
            metadata=metadata,
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
        created = self.create_subscription(customer_id=email, plan_code=plan_code, metadata={"user_id": user_id})
        if isinstance(created, ProviderFailure):
            return created
        return PaymentSession(provider=self.gateway, reference=created.subscription_id, authorization_url=created.approval_url)

    def create_payment(
        self,
        *,
        email: str,
        amount: Money,
        reference: str,
        callback_url: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> ProviderResult[PaymentSession]:
        body = {
            "intent": "CAPTURE",
            "purchase_units": [
                {
                    "reference_id": reference,
                    "custom_id": (metadata or {}).get("user_id", reference),
                    "amount": _wire_amount(amount),
                }
            ],
            "payer": {"email_address": email},
            "application_context": {
                "return_url": callback_url or self._return_url,
                "cancel_url": self._cancel_url,
            },
        }
        order = self._request(
            "create_payment", "POST", "/v2/checkout/orders", json_body=body, headers={"PayPal-Request-Id": reference}
        )
        if isinstance(order, ProviderFailure):
            return order
        return PaymentSession(
            provider=self.gateway,
            reference=str(order["id"]),
            authorization_url=_link(order.get("links"), "approve", "payer-action"),
        )

    def get_payment(self, payment_id: str) -> ProviderResult[PaymentDetails]:
        order = self._request("get_payment", "GET", f"/v2/checkout/orders/{payment_id}")
        if isinstance(order, ProviderFailure):
            return order
        return self._to_payment(order)

    def verify_payment(self, reference: str) -> ProviderResult[PaymentDetails]:
        order = self._request("verify_payment", "GET", f"/v2/checkout/orders/{reference}")
        if isinstance(order, ProviderFailure):
            return order
        return self._to_payment(order)

    def refund_payment(self, payment_id: str, amount: Optional[Money] = None) -> ProviderResult[RefundDetails]:
        body = {"amount": _wire_amount(amount)} if amount is not None else {}
        refund = self._request("refund_payment", "POST", f"/v2/payments/captures/{payment_id}/refund", json_body=body)
        if isinstance(refund, ProviderFailure):
            return refund
        return RefundDetails(
            provider=self.gateway,
            refund_id=str(refund["id"]),
            payment_id=payment_id,
            status=str(refund.get("status")),
            amount=_money(refund.get("amount")),
        )

    def create_subscription(
        self,
        *,
        customer_id: str,
        plan_code: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> ProviderResult[ProviderSubscription]:
        body: Dict[str, object] = {
            "plan_id": plan_code,
            "subscriber": {"email_address": customer_id},
            "application_context": {"return_url": self._return_url, "cancel_url": self._cancel_url},
        }
        if metadata and metadata.get("user_id"):
            body["custom_id"] = metadata["user_id"]
        data = self._request("create_subscription", "POST", "/v1/billing/subscriptions", json_body=body)
        if isinstance(data, ProviderFailure):
            return data
        return self._to_subscription({"plan_id": plan_code, **data})

    def get_subscription(self, subscription_id: str) -> ProviderResult[ProviderSubscription]:
        data = self._request("get_subscription", "GET", f"/v1/billing/subscriptions/{subscription_id}")
        if isinstance(data, ProviderFailure):
            return data
        return self._to_subscription(data)

    def cancel_subscription(self, subscription_id: str) -> ProviderResult[ProviderSubscription]:
        cancelled = self._request(
            "cancel_subscription",
            "POST",
            f"/v1/billing/subscriptions/{subscription_id}/cancel",
            json_body={"reason": "Cancelled by customer"},
        )
        if isinstance(cancelled, ProviderFailure):
            return cancelled
        return ProviderSubscription(
            provider=self.gateway, subscription_id=subscription_id, status=SubscriptionStatus.CANCELED
        )

    def change_plan(self, subscription_id: str, new_plan_code: str) -> ProviderResult[ProviderSubscription]:
        revised = self._request(
            "change_plan",
            "POST",
            f"/v1/billing/subscriptions/{subscription_id}/revise",
            json_body={"plan_id": new_plan_code},
        )
        if isinstance(revised, ProviderFailure):
            return revised
        current = self.get_subscription(subscription_id)
        if isinstance(current, ProviderFailure):
            return current
        return current.model_copy(
            update={"plan_code": new_plan_code, "approval_url": _link(revised.get("links"), "approve")}
        )

    def get_or_create_customer(
        self, *, email: str, user_id: str, name: Optional[str] = None
    ) -> ProviderResult[ProviderCustomer]:
        # PayPal has no customer object; payers are identified by e-mail.
        return ProviderCustomer(provider=self.gateway, customer_id=email, email=email)

    def _create_plan(self, plan: SubscriptionPlan) -> ProviderResult[str]:
        product = self._request(
            "ensure_plan_exists",
            "POST",
            "/v1/catalogs/products",
            json_body={"name": plan.name.value, "type": "SERVICE"},
        )
        if isinstance(product, ProviderFailure):
            return product
        created = self._request(
            "ensure_plan_exists",
            "POST",
            "/v1/billing/plans",
            json_body={
                "product_id": product["id"],
                "name": plan.name.value,
                "billing_cycles": [
                    {
                        "frequency": {
                            "interval_unit": _INTERVAL_UNITS[plan.billing_interval.unit],
                            "interval_count": plan.billing_interval.value,
                        },
                        "tenure_type": "REGULAR",
                        "sequence": 1,
                        "total_cycles": 0,
                        "pricing_scheme": {"fixed_price": _wire_amount(plan.price)},
                    }
                ],
                "payment_preferences": {
                    "auto_bill_outstanding": True,
                    "payment_failure_threshold": PAYMENT_FAILURE_THRESHOLD,
                },
            },
        )
        if isinstance(created, ProviderFailure):
            return created
        logger.info("Created PayPal plan %s for plan %s", created["id"], plan.id)
        return str(created["id"])

    def verify_webhook_signature(self, raw_payload: bytes, headers: Mapping[str, str]) -> bool:
        if not self._webhook_id:
            return False
        body: Dict[str, object] = {"webhook_id": self._webhook_id}
        for field, header in _VERIFY_HEADERS.items():
            value = header_value(headers, header)
            if not value:
                return False
            body[field] = value
        try:
            body["webhook_event"] = json.loads(raw_payload)
        except ValueError:
            return False
        result = self._request(
            "verify_webhook_signature", "POST", "/v1/notifications/verify-webhook-signature", json_body=body
        )
        if isinstance(result, ProviderFailure):
            if result.kind is ProviderFailureKind.TRANSIENT:
                raise TransientProcessingError(message="PayPal signature verification is unavailable")
            return False
        return result.get("verification_status") == "SUCCESS"

    def parse_webhook(self, raw_payload: bytes) -> ProviderWebhook:
        body = load_json_object(self.gateway, raw_payload)
        resource = body.get("resource")
        if not body.get("id") or not body.get("event_type") or not isinstance(resource, dict):
            raise MalformedWebhookError(message="PayPal event is missing id, event_type or resource")
        return ProviderWebhook(
            provider=self.gateway,
            event_name=str(body["event_type"]),
            event_id=str(body["id"]),
            occurred_at=to_utc(body.get("create_time")),
            data=resource,
        )

    def canonical_payload(self, webhook: ProviderWebhook) -> Dict[str, object]:
        resource = webhook.data
        if webhook.event_name.startswith("BILLING.SUBSCRIPTION."):
            billing_info = resource.get("billing_info") or {}
            failed = int(billing_info.get("failed_payments_count") or 0)
            last_payment = billing_info.get("last_payment") or {}
            money = _money(last_payment.get("amount"))
            return prune(
                {
                    "subscription_id": resource.get("id"),
                    "customer_id": (resource.get("subscriber") or {}).get("email_address"),
                    "user_id": resource.get("custom_id"),
                    "plan_code": resource.get("plan_id"),
                    "status": _subscription_status(resource.get("status")).value,
                    "current_period_end": iso_or_none(billing_info.get("next_billing_time")),
                    "will_retry": failed < PAYMENT_FAILURE_THRESHOLD,
                    "amount": str(money.amount) if money else None,
                    "currency": money.currency if money else None,
                }
            )
        money = _money(resource.get("amount"))
        related = (resource.get("supplementary_data") or {}).get("related_ids") or {}
        return prune(
            {
                "payment_id": resource.get("id"),
                "order_id": related.get("order_id"),
                "subscription_id": resource.get("billing_agreement_id"),
                "user_id": resource.get("custom_id") or resource.get("custom"),
                "amount": str(money.amount) if money else None,
                "currency": money.currency if money else None,
                "status": resource.get("status") or resource.get("state"),
                "paid_at": iso_or_none(resource.get("create_time")),
                "description": resource.get("soft_descriptor"),
            }
        )


__all__ = ["PAYPAL_EVENT_TYPES", "PayPalAdapter"]
