"""Flutterwave adapter: webhooks are understood, payment verbs are not offered."""
from __future__ import annotations

import hmac
from typing import Dict, Mapping, Optional

from ..exceptions import MalformedWebhookError
from ..models import PaymentGateway, WebhookEventType
from ..money import Money
from .base import (
    BaseProviderAdapter,
    PlanCodeCache,
    ProviderWebhook,
    UnsupportedPaymentsMixin,
    header_value,
    iso_or_none,
    load_json_object,
    metadata_strings,
    prune,
    to_utc,
)

FLUTTERWAVE_EVENT_TYPES: Dict[str, WebhookEventType] = {
    "charge.completed": WebhookEventType.PAYMENT_SUCCEEDED,
    "transfer.completed": WebhookEventType.PAYMENT_SUCCEEDED,
    "refund.completed": WebhookEventType.REFUND_SUCCEEDED,
    "subscription.cancelled": WebhookEventType.SUBSCRIPTION_CANCELLED,
}


def _delivery_id(event_name: str, data: Dict[str, object]) -> str:
    # charge.completed reports both outcomes, so the status is part of the id.
    status = str(data.get("status") or "").lower()
    return ":".join(part for part in (event_name, str(data["id"]), status) if part)


class FlutterwaveAdapter(UnsupportedPaymentsMixin, BaseProviderAdapter):
    gateway = PaymentGateway.FLUTTERWAVE
    event_types = FLUTTERWAVE_EVENT_TYPES

    def __init__(self, *, webhook_hash: Optional[str], plan_codes: Optional[PlanCodeCache] = None) -> None:
        super().__init__(plan_codes=plan_codes)
        self._webhook_hash = webhook_hash

    def verify_webhook_signature(self, raw_payload: bytes, headers: Mapping[str, str]) -> bool:
        # Flutterwave echoes the dashboard secret hash rather than signing the body.
        signature = header_value(headers, "verif-hash")
        if not self._webhook_hash or not signature:
            return False
        return hmac.compare_digest(self._webhook_hash, signature)

    def parse_webhook(self, raw_payload: bytes) -> ProviderWebhook:
        body = load_json_object(self.gateway, raw_payload)
        event_name = body.get("event") or body.get("event.type")
        data = body.get("data")
        if not event_name or not isinstance(data, dict) or data.get("id") is None:
            raise MalformedWebhookError(message="Flutterwave event is missing event or data.id")
        return ProviderWebhook(
            provider=self.gateway,
            event_name=str(event_name),
            event_id=_delivery_id(str(event_name), data),
            # data.created_at dates the subscription itself, not its cancellation.
            occurred_at=None if str(event_name).startswith("subscription.") else to_utc(data.get("created_at")),
            data=data,
        )

    def event_type_for(self, webhook: ProviderWebhook) -> WebhookEventType:
        event_type = super().event_type_for(webhook)
        if event_type is WebhookEventType.PAYMENT_SUCCEEDED and str(webhook.data.get("status")).lower() != "successful":
            return WebhookEventType.PAYMENT_FAILED
        return event_type

    def canonical_payload(self, webhook: ProviderWebhook) -> Dict[str, object]:
        data = webhook.data
        metadata = metadata_strings(data.get("meta"))
        customer = data.get("customer") or {}
        amount = data.get("amount")
        money = Money.of(amount, str(data["currency"])) if amount is not None and data.get("currency") else None
        return prune(
            {
                "payment_id": data.get("tx_ref") or str(data.get("id")),
                "customer_id": customer.get("email"),
                "user_id": metadata.get("user_id"),
                "plan_id": metadata.get("plan_id"),
                "amount": str(money.amount) if money else None,
                "currency": money.currency if money else None,
                "status": data.get("status"),
                "coupon_code": metadata.get("coupon_code"),
                "original_amount": metadata.get("original_amount"),
                "paid_at": iso_or_none(data.get("created_at")),
                "description": data.get("narration"),
            }
        )


__all__ = ["FLUTTERWAVE_EVENT_TYPES", "FlutterwaveAdapter"]
