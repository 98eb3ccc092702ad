"""Chapa adapter: webhooks are understood, payment verbs are not offered."""
from __future__ import annotations

import hashlib
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
    hmac_hexdigest_matches,
    iso_or_none,
    load_json_object,
    metadata_strings,
    prune,
    to_utc,
)

CHAPA_EVENT_TYPES: Dict[str, WebhookEventType] = {
    "charge.success": WebhookEventType.PAYMENT_SUCCEEDED,
    "charge.failed": WebhookEventType.PAYMENT_FAILED,
    "charge.refunded": WebhookEventType.REFUND_SUCCEEDED,
    "charge.reversed": WebhookEventType.REFUND_SUCCEEDED,
}


class ChapaAdapter(UnsupportedPaymentsMixin, BaseProviderAdapter):
    gateway = PaymentGateway.CHAPA
    event_types = CHAPA_EVENT_TYPES

    def __init__(self, *, webhook_secret: Optional[str], plan_codes: Optional[PlanCodeCache] = None) -> None:
        super().__init__(plan_codes=plan_codes)
        self._webhook_secret = webhook_secret

    def verify_webhook_signature(self, raw_payload: bytes, headers: Mapping[str, str]) -> bool:
        signature = header_value(headers, "x-chapa-signature") or header_value(headers, "chapa-signature")
        return hmac_hexdigest_matches(self._webhook_secret, raw_payload, signature, hashlib.sha256)

    def parse_webhook(self, raw_payload: bytes) -> ProviderWebhook:
        body = load_json_object(self.gateway, raw_payload)
        event_name = body.get("event") or body.get("type")
        reference = body.get("reference") or body.get("tx_ref")
        if not event_name or not reference:
            raise MalformedWebhookError(message="Chapa event is missing event or reference")
        return ProviderWebhook(
            provider=self.gateway,
            event_name=str(event_name),
            event_id=f"{event_name}:{reference}",
            occurred_at=to_utc(body.get("updated_at") or body.get("created_at")),
            data=body,
        )

    def canonical_payload(self, webhook: ProviderWebhook) -> Dict[str, object]:
        data = webhook.data
        metadata = metadata_strings(data.get("meta") or data.get("customization"))
        amount = data.get("amount")
        money = Money.of(amount, str(data["currency"])) if amount is not None and data.get("currency") else None
        return prune(
            {
                "payment_id": data.get("tx_ref") or data.get("reference"),
                "customer_id": data.get("email"),
                "user_id": metadata.get("user_id"),
                "plan_id": metadata.get("plan_id"),
                "amount": str(money.amount) if money else None,
                "currency": money.currency if money else None,
                "status": data.get("status"),
                "coupon_code": metadata.get("coupon_code"),
                "original_amount": metadata.get("original_amount"),
                "paid_at": iso_or_none(data.get("created_at")),
            }
        )


__all__ = ["CHAPA_EVENT_TYPES", "ChapaAdapter"]
