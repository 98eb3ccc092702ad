from __future__ import annotations

import hashlib
import hmac
import json
from datetime import datetime, timezone

import pytest

from backend.app.billing import (
    MalformedWebhookError,
    PaymentGateway,
    WebhookAuthenticationError,
    WebhookEventType,
    WebhookNormalizer,
)
from backend.app.billing.providers import (
    ChapaAdapter,
    FlutterwaveAdapter,
    PaystackAdapter,
    ProviderRegistry,
)

CHAPA_SECRET = "chapa-secret"
PAYSTACK_SECRET = "sk_test_paystack"
FLUTTERWAVE_HASH = "flw-hash"
ARRIVED = datetime(2024, 6, 1, 8, 0, tzinfo=timezone.utc)


@pytest.fixture
def normalizer() -> WebhookNormalizer:
    registry = ProviderRegistry()
    registry.register(ChapaAdapter(webhook_secret=CHAPA_SECRET))
    registry.register(PaystackAdapter(secret_key=PAYSTACK_SECRET))
    registry.register(FlutterwaveAdapter(webhook_hash=FLUTTERWAVE_HASH))
    return WebhookNormalizer(registry, clock=lambda: ARRIVED)


def _chapa(body) -> tuple:
    raw = json.dumps(body).encode("utf-8")
    signature = hmac.new(CHAPA_SECRET.encode(), raw, hashlib.sha256).hexdigest()
    return raw, {"X-Chapa-Signature": signature}


def _paystack(body) -> tuple:
    raw = json.dumps(body).encode("utf-8")
    signature = hmac.new(PAYSTACK_SECRET.encode(), raw, hashlib.sha512).hexdigest()
    return raw, {"x-paystack-signature": signature}


def test_chapa_charge_success_becomes_payment_succeeded(normalizer):
    raw, headers = _chapa(
        {
            "event": "charge.success",
            "tx_ref": "tx-1001",
            "amount": "250.00",
            "currency": "ETB",
            "status": "success",
            "meta": {"user_id": "user-1", "coupon_code": "SAVE20", "original_amount": "312.50"},
            "created_at": "2024-06-01T07:59:00Z",
        }
    )

    event = normalizer.normalize(PaymentGateway.CHAPA, raw, headers)

    assert event.event_type is WebhookEventType.PAYMENT_SUCCEEDED
    assert event.external_event_id == "charge.success:tx-1001"
    assert event.received_at == datetime(2024, 6, 1, 7, 59, tzinfo=timezone.utc)
    assert event.recorded_at == ARRIVED
    assert event.payload["payment_id"] == "tx-1001"
    assert event.payload["amount"] == "250.00"
    assert event.payload["currency"] == "ETB"
    assert event.payload["coupon_code"] == "SAVE20"
    assert event.payload["original_amount"] == "312.50"


def test_paystack_charge_amount_is_converted_from_minor_units(normalizer):
    raw, headers = _paystack(
        {
            "event": "charge.success",
            "data": {
                "id": 302961,
                "reference": "ps-ref-1",
                "amount": 1050000,
                "currency": "NGN",
                "status": "success",
                "paid_at": "2024-06-01T07:00:00.000Z",
                "customer": {"customer_code": "CUS_xyz"},
                "metadata": {"user_id": "user-1"},
            },
        }
    )

    event = normalizer.normalize(PaymentGateway.PAYSTACK, raw, headers)

    assert event.external_event_id == "charge.success:302961"
    assert event.payload["amount"] == "10500.00"
    assert event.payload["customer_id"] == "CUS_xyz"
    assert event.payload["user_id"] == "user-1"


def test_paystack_paid_invoice_update_is_invoice_paid(normalizer):
    raw, headers = _paystack(
        {
            "event": "invoice.update",
            "data": {
                "invoice_code": "INV_1",
                "paid": True,
                "amount": 500000,
                "status": "success",
                "subscription": {"subscription_code": "SUB_1", "status": "active"},
                "transaction": {"reference": "ps-ref-2", "currency": "NGN"},
            },
        }
    )

    event = normalizer.normalize(PaymentGateway.PAYSTACK, raw, headers)

    assert event.event_type is WebhookEventType.INVOICE_PAID
    assert event.payload["payment_id"] == "ps-ref-2"
    assert event.payload["subscription_id"] == "SUB_1"
    assert event.received_at == ARRIVED


def test_flutterwave_failed_charge_is_reported_as_failure(normalizer):
    raw = json.dumps(
        {
            "event": "charge.completed",
            "data": {"id": 77, "tx_ref": "flw-1", "status": "failed", "amount": 10, "currency": "USD"},
        }
    ).encode()

    event = normalizer.normalize(PaymentGateway.FLUTTERWAVE, raw, {"verif-hash": FLUTTERWAVE_HASH})

    assert event.event_type is WebhookEventType.PAYMENT_FAILED
    assert event.external_event_id == "charge.completed:77:failed"


def test_unmapped_event_name_is_unknown(normalizer):
    raw, headers = _chapa({"event": "charge.pending", "tx_ref": "tx-2"})

    event = normalizer.normalize(PaymentGateway.CHAPA, raw, headers)

    assert event.event_type is WebhookEventType.UNKNOWN


@pytest.mark.parametrize(
    "headers",
    [
        {},
        {"x-chapa-signature": "0" * 64},
    ],
)
def test_bad_signature_is_rejected(normalizer, headers):
    raw, _ = _chapa({"event": "charge.success", "tx_ref": "tx-3"})

    with pytest.raises(WebhookAuthenticationError) as excinfo:
        normalizer.normalize(PaymentGateway.CHAPA, raw, headers)

    assert excinfo.value.status_code == 401


def test_tampered_body_fails_verification(normalizer):
    raw, headers = _paystack({"event": "charge.success", "data": {"id": 1}})

    with pytest.raises(WebhookAuthenticationError):
        normalizer.normalize(PaymentGateway.PAYSTACK, raw.replace(b"1", b"2"), headers)


def test_invalid_json_is_malformed(normalizer):
    raw = b"{not json"
    signature = hmac.new(CHAPA_SECRET.encode(), raw, hashlib.sha256).hexdigest()

    with pytest.raises(MalformedWebhookError):
        normalizer.normalize(PaymentGateway.CHAPA, raw, {"x-chapa-signature": signature})


def test_missing_identifier_is_malformed(normalizer):
    raw, headers = _paystack({"event": "charge.success", "data": {"amount": 100}})

    with pytest.raises(MalformedWebhookError):
        normalizer.normalize(PaymentGateway.PAYSTACK, raw, headers)


def test_unknown_currency_is_malformed(normalizer):
    raw, headers = _chapa(
        {"event": "charge.success", "tx_ref": "tx-4", "amount": "10", "currency": "ZZZ"}
    )

    with pytest.raises(MalformedWebhookError):
        normalizer.normalize(PaymentGateway.CHAPA, raw, headers)


def test_paystack_subscription_events_are_ordered_by_arrival(normalizer):
    raw, headers = _paystack(
        {
            "event": "subscription.disable",
            "data": {
                "subscription_code": "SUB_1",
                "status": "cancelled",
                "createdAt": "2024-01-01T00:00:00.000Z",
            },
        }
    )

    event = normalizer.normalize(PaymentGateway.PAYSTACK, raw, headers)

    assert event.event_type is WebhookEventType.SUBSCRIPTION_CANCELLED
    assert event.received_at == ARRIVED


def test_paystack_charge_keeps_paid_at_in_payload_only(normalizer):
    raw, headers = _paystack(
        {
            "event": "charge.success",
            "data": {"id": 5, "reference": "ps-5", "amount": 100, "currency": "NGN", "paid_at": "2024-05-31T07:00:00Z"},
        }
    )

    event = normalizer.normalize(PaymentGateway.PAYSTACK, raw, headers)

    assert event.received_at == ARRIVED
    assert event.payload["paid_at"].startswith("2024-05-31T07:00:00")


def test_paystack_invoice_updates_get_one_id_per_state(normalizer):
    invoice = {"id": 901, "amount": 1000, "subscription": {"subscription_code": "SUB_1"}}
    paid = {**invoice, "paid": True, "status": "success", "transaction": {"reference": "ps-901", "currency": "NGN"}}

    ids = [
        normalizer.normalize(PaymentGateway.PAYSTACK, *_paystack({"event": "invoice.update", "data": data})).external_event_id
        for data in ({**invoice, "paid": False, "status": "pending"}, paid, paid)
    ]

    assert ids == ["invoice.update:901:pending", "invoice.update:901:paid:ps-901", "invoice.update:901:paid:ps-901"]


def test_flutterwave_retry_of_failed_charge_gets_a_new_id(normalizer):
    def delivery(status):
        raw = json.dumps(
            {"event": "charge.completed", "data": {"id": 78, "tx_ref": "flw-2", "status": status, "amount": 10, "currency": "USD"}}
        ).encode()
        return normalizer.normalize(PaymentGateway.FLUTTERWAVE, raw, {"verif-hash": FLUTTERWAVE_HASH})

    failed, succeeded = delivery("failed"), delivery("successful")

    assert failed.external_event_id != succeeded.external_event_id
    assert succeeded.event_type is WebhookEventType.PAYMENT_SUCCEEDED


def test_chapa_outcomes_on_one_reference_have_distinct_ids(normalizer):
    failed = normalizer.normalize(PaymentGateway.CHAPA, *_chapa({"event": "charge.failed", "tx_ref": "tx-5"}))
    succeeded = normalizer.normalize(PaymentGateway.CHAPA, *_chapa({"event": "charge.success", "tx_ref": "tx-5"}))

    assert failed.external_event_id == "charge.failed:tx-5"
    assert succeeded.external_event_id == "charge.success:tx-5"


def test_flutterwave_subscription_cancel_is_ordered_by_arrival(normalizer):
    raw = json.dumps(
        {
            "event": "subscription.cancelled",
            "data": {"id": 12, "status": "cancelled", "created_at": "2023-01-01T00:00:00Z"},
        }
    ).encode()

    event = normalizer.normalize(PaymentGateway.FLUTTERWAVE, raw, {"verif-hash": FLUTTERWAVE_HASH})

    assert event.event_type is WebhookEventType.SUBSCRIPTION_CANCELLED
    assert event.received_at == ARRIVED
