"""Billing configuration helpers."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Optional
import os


@dataclass(frozen=True)
class BillingConfig:
    """Provider credentials and processing limits for the billing core."""

    stripe_secret_key: Optional[str]
    stripe_webhook_secret: Optional[str]
    paystack_secret_key: Optional[str]
    paystack_base_url: str
    paypal_client_id: Optional[str]
    paypal_client_secret: Optional[str]
    paypal_webhook_id: Optional[str]
    paypal_sandbox: bool
    chapa_webhook_secret: Optional[str]
    flutterwave_webhook_hash: Optional[str]
    receipt_prefix: str
    statement_timeout_ms: int
    transaction_timeout_ms: int
    redemption_max_attempts: int
    http_timeout_seconds: float

    @property
    def paypal_base_url(self) -> str:
        if self.paypal_sandbox:
            return "https://api-m.sandbox.paypal.com"
        return "https://api-m.paypal.com"


def _to_bool(value: Optional[str], *, default: bool) -> bool:
    if value is None:
        return default
    lowered = value.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    return default


def _to_int(value: Optional[str], *, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected integer value, got {value!r}") from exc


def _to_float(value: Optional[str], *, default: float) -> float:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected float value, got {value!r}") from exc


def load_billing_config(env: Optional[Mapping[str, str]] = None) -> BillingConfig:
    """Load :class:`BillingConfig` from environment variables."""

    env_mapping = os.environ if env is None else env

    receipt_prefix = (env_mapping.get("RECEIPT_PREFIX") or "RCP").strip().upper() or "RCP"
    statement_timeout_ms = max(100, _to_int(env_mapping.get("BILLING_STATEMENT_TIMEOUT_MS"), default=5000))
    transaction_timeout_ms = max(
        statement_timeout_ms, _to_int(env_mapping.get("BILLING_TRANSACTION_TIMEOUT_MS"), default=15000)
    )

    return BillingConfig(
        stripe_secret_key=env_mapping.get("STRIPE_SECRET_KEY") or None,
        stripe_webhook_secret=env_mapping.get("STRIPE_WEBHOOK_SECRET") or None,
        paystack_secret_key=env_mapping.get("PAYSTACK_SECRET_KEY") or None,
        paystack_base_url=env_mapping.get("PAYSTACK_BASE_URL", "https://api.paystack.co").rstrip("/"),
        paypal_client_id=env_mapping.get("PAYPAL_CLIENT_ID") or None,
        paypal_client_secret=env_mapping.get("PAYPAL_CLIENT_SECRET") or None,
        paypal_webhook_id=env_mapping.get("PAYPAL_WEBHOOK_ID") or None,
        paypal_sandbox=_to_bool(env_mapping.get("PAYPAL_SANDBOX"), default=True),
        chapa_webhook_secret=env_mapping.get("CHAPA_WEBHOOK_SECRET") or None,
        flutterwave_webhook_hash=env_mapping.get("FLUTTERWAVE_WEBHOOK_HASH") or None,
        receipt_prefix=receipt_prefix,
        statement_timeout_ms=statement_timeout_ms,
        transaction_timeout_ms=transaction_timeout_ms,
        redemption_max_attempts=max(1, _to_int(env_mapping.get("COUPON_REDEMPTION_ATTEMPTS"), default=3)),
        http_timeout_seconds=max(1.0, _to_float(env_mapping.get("PROVIDER_HTTP_TIMEOUT"), default=30.0)),
    )


__all__ = ["BillingConfig", "load_billing_config"]
