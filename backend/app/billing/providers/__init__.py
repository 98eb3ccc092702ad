"""Payment provider adapters behind a single contract."""

from typing import Optional

from ..config import BillingConfig
from .base import (
    PaymentDetails,
    PaymentSession,
    PlanCodeCache,
    ProviderAdapter,
    ProviderCustomer,
    ProviderFailure,
    ProviderFailureKind,
    ProviderPaymentStatus,
    ProviderRegistry,
    ProviderSubscription,
    ProviderWebhook,
    RefundDetails,
    is_failure,
)
from .chapa_adapter import ChapaAdapter
from .flutterwave_adapter import FlutterwaveAdapter
from .paypal_adapter import PayPalAdapter
from .paystack_adapter import PaystackAdapter
from .stripe_adapter import StripeAdapter


def build_provider_registry(config: BillingConfig, plan_codes: Optional[PlanCodeCache] = None) -> ProviderRegistry:
    """Register one adapter per supported gateway, sharing a plan-code cache."""

    plan_codes = plan_codes or PlanCodeCache()
    registry = ProviderRegistry()
    registry.register(
        StripeAdapter(
            api_key=config.stripe_secret_key,
            webhook_secret=config.stripe_webhook_secret,
            plan_codes=plan_codes,
        )
    )
    registry.register(
        PaystackAdapter(
            secret_key=config.paystack_secret_key,
            base_url=config.paystack_base_url,
            timeout=config.http_timeout_seconds,
            plan_codes=plan_codes,
        )
    )
    registry.register(
        PayPalAdapter(
            client_id=config.paypal_client_id,
            client_secret=config.paypal_client_secret,
            webhook_id=config.paypal_webhook_id,
            base_url=config.paypal_base_url,
            timeout=config.http_timeout_seconds,
            plan_codes=plan_codes,
        )
    )
    registry.register(ChapaAdapter(webhook_secret=config.chapa_webhook_secret, plan_codes=plan_codes))
    registry.register(FlutterwaveAdapter(webhook_hash=config.flutterwave_webhook_hash, plan_codes=plan_codes))
    return registry


__all__ = [
    "ChapaAdapter",
    "FlutterwaveAdapter",
    "PayPalAdapter",
    "PaymentDetails",
    "PaymentSession",
    "PaystackAdapter",
    "PlanCodeCache",
    "ProviderAdapter",
    "ProviderCustomer",
    "ProviderFailure",
    "ProviderFailureKind",
    "ProviderPaymentStatus",
    "ProviderRegistry",
    "ProviderSubscription",
    "ProviderWebhook",
    "RefundDetails",
    "StripeAdapter",
    "build_provider_registry",
    "is_failure",
]
