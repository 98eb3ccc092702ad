"""Application wiring for the billing service."""
from __future__ import annotations

import logging
from functools import lru_cache

from ..billing import (
    BillingAuditEvent,
    BillingEventLogger,
    BillingNotifier,
    BillingService,
    CouponEligibilityPolicy,
    CouponEngine,
    ReceiptIssued,
    ReceiptIssuer,
    ReceiptNumberGenerator,
    SubscriptionStateMachine,
    SubscriptionStatusChanged,
    WebhookNormalizer,
)
from ..billing.config import load_billing_config
from ..billing.providers import build_provider_registry
from ..billing.repository import PostgresBillingStore, PostgresUserDirectory


logger = logging.getLogger("billing")


class LoggingBillingNotifier(BillingNotifier):
    """Notifier that records billing notifications to the application logger."""

    def receipt_issued(self, event: ReceiptIssued) -> None:
        logger.info(
            "Receipt %s issued to user %s amount=%s",
            event.receipt_number,
            event.user_id,
            event.amount,
        )

    def subscription_status_changed(self, event: SubscriptionStatusChanged) -> None:
        logger.info(
            "Subscription %s for user %s changed %s -> %s",
            event.subscription_id,
            event.user_id,
            event.from_status.value if event.from_status else None,
            event.to_status.value,
        )


class LoggingBillingEventLogger(BillingEventLogger):
    """Simple event logger forwarding billing audit events to logging."""

    def log(self, event: BillingAuditEvent) -> None:
        logger.info(
            "Billing event %s provider=%s subscription=%s actor=%s metadata=%s",
            event.event_type.value,
            event.provider.value if event.provider else None,
            event.subscription_id,
            event.actor_id,
            event.metadata,
        )


@lru_cache(maxsize=1)
def get_billing_service() -> BillingService:
    config = load_billing_config()
    registry = build_provider_registry(config)
    store = PostgresBillingStore(
        statement_timeout_ms=config.statement_timeout_ms,
        transaction_timeout_ms=config.transaction_timeout_ms,
    )
    eligibility = CouponEligibilityPolicy(PostgresUserDirectory())
    service = BillingService(
        store=store,
        registry=registry,
        normalizer=WebhookNormalizer(registry),
        state_machine=SubscriptionStateMachine(),
        coupons=CouponEngine(eligibility, max_attempts=config.redemption_max_attempts),
        receipts=ReceiptIssuer(ReceiptNumberGenerator(config.receipt_prefix)),
        notifier=LoggingBillingNotifier(),
        event_logger=LoggingBillingEventLogger(),
    )
    return service


__all__ = ["get_billing_service", "LoggingBillingNotifier", "LoggingBillingEventLogger"]
