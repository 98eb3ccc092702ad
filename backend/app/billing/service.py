"""Core service coordinating billing flows with external providers."""
from __future__ import annotations

import logging
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import InvalidOperation
from typing import Dict, List, Mapping, Optional, Protocol, Sequence, Union

from .coupons import CouponEngine
from .exceptions import (
    BillingError,
    CouponConcurrencyError,
    MalformedWebhookError,
    NotFoundError,
    ProviderNotImplementedError,
    ProviderRejectedError,
    ProviderUnavailableError,
    TransientProcessingError,
    WebhookAuthenticationError,
)
from .models import (
    BillingAuditEvent,
    BillingAuditEventType,
    Coupon,
    CouponTemplate,
    PaymentGateway,
    Receipt,
    ReceiptIssued,
    RecipientCategory,
    RedemptionResult,
    SubscriptionStatusChanged,
    UserSubscription,
    ValidationResult,
    WebhookAck,
    WebhookAckStatus,
    WebhookEvent,
    WebhookEventType,
)
from .money import Money
from .providers import PaymentSession, ProviderFailure, ProviderFailureKind, ProviderRegistry
from .receipts import ReceiptIssuer
from .repository import BillingRepository, BillingStore
from .state_machine import SubscriptionStateMachine
from .webhooks import WebhookNormalizer

logger = logging.getLogger("billing")

Notification = Union[ReceiptIssued, SubscriptionStatusChanged]

# Errors that redelivering the same webhook cannot fix.
PERMANENT_WEBHOOK_ERRORS = (MalformedWebhookError, ValueError, KeyError, TypeError, InvalidOperation)

RECEIPT_EVENTS = frozenset({WebhookEventType.PAYMENT_SUCCEEDED, WebhookEventType.INVOICE_PAID})


class BillingNotifier(Protocol):
    """Dispatches billing related notifications to end users."""

    def receipt_issued(self, event: ReceiptIssued) -> None:
        ...

    def subscription_status_changed(self, event: SubscriptionStatusChanged) -> None:
        ...


class BillingEventLogger(Protocol):
    """Captures structured billing audit events."""

    def log(self, event: BillingAuditEvent) -> None:
        ...


@dataclass
class _Effects:
    """Side effects collected inside a transaction and released after commit."""

    notifications: List[Notification] = field(default_factory=list)
    audits: List[BillingAuditEvent] = field(default_factory=list)
    changed: bool = False


# ``slots`` support for ``dataclass`` was added in Python 3.10. The backend
# can run under Python 3.9 in some environments (e.g., local development), so
# we enable slots conditionally to maintain compatibility while preserving the
# optimization where available.
_dataclass_kwargs = {"slots": True} if sys.version_info >= (3, 10) else {}


@dataclass(**_dataclass_kwargs)
class BillingService:
    """Coordinates webhooks, subscriptions, coupons and receipts."""

    store: BillingStore
    registry: ProviderRegistry
    normalizer: WebhookNormalizer
    state_machine: SubscriptionStateMachine
    coupons: CouponEngine
    receipts: ReceiptIssuer
    notifier: BillingNotifier
    event_logger: BillingEventLogger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    # Webhooks -----------------------------------------------------------

    def process_webhook(
        self,
        provider: PaymentGateway,
        raw_payload: bytes,
        headers: Mapping[str, str],
    ) -> WebhookAck:
        """Apply one webhook delivery exactly once.

        Authentication failures and transient errors propagate so the
        provider redelivers. Permanent failures are acknowledged with
        ``FAILED_PERMANENT`` and the event id is claimed so redeliveries
        become duplicates.
        """

        try:
            event = self.normalizer.normalize(provider, raw_payload, headers)
        except WebhookAuthenticationError:
            self.event_logger.log(
                BillingAuditEvent(event_type=BillingAuditEventType.WEBHOOK_REJECTED, provider=provider)
            )
            raise
        except MalformedWebhookError as exc:
            return self._permanent_failure(provider, None, exc)

        effects = _Effects()
        try:
            with self.store.transaction() as repository:
                if not repository.record_webhook_event(event):
                    logger.info(
                        "Duplicate %s webhook %s skipped",
                        provider.value,
                        event.external_event_id,
                        extra={"provider": provider.value, "event_id": event.external_event_id},
                    )
                    return self._ack(event, WebhookAckStatus.DUPLICATE, "Event already processed")
                message = self._dispatch(repository, event, effects)
        except CouponConcurrencyError as exc:
            raise TransientProcessingError(
                message="Coupon usage could not be committed, retry later",
                detail={"event_id": event.external_event_id},
            ) from exc
        except PERMANENT_WEBHOOK_ERRORS as exc:
            return self._permanent_failure(provider, event, exc)

        self._release(effects)
        if not effects.changed:
            self.event_logger.log(
                BillingAuditEvent(
                    event_type=BillingAuditEventType.WEBHOOK_IGNORED,
                    provider=provider,
                    metadata={"event_id": event.external_event_id, "event_type": event.event_type.value},
                )
            )
            return self._ack(event, WebhookAckStatus.IGNORED, message)
        return self._ack(event, WebhookAckStatus.PROCESSED, message)

    def _dispatch(self, repository: BillingRepository, event: WebhookEvent, effects: _Effects) -> Optional[str]:
        message: Optional[str] = None
        if self.state_machine.handles(event.event_type):
            outcome = self.state_machine.apply(repository, event)
            subscription = outcome.subscription
            if outcome.applied:
                effects.changed = True
                effects.audits.append(
                    BillingAuditEvent(
                        event_type=BillingAuditEventType.TRANSITION_APPLIED,
                        provider=event.provider,
                        subscription_id=subscription.id,
                        actor_id=subscription.user_id,
                        metadata={
                            "event_type": event.event_type.value,
                            "from_status": outcome.previous_status.value if outcome.previous_status else "",
                            "to_status": subscription.status.value,
                        },
                    )
                )
                notification = outcome.notification()
                if notification is not None:
                    effects.notifications.append(notification)
            else:
                message = outcome.reason
                effects.audits.append(
                    BillingAuditEvent(
                        event_type=BillingAuditEventType.TRANSITION_IGNORED,
                        provider=event.provider,
                        subscription_id=subscription.id if subscription else None,
                        metadata={"event_type": event.event_type.value, "reason": outcome.reason or ""},
                    )
                )

        payload = event.payload
        if event.event_type in RECEIPT_EVENTS and payload.get("payment_id") and payload.get("amount"):
            self._record_payment(repository, event, effects)
        elif event.event_type is WebhookEventType.PAYMENT_FAILED:
            effects.changed = True
            effects.audits.append(
                BillingAuditEvent(
                    event_type=BillingAuditEventType.PAYMENT_FAILED,
                    provider=event.provider,
                    actor_id=_optional_str(payload.get("user_id")),
                    metadata={"payment_id": str(payload.get("payment_id", ""))},
                )
            )
        elif event.event_type is WebhookEventType.REFUND_SUCCEEDED:
            effects.changed = True
            effects.audits.append(
                BillingAuditEvent(
                    event_type=BillingAuditEventType.REFUND_RECORDED,
                    provider=event.provider,
                    metadata={
                        "payment_id": str(payload.get("payment_id", "")),
                        "amount": str(payload.get("amount", "")),
                        "currency": str(payload.get("currency", "")),
                    },
                )
            )
        elif not self.state_machine.handles(event.event_type):
            message = f"{event.event_type.value} is not handled"
        return message

    def _record_payment(self, repository: BillingRepository, event: WebhookEvent, effects: _Effects) -> None:
        payload = event.payload
        payment_id = str(payload["payment_id"])
        amount = Money.of(payload["amount"], str(payload["currency"]))
        existing = repository.get_receipt(event.provider, payment_id)
        if existing is not None:
            user_id = existing.user_id
        else:
            user_id = self._payment_owner(repository, event)
            paid_at = _parse_datetime(payload.get("paid_at")) or event.received_at
            receipt, created = self.receipts.issue(
                repository,
                user_id=user_id,
                provider=event.provider,
                external_payment_id=payment_id,
                amount=amount,
                paid_at=paid_at,
                description=_optional_str(payload.get("description")),
            )
            if created:
                effects.changed = True
                effects.notifications.append(
                    ReceiptIssued(user_id=receipt.user_id, receipt_number=receipt.receipt_number, amount=receipt.amount)
                )
                effects.audits.append(_receipt_audit(receipt))

        # Redemption is keyed by payment, so a receipt issued elsewhere still consumes the coupon once.
        coupon_code = payload.get("coupon_code")
        if coupon_code:
            original = payload.get("original_amount")
            original_amount = Money.of(original, amount.currency) if original else amount
            result = self.coupons.redeem(
                repository, str(coupon_code), user_id, original_amount, payment_id, event.received_at
            )
            if result.ok and not result.replayed:
                effects.changed = True
            effects.audits.append(_redemption_audit(str(coupon_code), user_id, payment_id, result))

    def _payment_owner(self, repository: BillingRepository, event: WebhookEvent) -> str:
        user_id = event.payload.get("user_id")
        if user_id:
            return str(user_id)
        subscription_id = event.payload.get("subscription_id")
        if subscription_id:
            subscription = repository.get_subscription_by_gateway_ref(event.provider, str(subscription_id))
            if subscription is not None:
                return subscription.user_id
        raise ValueError(f"Payment {event.payload.get('payment_id')} cannot be attributed to a user")

    def _permanent_failure(
        self,
        provider: PaymentGateway,
        event: Optional[WebhookEvent],
        exc: Exception,
    ) -> WebhookAck:
        reason = exc.message if isinstance(exc, BillingError) else str(exc) or exc.__class__.__name__
        event_id = event.external_event_id if event else None
        logger.error(
            "Permanent failure processing %s webhook %s: %s",
            provider.value,
            event_id,
            reason,
            extra={"provider": provider.value, "event_id": event_id},
        )
        if event is not None:
            with self.store.transaction() as repository:
                repository.record_webhook_event(event)
        self.event_logger.log(
            BillingAuditEvent(
                event_type=BillingAuditEventType.WEBHOOK_PERMANENT_FAILURE,
                provider=provider,
                metadata={"event_id": event_id or "", "reason": reason},
            )
        )
        return WebhookAck(
            status=WebhookAckStatus.FAILED_PERMANENT,
            provider=provider,
            external_event_id=event_id,
            event_type=event.event_type if event else None,
            message=reason,
        )

    @staticmethod
    def _ack(event: WebhookEvent, status: WebhookAckStatus, message: Optional[str] = None) -> WebhookAck:
        return WebhookAck(
            status=status,
            provider=event.provider,
            external_event_id=event.external_event_id,
            event_type=event.event_type,
            message=message,
        )

    def _release(self, effects: _Effects) -> None:
        for audit in effects.audits:
            self.event_logger.log(audit)
        for notification in effects.notifications:
            self._publish(notification)

    def _publish(self, notification: Notification) -> None:
        try:
            if isinstance(notification, ReceiptIssued):
                self.notifier.receipt_issued(notification)
            else:
                self.notifier.subscription_status_changed(notification)
        except Exception:
            logger.exception("Failed to publish %s", type(notification).__name__)

    # Coupons ------------------------------------------------------------

    def validate_coupon(self, code: str, user_id: str, amount: Money) -> ValidationResult:
        with self.store.transaction() as repository:
            return self.coupons.validate(repository, code, user_id, amount, self._now())

    def redeem_coupon(self, code: str, user_id: str, amount: Money, payment_reference: str) -> RedemptionResult:
        with self.store.transaction() as repository:
            result = self.coupons.redeem(repository, code, user_id, amount, payment_reference, self._now())
        self.event_logger.log(_redemption_audit(code, user_id, payment_reference, result))
        return result

    def create_coupon_template(
        self,
        *,
        name: str,
        discount_percentage,
        validity_days: int,
        recipient_category: RecipientCategory = RecipientCategory.ALL_PAID_USERS,
        min_purchase_amount: Optional[Money] = None,
        max_usage_count: Optional[int] = None,
        max_usage_per_user: Optional[int] = None,
    ) -> CouponTemplate:
        with self.store.transaction() as repository:
            return self.coupons.create_template(
                repository,
                name=name,
                discount_percentage=discount_percentage,
                validity_days=validity_days,
                recipient_category=recipient_category,
                min_purchase_amount=min_purchase_amount,
                max_usage_count=max_usage_count,
                max_usage_per_user=max_usage_per_user,
            )

    def mint_coupons(
        self,
        template_id: str,
        *,
        quantity: int = 1,
        custom_code: Optional[str] = None,
        prefix: Optional[str] = None,
        recipients: Sequence[str] = (),
    ) -> List[Coupon]:
        with self.store.transaction() as repository:
            return self.coupons.mint_coupons(
                repository,
                template_id,
                self._now(),
                quantity=quantity,
                custom_code=custom_code,
                prefix=prefix,
                recipients=recipients,
            )

    def expire_coupons(self, now: Optional[datetime] = None) -> int:
        with self.store.transaction() as repository:
            expired = self.coupons.expire_coupons(repository, now or self._now())
        if expired:
            self.event_logger.log(
                BillingAuditEvent(
                    event_type=BillingAuditEventType.COUPONS_EXPIRED,
                    metadata={"count": str(expired)},
                )
            )
        return expired

    # Subscriptions & receipts ------------------------------------------

    def get_subscription_status(self, user_id: str) -> Optional[UserSubscription]:
        with self.store.transaction() as repository:
            return repository.get_subscription_by_user(user_id)

    def issue_receipt(
        self,
        *,
        user_id: str,
        provider: PaymentGateway,
        external_payment_id: str,
        amount: Money,
        paid_at: datetime,
        description: Optional[str] = None,
    ) -> Receipt:
        with self.store.transaction() as repository:
            receipt, created = self.receipts.issue(
                repository,
                user_id=user_id,
                provider=provider,
                external_payment_id=external_payment_id,
                amount=amount,
                paid_at=paid_at,
                description=description,
            )
        if created:
            self.event_logger.log(_receipt_audit(receipt))
            self._publish(
                ReceiptIssued(user_id=receipt.user_id, receipt_number=receipt.receipt_number, amount=receipt.amount)
            )
        return receipt

    def get_receipt(self, receipt_number: str) -> Receipt:
        with self.store.transaction() as repository:
            receipt = repository.get_receipt_by_number(receipt_number)
        if receipt is None:
            raise NotFoundError(message="Receipt not found", detail={"receipt_number": receipt_number})
        return receipt

    def initialize_subscription_payment(
        self,
        *,
        user_id: str,
        email: str,
        plan_id: str,
        provider: PaymentGateway,
        callback_url: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> PaymentSession:
        """Start a hosted checkout; provider calls happen outside any transaction."""

        with self.store.transaction() as repository:
            plan = repository.get_plan(plan_id)
        if plan is None or not plan.is_active:
            raise NotFoundError(message="Plan not found", detail={"plan_id": plan_id})
        if provider not in self.registry:
            raise ProviderNotImplementedError(detail={"provider": provider.value})

        adapter = self.registry.get(provider)
        plan_code = _unwrap(adapter.ensure_plan_exists(plan))
        session = adapter.initialize_subscription_payment(
            email=email,
            user_id=user_id,
            plan=plan,
            plan_code=plan_code,
            callback_url=callback_url,
            metadata=metadata,
        )
        return _unwrap(session)


def _unwrap(result):
    if not isinstance(result, ProviderFailure):
        return result
    detail = {"provider": result.provider.value, "operation": result.operation, "reason": result.message}
    if result.kind is ProviderFailureKind.NOT_IMPLEMENTED:
        raise ProviderNotImplementedError(detail=detail)
    if result.kind is ProviderFailureKind.TRANSIENT:
        raise ProviderUnavailableError(detail=detail)
    raise ProviderRejectedError(detail=detail)


def _receipt_audit(receipt: Receipt) -> BillingAuditEvent:
    return BillingAuditEvent(
        event_type=BillingAuditEventType.RECEIPT_ISSUED,
        provider=receipt.provider,
        actor_id=receipt.user_id,
        metadata={
            "receipt_number": receipt.receipt_number,
            "payment_id": receipt.external_payment_id,
            "amount": str(receipt.amount),
        },
    )


def _redemption_audit(code: str, user_id: str, payment_reference: str, result: RedemptionResult) -> BillingAuditEvent:
    metadata = {"code": code.strip().upper(), "payment_reference": payment_reference}
    if result.ok:
        metadata["discount"] = str(result.usage.discount_amount)
        metadata["replayed"] = str(result.replayed).lower()
        event_type = BillingAuditEventType.COUPON_REDEEMED
    else:
        metadata["reason"] = result.reason.value if result.reason else ""
        event_type = BillingAuditEventType.COUPON_REDEMPTION_FAILED
    return BillingAuditEvent(event_type=event_type, actor_id=user_id, metadata=metadata)


def _optional_str(value: object) -> Optional[str]:
    return str(value) if value not in (None, "") else None


def _parse_datetime(value: object) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, str):
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    raise TypeError("Unsupported datetime value")


__all__ = [
    "BillingEventLogger",
    "BillingNotifier",
    "BillingService",
    "PERMANENT_WEBHOOK_ERRORS",
]
