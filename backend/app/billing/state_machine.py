"""Subscription lifecycle driven by canonical webhook events."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Dict, FrozenSet, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict

from .models import (
    GatewayRefKind,
    PaymentGatewayRef,
    SubscriptionStatus,
    SubscriptionStatusChanged,
    UserSubscription,
    WebhookEvent,
    WebhookEventType,
)
from .repository import BillingRepository

logger = logging.getLogger("billing")

S = SubscriptionStatus

# Valid source states for each status-moving event.
TRANSITIONS: Dict[WebhookEventType, FrozenSet[SubscriptionStatus]] = {
    WebhookEventType.INVOICE_PAID: frozenset({S.INCOMPLETE, S.PAST_DUE, S.TRIALING, S.UNPAID}),
    WebhookEventType.INVOICE_PAYMENT_FAILED: frozenset({S.ACTIVE, S.TRIALING}),
    WebhookEventType.SUBSCRIPTION_CANCELLED: frozenset(
        {S.INCOMPLETE, S.TRIALING, S.ACTIVE, S.PAST_DUE, S.UNPAID, S.PAUSED}
    ),
    WebhookEventType.SUBSCRIPTION_PAUSED: frozenset({S.ACTIVE}),
    WebhookEventType.SUBSCRIPTION_RESUMED: frozenset({S.PAUSED}),
}

TARGETS: Dict[WebhookEventType, SubscriptionStatus] = {
    WebhookEventType.INVOICE_PAID: S.ACTIVE,
    WebhookEventType.INVOICE_PAYMENT_FAILED: S.PAST_DUE,
    WebhookEventType.SUBSCRIPTION_CANCELLED: S.CANCELED,
    WebhookEventType.SUBSCRIPTION_PAUSED: S.PAUSED,
    WebhookEventType.SUBSCRIPTION_RESUMED: S.ACTIVE,
}

# Moves a provider-reported status may make outside the event table.
LIFECYCLE: Dict[SubscriptionStatus, FrozenSet[SubscriptionStatus]] = {
    S.INCOMPLETE: frozenset({S.TRIALING, S.ACTIVE, S.CANCELED}),
    S.TRIALING: frozenset({S.ACTIVE, S.PAST_DUE, S.CANCELED}),
    S.ACTIVE: frozenset({S.PAST_DUE, S.PAUSED, S.CANCELED}),
    S.PAST_DUE: frozenset({S.ACTIVE, S.CANCELED, S.UNPAID}),
    S.UNPAID: frozenset({S.ACTIVE, S.CANCELED}),
    S.PAUSED: frozenset({S.ACTIVE, S.CANCELED}),
    S.CANCELED: frozenset(),
}

HANDLED_EVENTS: FrozenSet[WebhookEventType] = frozenset(
    {WebhookEventType.SUBSCRIPTION_CREATED, WebhookEventType.SUBSCRIPTION_UPDATED, *TRANSITIONS}
)


class TransitionOutcome(BaseModel):
    """Result of applying one event to a subscription."""

    applied: bool
    subscription: Optional[UserSubscription] = None
    previous_status: Optional[SubscriptionStatus] = None
    reason: Optional[str] = None

    model_config = ConfigDict(frozen=True)

    @property
    def status_changed(self) -> bool:
        return (
            self.applied
            and self.subscription is not None
            and self.subscription.status != self.previous_status
        )

    def notification(self) -> Optional[SubscriptionStatusChanged]:
        if not self.status_changed:
            return None
        return SubscriptionStatusChanged(
            user_id=self.subscription.user_id,
            subscription_id=self.subscription.id,
            from_status=self.previous_status,
            to_status=self.subscription.status,
        )


def _parse_datetime(value: object) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, str):
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    raise TypeError("Unsupported datetime value")


def _parse_status(value: object) -> Optional[SubscriptionStatus]:
    try:
        return SubscriptionStatus(str(value)) if value else None
    except ValueError:
        return None


class SubscriptionStateMachine:
    """Applies canonical events to the single subscription row of a user.

    Invalid or stale transitions are ignored and reported through the
    returned :class:`TransitionOutcome`; they never raise, because providers
    deliver out of order.
    """

    def __init__(self, *, id_factory: Optional[Callable[[], str]] = None) -> None:
        self._id_factory = id_factory or (lambda: f"sub_{uuid4().hex}")

    def handles(self, event_type: WebhookEventType) -> bool:
        return event_type in HANDLED_EVENTS

    def apply(self, repository: BillingRepository, event: WebhookEvent) -> TransitionOutcome:
        payload = event.payload
        external_id = payload.get("subscription_id")
        current = (
            repository.get_subscription_by_gateway_ref(event.provider, str(external_id))
            if external_id
            else None
        )

        if current is not None and current.last_event_at and event.received_at < current.last_event_at:
            return self._ignore(event, current, "stale event")

        if event.event_type is WebhookEventType.SUBSCRIPTION_CREATED:
            return self._create(repository, event, current)
        if current is None:
            if event.event_type is WebhookEventType.INVOICE_PAID:
                return self._create(repository, event, None, first_payment=True)
            return self._ignore(event, None, "unknown subscription")
        if current.status.is_terminal:
            return self._ignore(event, current, "subscription is canceled")
        if event.event_type is WebhookEventType.SUBSCRIPTION_UPDATED:
            return self._update_from_provider(repository, event, current)
        if event.event_type is WebhookEventType.INVOICE_PAID and current.status is S.ACTIVE:
            return self._save(repository, event, current, S.ACTIVE, payment_retry_pending=False)
        if event.event_type is WebhookEventType.INVOICE_PAYMENT_FAILED:
            return self._payment_failed(repository, event, current)

        if current.status not in TRANSITIONS[event.event_type]:
            return self._ignore(event, current, f"invalid source state {current.status.value}")
        retry_pending = False if event.event_type is WebhookEventType.INVOICE_PAID else current.payment_retry_pending
        return self._save(repository, event, current, TARGETS[event.event_type], payment_retry_pending=retry_pending)

    def _create(
        self,
        repository: BillingRepository,
        event: WebhookEvent,
        current: Optional[UserSubscription],
        *,
        first_payment: bool = False,
    ) -> TransitionOutcome:
        payload = event.payload
        if current is not None:
            return self._ignore(event, current, "subscription already exists")
        external_id = payload.get("subscription_id")
        user_id = payload.get("user_id")
        if not external_id or not user_id:
            return self._ignore(event, None, "missing subscription_id or user_id")
        plan_id = self._resolve_plan_id(repository, event)
        if plan_id is None:
            return self._ignore(event, None, "unknown plan")

        existing = repository.get_subscription_by_user(str(user_id))
        if existing is not None and not existing.status.is_terminal:
            return self._ignore(event, existing, "user already has a live subscription")
        if existing is not None and existing.last_event_at and event.received_at < existing.last_event_at:
            return self._ignore(event, existing, "stale event")

        if first_payment:
            status = S.ACTIVE
        else:
            trial_end = _parse_datetime(payload.get("trial_end"))
            provider_status = _parse_status(payload.get("status"))
            trialing = provider_status is S.TRIALING or (trial_end is not None and trial_end > event.received_at)
            status = S.TRIALING if trialing else S.INCOMPLETE

        now = datetime.now(timezone.utc)
        subscription = UserSubscription(
            id=self._id_factory(),
            user_id=str(user_id),
            plan_id=plan_id,
            gateway_ref=PaymentGatewayRef(
                provider=event.provider, external_id=str(external_id), kind=GatewayRefKind.SUBSCRIPTION
            ),
            status=status,
            current_period_end=_parse_datetime(payload.get("current_period_end")),
            last_event_at=event.received_at,
            created_at=now,
            updated_at=now,
        )
        # Providers that activate on creation report it in the same event.
        provider_status = _parse_status(payload.get("status"))
        if not first_payment and provider_status and provider_status in LIFECYCLE[status]:
            subscription = subscription.model_copy(update={"status": provider_status})

        persisted = repository.save_subscription(subscription)
        previous = existing.status if existing is not None else None
        logger.info(
            "Subscription %s created for user %s as %s",
            persisted.id,
            persisted.user_id,
            persisted.status.value,
            extra={"provider": event.provider.value, "event_id": event.external_event_id},
        )
        return TransitionOutcome(applied=True, subscription=persisted, previous_status=previous)

    def _update_from_provider(
        self, repository: BillingRepository, event: WebhookEvent, current: UserSubscription
    ) -> TransitionOutcome:
        target = _parse_status(event.payload.get("status"))
        if target is None or target is current.status or target not in LIFECYCLE[current.status]:
            target = current.status
        plan_id = self._resolve_plan_id(repository, event) or current.plan_id
        return self._save(
            repository,
            event,
            current,
            target,
            payment_retry_pending=current.payment_retry_pending,
            plan_id=plan_id,
        )

    def _payment_failed(
        self, repository: BillingRepository, event: WebhookEvent, current: UserSubscription
    ) -> TransitionOutcome:
        will_retry = bool(event.payload.get("will_retry", True))
        if current.status is S.PAST_DUE:
            target = S.PAST_DUE if will_retry else S.UNPAID
            return self._save(repository, event, current, target, payment_retry_pending=will_retry)
        if current.status not in TRANSITIONS[WebhookEventType.INVOICE_PAYMENT_FAILED]:
            return self._ignore(event, current, f"invalid source state {current.status.value}")
        return self._save(repository, event, current, S.PAST_DUE, payment_retry_pending=will_retry)

    def _save(
        self,
        repository: BillingRepository,
        event: WebhookEvent,
        current: UserSubscription,
        target: SubscriptionStatus,
        *,
        payment_retry_pending: bool,
        plan_id: Optional[str] = None,
    ) -> TransitionOutcome:
        period_end = _parse_datetime(event.payload.get("current_period_end")) or current.current_period_end
        updated = current.model_copy(
            update={
                "status": target,
                "plan_id": plan_id or current.plan_id,
                "current_period_end": period_end,
                "payment_retry_pending": payment_retry_pending,
                "last_event_at": event.received_at,
                "updated_at": datetime.now(timezone.utc),
            }
        )
        persisted = repository.save_subscription(updated)
        if persisted.status != current.status:
            logger.info(
                "Subscription %s moved %s -> %s on %s",
                persisted.id,
                current.status.value,
                persisted.status.value,
                event.event_type.value,
                extra={"provider": event.provider.value, "event_id": event.external_event_id},
            )
        return TransitionOutcome(applied=True, subscription=persisted, previous_status=current.status)

    def _resolve_plan_id(self, repository: BillingRepository, event: WebhookEvent) -> Optional[str]:
        payload = event.payload
        plan_id = payload.get("plan_id")
        if plan_id and repository.get_plan(str(plan_id)) is not None:
            return str(plan_id)
        plan_code = payload.get("plan_code")
        if plan_code:
            plan = repository.get_plan_by_provider_code(event.provider, str(plan_code))
            if plan is not None:
                return plan.id
        return None

    def _ignore(
        self, event: WebhookEvent, current: Optional[UserSubscription], reason: str
    ) -> TransitionOutcome:
        logger.info(
            "Ignoring %s for subscription %s: %s",
            event.event_type.value,
            current.id if current else event.payload.get("subscription_id"),
            reason,
            extra={"provider": event.provider.value, "event_id": event.external_event_id},
        )
        return TransitionOutcome(
            applied=False,
            subscription=current,
            previous_status=current.status if current else None,
            reason=reason,
        )


__all__ = ["HANDLED_EVENTS", "LIFECYCLE", "SubscriptionStateMachine", "TRANSITIONS", "TransitionOutcome"]
