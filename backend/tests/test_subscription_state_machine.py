from __future__ import annotations

from datetime import datetime, timedelta, timezone
from uuid import uuid4

from backend.app.billing import (
    PaymentGateway,
    SubscriptionStatus,
    WebhookEvent,
    WebhookEventType,
)

from conftest import make_subscription

T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _event(event_type: WebhookEventType, at: datetime, **payload) -> WebhookEvent:
    payload.setdefault("subscription_id", "sub_ext_1")
    return WebhookEvent(
        event_type=event_type,
        provider=PaymentGateway.STRIPE,
        external_event_id=f"evt_{uuid4().hex}",
        payload=payload,
        received_at=at,
    )


def _seed(repository, status=SubscriptionStatus.ACTIVE, **kwargs):
    kwargs.setdefault("last_event_at", T0)
    subscription = make_subscription(status=status, **kwargs)
    repository.save_subscription(subscription)
    return subscription


def test_created_event_applies_provider_status(repository, state_machine):
    event = _event(
        WebhookEventType.SUBSCRIPTION_CREATED,
        T0,
        user_id="user-9",
        plan_id="plan_pro",
        status="active",
    )

    outcome = state_machine.apply(repository, event)

    assert outcome.applied
    assert outcome.subscription.status is SubscriptionStatus.ACTIVE
    assert outcome.subscription.last_event_at == T0
    assert repository.get_subscription_by_user("user-9") == outcome.subscription
    notice = outcome.notification()
    assert notice.from_status is None
    assert notice.to_status is SubscriptionStatus.ACTIVE


def test_created_event_with_future_trial_starts_trialing(repository, state_machine):
    event = _event(
        WebhookEventType.SUBSCRIPTION_CREATED,
        T0,
        user_id="user-9",
        plan_id="plan_pro",
        trial_end=(T0 + timedelta(days=14)).isoformat(),
    )

    outcome = state_machine.apply(repository, event)

    assert outcome.subscription.status is SubscriptionStatus.TRIALING


def test_created_event_resolves_plan_by_provider_code(repository, state_machine):
    plan = repository.plans["plan_team"].model_copy(
        update={"provider_plan_codes": {PaymentGateway.STRIPE: "price_team"}}
    )
    repository.plans[plan.id] = plan
    event = _event(WebhookEventType.SUBSCRIPTION_CREATED, T0, user_id="user-9", plan_code="price_team")

    outcome = state_machine.apply(repository, event)

    assert outcome.subscription.plan_id == "plan_team"


def test_created_event_for_unknown_plan_is_ignored(repository, state_machine):
    event = _event(WebhookEventType.SUBSCRIPTION_CREATED, T0, user_id="user-9", plan_id="plan_gold")

    outcome = state_machine.apply(repository, event)

    assert not outcome.applied
    assert outcome.reason == "unknown plan"
    assert repository.get_subscription_by_user("user-9") is None


def test_first_invoice_for_unknown_subscription_activates(repository, state_machine):
    event = _event(WebhookEventType.INVOICE_PAID, T0, user_id="user-9", plan_id="plan_pro")

    outcome = state_machine.apply(repository, event)

    assert outcome.applied
    assert outcome.subscription.status is SubscriptionStatus.ACTIVE


def test_failed_payments_walk_past_due_then_unpaid(repository, state_machine):
    _seed(repository)

    first = state_machine.apply(repository, _event(WebhookEventType.INVOICE_PAYMENT_FAILED, T0 + timedelta(hours=1)))
    assert first.subscription.status is SubscriptionStatus.PAST_DUE
    assert first.subscription.payment_retry_pending

    final = state_machine.apply(
        repository,
        _event(WebhookEventType.INVOICE_PAYMENT_FAILED, T0 + timedelta(days=3), will_retry=False),
    )
    assert final.subscription.status is SubscriptionStatus.UNPAID
    assert not final.subscription.payment_retry_pending

    recovered = state_machine.apply(repository, _event(WebhookEventType.INVOICE_PAID, T0 + timedelta(days=4)))
    assert recovered.subscription.status is SubscriptionStatus.ACTIVE
    assert recovered.previous_status is SubscriptionStatus.UNPAID
    assert not recovered.subscription.payment_retry_pending


def test_renewal_on_active_subscription_extends_period(repository, state_machine):
    _seed(repository)
    period_end = T0 + timedelta(days=30)

    outcome = state_machine.apply(
        repository,
        _event(WebhookEventType.INVOICE_PAID, T0 + timedelta(minutes=5), current_period_end=period_end.isoformat()),
    )

    assert outcome.applied
    assert not outcome.status_changed
    assert outcome.notification() is None
    assert outcome.subscription.current_period_end == period_end


def test_canceled_is_terminal(repository, state_machine):
    _seed(repository)

    canceled = state_machine.apply(repository, _event(WebhookEventType.SUBSCRIPTION_CANCELLED, T0 + timedelta(hours=1)))
    late_payment = state_machine.apply(repository, _event(WebhookEventType.INVOICE_PAID, T0 + timedelta(hours=2)))

    assert canceled.subscription.status is SubscriptionStatus.CANCELED
    assert not late_payment.applied
    assert late_payment.reason == "subscription is canceled"
    assert repository.get_subscription_by_user("user-1").status is SubscriptionStatus.CANCELED


def test_stale_event_is_ignored(repository, state_machine):
    seeded = _seed(repository)

    outcome = state_machine.apply(repository, _event(WebhookEventType.SUBSCRIPTION_PAUSED, T0 - timedelta(minutes=1)))

    assert not outcome.applied
    assert outcome.reason == "stale event"
    assert repository.get_subscription_by_user("user-1") == seeded


def test_out_of_order_delivery_keeps_latest_state(repository, state_machine):
    _seed(repository, status=SubscriptionStatus.PAST_DUE)
    cancel = _event(WebhookEventType.SUBSCRIPTION_CANCELLED, T0 + timedelta(hours=2))
    earlier_payment = _event(WebhookEventType.INVOICE_PAID, T0 + timedelta(hours=1))

    state_machine.apply(repository, cancel)
    outcome = state_machine.apply(repository, earlier_payment)

    assert not outcome.applied
    stored = repository.get_subscription_by_user("user-1")
    assert stored.status is SubscriptionStatus.CANCELED
    assert stored.last_event_at == T0 + timedelta(hours=2)


def test_invalid_source_state_is_ignored(repository, state_machine):
    _seed(repository, status=SubscriptionStatus.PAST_DUE)

    outcome = state_machine.apply(repository, _event(WebhookEventType.SUBSCRIPTION_PAUSED, T0 + timedelta(hours=1)))

    assert not outcome.applied
    assert outcome.reason == "invalid source state past_due"
    assert repository.get_subscription_by_user("user-1").last_event_at == T0


def test_pause_and_resume(repository, state_machine):
    _seed(repository)

    paused = state_machine.apply(repository, _event(WebhookEventType.SUBSCRIPTION_PAUSED, T0 + timedelta(hours=1)))
    resumed = state_machine.apply(repository, _event(WebhookEventType.SUBSCRIPTION_RESUMED, T0 + timedelta(hours=2)))

    assert paused.subscription.status is SubscriptionStatus.PAUSED
    assert resumed.subscription.status is SubscriptionStatus.ACTIVE


def test_update_applies_plan_change_and_rejects_illegal_status(repository, state_machine):
    _seed(repository)

    outcome = state_machine.apply(
        repository,
        _event(WebhookEventType.SUBSCRIPTION_UPDATED, T0 + timedelta(hours=1), plan_id="plan_team", status="incomplete"),
    )

    assert outcome.applied
    assert outcome.subscription.plan_id == "plan_team"
    assert outcome.subscription.status is SubscriptionStatus.ACTIVE


def test_unknown_subscription_is_ignored(repository, state_machine):
    outcome = state_machine.apply(repository, _event(WebhookEventType.SUBSCRIPTION_CANCELLED, T0, subscription_id="sub_missing"))

    assert not outcome.applied
    assert outcome.reason == "unknown subscription"


def test_handles_only_lifecycle_events(state_machine):
    assert state_machine.handles(WebhookEventType.INVOICE_PAID)
    assert state_machine.handles(WebhookEventType.SUBSCRIPTION_CREATED)
    assert not state_machine.handles(WebhookEventType.PAYMENT_SUCCEEDED)
    assert not state_machine.handles(WebhookEventType.UNKNOWN)
