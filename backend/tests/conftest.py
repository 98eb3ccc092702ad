"""Shared in-memory collaborators for billing tests."""
from __future__ import annotations

import threading
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Dict, Iterator, List, Optional, Sequence, Set, Tuple

import pytest

from backend.app.billing import (
    BillingAuditEvent,
    Coupon,
    CouponEligibilityPolicy,
    CouponEngine,
    CouponTemplate,
    CouponUsage,
    PaymentGateway,
    Receipt,
    ReceiptIssued,
    ReceiptIssuer,
    RecipientCategory,
    SubscriptionPlan,
    SubscriptionStateMachine,
    SubscriptionStatusChanged,
    UserSubscription,
    WebhookEvent,
)
from backend.app.billing.models import (
    BillingInterval,
    BillingUserProfile,
    IntervalUnit,
    PaymentGatewayRef,
    PlanName,
    SubscriptionStatus,
)
from backend.app.billing.money import Money
from backend.app.billing.repository import BillingRepository
from backend.app.billing.service import BillingEventLogger, BillingNotifier


class InMemoryBillingRepository(BillingRepository):
    """Dictionary-backed repository; every method is atomic under one lock."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self.plans: Dict[str, SubscriptionPlan] = {}
        self.subscriptions: Dict[str, UserSubscription] = {}
        self.webhook_events: Dict[str, WebhookEvent] = {}
        self.templates: Dict[str, CouponTemplate] = {}
        self.coupons: Dict[str, Coupon] = {}
        self.recipients: Set[Tuple[str, str]] = set()
        self.usages: Dict[Tuple[str, str, str], CouponUsage] = {}
        self.receipts: Dict[Tuple[PaymentGateway, str], Receipt] = {}
        self.sequence = 0

    def snapshot(self) -> Dict[str, object]:
        with self._lock:
            return {
                "plans": dict(self.plans),
                "subscriptions": dict(self.subscriptions),
                "webhook_events": dict(self.webhook_events),
                "templates": dict(self.templates),
                "coupons": dict(self.coupons),
                "recipients": set(self.recipients),
                "usages": dict(self.usages),
                "receipts": dict(self.receipts),
            }

    def restore(self, state: Dict[str, object]) -> None:
        # Sequences are not transactional, matching PostgreSQL.
        with self._lock:
            for name, value in state.items():
                setattr(self, name, value)

    def record_webhook_event(self, event: WebhookEvent) -> bool:
        with self._lock:
            key = event.dedup_key.value
            if key in self.webhook_events:
                return False
            self.webhook_events[key] = event
            return True

    def get_plan(self, plan_id: str) -> Optional[SubscriptionPlan]:
        return self.plans.get(plan_id)

    def get_plan_by_provider_code(self, provider: PaymentGateway, code: str) -> Optional[SubscriptionPlan]:
        for plan in self.plans.values():
            if plan.plan_code_for(provider) == code:
                return plan
        return None

    def get_subscription_by_user(self, user_id: str) -> Optional[UserSubscription]:
        return self.subscriptions.get(user_id)

    def get_subscription_by_gateway_ref(self, provider: PaymentGateway, external_id: str) -> Optional[UserSubscription]:
        with self._lock:
            for subscription in self.subscriptions.values():
                ref = subscription.gateway_ref
                if ref.provider == provider and ref.external_id == external_id:
                    return subscription
        return None

    def save_subscription(self, subscription: UserSubscription) -> UserSubscription:
        with self._lock:
            self.subscriptions[subscription.user_id] = subscription
        return subscription

    def get_coupon_by_code(self, code: str) -> Optional[Coupon]:
        wanted = code.strip().upper()
        with self._lock:
            for coupon in self.coupons.values():
                if coupon.code == wanted:
                    return coupon
        return None

    def increment_coupon_usage(self, coupon_id: str, expected_version: int) -> bool:
        with self._lock:
            coupon = self.coupons.get(coupon_id)
            if coupon is None or coupon.version != expected_version or coupon.has_reached_usage_limit:
                return False
            self.coupons[coupon_id] = coupon.model_copy(
                update={"current_usage_count": coupon.current_usage_count + 1, "version": coupon.version + 1}
            )
            return True

    def release_coupon_usage(self, coupon_id: str) -> None:
        with self._lock:
            coupon = self.coupons[coupon_id]
            self.coupons[coupon_id] = coupon.model_copy(
                update={"current_usage_count": max(coupon.current_usage_count - 1, 0), "version": coupon.version + 1}
            )

    def count_coupon_usages(self, coupon_id: str, user_id: str) -> int:
        with self._lock:
            return sum(1 for key in self.usages if key[0] == coupon_id and key[1] == user_id)

    def get_coupon_usage(self, coupon_id: str, user_id: str, payment_reference: str) -> Optional[CouponUsage]:
        return self.usages.get((coupon_id, user_id, payment_reference))

    def insert_coupon_usage(self, usage: CouponUsage) -> Optional[CouponUsage]:
        with self._lock:
            key = (usage.coupon_id, usage.user_id, usage.payment_reference)
            if key in self.usages:
                return None
            self.usages[key] = usage
            return usage

    def is_coupon_recipient(self, coupon_id: str, user_id: str) -> bool:
        return (coupon_id, user_id) in self.recipients

    def add_coupon_recipients(self, coupon_id: str, user_ids: Sequence[str]) -> None:
        with self._lock:
            self.recipients.update((coupon_id, user_id) for user_id in user_ids)

    def insert_coupon_template(self, template: CouponTemplate) -> CouponTemplate:
        with self._lock:
            self.templates[template.id] = template
        return template

    def get_coupon_template(self, template_id: str) -> Optional[CouponTemplate]:
        return self.templates.get(template_id)

    def insert_coupon(self, coupon: Coupon) -> Optional[Coupon]:
        with self._lock:
            if any(existing.code == coupon.code for existing in self.coupons.values()):
                return None
            self.coupons[coupon.id] = coupon
            return coupon

    def deactivate_expired_coupons(self, now: datetime) -> int:
        with self._lock:
            expired = [c for c in self.coupons.values() if c.is_active and c.valid_until < now]
            for coupon in expired:
                self.coupons[coupon.id] = coupon.model_copy(update={"is_active": False, "version": coupon.version + 1})
            return len(expired)

    def get_receipt(self, provider: PaymentGateway, external_payment_id: str) -> Optional[Receipt]:
        return self.receipts.get((provider, external_payment_id))

    def get_receipt_by_number(self, receipt_number: str) -> Optional[Receipt]:
        for receipt in self.receipts.values():
            if receipt.receipt_number == receipt_number:
                return receipt
        return None

    def insert_receipt(self, receipt: Receipt) -> Optional[Receipt]:
        with self._lock:
            key = (receipt.provider, receipt.external_payment_id)
            if key in self.receipts:
                return None
            self.receipts[key] = receipt
            return receipt

    def next_receipt_sequence(self) -> int:
        with self._lock:
            self.sequence += 1
            return self.sequence


class InMemoryBillingStore:
    """Serialises transactions and rolls the repository back on errors."""

    def __init__(self, repository: Optional[InMemoryBillingRepository] = None) -> None:
        self.repository = repository or InMemoryBillingRepository()
        self._lock = threading.RLock()
        self.commits = 0
        self.rollbacks = 0

    @contextmanager
    def transaction(self) -> Iterator[InMemoryBillingRepository]:
        with self._lock:
            state = self.repository.snapshot()
            try:
                yield self.repository
            except BaseException:
                self.repository.restore(state)
                self.rollbacks += 1
                raise
            self.commits += 1


class FakeUserDirectory:
    def __init__(self) -> None:
        self.profiles: Dict[str, BillingUserProfile] = {}

    def add(self, user_id: str, *, registered_days_ago: int = 365, ocr_pages_used: int = 0) -> None:
        self.profiles[user_id] = BillingUserProfile(
            user_id=user_id,
            created_at=datetime.now(timezone.utc) - timedelta(days=registered_days_ago),
            ocr_pages_used=ocr_pages_used,
        )

    def get_profile(self, user_id: str) -> Optional[BillingUserProfile]:
        return self.profiles.get(user_id)


class FakeNotifier(BillingNotifier):
    def __init__(self) -> None:
        self.receipts: List[ReceiptIssued] = []
        self.status_changes: List[SubscriptionStatusChanged] = []
        self.fail = False

    def receipt_issued(self, event: ReceiptIssued) -> None:
        if self.fail:
            raise RuntimeError("mail relay down")
        self.receipts.append(event)

    def subscription_status_changed(self, event: SubscriptionStatusChanged) -> None:
        if self.fail:
            raise RuntimeError("mail relay down")
        self.status_changes.append(event)


class FakeEventLogger(BillingEventLogger):
    def __init__(self) -> None:
        self.events: List[BillingAuditEvent] = []

    def log(self, event: BillingAuditEvent) -> None:
        self.events.append(event)


def make_plan(
    plan_id: str = "plan_pro",
    *,
    name: PlanName = PlanName.PRO_MONTHLY,
    price: str = "10.00",
    currency: str = "USD",
    ocr_page_limit: int = 500,
    codes: Optional[Dict[PaymentGateway, str]] = None,
) -> SubscriptionPlan:
    return SubscriptionPlan(
        id=plan_id,
        name=name,
        price=Money.of(price, currency),
        billing_interval=BillingInterval(unit=IntervalUnit.MONTH),
        document_upload_limit=100,
        ocr_page_limit=ocr_page_limit,
        provider_plan_codes=codes or {},
    )


def make_coupon(
    code: str = "SAVE20",
    *,
    coupon_id: str = "cpn_save20",
    percentage: str = "20",
    minimum: Optional[Money] = None,
    category: RecipientCategory = RecipientCategory.ALL_PAID_USERS,
    max_usage_count: Optional[int] = None,
    max_usage_per_user: Optional[int] = None,
    current_usage_count: int = 0,
    valid_from: Optional[datetime] = None,
    valid_until: Optional[datetime] = None,
    is_active: bool = True,
) -> Coupon:
    now = datetime.now(timezone.utc)
    return Coupon(
        id=coupon_id,
        code=code,
        discount_percentage=Decimal(percentage),
        min_purchase_amount=minimum,
        recipient_category=category,
        max_usage_count=max_usage_count,
        max_usage_per_user=max_usage_per_user,
        current_usage_count=current_usage_count,
        valid_from=valid_from or now - timedelta(days=1),
        valid_until=valid_until or now + timedelta(days=30),
        is_active=is_active,
    )


def make_subscription(
    user_id: str = "user-1",
    *,
    plan_id: str = "plan_pro",
    provider: PaymentGateway = PaymentGateway.STRIPE,
    external_id: str = "sub_ext_1",
    status: Optional[SubscriptionStatus] = None,
    last_event_at: Optional[datetime] = None,
    current_period_end: Optional[datetime] = None,
) -> UserSubscription:
    return UserSubscription(
        id=f"sub_{user_id}",
        user_id=user_id,
        plan_id=plan_id,
        gateway_ref=PaymentGatewayRef(provider=provider, external_id=external_id),
        status=status or SubscriptionStatus.ACTIVE,
        last_event_at=last_event_at,
        current_period_end=current_period_end,
    )


@pytest.fixture
def repository() -> InMemoryBillingRepository:
    repo = InMemoryBillingRepository()
    repo.plans["plan_pro"] = make_plan()
    repo.plans["plan_free"] = make_plan("plan_free", name=PlanName.FREE, price="0", ocr_page_limit=50)
    repo.plans["plan_team"] = make_plan("plan_team", name=PlanName.BUSINESS_MONTHLY, price="49.00")
    return repo


@pytest.fixture
def store(repository) -> InMemoryBillingStore:
    return InMemoryBillingStore(repository)


@pytest.fixture
def users() -> FakeUserDirectory:
    directory = FakeUserDirectory()
    directory.add("user-1")
    return directory


@pytest.fixture
def coupon_engine(users) -> CouponEngine:
    return CouponEngine(CouponEligibilityPolicy(users))


@pytest.fixture
def state_machine() -> SubscriptionStateMachine:
    return SubscriptionStateMachine()


@pytest.fixture
def receipt_issuer() -> ReceiptIssuer:
    return ReceiptIssuer()
