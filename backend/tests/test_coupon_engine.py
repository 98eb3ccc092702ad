"""Tests for coupon validation, redemption and administration."""
from __future__ import annotations

import re
import threading
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import List

import pytest

from backend.app.billing import (
    BillingError,
    CouponCodeGenerator,
    CouponConcurrencyError,
    CouponEligibilityPolicy,
    CouponEngine,
    CouponValidationReason,
    DuplicateRecordError,
    Money,
    NotFoundError,
    RecipientCategory,
    SubscriptionStatus,
)

from conftest import InMemoryBillingRepository, make_coupon, make_plan, make_subscription

NOW = datetime.now(timezone.utc)
USD_10 = Money.of("10.00", "USD")


@pytest.fixture
def paid_user(repository):
    repository.subscriptions["user-1"] = make_subscription("user-1")
    return "user-1"


def _add(repository, coupon):
    repository.coupons[coupon.id] = coupon
    return coupon


def test_validate_accepts_eligible_coupon(repository, coupon_engine, paid_user):
    coupon = _add(repository, make_coupon())

    result = coupon_engine.validate(repository, "save20", paid_user, USD_10, NOW)

    assert result.ok
    assert result.coupon.id == coupon.id


def test_validate_reports_unknown_code(repository, coupon_engine, paid_user):
    result = coupon_engine.validate(repository, "NOPE", paid_user, USD_10, NOW)

    assert not result.ok
    assert result.reason is CouponValidationReason.NOT_FOUND


@pytest.mark.parametrize(
    ("overrides", "reason"),
    [
        ({"is_active": False}, CouponValidationReason.INVALID),
        ({"valid_from": NOW + timedelta(days=1), "valid_until": NOW + timedelta(days=5)}, CouponValidationReason.INVALID),
        ({"valid_from": NOW - timedelta(days=10), "valid_until": NOW - timedelta(days=1)}, CouponValidationReason.EXPIRED),
        ({"minimum": Money.of("5.00", "USD")}, None),
        ({"minimum": Money.of("20.00", "USD")}, CouponValidationReason.BELOW_MINIMUM),
        ({"minimum": Money.of("5.00", "EUR")}, CouponValidationReason.INVALID),
        ({"max_usage_count": 3, "current_usage_count": 3}, CouponValidationReason.USAGE_LIMIT_REACHED),
        ({"category": RecipientCategory.TEAM_PLAN}, CouponValidationReason.NOT_ELIGIBLE),
    ],
)
def test_validate_rejection_reasons(repository, coupon_engine, paid_user, overrides, reason):
    _add(repository, make_coupon(**overrides))

    result = coupon_engine.validate(repository, "SAVE20", paid_user, USD_10, NOW)

    assert result.ok is (reason is None)
    assert result.reason is reason


def test_validate_enforces_per_user_limit(repository, coupon_engine, paid_user):
    coupon = _add(repository, make_coupon(max_usage_per_user=1))
    coupon_engine.redeem(repository, coupon.code, paid_user, USD_10, "pay_1", NOW)

    result = coupon_engine.validate(repository, coupon.code, paid_user, USD_10, NOW)

    assert result.reason is CouponValidationReason.USER_LIMIT_REACHED


def test_validate_rejects_non_positive_amount(repository, coupon_engine, paid_user):
    _add(repository, make_coupon())

    result = coupon_engine.validate(repository, "SAVE20", paid_user, Money.zero("USD"), NOW)

    assert result.reason is CouponValidationReason.INVALID


def test_redeem_applies_discount_and_counts_usage(repository, coupon_engine, paid_user):
    coupon = _add(repository, make_coupon())

    result = coupon_engine.redeem(repository, "SAVE20", paid_user, USD_10, "pay_1", NOW)

    assert result.ok and not result.replayed
    assert result.usage.discount_amount == Money.of("2.00", "USD")
    assert result.usage.final_amount == Money.of("8.00", "USD")
    stored = repository.coupons[coupon.id]
    assert stored.current_usage_count == 1
    assert stored.version == coupon.version + 1
    assert len(repository.usages) == 1


def test_redeem_replay_returns_original_usage(repository, coupon_engine, paid_user):
    coupon = _add(repository, make_coupon())
    first = coupon_engine.redeem(repository, "SAVE20", paid_user, USD_10, "pay_1", NOW)

    second = coupon_engine.redeem(repository, "SAVE20", paid_user, USD_10, "pay_1", NOW)

    assert second.ok and second.replayed
    assert second.usage == first.usage
    assert repository.coupons[coupon.id].current_usage_count == 1


def test_redeem_below_minimum_leaves_coupon_untouched(repository, coupon_engine, paid_user):
    coupon = _add(repository, make_coupon(minimum=Money.of("5.00", "USD")))

    result = coupon_engine.redeem(repository, "SAVE20", paid_user, Money.of("3.00", "USD"), "pay_1", NOW)

    assert not result.ok
    assert result.reason is CouponValidationReason.BELOW_MINIMUM
    assert repository.coupons[coupon.id] == coupon
    assert repository.usages == {}


class ContendedRepository(InMemoryBillingRepository):
    """Another writer bumps the coupon before each of our first ``conflicts`` swaps."""

    def __init__(self, conflicts: int) -> None:
        super().__init__()
        self.conflicts = conflicts
        self.attempts = 0

    def increment_coupon_usage(self, coupon_id: str, expected_version: int) -> bool:
        self.attempts += 1
        if self.attempts <= self.conflicts:
            super().increment_coupon_usage(coupon_id, expected_version)
            return False
        return super().increment_coupon_usage(coupon_id, expected_version)


def test_redeem_retries_after_version_conflict(users):
    repository = ContendedRepository(conflicts=1)
    repository.plans.update({"plan_pro": make_plan()})
    repository.subscriptions["user-1"] = make_subscription("user-1")
    coupon = _add(repository, make_coupon())
    engine = CouponEngine(CouponEligibilityPolicy(users), max_attempts=3)

    result = engine.redeem(repository, "SAVE20", "user-1", USD_10, "pay_1", NOW)

    assert result.ok
    assert repository.attempts == 2
    assert repository.coupons[coupon.id].current_usage_count == 2


def test_redeem_raises_when_retries_are_exhausted(users):
    repository = ContendedRepository(conflicts=10)
    repository.plans.update({"plan_pro": make_plan()})
    repository.subscriptions["user-1"] = make_subscription("user-1")
    _add(repository, make_coupon())
    engine = CouponEngine(CouponEligibilityPolicy(users), max_attempts=3)

    with pytest.raises(CouponConcurrencyError) as excinfo:
        engine.redeem(repository, "SAVE20", "user-1", USD_10, "pay_1", NOW)

    assert excinfo.value.code == "CONCURRENT_USAGE_CONFLICT"
    assert excinfo.value.status_code == 409
    assert repository.attempts == 3
    assert repository.usages == {}


class RacingReplayRepository(InMemoryBillingRepository):
    """A concurrent replay inserts the same usage between our swap and insert."""

    def insert_coupon_usage(self, usage):
        winner = usage.model_copy(update={"id": "cu_winner"})
        super().insert_coupon_usage(winner)
        return super().insert_coupon_usage(usage)


def test_redeem_releases_increment_when_replay_wins_the_race(users):
    repository = RacingReplayRepository()
    repository.plans.update({"plan_pro": make_plan()})
    repository.subscriptions["user-1"] = make_subscription("user-1")
    coupon = _add(repository, make_coupon())
    engine = CouponEngine(CouponEligibilityPolicy(users))

    result = engine.redeem(repository, "SAVE20", "user-1", USD_10, "pay_1", NOW)

    assert result.ok and result.replayed
    assert result.usage.id == "cu_winner"
    assert repository.coupons[coupon.id].current_usage_count == 0


def test_concurrent_redemptions_never_exceed_usage_limit(repository, users):
    limit = 5
    attempts = 10 * limit
    user_ids = [f"user-{index}" for index in range(attempts)]
    coupon = _add(
        repository,
        make_coupon(category=RecipientCategory.SPECIFIC_USERS, max_usage_count=limit),
    )
    repository.add_coupon_recipients(coupon.id, user_ids)
    engine = CouponEngine(CouponEligibilityPolicy(users), max_attempts=attempts + 1)
    outcomes: List[object] = []
    outcomes_lock = threading.Lock()
    start = threading.Barrier(attempts)

    def worker(user_id: str) -> None:
        start.wait()
        try:
            outcome = engine.redeem(repository, "SAVE20", user_id, USD_10, f"pay_{user_id}", NOW)
        except CouponConcurrencyError as exc:
            outcome = exc
        with outcomes_lock:
            outcomes.append(outcome)

    threads = [threading.Thread(target=worker, args=(user_id,)) for user_id in user_ids]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    successes = [o for o in outcomes if not isinstance(o, Exception) and o.ok]
    rejected = [o for o in outcomes if not isinstance(o, Exception) and not o.ok]
    assert len(outcomes) == attempts
    assert len(successes) == limit
    assert all(o.reason is CouponValidationReason.USAGE_LIMIT_REACHED for o in rejected)
    stored = repository.coupons[coupon.id]
    assert stored.current_usage_count == limit
    assert len(repository.usages) == limit


class TestEligibility:
    def _policy(self, users):
        return CouponEligibilityPolicy(users)

    def test_free_tier_requires_ocr_activity(self, repository, users):
        users.add("busy", ocr_pages_used=25)
        users.add("idle", ocr_pages_used=5)
        coupon = make_coupon(category=RecipientCategory.FREE_TIER_ACTIVE)
        policy = self._policy(users)

        assert policy.is_eligible(repository, coupon, "busy", NOW)
        assert not policy.is_eligible(repository, coupon, "idle", NOW)

    def test_free_tier_excludes_paid_subscribers(self, repository, users):
        users.add("payer", ocr_pages_used=100)
        repository.subscriptions["payer"] = make_subscription("payer", external_id="sub_payer")
        coupon = make_coupon(category=RecipientCategory.FREE_TIER_ACTIVE)

        assert not self._policy(users).is_eligible(repository, coupon, "payer", NOW)

    def test_new_users_window(self, repository, users):
        users.add("fresh", registered_days_ago=5)
        users.add("veteran", registered_days_ago=60)
        coupon = make_coupon(category=RecipientCategory.NEW_USERS)
        policy = self._policy(users)

        assert policy.is_eligible(repository, coupon, "fresh", NOW)
        assert not policy.is_eligible(repository, coupon, "veteran", NOW)

    def test_expired_subscription_window(self, repository, users):
        repository.subscriptions["lapsed"] = make_subscription(
            "lapsed",
            external_id="sub_lapsed",
            status=SubscriptionStatus.CANCELED,
            current_period_end=NOW - timedelta(days=10),
        )
        repository.subscriptions["gone"] = make_subscription(
            "gone",
            external_id="sub_gone",
            status=SubscriptionStatus.CANCELED,
            current_period_end=NOW - timedelta(days=120),
        )
        coupon = make_coupon(category=RecipientCategory.EXPIRED_SUBSCRIPTION)
        policy = self._policy(users)

        assert policy.is_eligible(repository, coupon, "lapsed", NOW)
        assert not policy.is_eligible(repository, coupon, "gone", NOW)

    def test_high_activity_uses_plan_limit(self, repository, users):
        users.add("heavy", ocr_pages_used=300)
        users.add("light", ocr_pages_used=100)
        repository.subscriptions["heavy"] = make_subscription("heavy", external_id="sub_heavy")
        repository.subscriptions["light"] = make_subscription("light", external_id="sub_light")
        coupon = make_coupon(category=RecipientCategory.HIGH_ACTIVITY_USERS)
        policy = self._policy(users)

        assert policy.is_eligible(repository, coupon, "heavy", NOW)
        assert not policy.is_eligible(repository, coupon, "light", NOW)

    def test_plan_tier_categories(self, repository, users):
        repository.subscriptions["teamster"] = make_subscription(
            "teamster", plan_id="plan_team", external_id="sub_team"
        )
        policy = self._policy(users)

        assert policy.is_eligible(repository, make_coupon(category=RecipientCategory.TEAM_PLAN), "teamster", NOW)
        assert not policy.is_eligible(
            repository, make_coupon(category=RecipientCategory.INDIVIDUAL_PLAN), "teamster", NOW
        )

    def test_paused_subscribers_are_not_paid_users(self, repository, users):
        repository.subscriptions["paused"] = make_subscription(
            "paused", external_id="sub_paused", status=SubscriptionStatus.PAUSED
        )
        coupon = make_coupon(category=RecipientCategory.ALL_PAID_USERS)

        assert not self._policy(users).is_eligible(repository, coupon, "paused", NOW)


def test_code_generator_formats():
    generator = CouponCodeGenerator()

    assert re.fullmatch(r"SPRING-[A-HJ-NP-Z2-9]{8}", generator.generate(" spring "))
    assert re.fullmatch(r"[A-HJ-NP-Z2-9]{8}", generator.generate())
    assert generator.is_valid_custom_code("LAUNCH-2024")
    assert not generator.is_valid_custom_code("abc")
    assert not generator.is_valid_custom_code("BAD CODE!")


def test_mint_coupons_copies_template_policy(repository, coupon_engine):
    template = coupon_engine.create_template(
        repository,
        name="Spring promo",
        discount_percentage=Decimal("15"),
        validity_days=30,
        max_usage_count=100,
    )

    coupons = coupon_engine.mint_coupons(repository, template.id, NOW, quantity=3, prefix="spring")

    assert len({coupon.code for coupon in coupons}) == 3
    for coupon in coupons:
        assert coupon.code.startswith("SPRING-")
        assert coupon.template_id == template.id
        assert coupon.discount_percentage == Decimal("15")
        assert coupon.max_usage_count == 100
        assert coupon.valid_until - coupon.valid_from == timedelta(days=30)
        assert repository.coupons[coupon.id] == coupon


def test_mint_custom_code_and_duplicate(repository, coupon_engine):
    template = coupon_engine.create_template(
        repository, name="Launch", discount_percentage=Decimal("50"), validity_days=7
    )

    [coupon] = coupon_engine.mint_coupons(repository, template.id, NOW, custom_code="launch-2024")

    assert coupon.code == "LAUNCH-2024"
    with pytest.raises(DuplicateRecordError):
        coupon_engine.mint_coupons(repository, template.id, NOW, custom_code="LAUNCH-2024")
    with pytest.raises(ValueError):
        coupon_engine.mint_coupons(repository, template.id, NOW, custom_code="x")


def test_mint_records_specific_recipients(repository, coupon_engine):
    template = coupon_engine.create_template(
        repository,
        name="VIP",
        discount_percentage=Decimal("30"),
        validity_days=14,
        recipient_category=RecipientCategory.SPECIFIC_USERS,
    )

    [coupon] = coupon_engine.mint_coupons(repository, template.id, NOW, recipients=["vip-1", "vip-2"])

    assert repository.is_coupon_recipient(coupon.id, "vip-1")
    assert not repository.is_coupon_recipient(coupon.id, "someone-else")


def test_mint_rejects_missing_or_inactive_template(repository, coupon_engine):
    with pytest.raises(NotFoundError):
        coupon_engine.mint_coupons(repository, "ctpl_missing", NOW)

    template = coupon_engine.create_template(
        repository, name="Old", discount_percentage=Decimal("10"), validity_days=1
    )
    repository.templates[template.id] = template.model_copy(update={"is_active": False})
    with pytest.raises(BillingError) as excinfo:
        coupon_engine.mint_coupons(repository, template.id, NOW)
    assert excinfo.value.code == "TEMPLATE_INACTIVE"


def test_expire_coupons_deactivates_only_past_validity(repository, coupon_engine):
    past = _add(
        repository,
        make_coupon(
            "OLD10",
            coupon_id="cpn_old",
            valid_from=NOW - timedelta(days=30),
            valid_until=NOW - timedelta(days=1),
        ),
    )
    current = _add(repository, make_coupon())

    assert coupon_engine.expire_coupons(repository, NOW) == 1
    assert repository.coupons[past.id].is_active is False
    assert repository.coupons[current.id].is_active is True
    assert coupon_engine.expire_coupons(repository, NOW) == 0
