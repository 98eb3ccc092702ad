"""Coupon validation, redemption and administration."""
from __future__ import annotations

import logging
import re
import secrets
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable, List, Optional, Protocol, Sequence
from uuid import uuid4

from .exceptions import BillingError, CouponConcurrencyError, DuplicateRecordError, NotFoundError
from .models import (
    BillingUserProfile,
    Coupon,
    CouponTemplate,
    CouponUsage,
    CouponValidationReason,
    PlanTier,
    RecipientCategory,
    RedemptionResult,
    SubscriptionPlan,
    UserSubscription,
    ValidationResult,
)
from .money import Money
from .repository import BillingRepository

logger = logging.getLogger("billing")

NEW_USER_WINDOW = timedelta(days=30)
EXPIRED_SUBSCRIPTION_WINDOW = timedelta(days=90)
FREE_TIER_MIN_OCR_PAGES = 20
HIGH_ACTIVITY_RATIO = Decimal("0.5")

_TIERS = {
    RecipientCategory.INDIVIDUAL_PLAN: PlanTier.INDIVIDUAL,
    RecipientCategory.TEAM_PLAN: PlanTier.TEAM,
    RecipientCategory.ENTERPRISE_PLAN: PlanTier.ENTERPRISE,
}


class UserDirectory(Protocol):
    """Read-only access to the user facts coupon targeting needs."""

    def get_profile(self, user_id: str) -> Optional[BillingUserProfile]:
        ...


class CouponEligibilityPolicy:
    """Decides whether a user falls inside a coupon's recipient category."""

    def __init__(self, users: UserDirectory) -> None:
        self._users = users

    def is_eligible(
        self,
        repository: BillingRepository,
        coupon: Coupon,
        user_id: str,
        now: datetime,
    ) -> bool:
        category = coupon.recipient_category
        if category is RecipientCategory.SPECIFIC_USERS:
            return repository.is_coupon_recipient(coupon.id, user_id)

        if category is RecipientCategory.NEW_USERS:
            profile = self._users.get_profile(user_id)
            return bool(profile and profile.created_at and profile.created_at >= now - NEW_USER_WINDOW)

        subscription = repository.get_subscription_by_user(user_id)
        plan = repository.get_plan(subscription.plan_id) if subscription else None

        if category is RecipientCategory.ALL_PAID_USERS:
            return self._on_active_plan(subscription, plan) and plan.name.tier is not PlanTier.FREE
        if category in _TIERS:
            return self._on_active_plan(subscription, plan) and plan.name.tier is _TIERS[category]
        if category is RecipientCategory.FREE_TIER_ACTIVE:
            on_free_tier = subscription is None or (
                self._on_active_plan(subscription, plan) and plan.name.tier is PlanTier.FREE
            )
            profile = self._users.get_profile(user_id)
            return on_free_tier and bool(profile and profile.ocr_pages_used >= FREE_TIER_MIN_OCR_PAGES)
        if category is RecipientCategory.EXPIRED_SUBSCRIPTION:
            if subscription is None or subscription.is_active or subscription.current_period_end is None:
                return False
            return now - EXPIRED_SUBSCRIPTION_WINDOW <= subscription.current_period_end <= now
        if category is RecipientCategory.HIGH_ACTIVITY_USERS:
            if not self._on_active_plan(subscription, plan) or plan.ocr_page_limit <= 0:
                return False
            profile = self._users.get_profile(user_id)
            return bool(profile and profile.ocr_pages_used > plan.ocr_page_limit * HIGH_ACTIVITY_RATIO)
        return False

    @staticmethod
    def _on_active_plan(subscription: Optional[UserSubscription], plan: Optional[SubscriptionPlan]) -> bool:
        return subscription is not None and plan is not None and subscription.is_active


class CouponCodeGenerator:
    """Random codes from an alphabet without look-alike characters."""

    ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
    CUSTOM_CODE = re.compile(r"^[A-Za-z0-9-]{6,50}$")

    def __init__(self, length: int = 8) -> None:
        self._length = length

    def generate(self, prefix: Optional[str] = None) -> str:
        body = "".join(secrets.choice(self.ALPHABET) for _ in range(self._length))
        if prefix and prefix.strip():
            return f"{prefix.strip().upper()}-{body}"
        return body

    def is_valid_custom_code(self, code: Optional[str]) -> bool:
        return bool(code and self.CUSTOM_CODE.match(code))


class CouponEngine:
    """Validates and redeems coupons using optimistic concurrency on the row version."""

    def __init__(
        self,
        eligibility: CouponEligibilityPolicy,
        *,
        max_attempts: int = 3,
        codes: Optional[CouponCodeGenerator] = None,
        id_factory: Optional[Callable[[str], str]] = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self._eligibility = eligibility
        self._max_attempts = max_attempts
        self._codes = codes or CouponCodeGenerator()
        self._id_factory = id_factory or (lambda prefix: f"{prefix}_{uuid4().hex}")

    def validate(
        self,
        repository: BillingRepository,
        code: str,
        user_id: str,
        amount: Money,
        now: datetime,
    ) -> ValidationResult:
        coupon = repository.get_coupon_by_code(code)
        if coupon is None:
            return ValidationResult.invalid(CouponValidationReason.NOT_FOUND, f"Coupon {code!r} does not exist")
        return self._check(repository, coupon, user_id, amount, now)

    def _check(
        self,
        repository: BillingRepository,
        coupon: Coupon,
        user_id: str,
        amount: Money,
        now: datetime,
    ) -> ValidationResult:
        if not coupon.is_active:
            return ValidationResult.invalid(CouponValidationReason.INVALID, "Coupon is not active")
        if now < coupon.valid_from:
            return ValidationResult.invalid(CouponValidationReason.INVALID, "Coupon is not valid yet")
        if now > coupon.valid_until:
            return ValidationResult.invalid(CouponValidationReason.EXPIRED, "Coupon has expired")
        if amount.amount <= 0:
            return ValidationResult.invalid(CouponValidationReason.INVALID, "Purchase amount must be positive")
        minimum = coupon.min_purchase_amount
        if minimum is not None:
            if minimum.currency != amount.currency:
                return ValidationResult.invalid(
                    CouponValidationReason.INVALID,
                    f"Coupon applies to {minimum.currency} purchases only",
                )
            if amount < minimum:
                return ValidationResult.invalid(
                    CouponValidationReason.BELOW_MINIMUM,
                    f"Minimum purchase amount is {minimum}",
                )
        if coupon.has_reached_usage_limit:
            return ValidationResult.invalid(
                CouponValidationReason.USAGE_LIMIT_REACHED, "Coupon usage limit has been reached"
            )
        if coupon.max_usage_per_user is not None:
            used = repository.count_coupon_usages(coupon.id, user_id)
            if used >= coupon.max_usage_per_user:
                return ValidationResult.invalid(
                    CouponValidationReason.USER_LIMIT_REACHED,
                    "You have already used this coupon the maximum number of times",
                )
        if not self._eligibility.is_eligible(repository, coupon, user_id, now):
            return ValidationResult.invalid(
                CouponValidationReason.NOT_ELIGIBLE, "You are not eligible for this coupon"
            )
        return ValidationResult.valid(coupon)

    def redeem(
        self,
        repository: BillingRepository,
        code: str,
        user_id: str,
        amount: Money,
        payment_reference: str,
        now: datetime,
    ) -> RedemptionResult:
        """Record one use of ``code``; replays of the same payment return the original usage."""

        if not payment_reference:
            raise ValueError("payment_reference is required")

        for attempt in range(1, self._max_attempts + 1):
            coupon = repository.get_coupon_by_code(code)
            if coupon is None:
                return RedemptionResult.rejected(
                    ValidationResult.invalid(CouponValidationReason.NOT_FOUND, f"Coupon {code!r} does not exist")
                )

            existing = repository.get_coupon_usage(coupon.id, user_id, payment_reference)
            if existing is not None:
                return RedemptionResult.redeemed(existing, replayed=True)

            validation = self._check(repository, coupon, user_id, amount, now)
            if not validation.ok:
                return RedemptionResult.rejected(validation)

            discount = amount.percentage(coupon.discount_percentage)
            final = amount - discount

            if not repository.increment_coupon_usage(coupon.id, coupon.version):
                logger.debug(
                    "Coupon %s version %s moved, retrying (attempt %s/%s)",
                    coupon.code,
                    coupon.version,
                    attempt,
                    self._max_attempts,
                )
                continue

            usage = CouponUsage(
                id=self._id_factory("cu"),
                coupon_id=coupon.id,
                user_id=user_id,
                original_amount=amount,
                discount_amount=discount,
                final_amount=final,
                payment_reference=payment_reference,
                used_at=now,
            )
            stored = repository.insert_coupon_usage(usage)
            if stored is None:
                # A concurrent replay won the unique key; undo our increment.
                repository.release_coupon_usage(coupon.id)
                winner = repository.get_coupon_usage(coupon.id, user_id, payment_reference)
                if winner is None:
                    raise DuplicateRecordError(message="Coupon usage conflict could not be resolved")
                return RedemptionResult.redeemed(winner, replayed=True)

            logger.info(
                "Coupon %s redeemed by user %s: %s off %s",
                coupon.code,
                user_id,
                discount,
                amount,
                extra={"coupon_id": coupon.id, "payment_reference": payment_reference},
            )
            return RedemptionResult.redeemed(stored)

        logger.warning(
            "Coupon %s redemption gave up after %s attempts",
            code,
            self._max_attempts,
            extra={"payment_reference": payment_reference},
        )
        raise CouponConcurrencyError(detail={"code": code.strip().upper(), "attempts": self._max_attempts})

    def create_template(
        self,
        repository: BillingRepository,
        *,
        name: str,
        discount_percentage: Decimal,
        validity_days: int,
        recipient_category: RecipientCategory = RecipientCategory.ALL_PAID_USERS,
        min_purchase_amount: Optional[Money] = None,
        max_usage_count: Optional[int] = None,
        max_usage_per_user: Optional[int] = None,
    ) -> CouponTemplate:
        template = CouponTemplate(
            id=self._id_factory("ctpl"),
            name=name,
            discount_percentage=discount_percentage,
            min_purchase_amount=min_purchase_amount,
            recipient_category=recipient_category,
            max_usage_count=max_usage_count,
            max_usage_per_user=max_usage_per_user,
            validity_days=validity_days,
        )
        return repository.insert_coupon_template(template)

    def mint_coupons(
        self,
        repository: BillingRepository,
        template_id: str,
        now: datetime,
        *,
        quantity: int = 1,
        custom_code: Optional[str] = None,
        prefix: Optional[str] = None,
        recipients: Sequence[str] = (),
    ) -> List[Coupon]:
        """Create coupons from a template, copying its redemption policy."""

        if quantity < 1:
            raise ValueError("quantity must be >= 1")
        if custom_code is not None:
            if quantity != 1:
                raise ValueError("custom_code can only mint a single coupon")
            if not self._codes.is_valid_custom_code(custom_code):
                raise ValueError("custom_code must be 6-50 letters, digits or dashes")

        template = repository.get_coupon_template(template_id)
        if template is None:
            raise NotFoundError(message="Coupon template not found", detail={"template_id": template_id})
        if not template.is_active:
            raise BillingError(code="TEMPLATE_INACTIVE", message="Coupon template is inactive", status_code=409)

        valid_from = now.astimezone(timezone.utc)
        minted: List[Coupon] = []
        for _ in range(quantity):
            coupon = self._insert_unique(repository, template, valid_from, custom_code, prefix)
            if template.recipient_category is RecipientCategory.SPECIFIC_USERS and recipients:
                repository.add_coupon_recipients(coupon.id, list(recipients))
            minted.append(coupon)
        logger.info("Minted %s coupon(s) from template %s", len(minted), template.id)
        return minted

    def _insert_unique(
        self,
        repository: BillingRepository,
        template: CouponTemplate,
        valid_from: datetime,
        custom_code: Optional[str],
        prefix: Optional[str],
    ) -> Coupon:
        for _ in range(5):
            code = custom_code or self._codes.generate(prefix)
            coupon = Coupon(
                id=self._id_factory("cpn"),
                code=code,
                template_id=template.id,
                discount_percentage=template.discount_percentage,
                min_purchase_amount=template.min_purchase_amount,
                recipient_category=template.recipient_category,
                max_usage_count=template.max_usage_count,
                max_usage_per_user=template.max_usage_per_user,
                valid_from=valid_from,
                valid_until=valid_from + timedelta(days=template.validity_days),
            )
            stored = repository.insert_coupon(coupon)
            if stored is not None:
                return stored
            if custom_code:
                raise DuplicateRecordError(message=f"Coupon code {coupon.code} already exists")
        raise DuplicateRecordError(message="Could not generate a unique coupon code")

    def expire_coupons(self, repository: BillingRepository, now: datetime) -> int:
        expired = repository.deactivate_expired_coupons(now)
        if expired:
            logger.info("Deactivated %s expired coupon(s)", expired)
        return expired


__all__ = [
    "CouponCodeGenerator",
    "CouponEligibilityPolicy",
    "CouponEngine",
    "UserDirectory",
]
