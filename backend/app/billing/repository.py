"""Persistence layer for billing domain objects."""
from __future__ import annotations

from contextlib import contextmanager
import time
from datetime import datetime
from decimal import Decimal
from typing import Callable, ContextManager, Iterable, Iterator, Optional, Protocol, Sequence

import psycopg2
import psycopg2.errors
import psycopg2.extras
from psycopg2.extensions import connection as PgConnection
from psycopg2.extensions import cursor as PgCursor

from backend.app_context import get_conn

from .exceptions import DuplicateRecordError, TransientProcessingError
from .models import (
    BillingInterval,
    BillingUserProfile,
    Coupon,
    CouponTemplate,
    CouponUsage,
    GatewayRefKind,
    IntervalUnit,
    PaymentGateway,
    PaymentGatewayRef,
    PlanName,
    Receipt,
    RecipientCategory,
    SubscriptionPlan,
    SubscriptionStatus,
    UserSubscription,
    WebhookEvent,
)
from .money import Money


class BillingRepository(Protocol):
    """Persistence operations required by the billing core.

    Every method runs inside the caller's transaction; nothing commits on its own.
    """

    def record_webhook_event(self, event: WebhookEvent) -> bool:
        """Claim ``(provider, external_event_id)``; ``False`` when already claimed."""

    def get_plan(self, plan_id: str) -> Optional[SubscriptionPlan]:
        ...

    def get_plan_by_provider_code(self, provider: PaymentGateway, code: str) -> Optional[SubscriptionPlan]:
        ...

    def get_subscription_by_user(self, user_id: str) -> Optional[UserSubscription]:
        ...

    def get_subscription_by_gateway_ref(self, provider: PaymentGateway, external_id: str) -> Optional[UserSubscription]:
        ...

    def save_subscription(self, subscription: UserSubscription) -> UserSubscription:
        ...

    def get_coupon_by_code(self, code: str) -> Optional[Coupon]:
        ...

    def increment_coupon_usage(self, coupon_id: str, expected_version: int) -> bool:
        """Compare-and-swap increment; ``False`` when the version moved."""

    def release_coupon_usage(self, coupon_id: str) -> None:
        ...

    def count_coupon_usages(self, coupon_id: str, user_id: str) -> int:
        ...

    def get_coupon_usage(self, coupon_id: str, user_id: str, payment_reference: str) -> Optional[CouponUsage]:
        ...

    def insert_coupon_usage(self, usage: CouponUsage) -> Optional[CouponUsage]:
        """Insert a usage row; ``None`` when the idempotency key already exists."""

    def is_coupon_recipient(self, coupon_id: str, user_id: str) -> bool:
        ...

    def add_coupon_recipients(self, coupon_id: str, user_ids: Sequence[str]) -> None:
        ...

    def insert_coupon_template(self, template: CouponTemplate) -> CouponTemplate:
        ...

    def get_coupon_template(self, template_id: str) -> Optional[CouponTemplate]:
        ...

    def insert_coupon(self, coupon: Coupon) -> Optional[Coupon]:
        """Insert a coupon; ``None`` when the code is already taken."""

    def deactivate_expired_coupons(self, now: datetime) -> int:
        ...

    def get_receipt(self, provider: PaymentGateway, external_payment_id: str) -> Optional[Receipt]:
        ...

    def get_receipt_by_number(self, receipt_number: str) -> Optional[Receipt]:
        ...

    def insert_receipt(self, receipt: Receipt) -> Optional[Receipt]:
        """Insert a receipt; ``None`` when the payment already has one."""

    def next_receipt_sequence(self) -> int:
        ...


class BillingStore(Protocol):
    """Hands out repositories bound to one database transaction."""

    def transaction(self) -> ContextManager[BillingRepository]:
        ...


@contextmanager
def managed_connection(conn: Optional[PgConnection] = None):
    """Context manager that manages transaction boundaries for optional connections."""

    if conn is not None:
        yield conn, False
        return

    connection = get_conn()
    try:
        yield connection, True
        connection.commit()
    except Exception:
        connection.rollback()
        raise
    finally:
        connection.close()


def _money(amount: Optional[Decimal], currency: Optional[str]) -> Optional[Money]:
    if amount is None or not currency:
        return None
    return Money(amount=amount, currency=currency)


def _row_to_plan(row: dict) -> SubscriptionPlan:
    codes = row.get("provider_plan_codes") or {}
    return SubscriptionPlan(
        id=row["id"],
        name=PlanName(row["name"]),
        price=Money(amount=row["price_amount"], currency=row["currency"]),
        billing_interval=BillingInterval(
            unit=IntervalUnit(row["interval_unit"]), value=int(row["interval_value"])
        ),
        document_upload_limit=int(row["document_upload_limit"]),
        ocr_page_limit=int(row["ocr_page_limit"]),
        provider_plan_codes={PaymentGateway(key): value for key, value in codes.items()},
        is_active=bool(row["is_active"]),
    )


def _row_to_subscription(row: dict) -> UserSubscription:
    return UserSubscription(
        id=row["id"],
        user_id=row["user_id"],
        plan_id=row["plan_id"],
        gateway_ref=PaymentGatewayRef(
            provider=PaymentGateway(row["provider"]),
            external_id=row["external_id"],
            kind=GatewayRefKind(row["ref_kind"]),
        ),
        status=SubscriptionStatus(row["status"]),
        current_period_end=row.get("current_period_end"),
        last_event_at=row.get("last_event_at"),
        payment_retry_pending=bool(row.get("payment_retry_pending")),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_template(row: dict) -> CouponTemplate:
    return CouponTemplate(
        id=row["id"],
        name=row["name"],
        discount_percentage=row["discount_percentage"],
        min_purchase_amount=_money(row.get("min_purchase_amount"), row.get("min_purchase_currency")),
        recipient_category=RecipientCategory(row["recipient_category"]),
        max_usage_count=row.get("max_usage_count"),
        max_usage_per_user=row.get("max_usage_per_user"),
        validity_days=int(row["validity_days"]),
        is_active=bool(row["is_active"]),
        created_at=row["created_at"],
    )


def _row_to_coupon(row: dict) -> Coupon:
    return Coupon(
        id=row["id"],
        code=row["code"],
        template_id=row.get("template_id"),
        discount_percentage=row["discount_percentage"],
        min_purchase_amount=_money(row.get("min_purchase_amount"), row.get("min_purchase_currency")),
        recipient_category=RecipientCategory(row["recipient_category"]),
        max_usage_count=row.get("max_usage_count"),
        max_usage_per_user=row.get("max_usage_per_user"),
        current_usage_count=int(row["current_usage_count"]),
        version=int(row["version"]),
        valid_from=row["valid_from"],
        valid_until=row["valid_until"],
        is_active=bool(row["is_active"]),
    )


def _row_to_usage(row: dict) -> CouponUsage:
    currency = row["currency"]
    return CouponUsage(
        id=row["id"],
        coupon_id=row["coupon_id"],
        user_id=row["user_id"],
        original_amount=Money(amount=row["original_amount"], currency=currency),
        discount_amount=Money(amount=row["discount_amount"], currency=currency),
        final_amount=Money(amount=row["final_amount"], currency=currency),
        payment_reference=row["payment_reference"],
        used_at=row["used_at"],
    )


def _row_to_receipt(row: dict) -> Receipt:
    return Receipt(
        id=row["id"],
        user_id=row["user_id"],
        receipt_number=row["receipt_number"],
        provider=PaymentGateway(row["provider"]),
        external_payment_id=row["external_payment_id"],
        amount=Money(amount=row["amount"], currency=row["currency"]),
        paid_at=row["paid_at"],
        description=row.get("description"),
        created_at=row["created_at"],
    )


class PostgresBillingRepository:
    """Concrete repository persisting billing models in PostgreSQL."""

    def __init__(self, *, conn: Optional[PgConnection] = None) -> None:
        self._conn = conn

    @contextmanager
    def _cursor(self) -> Iterable[PgCursor]:
        with managed_connection(self._conn) as (connection, managed):
            cursor = connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
            try:
                yield cursor
                if managed:
                    connection.commit()
            except Exception:
                if managed:
                    connection.rollback()
                raise
            finally:
                cursor.close()

    def record_webhook_event(self, event: WebhookEvent) -> bool:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO billing_webhook_events (
                    dedup_key,
                    provider,
                    external_event_id,
                    event_type,
                    payload,
                    received_at,
                    recorded_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (dedup_key) DO NOTHING
                """,
                (
                    event.dedup_key.digest(),
                    event.provider.value,
                    event.external_event_id,
                    event.event_type.value,
                    psycopg2.extras.Json(event.payload),
                    event.received_at,
                    event.recorded_at,
                ),
            )
            return cursor.rowcount > 0

    def get_plan(self, plan_id: str) -> Optional[SubscriptionPlan]:
        with self._cursor() as cursor:
            cursor.execute("SELECT * FROM billing_plans WHERE id = %s LIMIT 1", (plan_id,))
            row = cursor.fetchone()
            return _row_to_plan(row) if row else None

    def get_plan_by_provider_code(self, provider: PaymentGateway, code: str) -> Optional[SubscriptionPlan]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_plans
                WHERE provider_plan_codes ->> %s = %s
                LIMIT 1
                """,
                (provider.value, code),
            )
            row = cursor.fetchone()
            return _row_to_plan(row) if row else None

    def get_subscription_by_user(self, user_id: str) -> Optional[UserSubscription]:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT * FROM billing_user_subscriptions WHERE user_id = %s LIMIT 1 FOR UPDATE",
                (user_id,),
            )
            row = cursor.fetchone()
            return _row_to_subscription(row) if row else None

    def get_subscription_by_gateway_ref(self, provider: PaymentGateway, external_id: str) -> Optional[UserSubscription]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_user_subscriptions
                WHERE provider = %s AND external_id = %s
                LIMIT 1
                FOR UPDATE
                """,
                (provider.value, external_id),
            )
            row = cursor.fetchone()
            return _row_to_subscription(row) if row else None

    def save_subscription(self, subscription: UserSubscription) -> UserSubscription:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO billing_user_subscriptions (
                    id,
                    user_id,
                    plan_id,
                    provider,
                    external_id,
                    ref_kind,
                    status,
                    current_period_end,
                    last_event_at,
                    payment_retry_pending,
                    created_at
                )
                VALUES (%(id)s, %(user_id)s, %(plan_id)s, %(provider)s, %(external_id)s,
                        %(ref_kind)s, %(status)s, %(current_period_end)s, %(last_event_at)s,
                        %(payment_retry_pending)s, %(created_at)s)
                ON CONFLICT (user_id) DO UPDATE SET
                    plan_id = EXCLUDED.plan_id,
                    provider = EXCLUDED.provider,
                    external_id = EXCLUDED.external_id,
                    ref_kind = EXCLUDED.ref_kind,
                    status = EXCLUDED.status,
                    current_period_end = EXCLUDED.current_period_end,
                    last_event_at = EXCLUDED.last_event_at,
                    payment_retry_pending = EXCLUDED.payment_retry_pending,
                    created_at = EXCLUDED.created_at,
                    updated_at = NOW()
                RETURNING *
                """,
                {
                    "id": subscription.id,
                    "user_id": subscription.user_id,
                    "plan_id": subscription.plan_id,
                    "provider": subscription.gateway_ref.provider.value,
                    "external_id": subscription.gateway_ref.external_id,
                    "ref_kind": subscription.gateway_ref.kind.value,
                    "status": subscription.status.value,
                    "current_period_end": subscription.current_period_end,
                    "last_event_at": subscription.last_event_at,
                    "payment_retry_pending": subscription.payment_retry_pending,
                    "created_at": subscription.created_at,
                },
            )
            row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to persist subscription")
            return _row_to_subscription(row)

    def get_coupon_by_code(self, code: str) -> Optional[Coupon]:
        with self._cursor() as cursor:
            cursor.execute("SELECT * FROM billing_coupons WHERE code = %s LIMIT 1", (code.strip().upper(),))
            row = cursor.fetchone()
            return _row_to_coupon(row) if row else None

    def increment_coupon_usage(self, coupon_id: str, expected_version: int) -> bool:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE billing_coupons
                SET current_usage_count = current_usage_count + 1,
                    version = version + 1,
                    updated_at = NOW()
                WHERE id = %s
                  AND version = %s
                  AND (max_usage_count IS NULL OR current_usage_count < max_usage_count)
                """,
                (coupon_id, expected_version),
            )
            return cursor.rowcount == 1

    def release_coupon_usage(self, coupon_id: str) -> None:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE billing_coupons
                SET current_usage_count = GREATEST(current_usage_count - 1, 0),
                    version = version + 1,
                    updated_at = NOW()
                WHERE id = %s
                """,
                (coupon_id,),
            )

    def count_coupon_usages(self, coupon_id: str, user_id: str) -> int:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT COUNT(*) AS total FROM billing_coupon_usages WHERE coupon_id = %s AND user_id = %s",
                (coupon_id, user_id),
            )
            row = cursor.fetchone()
            return int(row["total"]) if row else 0

    def get_coupon_usage(self, coupon_id: str, user_id: str, payment_reference: str) -> Optional[CouponUsage]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_coupon_usages
                WHERE coupon_id = %s AND user_id = %s AND payment_reference = %s
                LIMIT 1
                """,
                (coupon_id, user_id, payment_reference),
            )
            row = cursor.fetchone()
            return _row_to_usage(row) if row else None

    def insert_coupon_usage(self, usage: CouponUsage) -> Optional[CouponUsage]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO billing_coupon_usages (
                    id,
                    coupon_id,
                    user_id,
                    original_amount,
                    discount_amount,
                    final_amount,
                    currency,
                    payment_reference,
                    used_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (coupon_id, user_id, payment_reference) DO NOTHING
                RETURNING *
                """,
                (
                    usage.id,
                    usage.coupon_id,
                    usage.user_id,
                    usage.original_amount.amount,
                    usage.discount_amount.amount,
                    usage.final_amount.amount,
                    usage.original_amount.currency,
                    usage.payment_reference,
                    usage.used_at,
                ),
            )
            row = cursor.fetchone()
            return _row_to_usage(row) if row else None

    def is_coupon_recipient(self, coupon_id: str, user_id: str) -> bool:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT 1 FROM billing_coupon_recipients WHERE coupon_id = %s AND user_id = %s",
                (coupon_id, user_id),
            )
            return cursor.fetchone() is not None

    def add_coupon_recipients(self, coupon_id: str, user_ids: Sequence[str]) -> None:
        if not user_ids:
            return
        with self._cursor() as cursor:
            psycopg2.extras.execute_values(
                cursor,
                """
                INSERT INTO billing_coupon_recipients (coupon_id, user_id)
                VALUES %s
                ON CONFLICT DO NOTHING
                """,
                [(coupon_id, user_id) for user_id in user_ids],
            )

    def insert_coupon_template(self, template: CouponTemplate) -> CouponTemplate:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO billing_coupon_templates (
                    id,
                    name,
                    discount_percentage,
                    min_purchase_amount,
                    min_purchase_currency,
                    recipient_category,
                    max_usage_count,
                    max_usage_per_user,
                    validity_days,
                    is_active,
                    created_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    template.id,
                    template.name,
                    template.discount_percentage,
                    template.min_purchase_amount.amount if template.min_purchase_amount else None,
                    template.min_purchase_amount.currency if template.min_purchase_amount else None,
                    template.recipient_category.value,
                    template.max_usage_count,
                    template.max_usage_per_user,
                    template.validity_days,
                    template.is_active,
                    template.created_at,
                ),
            )
            row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to persist coupon template")
            return _row_to_template(row)

    def get_coupon_template(self, template_id: str) -> Optional[CouponTemplate]:
        with self._cursor() as cursor:
            cursor.execute("SELECT * FROM billing_coupon_templates WHERE id = %s LIMIT 1", (template_id,))
            row = cursor.fetchone()
            return _row_to_template(row) if row else None

    def insert_coupon(self, coupon: Coupon) -> Optional[Coupon]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO billing_coupons (
                    id,
                    code,
                    template_id,
                    discount_percentage,
                    min_purchase_amount,
                    min_purchase_currency,
                    recipient_category,
                    max_usage_count,
                    max_usage_per_user,
                    current_usage_count,
                    version,
                    valid_from,
                    valid_until,
                    is_active
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (code) DO NOTHING
                RETURNING *
                """,
                (
                    coupon.id,
                    coupon.code,
                    coupon.template_id,
                    coupon.discount_percentage,
                    coupon.min_purchase_amount.amount if coupon.min_purchase_amount else None,
                    coupon.min_purchase_amount.currency if coupon.min_purchase_amount else None,
                    coupon.recipient_category.value,
                    coupon.max_usage_count,
                    coupon.max_usage_per_user,
                    coupon.current_usage_count,
                    coupon.version,
                    coupon.valid_from,
                    coupon.valid_until,
                    coupon.is_active,
                ),
            )
            row = cursor.fetchone()
            return _row_to_coupon(row) if row else None

    def deactivate_expired_coupons(self, now: datetime) -> int:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE billing_coupons
                SET is_active = FALSE, version = version + 1, updated_at = NOW()
                WHERE is_active AND valid_until < %s
                """,
                (now,),
            )
            return cursor.rowcount

    def get_receipt(self, provider: PaymentGateway, external_payment_id: str) -> Optional[Receipt]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_receipts
                WHERE provider = %s AND external_payment_id = %s
                LIMIT 1
                """,
                (provider.value, external_payment_id),
            )
            row = cursor.fetchone()
            return _row_to_receipt(row) if row else None

    def get_receipt_by_number(self, receipt_number: str) -> Optional[Receipt]:
        with self._cursor() as cursor:
            cursor.execute("SELECT * FROM billing_receipts WHERE receipt_number = %s LIMIT 1", (receipt_number,))
            row = cursor.fetchone()
            return _row_to_receipt(row) if row else None

    def insert_receipt(self, receipt: Receipt) -> Optional[Receipt]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO billing_receipts (
                    id,
                    user_id,
                    receipt_number,
                    provider,
                    external_payment_id,
                    amount,
                    currency,
                    paid_at,
                    description,
                    created_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (provider, external_payment_id) DO NOTHING
                RETURNING *
                """,
                (
                    receipt.id,
                    receipt.user_id,
                    receipt.receipt_number,
                    receipt.provider.value,
                    receipt.external_payment_id,
                    receipt.amount.amount,
                    receipt.amount.currency,
                    receipt.paid_at,
                    receipt.description,
                    receipt.created_at,
                ),
            )
            row = cursor.fetchone()
            return _row_to_receipt(row) if row else None

    def next_receipt_sequence(self) -> int:
        with self._cursor() as cursor:
            cursor.execute("SELECT nextval('billing_receipt_number_seq') AS value")
            row = cursor.fetchone()
            return int(row["value"])


class PostgresUserDirectory:
    """Reads coupon targeting facts from ``billing_user_profiles``."""

    def __init__(self, *, conn: Optional[PgConnection] = None) -> None:
        self._conn = conn

    def get_profile(self, user_id: str) -> Optional[BillingUserProfile]:
        with managed_connection(self._conn) as (connection, _managed):
            with connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cursor:
                cursor.execute(
                    "SELECT user_id, registered_at, ocr_pages_used FROM billing_user_profiles WHERE user_id = %s",
                    (user_id,),
                )
                row = cursor.fetchone()
        if not row:
            return None
        return BillingUserProfile(
            user_id=row["user_id"],
            created_at=row.get("registered_at"),
            ocr_pages_used=int(row["ocr_pages_used"]),
        )


class PostgresBillingStore:
    """Opens one PostgreSQL transaction per unit of billing work."""

    def __init__(
        self,
        *,
        statement_timeout_ms: int = 5000,
        transaction_timeout_ms: int = 15000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._statement_timeout_ms = statement_timeout_ms
        self._transaction_timeout_ms = max(transaction_timeout_ms, statement_timeout_ms)
        self._clock = clock

    @contextmanager
    def transaction(self) -> Iterator[PostgresBillingRepository]:
        try:
            with managed_connection() as (connection, _managed):
                with connection.cursor() as cursor:
                    cursor.execute("SET LOCAL statement_timeout = %s", (self._statement_timeout_ms,))
                    cursor.execute(
                        "SET LOCAL idle_in_transaction_session_timeout = %s", (self._transaction_timeout_ms,)
                    )
                started = self._clock()
                yield PostgresBillingRepository(conn=connection)
                elapsed_ms = int((self._clock() - started) * 1000)
                if elapsed_ms > self._transaction_timeout_ms:
                    # Rolled back; a webhook stays unclaimed and is redelivered.
                    raise TransientProcessingError(
                        message="Billing transaction exceeded its time budget",
                        detail={"elapsed_ms": elapsed_ms, "budget_ms": self._transaction_timeout_ms},
                    )
        except psycopg2.errors.UniqueViolation as exc:
            raise DuplicateRecordError(detail={"constraint": getattr(exc.diag, "constraint_name", None)}) from exc
        except psycopg2.OperationalError as exc:
            # Statement timeouts, lost connections and serialization failures.
            raise TransientProcessingError(message=f"Database unavailable: {exc.__class__.__name__}") from exc


__all__ = [
    "BillingRepository",
    "BillingStore",
    "PostgresBillingRepository",
    "PostgresBillingStore",
    "PostgresUserDirectory",
    "managed_connection",
]
