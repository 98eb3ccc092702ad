from __future__ import annotations

from typing import List

import psycopg2
import psycopg2.errors
import pytest

from backend.app.billing import (
    DuplicateRecordError,
    PaymentGateway,
    TransientProcessingError,
    WebhookEvent,
    WebhookEventType,
)
from backend.app.billing import repository as repository_module
from backend.app.billing.repository import PostgresBillingRepository, PostgresBillingStore


class FakeCursor:
    def __init__(self, connection: "FakeConnection") -> None:
        self.connection = connection
        self.rowcount = connection.rowcount

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    def execute(self, sql, params=None):
        self.connection.executed.append((" ".join(sql.split()), params))

    def fetchone(self):
        return self.connection.row

    def close(self):
        pass


class FakeConnection:
    def __init__(self, *, rowcount: int = 1, row=None) -> None:
        self.rowcount = rowcount
        self.row = row
        self.executed: List[tuple] = []
        self.commits = 0
        self.rollbacks = 0
        self.closed = False

    def cursor(self, cursor_factory=None):
        return FakeCursor(self)

    def commit(self):
        self.commits += 1

    def rollback(self):
        self.rollbacks += 1

    def close(self):
        self.closed = True


@pytest.fixture
def connection(monkeypatch) -> FakeConnection:
    conn = FakeConnection()
    monkeypatch.setattr(repository_module, "get_conn", lambda: conn)
    return conn


def test_coupon_increment_is_compare_and_swap():
    conn = FakeConnection(rowcount=0)
    repo = PostgresBillingRepository(conn=conn)

    assert repo.increment_coupon_usage("cpn_1", 4) is False

    sql, params = conn.executed[0]
    assert "AND version = %s" in sql
    assert "current_usage_count < max_usage_count" in sql
    assert params == ("cpn_1", 4)
    assert conn.commits == 0


def test_webhook_claim_is_keyed_by_dedup_digest():
    conn = FakeConnection(rowcount=0)
    event = WebhookEvent(
        event_type=WebhookEventType.PAYMENT_SUCCEEDED,
        provider=PaymentGateway.CHAPA,
        external_event_id="charge.success:tx-1",
    )

    assert PostgresBillingRepository(conn=conn).record_webhook_event(event) is False

    sql, params = conn.executed[0]
    assert "ON CONFLICT (dedup_key) DO NOTHING" in sql
    assert params[0] == event.dedup_key.digest()
    assert params[1:3] == ("chapa", "charge.success:tx-1")

def test_receipt_sequence_reads_postgres_sequence():
    conn = FakeConnection(row={"value": 42})

    assert PostgresBillingRepository(conn=conn).next_receipt_sequence() == 42
    assert "billing_receipt_number_seq" in conn.executed[0][0]


def test_store_transaction_sets_timeout_and_commits(connection):
    store = PostgresBillingStore(statement_timeout_ms=750, transaction_timeout_ms=3000)

    with store.transaction() as repo:
        assert isinstance(repo, PostgresBillingRepository)

    assert connection.executed[:2] == [
        ("SET LOCAL statement_timeout = %s", (750,)),
        ("SET LOCAL idle_in_transaction_session_timeout = %s", (3000,)),
    ]
    assert connection.commits == 1
    assert connection.rollbacks == 0
    assert connection.closed


def test_store_maps_unique_violation_to_duplicate(connection):
    store = PostgresBillingStore()

    with pytest.raises(DuplicateRecordError) as excinfo:
        with store.transaction():
            raise psycopg2.errors.UniqueViolation("duplicate key")

    assert excinfo.value.status_code == 409
    assert connection.rollbacks == 1
    assert connection.commits == 0


def test_store_maps_operational_error_to_transient(connection):
    store = PostgresBillingStore()

    with pytest.raises(TransientProcessingError) as excinfo:
        with store.transaction():
            raise psycopg2.OperationalError("canceling statement due to statement timeout")

    assert excinfo.value.status_code == 503
    assert connection.rollbacks == 1


def test_store_rolls_back_transaction_that_overruns_budget(connection):
    ticks = iter([100.0, 102.5])
    store = PostgresBillingStore(statement_timeout_ms=500, transaction_timeout_ms=2000, clock=lambda: next(ticks))

    with pytest.raises(TransientProcessingError) as excinfo:
        with store.transaction():
            pass

    assert excinfo.value.detail == {"elapsed_ms": 2500, "budget_ms": 2000}
    assert connection.commits == 0
    assert connection.rollbacks == 1
