"""Receipt issuance keyed on the provider payment."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Optional, Tuple
from uuid import uuid4

from .exceptions import DuplicateRecordError
from .models import PaymentGateway, Receipt
from .money import Money
from .repository import BillingRepository

logger = logging.getLogger("billing")


class ReceiptNumberGenerator:
    """Formats ``PREFIX-YYYYMMDD-NNNNNN`` from a database sequence."""

    def __init__(self, prefix: str = "RCP") -> None:
        self._prefix = prefix.strip().upper() or "RCP"

    def next_number(self, repository: BillingRepository, issued_at: datetime) -> str:
        sequence = repository.next_receipt_sequence()
        return f"{self._prefix}-{issued_at.astimezone(timezone.utc):%Y%m%d}-{sequence % 1_000_000:06d}"


class ReceiptIssuer:
    """Issues at most one receipt per ``(provider, external_payment_id)``."""

    def __init__(
        self,
        numbers: Optional[ReceiptNumberGenerator] = None,
        *,
        id_factory: Optional[Callable[[], str]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._numbers = numbers or ReceiptNumberGenerator()
        self._id_factory = id_factory or (lambda: f"rcpt_{uuid4().hex}")
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def issue(
        self,
        repository: BillingRepository,
        *,
        user_id: str,
        provider: PaymentGateway,
        external_payment_id: str,
        amount: Money,
        paid_at: datetime,
        description: Optional[str] = None,
    ) -> Tuple[Receipt, bool]:
        """Return ``(receipt, created)``; an existing receipt is returned untouched."""

        if not external_payment_id:
            raise ValueError("external_payment_id is required")

        existing = repository.get_receipt(provider, external_payment_id)
        if existing is not None:
            return existing, False

        now = self._clock()
        receipt = Receipt(
            id=self._id_factory(),
            user_id=user_id,
            receipt_number=self._numbers.next_number(repository, now),
            provider=provider,
            external_payment_id=external_payment_id,
            amount=amount,
            paid_at=paid_at,
            description=description,
            created_at=now,
        )
        stored = repository.insert_receipt(receipt)
        if stored is None:
            winner = repository.get_receipt(provider, external_payment_id)
            if winner is None:
                raise DuplicateRecordError(
                    message="Receipt insert conflicted but no receipt exists",
                    detail={"provider": provider.value, "external_payment_id": external_payment_id},
                )
            return winner, False

        logger.info(
            "Issued receipt %s for %s payment %s (%s)",
            stored.receipt_number,
            provider.value,
            external_payment_id,
            stored.amount,
            extra={"user_id": user_id},
        )
        return stored, True


__all__ = ["ReceiptIssuer", "ReceiptNumberGenerator"]
