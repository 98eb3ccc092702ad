"""Money and idempotency key value objects."""
from __future__ import annotations

import hashlib
from decimal import ROUND_FLOOR, Decimal
from enum import Enum
from typing import Dict, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .exceptions import CurrencyMismatchError

# ISO-4217 minor unit exponents for the currencies our providers settle in.
MINOR_UNIT_EXPONENTS: Dict[str, int] = {
    "AED": 2,
    "AUD": 2,
    "BHD": 3,
    "BRL": 2,
    "CAD": 2,
    "CHF": 2,
    "CNY": 2,
    "CZK": 2,
    "DKK": 2,
    "EGP": 2,
    "ETB": 2,
    "EUR": 2,
    "GBP": 2,
    "GHS": 2,
    "HKD": 2,
    "INR": 2,
    "JOD": 3,
    "JPY": 0,
    "KES": 2,
    "KRW": 0,
    "KWD": 3,
    "MAD": 2,
    "MXN": 2,
    "NGN": 2,
    "NOK": 2,
    "NZD": 2,
    "OMR": 3,
    "PLN": 2,
    "RWF": 0,
    "SAR": 2,
    "SEK": 2,
    "SGD": 2,
    "TND": 3,
    "TZS": 2,
    "UGX": 0,
    "USD": 2,
    "XAF": 0,
    "XOF": 0,
    "ZAR": 2,
    "ZMW": 2,
}


def minor_unit_exponent(currency: str) -> int:
    """Return the number of decimal places used by ``currency``."""

    try:
        return MINOR_UNIT_EXPONENTS[currency.upper()]
    except KeyError as exc:
        raise ValueError(f"Unsupported currency {currency!r}") from exc


AmountLike = Union[Decimal, int, str, float]


class Money(BaseModel):
    """Immutable amount of money in a single ISO-4217 currency."""

    amount: Decimal
    currency: str = Field(min_length=3, max_length=3)

    model_config = ConfigDict(frozen=True)

    @field_validator("amount", mode="before")
    @classmethod
    def _coerce_amount(cls, value: object) -> object:
        if isinstance(value, float):
            return Decimal(str(value))
        return value

    @field_validator("currency")
    @classmethod
    def _known_currency(cls, value: str) -> str:
        code = value.upper()
        minor_unit_exponent(code)
        return code

    @classmethod
    def of(cls, amount: AmountLike, currency: str) -> "Money":
        return cls(amount=Decimal(str(amount)), currency=currency)

    @classmethod
    def zero(cls, currency: str) -> "Money":
        return cls(amount=Decimal(0), currency=currency)

    @classmethod
    def from_minor_units(cls, units: int, currency: str) -> "Money":
        """Build money from a provider wire amount (cents, kobo, ...)."""

        exponent = minor_unit_exponent(currency)
        return cls(amount=Decimal(int(units)).scaleb(-exponent), currency=currency)

    @property
    def exponent(self) -> int:
        return minor_unit_exponent(self.currency)

    def floor_to_minor_unit(self) -> "Money":
        quantum = Decimal(1).scaleb(-self.exponent)
        return Money(amount=self.amount.quantize(quantum, rounding=ROUND_FLOOR), currency=self.currency)

    def to_minor_units(self) -> int:
        return int(self.floor_to_minor_unit().amount.scaleb(self.exponent))

    def percentage(self, percent: AmountLike) -> "Money":
        """Return ``percent`` % of this amount, floored to the minor unit."""

        share = self.amount * Decimal(str(percent)) / Decimal(100)
        return Money(amount=share, currency=self.currency).floor_to_minor_unit()

    def is_zero(self) -> bool:
        return self.amount == 0

    def is_negative(self) -> bool:
        return self.amount < 0

    def _require_same_currency(self, other: "Money") -> None:
        if not isinstance(other, Money):
            raise TypeError(f"Expected Money, got {type(other).__name__}")
        if other.currency != self.currency:
            raise CurrencyMismatchError(
                f"Cannot combine {self.currency} with {other.currency}"
            )

    def __add__(self, other: "Money") -> "Money":
        self._require_same_currency(other)
        return Money(amount=self.amount + other.amount, currency=self.currency)

    def __sub__(self, other: "Money") -> "Money":
        self._require_same_currency(other)
        return Money(amount=self.amount - other.amount, currency=self.currency)

    def __lt__(self, other: "Money") -> bool:
        self._require_same_currency(other)
        return self.amount < other.amount

    def __le__(self, other: "Money") -> bool:
        self._require_same_currency(other)
        return self.amount <= other.amount

    def __gt__(self, other: "Money") -> bool:
        self._require_same_currency(other)
        return self.amount > other.amount

    def __ge__(self, other: "Money") -> bool:
        self._require_same_currency(other)
        return self.amount >= other.amount

    def __str__(self) -> str:
        return f"{self.amount:.{self.exponent}f} {self.currency}"


def _key_part(value: object) -> str:
    if isinstance(value, Enum):
        return str(value.value)
    return str(value)


class IdempotencyKey(BaseModel):
    """Identifies one logical operation so duplicates collapse to one effect."""

    namespace: str
    parts: Tuple[str, ...]

    model_config = ConfigDict(frozen=True)

    @classmethod
    def build(cls, namespace: str, *parts: object) -> "IdempotencyKey":
        if not parts or any(part is None or _key_part(part) == "" for part in parts):
            raise ValueError(f"Idempotency key for {namespace!r} requires non-empty parts")
        return cls(namespace=namespace, parts=tuple(_key_part(part) for part in parts))

    @classmethod
    def for_webhook(cls, provider: object, external_event_id: str) -> "IdempotencyKey":
        return cls.build("webhook", provider, external_event_id)

    @property
    def value(self) -> str:
        return ":".join((self.namespace, *self.parts))

    def digest(self) -> str:
        """Fixed-width hash of the key, stored as the webhook claim column."""

        return hashlib.sha256(self.value.encode("utf-8")).hexdigest()[:32]

    def __str__(self) -> str:
        return self.value


__all__ = ["IdempotencyKey", "MINOR_UNIT_EXPONENTS", "Money", "minor_unit_exponent"]
