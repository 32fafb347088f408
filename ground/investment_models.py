from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Optional, Union

MONTHS = tuple(range(1, 13))
ZERO = Decimal("0")


class InvestmentClass:
    PORTFOLIO = "PORTFOLIO"
    ACCOUNT = "ACCOUNT"
    values = {PORTFOLIO, ACCOUNT}

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in cls.values:
            raise ValueError("Invalid investment class.")
        return normalized


class MovementType:
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    YIELD = "yield"
    values = {DEPOSIT, WITHDRAWAL, YIELD}

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in cls.values:
            raise ValueError("Invalid movement type.")
        return normalized

    @classmethod
    def sign(cls, value: str) -> int:
        normalized = cls.validate(value)
        if normalized == cls.DEPOSIT:
            return 1
        if normalized == cls.WITHDRAWAL:
            return -1
        return 0


@dataclass(frozen=True)
class Investment:
    id: int
    name: str
    investment_class: str
    currency: str = "USD"
    target_annual_return: Decimal = ZERO
    yield_start_year: Optional[int] = None
    yield_start_month: Optional[int] = None

    @property
    def is_portfolio(self) -> bool:
        return self.investment_class == InvestmentClass.PORTFOLIO


# Snapshot value states. A month without a record is Unset; a stored
# placeholder zero behind an unread payload is Encrypted(confirmed_real=False).


@dataclass(frozen=True)
class Unset:
    pass


@dataclass(frozen=True)
class RealValue:
    native: Optional[Decimal]
    usd: Optional[Decimal]


@dataclass(frozen=True)
class Encrypted:
    native: Optional[Decimal]
    usd: Optional[Decimal]
    confirmed_real: bool = False


@dataclass(frozen=True)
class DecryptionFailed:
    pass


SnapshotValue = Union[Unset, RealValue, Encrypted, DecryptionFailed]

UNSET = Unset()


@dataclass(frozen=True)
class Snapshot:
    month: int
    value: SnapshotValue = field(default=UNSET)
    is_closed: bool = False
    usd_rate: Optional[Decimal] = None


@dataclass(frozen=True)
class StoredSnapshot:
    """A snapshot row as persisted: plain amounts and/or an encrypted payload."""

    investment_id: int
    year: int
    month: int
    closing_capital: Optional[Decimal] = None
    closing_capital_usd: Optional[Decimal] = None
    usd_rate: Optional[Decimal] = None
    encrypted_payload: Optional[str] = None
    is_closed: bool = False
    id: Optional[int] = None


@dataclass(frozen=True)
class Movement:
    id: int
    investment_id: int
    date: date
    type: str
    currency: str
    amount: Optional[Decimal]
    decrypt_failed: bool = False

    @property
    def month(self) -> int:
        return self.date.month


@dataclass(frozen=True)
class StoredMovement:
    id: int
    investment_id: int
    date: date
    type: str
    currency: str
    amount: Decimal
    encrypted_payload: Optional[str] = None


def snapshots_by_month(snapshots: list[Snapshot]) -> dict[int, Snapshot]:
    indexed: dict[int, Snapshot] = {}
    for snapshot in snapshots:
        if snapshot.month not in MONTHS:
            raise ValueError(f"Snapshot month out of range: {snapshot.month}")
        if snapshot.month in indexed:
            raise ValueError(f"Duplicate snapshot for month {snapshot.month}.")
        indexed[snapshot.month] = snapshot
    return indexed
