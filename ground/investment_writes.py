from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Optional

from ground.currency_conversion import is_usd, normalize_currency, parse_rate, to_usd
from ground.encryption import DecryptionGate
from ground.investment_models import ZERO, Investment, MovementType

_NON_NUMERIC = re.compile(r"[^\d.,-]")


@dataclass(frozen=True)
class SnapshotWrite:
    month: int
    closing_capital: Decimal
    closing_capital_usd: Optional[Decimal]
    usd_rate: Optional[Decimal] = None
    encrypted_payload: Optional[str] = None


@dataclass(frozen=True)
class MovementWrite:
    investment_id: int
    date: date
    type: str
    currency: str
    amount: Decimal
    encrypted_payload: Optional[str] = None


def parse_amount(raw: Decimal | int | float | str | None) -> Decimal | None:
    """Parse user input into a non-negative amount; None means skip the write."""
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, str):
        cleaned = raw.strip().replace(" ", "").replace(",", ".")
        if not cleaned:
            return None
        raw = cleaned
    try:
        amount = raw if isinstance(raw, Decimal) else Decimal(str(raw))
    except (InvalidOperation, ValueError):
        return None
    if not amount.is_finite() or amount < 0:
        return None
    return amount


def parse_target_return(raw: Decimal | int | float | str | None) -> Decimal | None:
    """Accept "8", "8%" or "0.08" and return the annual rate as a fraction."""
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, str):
        raw = _NON_NUMERIC.sub("", raw.strip()).replace(",", ".")
        if not raw:
            return None
    try:
        value = raw if isinstance(raw, Decimal) else Decimal(str(raw))
    except (InvalidOperation, ValueError):
        return None
    if not value.is_finite() or value < 0:
        return None
    if value > 1:
        return value / 100
    return value


def prepare_snapshot_write(
    investment: Investment,
    month: int,
    raw_value: Decimal | int | float | str | None,
    rate: Decimal | int | float | str | None,
    gate: DecryptionGate,
) -> SnapshotWrite | None:
    if month < 1 or month > 12:
        raise ValueError("Month must be between 1 and 12.")
    value = parse_amount(raw_value)
    if value is None:
        return None

    usd_rate = None if is_usd(investment.currency) else parse_rate(rate)
    value_usd = to_usd(value, investment.currency, usd_rate)
    payload = gate.encrypt_snapshot(value, value_usd)
    if payload is None:
        return SnapshotWrite(
            month=month,
            closing_capital=value,
            closing_capital_usd=value_usd,
            usd_rate=usd_rate,
        )
    return SnapshotWrite(
        month=month,
        closing_capital=ZERO,
        closing_capital_usd=ZERO,
        usd_rate=usd_rate,
        encrypted_payload=payload,
    )


def prepare_movement_write(
    investment_id: int,
    movement_type: str,
    year: int,
    month: int,
    raw_amount: Decimal | int | float | str | None,
    currency: str,
    gate: DecryptionGate,
) -> MovementWrite | None:
    amount = parse_amount(raw_amount)
    if amount is None:
        return None
    payload = gate.encrypt_movement(amount)
    return MovementWrite(
        investment_id=investment_id,
        date=date(year, month, 1),
        type=MovementType.validate(movement_type),
        currency=normalize_currency(currency),
        amount=ZERO if payload else amount,
        encrypted_payload=payload,
    )


def ciphertext_snapshot_write(
    investment: Investment,
    month: int,
    payload: str,
    rate: Decimal | int | float | str | None,
) -> SnapshotWrite:
    """Store a snapshot the client already encrypted behind zero placeholders."""
    if month < 1 or month > 12:
        raise ValueError("Month must be between 1 and 12.")
    return SnapshotWrite(
        month=month,
        closing_capital=ZERO,
        closing_capital_usd=ZERO,
        usd_rate=None if is_usd(investment.currency) else parse_rate(rate),
        encrypted_payload=payload,
    )


def ciphertext_movement_write(
    investment_id: int,
    movement_type: str,
    year: int,
    month: int,
    payload: str,
    currency: str,
) -> MovementWrite:
    return MovementWrite(
        investment_id=investment_id,
        date=date(year, month, 1),
        type=MovementType.validate(movement_type),
        currency=normalize_currency(currency),
        amount=ZERO,
        encrypted_payload=payload,
    )
