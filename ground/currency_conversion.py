from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

USD = "USD"
DEFAULT_LOCAL_CURRENCY = "UYU"
# Local currency units per 1 USD.
DEFAULT_FX_RATE = Decimal("37.983")


class ConversionUnavailable(ValueError):
    """Raised when a conversion needs a rate that is missing or unusable."""


@dataclass(frozen=True)
class FxSettings:
    local_currency: str = DEFAULT_LOCAL_CURRENCY
    default_rate: Decimal = DEFAULT_FX_RATE

    def __post_init__(self) -> None:
        object.__setattr__(self, "local_currency", normalize_currency(self.local_currency))
        rate = parse_rate(self.default_rate)
        if rate is None:
            raise ValueError("Default FX rate must be a positive number.")
        object.__setattr__(self, "default_rate", rate)

    @property
    def currencies(self) -> set[str]:
        return {USD, self.local_currency}

    def rate_for(self, override: Decimal | float | int | str | None = None) -> Decimal:
        return resolve_rate(override, self.default_rate)


def to_usd(
    amount: Decimal | int | float | str,
    currency: str,
    rate: Decimal | int | float | str | None,
) -> Decimal | None:
    coerced_amount = _coerce_amount(amount)
    if is_usd(currency):
        return coerced_amount
    usable_rate = parse_rate(rate)
    if usable_rate is None:
        return None
    return coerced_amount / usable_rate


def to_native(
    amount_usd: Decimal | int | float | str,
    currency: str,
    rate: Decimal | int | float | str | None,
) -> Decimal | None:
    coerced_amount = _coerce_amount(amount_usd)
    if is_usd(currency):
        return coerced_amount
    usable_rate = parse_rate(rate)
    if usable_rate is None:
        return None
    return coerced_amount * usable_rate


def require_usd(
    amount: Decimal | int | float | str,
    currency: str,
    rate: Decimal | int | float | str | None,
) -> Decimal:
    converted = to_usd(amount, currency, rate)
    if converted is None:
        raise ConversionUnavailable(
            f"No usable USD/{normalize_currency(currency)} rate for conversion."
        )
    return converted


def parse_rate(value: Decimal | int | float | str | None) -> Decimal | None:
    if value is None:
        return None
    try:
        rate = _coerce_amount(value)
    except (InvalidOperation, ValueError):
        return None
    if not rate.is_finite() or rate <= 0:
        return None
    return rate


def resolve_rate(
    override: Decimal | int | float | str | None,
    default: Decimal | int | float | str | None,
) -> Decimal | None:
    return parse_rate(override) or parse_rate(default)


def is_usd(currency: str) -> bool:
    return normalize_currency(currency) == USD


def normalize_currency(value: str) -> str:
    normalized = value.strip().upper()
    if len(normalized) != 3 or not normalized.isalpha():
        raise ValueError("Currency must be a 3-letter ISO 4217 code.")
    return normalized


def _coerce_amount(amount: Decimal | int | float | str) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    if isinstance(amount, str):
        return Decimal(amount.strip())
    return Decimal(str(amount))
