"""Dense monthly valuation series from sparse closing-capital snapshots.

Months with a real snapshot use it directly. Other months carry the most
recent real value forward; portfolios additionally compound it monthly at
one twelfth of their target annual return once the yield start is reached.
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Mapping, Optional

from ground.currency_conversion import to_native, to_usd
from ground.investment_models import (
    MONTHS,
    ZERO,
    DecryptionFailed,
    Encrypted,
    Investment,
    InvestmentClass,
    Snapshot,
    Unset,
    snapshots_by_month,
)

NEXT_JANUARY = 13

RECORDED = "recorded"
CARRIED = "carried"
PROJECTED = "projected"
EMPTY = "empty"
FAILED = "failed"


@dataclass(frozen=True)
class ValuationSeries:
    investment_id: int
    year: int
    usd: tuple[Decimal, ...]
    native: tuple[Optional[Decimal], ...]
    sources: tuple[str, ...]
    next_january_usd: Decimal

    def usd_at(self, month: int) -> Decimal:
        return self.usd[month - 1]

    def native_at(self, month: int) -> Optional[Decimal]:
        return self.native[month - 1]


@dataclass(frozen=True)
class NetWorthSeries:
    portfolio: tuple[Decimal, ...]
    account: tuple[Decimal, ...]
    total: tuple[Decimal, ...]


@dataclass(frozen=True)
class _Base:
    month: int
    usd: Decimal
    native: Optional[Decimal]


def has_real_value(snapshot: Optional[Snapshot]) -> bool:
    if snapshot is None:
        return False
    value = snapshot.value
    if isinstance(value, (Unset, DecryptionFailed)):
        return False
    if (
        isinstance(value, Encrypted)
        and not value.confirmed_real
        and _is_blank(value.native)
        and _is_blank(value.usd)
    ):
        return False
    return value.native is not None or value.usd is not None


def yield_start_month_for_year(investment: Investment, year: int) -> int:
    start_year = investment.yield_start_year
    if start_year is not None and start_year > year:
        return NEXT_JANUARY
    if start_year is not None and start_year == year:
        return investment.yield_start_month or 1
    return 1


def monthly_factor(investment: Investment) -> Decimal:
    return 1 + _coerce_amount(investment.target_annual_return) / 12


def project_value(
    investment: Investment,
    year: int,
    base: Decimal,
    base_month: int,
    month: int,
) -> Decimal:
    if investment.investment_class != InvestmentClass.PORTFOLIO:
        return base
    start = max(yield_start_month_for_year(investment, year), base_month)
    diff = month - start
    if diff <= 0:
        return base
    return base * monthly_factor(investment) ** diff


def snapshot_usd(
    investment: Investment,
    snapshot: Optional[Snapshot],
    rate: Decimal | None = None,
) -> Optional[Decimal]:
    """USD value of a real snapshot, or None when it has none or cannot convert."""
    if not has_real_value(snapshot):
        return None
    value = snapshot.value
    if value.usd is not None:
        return value.usd
    return to_usd(value.native, investment.currency, snapshot.usd_rate or rate)


def snapshot_native(
    investment: Investment,
    snapshot: Optional[Snapshot],
    rate: Decimal | None = None,
) -> Optional[Decimal]:
    if not has_real_value(snapshot):
        return None
    value = snapshot.value
    if value.native is not None:
        return value.native
    return to_native(value.usd, investment.currency, snapshot.usd_rate or rate)


def value_series(
    investment: Investment,
    snapshots: Iterable[Snapshot],
    year: int,
    rate: Decimal | None = None,
) -> ValuationSeries:
    indexed = snapshots_by_month(list(snapshots))
    usd: list[Decimal] = []
    native: list[Optional[Decimal]] = []
    sources: list[str] = []
    base: Optional[_Base] = None

    for month in MONTHS:
        snapshot = indexed.get(month)
        recorded_usd = snapshot_usd(investment, snapshot, rate)
        if recorded_usd is not None:
            base = _Base(
                month=month,
                usd=recorded_usd,
                native=snapshot_native(investment, snapshot, rate),
            )
            usd.append(recorded_usd)
            native.append(base.native)
            sources.append(RECORDED)
            continue

        failed = snapshot is not None and isinstance(snapshot.value, DecryptionFailed)
        if base is None:
            usd.append(ZERO)
            native.append(None)
            sources.append(FAILED if failed else EMPTY)
            continue

        usd.append(project_value(investment, year, base.usd, base.month, month))
        native.append(
            None
            if base.native is None
            else project_value(investment, year, base.native, base.month, month)
        )
        if failed:
            sources.append(FAILED)
        elif _grows(investment, year, base.month, month):
            sources.append(PROJECTED)
        else:
            sources.append(CARRIED)

    next_january = ZERO
    if base is not None:
        next_january = project_value(investment, year, base.usd, base.month, NEXT_JANUARY)

    return ValuationSeries(
        investment_id=investment.id,
        year=year,
        usd=tuple(usd),
        native=tuple(native),
        sources=tuple(sources),
        next_january_usd=next_january,
    )


def net_worth(
    investments: Iterable[Investment],
    series_by_investment: Mapping[int, ValuationSeries],
) -> NetWorthSeries:
    portfolio = [ZERO] * 12
    account = [ZERO] * 12
    for investment in investments:
        series = series_by_investment.get(investment.id)
        if series is None:
            raise ValueError(f"Missing valuation series for investment {investment.id}.")
        bucket = portfolio if investment.is_portfolio else account
        for index, value in enumerate(series.usd):
            bucket[index] += value
    total = [p + a for p, a in zip(portfolio, account)]
    return NetWorthSeries(
        portfolio=tuple(portfolio),
        account=tuple(account),
        total=tuple(total),
    )


def _grows(investment: Investment, year: int, base_month: int, month: int) -> bool:
    if investment.investment_class != InvestmentClass.PORTFOLIO:
        return False
    if _coerce_amount(investment.target_annual_return) == 0:
        return False
    return month > max(yield_start_month_for_year(investment, year), base_month)


def _is_blank(amount: Optional[Decimal]) -> bool:
    return amount is None or amount == 0


def _coerce_amount(amount: Decimal) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
