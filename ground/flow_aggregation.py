from __future__ import annotations

from decimal import Decimal
from typing import Iterable

from ground.currency_conversion import to_usd
from ground.investment_models import ZERO, Investment, Movement, MovementType


def aggregate_flows(
    movements: Iterable[Movement],
    investments: Iterable[Investment],
    year: int,
    rate: Decimal | None = None,
) -> list[Decimal]:
    """Net user cash flow into portfolios per month, in USD.

    Yield movements are growth, not flows, and account movements sit outside
    the return model. Movements whose amount is unknown (unread payload) or
    cannot be converted to USD are left out rather than counted as zero.
    """
    portfolios = {investment.id for investment in investments if investment.is_portfolio}
    series = [ZERO] * 12

    for movement in movements:
        if movement.investment_id not in portfolios:
            continue
        if movement.date.year != year:
            continue
        if movement.decrypt_failed or movement.amount is None:
            continue
        sign = MovementType.sign(movement.type)
        if sign == 0:
            continue
        amount_usd = to_usd(movement.amount, movement.currency, rate)
        if amount_usd is None:
            continue
        series[movement.month - 1] += sign * amount_usd

    return series
