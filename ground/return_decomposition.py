from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Mapping, Sequence

from ground.investment_models import ZERO, Investment
from ground.valuation_engine import ValuationSeries, net_worth


@dataclass(frozen=True)
class ReturnDecomposition:
    net_worth: tuple[Decimal, ...]
    variation: tuple[Decimal, ...]
    flows: tuple[Decimal, ...]
    real_returns: tuple[Decimal, ...]
    projected_next_january: Decimal


def projected_next_january(
    investments: Iterable[Investment],
    series_by_investment: Mapping[int, ValuationSeries],
) -> Decimal:
    total = ZERO
    for investment in investments:
        if investment.is_portfolio:
            total += series_by_investment[investment.id].next_january_usd
    return total


def decompose_returns(
    investments: Iterable[Investment],
    series_by_investment: Mapping[int, ValuationSeries],
    flows: Sequence[Decimal],
) -> ReturnDecomposition:
    if len(flows) != 12:
        raise ValueError("flows must hold one value per month.")
    investments = list(investments)
    portfolio_net_worth = net_worth(investments, series_by_investment).portfolio
    next_january = projected_next_january(investments, series_by_investment)

    following = portfolio_net_worth[1:] + (next_january,)
    variation = tuple(after - before for before, after in zip(portfolio_net_worth, following))
    real_returns = tuple(change - flow for change, flow in zip(variation, flows))

    return ReturnDecomposition(
        net_worth=portfolio_net_worth,
        variation=variation,
        flows=tuple(flows),
        real_returns=real_returns,
        projected_next_january=next_january,
    )
