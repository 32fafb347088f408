from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Mapping, Sequence

from ground.flow_aggregation import aggregate_flows
from ground.investment_models import Investment, Movement, Snapshot
from ground.return_decomposition import ReturnDecomposition, decompose_returns
from ground.valuation_engine import NetWorthSeries, ValuationSeries, net_worth, value_series

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class YearOverview:
    year: int
    rate: Decimal | None
    series: dict[int, ValuationSeries]
    net_worth: NetWorthSeries
    returns: ReturnDecomposition


def build_year_overview(
    investments: Sequence[Investment],
    snapshots_by_investment: Mapping[int, Iterable[Snapshot]],
    movements: Iterable[Movement],
    year: int,
    rate: Decimal | None = None,
) -> YearOverview:
    missing = [inv.id for inv in investments if inv.id not in snapshots_by_investment]
    if missing:
        raise ValueError(f"Snapshots not loaded for investments: {missing}")

    series = {
        investment.id: value_series(
            investment, snapshots_by_investment[investment.id], year, rate
        )
        for investment in investments
    }
    flows = aggregate_flows(movements, investments, year, rate)
    logger.debug("Built valuation for %d investments in %s", len(series), year)
    return YearOverview(
        year=year,
        rate=rate,
        series=series,
        net_worth=net_worth(investments, series),
        returns=decompose_returns(investments, series, flows),
    )
