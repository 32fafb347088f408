import unittest
from datetime import date
from decimal import Decimal

from ground.flow_aggregation import aggregate_flows
from ground.investment_models import Investment, Movement, RealValue, Snapshot
from ground.investment_overview import build_year_overview
from ground.return_decomposition import decompose_returns
from ground.valuation_engine import value_series

FUND_A = Investment(
    id=1,
    name="Fund A",
    investment_class="PORTFOLIO",
    currency="USD",
    target_annual_return=Decimal("0.12"),
    yield_start_year=2024,
    yield_start_month=1,
)
SAVINGS = Investment(id=2, name="Savings", investment_class="ACCOUNT", currency="UYU")


def movement(movement_id: int, investment_id: int, month: int, kind: str, amount: str, currency: str = "USD", **extra) -> Movement:
    return Movement(
        id=movement_id,
        investment_id=investment_id,
        date=extra.pop("on", date(2024, month, 1)),
        type=kind,
        currency=currency,
        amount=Decimal(amount) if amount is not None else None,
        **extra,
    )


class FlowAggregationTests(unittest.TestCase):
    def test_signs_deposits_and_withdrawals(self) -> None:
        flows = aggregate_flows(
            [
                movement(1, 1, 6, "deposit", "200"),
                movement(2, 1, 6, "withdrawal", "50"),
                movement(3, 1, 7, "withdrawal", "30"),
            ],
            [FUND_A],
            2024,
        )

        self.assertEqual(flows[5], Decimal("150"))
        self.assertEqual(flows[6], Decimal("-30"))
        self.assertEqual(sum(flows), Decimal("120"))

    def test_yield_and_account_movements_are_excluded(self) -> None:
        flows = aggregate_flows(
            [
                movement(1, 1, 3, "yield", "15"),
                movement(2, 2, 3, "deposit", "1000", currency="UYU"),
            ],
            [FUND_A, SAVINGS],
            2024,
            Decimal("40"),
        )

        self.assertEqual(flows, [Decimal("0")] * 12)

    def test_local_currency_converted_with_rate(self) -> None:
        flows = aggregate_flows(
            [movement(1, 1, 2, "deposit", "400", currency="UYU")],
            [FUND_A],
            2024,
            Decimal("40"),
        )

        self.assertEqual(flows[1], Decimal("10"))

    def test_unconvertible_failed_and_other_year_movements_skipped(self) -> None:
        flows = aggregate_flows(
            [
                movement(1, 1, 2, "deposit", "400", currency="UYU"),
                movement(2, 1, 2, "deposit", None, decrypt_failed=True),
                movement(3, 1, 2, "deposit", "99", on=date(2023, 2, 1)),
            ],
            [FUND_A],
            2024,
            None,
        )

        self.assertEqual(flows, [Decimal("0")] * 12)


class ReturnDecompositionTests(unittest.TestCase):
    def setUp(self) -> None:
        snapshot = Snapshot(month=3, value=RealValue(native=Decimal("1000"), usd=Decimal("1000")))
        self.series = {FUND_A.id: value_series(FUND_A, [snapshot], 2024)}

    def test_december_variation_uses_projected_january(self) -> None:
        result = decompose_returns([FUND_A], self.series, [Decimal("0")] * 12)

        december = Decimal("1000") * Decimal("1.01") ** 9
        self.assertAlmostEqual(result.projected_next_january, Decimal("1104.62"), places=2)
        self.assertAlmostEqual(result.variation[11], december * Decimal("0.01"), places=10)
        self.assertAlmostEqual(result.variation[11], Decimal("10.94"), places=2)
        self.assertEqual(result.variation[2], Decimal("10"))
        self.assertEqual(result.variation[1], Decimal("1000"))

    def test_real_returns_remove_deposit(self) -> None:
        flows = aggregate_flows([movement(1, 1, 6, "deposit", "200")], [FUND_A], 2024)

        result = decompose_returns([FUND_A], self.series, flows)

        self.assertEqual(result.flows[5], Decimal("200"))
        self.assertEqual(result.real_returns[5], result.variation[5] - Decimal("200"))

    def test_identity_holds_every_month(self) -> None:
        flows = aggregate_flows(
            [movement(1, 1, 6, "deposit", "200"), movement(2, 1, 11, "withdrawal", "75.25")],
            [FUND_A],
            2024,
        )

        result = decompose_returns([FUND_A], self.series, flows)

        for index in range(12):
            self.assertAlmostEqual(
                result.variation[index],
                result.flows[index] + result.real_returns[index],
                places=12,
            )

    def test_accounts_do_not_enter_variation(self) -> None:
        account_snapshot = Snapshot(month=1, value=RealValue(native=Decimal("4000"), usd=Decimal("100")))
        series = dict(self.series)
        series[SAVINGS.id] = value_series(SAVINGS, [account_snapshot], 2024, Decimal("40"))

        with_account = decompose_returns([FUND_A, SAVINGS], series, [Decimal("0")] * 12)
        without = decompose_returns([FUND_A], self.series, [Decimal("0")] * 12)

        self.assertEqual(with_account.variation, without.variation)

    def test_rejects_short_flow_series(self) -> None:
        with self.assertRaises(ValueError):
            decompose_returns([FUND_A], self.series, [Decimal("0")] * 11)


class YearOverviewTests(unittest.TestCase):
    def test_builds_full_pipeline(self) -> None:
        snapshots = {
            FUND_A.id: [Snapshot(month=3, value=RealValue(native=Decimal("1000"), usd=Decimal("1000")))],
            SAVINGS.id: [Snapshot(month=1, value=RealValue(native=Decimal("4000"), usd=None))],
        }

        overview = build_year_overview(
            [FUND_A, SAVINGS],
            snapshots,
            [movement(1, 1, 6, "deposit", "200")],
            2024,
            Decimal("40"),
        )

        self.assertEqual(overview.net_worth.account[11], Decimal("100"))
        self.assertEqual(overview.net_worth.total[3], Decimal("1110"))
        self.assertEqual(overview.returns.flows[5], Decimal("200"))
        self.assertEqual(overview.series[SAVINGS.id].native_at(6), Decimal("4000"))

    def test_refuses_partial_data(self) -> None:
        with self.assertRaises(ValueError):
            build_year_overview([FUND_A, SAVINGS], {FUND_A.id: []}, [], 2024)


if __name__ == "__main__":
    unittest.main()
