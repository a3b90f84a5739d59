import unittest
from datetime import date
from decimal import Decimal

from rentals.cashflow_projection import project_contract_cashflows
from rentals.contracts import AdjustmentType, Contract
from rentals.dates import shift_month
from rentals.errors import ConfigurationError
from rentals.indicators import IndicatorPoint, IndicatorSeries, IndicatorType

RATES = ["2.0", "2.5", "3.0", "1.5", "2.0", "1.0", "1.0", "1.0", "1.0", "1.0", "1.0", "1.0"]


def inflation_series(values, start=date(2024, 1, 1), skip=()):
    points = [
        IndicatorPoint(
            type=IndicatorType.INFLATION_INDEX,
            date=shift_month(start, offset),
            value=Decimal(value),
        )
        for offset, value in enumerate(values)
        if shift_month(start, offset) not in skip
    ]
    return IndicatorSeries(IndicatorType.INFLATION_INDEX, points)


def exchange_series(*pairs):
    return IndicatorSeries(
        IndicatorType.EXCHANGE_RATE,
        [
            IndicatorPoint(type=IndicatorType.EXCHANGE_RATE, date=day, value=Decimal(value))
            for day, value in pairs
        ],
    )


def index_linked_contract(**overrides) -> Contract:
    values = dict(
        id=7,
        property_id=1,
        start_date=date(2024, 1, 1),
        base_rent_amount=Decimal("100000"),
        currency="ARS",
        duration_months=12,
        adjustment_type=AdjustmentType.INDEX_LINKED,
        adjustment_frequency_months=3,
        adjustment_index_type=IndicatorType.INFLATION_INDEX,
    )
    values.update(overrides)
    return Contract(**values)


def no_adjustment_contract(**overrides) -> Contract:
    values = dict(
        adjustment_type=AdjustmentType.NONE,
        adjustment_index_type=None,
        adjustment_frequency_months=0,
    )
    values.update(overrides)
    return index_linked_contract(**values)


class CashflowProjectionTests(unittest.TestCase):
    def test_one_candidate_per_month_from_start(self) -> None:
        candidates = project_contract_cashflows(
            index_linked_contract(start_date=date(2024, 1, 15)),
            inflation_series(RATES),
            as_of=date(2025, 1, 1),
        )

        self.assertEqual(len(candidates), 12)
        self.assertEqual(candidates[0].date, date(2024, 1, 1))
        self.assertEqual(candidates[-1].date, date(2024, 12, 1))
        self.assertEqual([c.month_index for c in candidates], list(range(12)))

    def test_first_rebase_compounds_the_three_preceding_months(self) -> None:
        candidates = project_contract_cashflows(
            index_linked_contract(),
            inflation_series(RATES),
            as_of=date(2025, 1, 1),
        )

        for candidate in candidates[:3]:
            self.assertEqual(candidate.amount_local, Decimal("100000.00"))
            self.assertEqual(candidate.index_accumulated_rate, Decimal("0"))
        april = candidates[3]
        self.assertEqual(april.date, date(2024, 4, 1))
        self.assertEqual(april.amount_local, Decimal("107686.50"))
        self.assertEqual(april.index_accumulated_rate, Decimal("0.076865"))
        self.assertFalse(april.index_pending)
        self.assertEqual(candidates[5].amount_local, Decimal("107686.50"))
        self.assertEqual(candidates[6].amount_local, Decimal("112602.71"))

    def test_monthly_rate_is_read_for_the_row_month(self) -> None:
        candidates = project_contract_cashflows(
            index_linked_contract(),
            inflation_series(RATES),
            as_of=date(2025, 1, 1),
        )

        self.assertEqual(candidates[0].index_monthly_rate, Decimal("0.02"))
        self.assertEqual(candidates[2].index_monthly_rate, Decimal("0.03"))

    def test_missing_index_for_elapsed_boundary_freezes_rent_and_flags_pending(self) -> None:
        candidates = project_contract_cashflows(
            index_linked_contract(),
            inflation_series(RATES, skip={date(2024, 3, 1)}),
            as_of=date(2024, 6, 15),
        )

        self.assertEqual([c.index_pending for c in candidates[:3]], [False] * 3)
        self.assertIsNone(candidates[2].index_monthly_rate)
        for candidate in candidates[3:]:
            self.assertTrue(candidate.index_pending)
            self.assertEqual(candidate.amount_local, Decimal("100000.00"))

    def test_future_boundary_without_data_keeps_last_rent_without_pending_flag(self) -> None:
        candidates = project_contract_cashflows(
            index_linked_contract(),
            inflation_series(RATES[:5]),
            as_of=date(2024, 5, 20),
        )

        self.assertEqual(candidates[3].amount_local, Decimal("107686.50"))
        for candidate in candidates[6:]:
            self.assertEqual(candidate.amount_local, Decimal("107686.50"))
            self.assertFalse(candidate.index_pending)

    def test_accumulated_rate_never_decreases_with_full_series(self) -> None:
        contract = index_linked_contract(duration_months=24, adjustment_frequency_months=4)
        candidates = project_contract_cashflows(
            contract,
            inflation_series(RATES * 2),
            as_of=date(2026, 1, 1),
        )

        rates = [c.index_accumulated_rate for c in candidates]
        self.assertEqual(rates, sorted(rates))
        self.assertGreater(rates[-1], rates[0])

    def test_fixed_percent_multiplies_previous_rent(self) -> None:
        contract = index_linked_contract(
            adjustment_type=AdjustmentType.FIXED_PERCENT,
            adjustment_index_type=None,
            adjustment_percent=Decimal("0.10"),
            adjustment_frequency_months=6,
        )

        candidates = project_contract_cashflows(contract, as_of=date(2025, 1, 1))

        self.assertEqual(candidates[5].amount_local, Decimal("100000.00"))
        self.assertEqual(candidates[6].amount_local, Decimal("110000.00"))
        self.assertEqual(candidates[6].index_accumulated_rate, Decimal("0.1"))
        self.assertIsNone(candidates[6].index_monthly_rate)

    def test_no_adjustment_keeps_base_rent(self) -> None:
        contract = index_linked_contract(
            adjustment_type=AdjustmentType.NONE,
            adjustment_index_type=None,
            adjustment_frequency_months=0,
        )

        candidates = project_contract_cashflows(contract, as_of=date(2025, 1, 1))

        self.assertEqual({c.amount_local for c in candidates}, {Decimal("100000.00")})
        self.assertTrue(all(c.index_accumulated_rate is None for c in candidates))

    def test_empty_schedule_for_non_positive_duration(self) -> None:
        self.assertEqual(
            project_contract_cashflows(index_linked_contract(duration_months=0)), []
        )
        self.assertEqual(
            project_contract_cashflows(index_linked_contract(duration_months=-3)), []
        )

    def test_index_linked_without_index_type_is_a_configuration_error(self) -> None:
        with self.assertRaises(ConfigurationError):
            project_contract_cashflows(index_linked_contract(adjustment_index_type=None))

    def test_zero_frequency_is_a_configuration_error(self) -> None:
        with self.assertRaises(ConfigurationError):
            project_contract_cashflows(index_linked_contract(adjustment_frequency_months=0))

    def test_series_of_another_type_is_rejected(self) -> None:
        contract = index_linked_contract(adjustment_index_type=IndicatorType.REAL_ESTATE_INDEX)

        with self.assertRaises(ValueError):
            project_contract_cashflows(contract, inflation_series(RATES))

    def test_base_amount_uses_rate_published_on_the_payment_date(self) -> None:
        rates = exchange_series(
            (date(2024, 1, 1), "1000"),
            (date(2024, 2, 1), "1100"),
        )
        contract = no_adjustment_contract(duration_months=3)

        candidates = project_contract_cashflows(
            contract, exchange_rates=rates, as_of=date(2025, 1, 1)
        )

        self.assertEqual(
            [c.amount_base for c in candidates], [Decimal("100.00"), Decimal("90.91"), None]
        )
        self.assertEqual(candidates[2].amount_local, Decimal("100000.00"))

    def test_base_currency_contract_converts_rent_to_local(self) -> None:
        rates = exchange_series(
            (date(2024, 1, 1), "1000"),
            (date(2024, 2, 1), "1100"),
        )
        contract = no_adjustment_contract(
            currency="usd", base_rent_amount=Decimal("500"), duration_months=3
        )

        candidates = project_contract_cashflows(
            contract, exchange_rates=rates, as_of=date(2025, 1, 1)
        )

        self.assertEqual(
            [c.amount_local for c in candidates],
            [Decimal("500000.00"), Decimal("550000.00"), Decimal("550000.00")],
        )
        self.assertEqual([c.amount_base for c in candidates], [Decimal("500.00")] * 3)

    def test_base_currency_contract_without_rates_has_zero_local_amount(self) -> None:
        contract = no_adjustment_contract(currency="usd", base_rent_amount=Decimal("500"))

        candidates = project_contract_cashflows(contract, as_of=date(2025, 1, 1))

        self.assertEqual(candidates[0].amount_base, Decimal("500.00"))
        self.assertEqual(candidates[0].amount_local, Decimal("0"))
        self.assertIsNone(candidates[0].exchange_rate)

    def test_exchange_rate_and_inflation_context_per_row(self) -> None:
        rates = exchange_series(
            (date(2023, 12, 29), "800"),
            (date(2024, 1, 15), "900"),
            (date(2024, 2, 1), "1000"),
            (date(2024, 3, 31), "1200"),
        )
        contract = no_adjustment_contract(duration_months=4)

        candidates = project_contract_cashflows(
            contract,
            exchange_rates=rates,
            inflation=inflation_series(RATES, skip={date(2024, 3, 1)}),
            as_of=date(2025, 1, 1),
        )

        self.assertEqual([c.exchange_rate_base for c in candidates], [Decimal("800")] * 4)
        self.assertEqual(
            [c.exchange_rate for c in candidates],
            [Decimal("800"), Decimal("1000"), Decimal("1000"), Decimal("1200")],
        )
        self.assertEqual(
            [c.exchange_rate_closing for c in candidates],
            [Decimal("900"), Decimal("1000"), Decimal("1200"), Decimal("1200")],
        )
        self.assertEqual(
            [c.inflation_accumulated_rate for c in candidates],
            [Decimal("0"), Decimal("0.02"), Decimal("0.0455"), None],
        )
        self.assertEqual(
            [c.devaluation_accumulated_rate for c in candidates],
            [Decimal("0"), Decimal("0.25"), Decimal("0.25"), None],
        )
        self.assertIsNone(candidates[3].amount_base)

    def test_inflation_defaults_to_the_linked_inflation_series(self) -> None:
        candidates = project_contract_cashflows(
            index_linked_contract(), inflation_series(RATES), as_of=date(2025, 1, 1)
        )

        self.assertEqual(candidates[1].inflation_accumulated_rate, Decimal("0.02"))
        self.assertIsNone(candidates[0].exchange_rate)
        self.assertIsNone(candidates[0].devaluation_accumulated_rate)

    def test_inflation_of_another_type_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            project_contract_cashflows(
                no_adjustment_contract(),
                inflation=exchange_series((date(2024, 1, 1), "1000")),
            )

    def test_exchange_rate_linked_rent_follows_level_ratio(self) -> None:
        rates = exchange_series(
            (date(2023, 12, 31), "800"),
            (date(2024, 3, 31), "1000"),
            (date(2024, 6, 30), "1100"),
        )
        contract = index_linked_contract(
            duration_months=6,
            adjustment_index_type=IndicatorType.EXCHANGE_RATE,
        )

        candidates = project_contract_cashflows(
            contract, exchange_rates=rates, as_of=date(2024, 12, 1)
        )

        self.assertEqual(candidates[3].amount_local, Decimal("125000.00"))
        self.assertFalse(candidates[3].index_pending)


if __name__ == "__main__":
    unittest.main()
