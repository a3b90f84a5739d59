import unittest
from datetime import date
from decimal import Decimal

from rentals.contracts import AdjustmentType
from rentals.errors import ContractNotFoundError
from rentals.indicators import IndicatorPoint, IndicatorType
from rentals.store import (
    fetch_contract,
    list_contract_ids,
    list_indicator_points,
    load_indicator_series,
    upsert_indicator_point,
)
from rentals.tests.helpers import add_contract, add_property, make_engine


def inflation(day: date, value: str, is_manual: bool = False) -> IndicatorPoint:
    return IndicatorPoint(
        type=IndicatorType.INFLATION_INDEX,
        date=day,
        value=Decimal(value),
        is_manual=is_manual,
    )


class IndicatorStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = make_engine()

    def upsert(self, point: IndicatorPoint) -> bool:
        with self.engine.begin() as conn:
            return upsert_indicator_point(conn, point)

    def test_monthly_points_are_stored_on_the_first_of_the_month(self) -> None:
        self.assertTrue(self.upsert(inflation(date(2024, 3, 14), "3.0")))

        with self.engine.connect() as conn:
            series = load_indicator_series(conn, IndicatorType.INFLATION_INDEX)
        self.assertEqual([point.date for point in series], [date(2024, 3, 1)])
        self.assertEqual(series.monthly_rate(date(2024, 3, 1)), Decimal("0.03"))

    def test_identical_point_is_not_a_change(self) -> None:
        self.upsert(inflation(date(2024, 3, 1), "3.0"))

        self.assertFalse(self.upsert(inflation(date(2024, 3, 1), "3.0")))
        self.assertTrue(self.upsert(inflation(date(2024, 3, 1), "3.1")))

    def test_automatic_value_never_overwrites_a_manual_one(self) -> None:
        self.upsert(inflation(date(2024, 3, 1), "3.0", is_manual=True))

        self.assertFalse(self.upsert(inflation(date(2024, 3, 1), "3.5")))
        self.assertTrue(self.upsert(inflation(date(2024, 3, 1), "3.2", is_manual=True)))

        with self.engine.connect() as conn:
            points = list_indicator_points(conn, IndicatorType.INFLATION_INDEX)
        self.assertEqual(points[0].value, Decimal("3.2"))
        self.assertTrue(points[0].is_manual)

    def test_reingesting_a_value_beyond_the_stored_scale_is_a_no_op(self) -> None:
        self.assertTrue(self.upsert(inflation(date(2024, 3, 1), "3.1234567")))

        self.assertFalse(self.upsert(inflation(date(2024, 3, 1), "3.1234567")))
        self.assertFalse(self.upsert(inflation(date(2024, 3, 1), "3.12345671")))
        with self.engine.connect() as conn:
            points = list_indicator_points(conn, IndicatorType.INFLATION_INDEX)
        self.assertEqual(points[0].value, Decimal("3.123457"))

    def test_points_are_listed_within_the_range(self) -> None:
        for month in range(1, 7):
            self.upsert(inflation(date(2024, month, 1), "1.0"))
        self.upsert(
            IndicatorPoint(type=IndicatorType.EXCHANGE_RATE, date=date(2024, 2, 5), value=Decimal("830"))
        )

        with self.engine.connect() as conn:
            points = list_indicator_points(
                conn, IndicatorType.INFLATION_INDEX, date(2024, 2, 1), date(2024, 4, 30)
            )
        self.assertEqual(
            [point.date for point in points],
            [date(2024, 2, 1), date(2024, 3, 1), date(2024, 4, 1)],
        )


class ContractStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = make_engine()
        self.property_id = add_property(self.engine)

    def test_fetch_contract_maps_the_row(self) -> None:
        contract_id = add_contract(self.engine, self.property_id)

        with self.engine.connect() as conn:
            contract = fetch_contract(conn, contract_id)
        self.assertEqual(contract.adjustment_type, AdjustmentType.INDEX_LINKED)
        self.assertEqual(contract.adjustment_index_type, IndicatorType.INFLATION_INDEX)
        self.assertEqual(contract.base_rent_amount, Decimal("100000"))
        self.assertEqual(contract.tenant_name, "Ana")

    def test_fetch_missing_contract(self) -> None:
        with self.engine.connect() as conn:
            with self.assertRaises(ContractNotFoundError):
                fetch_contract(conn, 404)

    def test_contract_ids_by_index_dependency(self) -> None:
        inflation_id = add_contract(self.engine, self.property_id)
        fixed_id = add_contract(
            self.engine,
            self.property_id,
            adjustment_type="FIXED_PERCENT",
            adjustment_index_type=None,
            adjustment_percent=Decimal("0.05"),
        )

        with self.engine.connect() as conn:
            self.assertEqual(list_contract_ids(conn), [inflation_id, fixed_id])
            self.assertEqual(
                list_contract_ids(conn, IndicatorType.INFLATION_INDEX), [inflation_id, fixed_id]
            )
            self.assertEqual(list_contract_ids(conn, IndicatorType.REAL_ESTATE_INDEX), [])
            self.assertEqual(
                list_contract_ids(conn, IndicatorType.EXCHANGE_RATE), [inflation_id, fixed_id]
            )


if __name__ == "__main__":
    unittest.main()
