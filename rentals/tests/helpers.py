from datetime import date
from decimal import Decimal
from typing import Iterable, List, Tuple

from sqlalchemy import insert
from sqlalchemy.engine import Engine

from rentals.dates import shift_month
from rentals.indicators import IndicatorPoint, IndicatorType
from rentals.reconciliation import StoredCashflow, fetch_stored_cashflows
from rentals.schema import contracts, create_db_engine, metadata, properties
from rentals.store import upsert_indicator_point

SCENARIO_RATES = ["2.0", "2.5", "3.0", "1.5", "2.0", "1.0", "1.0", "1.0", "1.0", "1.0", "1.0", "1.0"]


def make_engine() -> Engine:
    engine = create_db_engine("sqlite://")
    metadata.create_all(engine)
    return engine


def add_property(engine: Engine, user_id: int = 1, name: str = "Depto Palermo") -> int:
    with engine.begin() as conn:
        return conn.execute(
            insert(properties).values(user_id=user_id, name=name).returning(properties.c.id)
        ).scalar_one()


def add_contract(engine: Engine, property_id: int, **overrides) -> int:
    values = {
        "property_id": property_id,
        "tenant_name": "Ana",
        "start_date": date(2024, 1, 1),
        "base_rent_amount": Decimal("100000"),
        "currency": "ARS",
        "duration_months": 12,
        "adjustment_type": "INDEX_LINKED",
        "adjustment_index_type": "INFLATION_INDEX",
        "adjustment_frequency_months": 3,
    }
    values.update(overrides)
    with engine.begin() as conn:
        return conn.execute(
            insert(contracts).values(**values).returning(contracts.c.id)
        ).scalar_one()


def add_monthly_points(
    engine: Engine,
    start: date,
    values: Iterable[str],
    indicator_type: IndicatorType = IndicatorType.INFLATION_INDEX,
    skip: Iterable[date] = (),
) -> None:
    skipped = set(skip)
    with engine.begin() as conn:
        for offset, value in enumerate(values):
            month = shift_month(start, offset)
            if month in skipped:
                continue
            upsert_indicator_point(
                conn, IndicatorPoint(type=indicator_type, date=month, value=Decimal(value))
            )


def fetch_rows(engine: Engine, contract_id: int) -> List[StoredCashflow]:
    with engine.connect() as conn:
        return fetch_stored_cashflows(conn, contract_id)


def rows_by_month(engine: Engine, contract_id: int) -> dict:
    return {row.date: row for row in fetch_rows(engine, contract_id)}


def add_rate_points(engine: Engine, points: Iterable[Tuple[date, str]]) -> None:
    with engine.begin() as conn:
        for day, value in points:
            upsert_indicator_point(
                conn,
                IndicatorPoint(type=IndicatorType.EXCHANGE_RATE, date=day, value=Decimal(value)),
            )
