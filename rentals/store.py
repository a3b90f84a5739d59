"""
Read/write helpers over the indicator and contract tables.

The projector never touches these tables directly: callers load an
``IndicatorSeries`` snapshot and a ``Contract`` here and pass them in.
Indicator points are written only by ``upsert_indicator_point`` (the
ingestion path).
"""

from __future__ import annotations

from dataclasses import replace
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, List, Mapping, Optional

from sqlalchemy import func, insert, select, update
from sqlalchemy.engine import Connection

from rentals.contracts import AdjustmentType, Contract
from rentals.errors import ContractNotFoundError
from rentals.indicators import IndicatorPoint, IndicatorSeries, IndicatorType
from rentals.logging import get_logger
from rentals.schema import contracts, economic_indicators

logger = get_logger(__name__)

# Numeric(18, 6) scale of the value columns.
VALUE_QUANTUM = Decimal("0.000001")
ALL_CONTRACT_SERIES = (IndicatorType.EXCHANGE_RATE, IndicatorType.INFLATION_INDEX)


def load_indicator_series(conn: Connection, indicator_type: IndicatorType) -> IndicatorSeries:
    rows = conn.execute(
        select(economic_indicators)
        .where(economic_indicators.c.type == indicator_type.value)
        .order_by(economic_indicators.c.date.asc())
    ).mappings().all()
    return IndicatorSeries(indicator_type, (_row_to_point(row) for row in rows))


def list_indicator_points(
    conn: Connection,
    indicator_type: IndicatorType,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
) -> List[IndicatorPoint]:
    stmt = select(economic_indicators).where(economic_indicators.c.type == indicator_type.value)
    if start_date is not None:
        stmt = stmt.where(economic_indicators.c.date >= start_date)
    if end_date is not None:
        stmt = stmt.where(economic_indicators.c.date <= end_date)
    rows = conn.execute(stmt.order_by(economic_indicators.c.date.asc())).mappings().all()
    return [_row_to_point(row) for row in rows]


def upsert_indicator_point(conn: Connection, point: IndicatorPoint) -> bool:
    """Insert or update one indicator point.

    Manual points are corrections entered by an operator; an automatic
    (scraped) value never overwrites them. Returns whether the store changed.
    """
    point = _quantize_point(point.normalized())
    existing = conn.execute(
        select(economic_indicators).where(
            economic_indicators.c.type == point.type.value,
            economic_indicators.c.date == point.date,
        )
    ).mappings().first()

    if existing is None:
        conn.execute(
            insert(economic_indicators).values(
                type=point.type.value,
                date=point.date,
                value=point.value,
                interannual_value=point.interannual_value,
                is_manual=point.is_manual,
            )
        )
        logger.info(
            "Ingested %s point for %s: %s", point.type.value, point.date.isoformat(), point.value
        )
        return True

    if existing["is_manual"] and not point.is_manual:
        logger.info(
            "Kept manual %s point for %s, ignoring automatic value %s",
            point.type.value,
            point.date.isoformat(),
            point.value,
        )
        return False

    if (
        Decimal(existing["value"]) == point.value
        and _same_optional(existing["interannual_value"], point.interannual_value)
        and bool(existing["is_manual"]) == point.is_manual
    ):
        return False

    conn.execute(
        update(economic_indicators)
        .where(economic_indicators.c.id == existing["id"])
        .values(
            value=point.value,
            interannual_value=point.interannual_value,
            is_manual=point.is_manual,
            updated_at=func.now(),
        )
    )
    logger.info(
        "Corrected %s point for %s: %s -> %s",
        point.type.value,
        point.date.isoformat(),
        existing["value"],
        point.value,
    )
    return True


def fetch_contract(conn: Connection, contract_id: int) -> Contract:
    row = conn.execute(
        select(contracts).where(contracts.c.id == contract_id)
    ).mappings().first()
    if row is None:
        raise ContractNotFoundError(f"Contract {contract_id} not found.")
    return row_to_contract(row)


def list_contract_ids(
    conn: Connection,
    index_type: Optional[IndicatorType] = None,
) -> List[int]:
    """Ids of all contracts, or of those whose schedule depends on ``index_type``.

    Every row carries exchange-rate and accumulated-inflation figures, so
    those two series affect all contracts; other series only the contracts
    linked to them.
    """
    stmt = select(contracts.c.id).order_by(contracts.c.id.asc())
    if index_type is not None and index_type not in ALL_CONTRACT_SERIES:
        stmt = stmt.where(
            contracts.c.adjustment_type == AdjustmentType.INDEX_LINKED.value,
            contracts.c.adjustment_index_type == index_type.value,
        )
    return list(conn.execute(stmt).scalars().all())


def row_to_contract(row: Mapping[str, Any]) -> Contract:
    index_type = row["adjustment_index_type"]
    percent = row["adjustment_percent"]
    return Contract(
        id=row["id"],
        property_id=row["property_id"],
        tenant_name=row["tenant_name"],
        start_date=row["start_date"],
        base_rent_amount=Decimal(row["base_rent_amount"]),
        currency=row["currency"],
        duration_months=row["duration_months"],
        adjustment_type=AdjustmentType(row["adjustment_type"]),
        adjustment_frequency_months=row["adjustment_frequency_months"] or 0,
        adjustment_index_type=IndicatorType(index_type) if index_type else None,
        adjustment_percent=Decimal(percent) if percent is not None else None,
    )


def _row_to_point(row: Mapping[str, Any]) -> IndicatorPoint:
    interannual = row["interannual_value"]
    return IndicatorPoint(
        type=IndicatorType(row["type"]),
        date=row["date"],
        value=Decimal(row["value"]),
        interannual_value=Decimal(interannual) if interannual is not None else None,
        is_manual=bool(row["is_manual"]),
    )


def _quantize_point(point: IndicatorPoint) -> IndicatorPoint:
    interannual = point.interannual_value
    return replace(
        point,
        value=_quantize_value(point.value),
        interannual_value=None if interannual is None else _quantize_value(interannual),
    )


def _quantize_value(value: Decimal) -> Decimal:
    return value.quantize(VALUE_QUANTUM, rounding=ROUND_HALF_UP)


def _same_optional(stored: Any, incoming: Optional[Decimal]) -> bool:
    if stored is None or incoming is None:
        return stored is None and incoming is None
    return Decimal(stored) == incoming
