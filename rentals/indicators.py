from __future__ import annotations

from bisect import bisect_right
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Iterable, Iterator

from rentals.dates import month_start

HUNDRED = Decimal("100")


class IndicatorType(str, Enum):
    INFLATION_INDEX = "INFLATION_INDEX"
    EXCHANGE_RATE = "EXCHANGE_RATE"
    REAL_ESTATE_INDEX = "REAL_ESTATE_INDEX"

    @property
    def is_monthly_variation(self) -> bool:
        """Monthly series publish a percent change per calendar month."""
        return self is not IndicatorType.EXCHANGE_RATE

    @classmethod
    def parse(cls, value: "str | IndicatorType") -> "IndicatorType":
        if isinstance(value, IndicatorType):
            return value
        normalized = value.strip().upper()
        try:
            return cls(normalized)
        except ValueError as exc:
            raise ValueError(f"Unsupported indicator type: {value}") from exc


@dataclass(frozen=True)
class IndicatorPoint:
    type: IndicatorType
    date: date
    value: Decimal
    interannual_value: Decimal | None = None
    is_manual: bool = False

    def normalized(self) -> "IndicatorPoint":
        """Return the point keyed the way the store keys it."""
        key = month_start(self.date) if self.type.is_monthly_variation else self.date
        return IndicatorPoint(
            type=self.type,
            date=key,
            value=_coerce_decimal(self.value),
            interannual_value=(
                None
                if self.interannual_value is None
                else _coerce_decimal(self.interannual_value)
            ),
            is_manual=self.is_manual,
        )


class IndicatorSeries:
    """Immutable snapshot of one indicator type, sorted ascending by date.

    A projection run reads exclusively from one snapshot so every month of a
    schedule sees the same data.
    """

    __slots__ = ("_type", "_points", "_dates", "_by_date")

    def __init__(self, indicator_type: IndicatorType, points: Iterable[IndicatorPoint] = ()):
        normalized = sorted(
            (point.normalized() for point in points),
            key=lambda point: point.date,
        )
        by_date: dict[date, IndicatorPoint] = {}
        for point in normalized:
            if point.type is not indicator_type:
                raise ValueError(
                    f"Point of type {point.type.value} in a {indicator_type.value} series."
                )
            if point.date in by_date:
                raise ValueError(
                    f"Duplicate {indicator_type.value} point for {point.date.isoformat()}."
                )
            by_date[point.date] = point
        self._type = indicator_type
        self._points = tuple(normalized)
        self._dates = tuple(point.date for point in normalized)
        self._by_date = by_date

    @property
    def type(self) -> IndicatorType:
        return self._type

    @property
    def latest_date(self) -> date | None:
        return self._dates[-1] if self._dates else None

    def __len__(self) -> int:
        return len(self._points)

    def __iter__(self) -> Iterator[IndicatorPoint]:
        return iter(self._points)

    def monthly_rate(self, month: date) -> Decimal | None:
        """Published variation for ``month`` as a fraction (2.0 % -> 0.02)."""
        point = self._by_date.get(month_start(month))
        if point is None:
            return None
        return point.value / HUNDRED

    def rate_on_or_before(self, day: date) -> Decimal | None:
        """Latest level published on or before ``day``."""
        index = bisect_right(self._dates, day)
        if index == 0:
            return None
        return self._points[index - 1].value


def empty_series(indicator_type: IndicatorType) -> IndicatorSeries:
    return IndicatorSeries(indicator_type, ())


def _coerce_decimal(value: Decimal | int | float | str) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))
