from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import List, Sequence, Tuple

from rentals.config import DEFAULT_BASE_CURRENCY, DEFAULT_LOCAL_CURRENCY, normalize_currency
from rentals.contracts import (
    AdjustmentType,
    Contract,
    is_adjustment_month,
    schedule_months,
    validate_contract,
)
from rentals.dates import month_end
from rentals.indicators import IndicatorSeries, IndicatorType, empty_series
from rentals.logging import get_logger

logger = get_logger(__name__)

ZERO = Decimal("0")
ONE = Decimal("1")
AMOUNT_QUANTUM = Decimal("0.01")
RATE_QUANTUM = Decimal("0.00000001")
LEVEL_QUANTUM = Decimal("0.000001")


@dataclass(frozen=True)
class CashflowCandidate:
    """One projected month of a contract.

    ``amount_local`` is in the local currency and ``amount_base`` in the base
    currency, whatever the contract is denominated in. The exchange-rate and
    inflation fields are informational: dashboards chart them, the rent
    computation does not read them back.
    """

    contract_id: int
    date: date
    month_index: int
    amount_local: Decimal
    amount_base: Decimal | None = None
    index_monthly_rate: Decimal | None = None
    index_accumulated_rate: Decimal | None = None
    index_pending: bool = False
    exchange_rate: Decimal | None = None
    exchange_rate_base: Decimal | None = None
    exchange_rate_closing: Decimal | None = None
    inflation_accumulated_rate: Decimal | None = None
    devaluation_accumulated_rate: Decimal | None = None


def project_contract_cashflows(
    contract: Contract,
    index_series: IndicatorSeries | None = None,
    *,
    exchange_rates: IndicatorSeries | None = None,
    inflation: IndicatorSeries | None = None,
    base_currency: str = DEFAULT_BASE_CURRENCY,
    local_currency: str = DEFAULT_LOCAL_CURRENCY,
    as_of: date | None = None,
) -> List[CashflowCandidate]:
    """Compute the full monthly payment schedule of ``contract``.

    Rent is re-based at every adjustment boundary. When the data a boundary
    needs is not published yet the rent stays at its last known value for the
    rest of the schedule; if that boundary has already been reached (on or
    before ``as_of``) the affected rows are flagged ``index_pending`` so a later
    regeneration picks up the index once it is ingested.

    ``inflation`` feeds ``inflation_accumulated_rate`` for every contract,
    whatever it is indexed to. It defaults to ``index_series`` when that is
    the inflation series.
    """
    validate_contract(contract)
    if contract.duration_months <= 0:
        return []

    series = _resolve_index_series(contract, index_series, exchange_rates)
    inflation = _resolve_inflation_series(series, inflation)
    today = as_of or date.today()
    currency = normalize_currency(contract.currency)
    base_currency = normalize_currency(base_currency)
    local_currency = normalize_currency(local_currency)

    base_rent = _coerce_amount(contract.base_rent_amount)
    rent = base_rent
    frozen = False
    pending = False
    inflation_factor: Decimal | None = ONE
    months = schedule_months(contract)
    rate_at_start = _level_on_or_before(exchange_rates, months[0])
    candidates: List[CashflowCandidate] = []

    for month_index, payment_date in enumerate(months):
        if not frozen and is_adjustment_month(contract, month_index):
            factor = _adjustment_factor(contract, series, months, month_index)
            if factor is None:
                frozen = True
                pending = payment_date <= today
                if pending:
                    logger.warning(
                        "Index data missing for adjustment on %s, rent frozen at %s",
                        payment_date.isoformat(),
                        rent,
                        extra={"contract_id": contract.id},
                    )
            else:
                rent = rent * factor

        amount_local, amount_base = _convert_amounts(
            rent, payment_date, currency, exchange_rates, base_currency, local_currency
        )
        rate = _level_on_or_before(exchange_rates, payment_date)
        inflation_accumulated = (
            None if inflation_factor is None else _quantize_rate(inflation_factor - ONE)
        )
        candidates.append(
            CashflowCandidate(
                contract_id=contract.id,
                date=payment_date,
                month_index=month_index,
                amount_local=amount_local,
                amount_base=amount_base,
                index_monthly_rate=_monthly_rate(contract, series, payment_date),
                index_accumulated_rate=_accumulated_rate(contract, rent, base_rent),
                index_pending=pending,
                exchange_rate=rate,
                exchange_rate_base=rate_at_start,
                exchange_rate_closing=_level_on_or_before(
                    exchange_rates, month_end(payment_date)
                ),
                inflation_accumulated_rate=inflation_accumulated,
                devaluation_accumulated_rate=(
                    _quantize_rate(rate / rate_at_start - ONE)
                    if inflation_accumulated is not None and rate and rate_at_start
                    else None
                ),
            )
        )

        # Row m compounds the inflation of months 0 .. m-1; one gap voids the rest.
        month_inflation = inflation.monthly_rate(payment_date)
        if inflation_factor is not None:
            inflation_factor = (
                None if month_inflation is None else inflation_factor * (ONE + month_inflation)
            )

    return candidates


def _resolve_index_series(
    contract: Contract,
    index_series: IndicatorSeries | None,
    exchange_rates: IndicatorSeries | None,
) -> IndicatorSeries | None:
    if contract.adjustment_type is not AdjustmentType.INDEX_LINKED:
        return index_series
    index_type = contract.adjustment_index_type
    if index_series is None:
        if index_type is IndicatorType.EXCHANGE_RATE and exchange_rates is not None:
            return exchange_rates
        return empty_series(index_type)
    if index_series.type is not index_type:
        raise ValueError(
            f"Contract {contract.id} is linked to {index_type.value}, "
            f"got a {index_series.type.value} series."
        )
    return index_series


def _resolve_inflation_series(
    index_series: IndicatorSeries | None,
    inflation: IndicatorSeries | None,
) -> IndicatorSeries:
    if inflation is None:
        if index_series is not None and index_series.type is IndicatorType.INFLATION_INDEX:
            return index_series
        return empty_series(IndicatorType.INFLATION_INDEX)
    if inflation.type is not IndicatorType.INFLATION_INDEX:
        raise ValueError(f"Expected an inflation series, got {inflation.type.value}.")
    return inflation


def _adjustment_factor(
    contract: Contract,
    series: IndicatorSeries | None,
    months: Sequence[date],
    month_index: int,
) -> Decimal | None:
    if contract.adjustment_type is AdjustmentType.FIXED_PERCENT:
        return ONE + _coerce_amount(contract.adjustment_percent)
    if series is None:
        return None
    frequency = contract.adjustment_frequency_months
    if series.type.is_monthly_variation:
        return _compounded_variation(series, months[month_index - frequency:month_index])
    return _level_ratio(series, months[month_index - frequency], months[month_index])


def _compounded_variation(series: IndicatorSeries, elapsed_months: Sequence[date]) -> Decimal | None:
    factor = ONE
    for month in elapsed_months:
        rate = series.monthly_rate(month)
        if rate is None:
            return None
        factor *= ONE + rate
    return factor


def _level_ratio(series: IndicatorSeries, period_start: date, boundary: date) -> Decimal | None:
    # Levels are read at the close of the month preceding each period.
    reference = boundary - timedelta(days=1)
    if series.latest_date is None or series.latest_date < reference:
        return None
    current = series.rate_on_or_before(reference)
    previous = series.rate_on_or_before(period_start - timedelta(days=1))
    if not current or not previous:
        return None
    return current / previous


def _monthly_rate(
    contract: Contract,
    series: IndicatorSeries | None,
    payment_date: date,
) -> Decimal | None:
    if contract.adjustment_type is not AdjustmentType.INDEX_LINKED or series is None:
        return None
    if not series.type.is_monthly_variation:
        return None
    rate = series.monthly_rate(payment_date)
    return None if rate is None else _quantize_rate(rate)


def _accumulated_rate(contract: Contract, rent: Decimal, base_rent: Decimal) -> Decimal | None:
    if contract.adjustment_type is AdjustmentType.NONE:
        return None
    if base_rent == ZERO:
        return ZERO
    return _quantize_rate(rent / base_rent - ONE)


def _convert_amounts(
    rent: Decimal,
    payment_date: date,
    currency: str,
    exchange_rates: IndicatorSeries | None,
    base_currency: str,
    local_currency: str,
) -> Tuple[Decimal, Decimal | None]:
    """Return ``(amount_local, amount_base)`` for a rent in ``currency``.

    Local-currency rent converts to base at the level published on or before
    the payment date and is left without a base amount while that day is not
    covered yet. Base-currency rent always needs a local amount, so it
    converts at the newest level on or before the payment date and counts
    as zero local currency when no level exists at all.
    """
    if currency == base_currency:
        if base_currency == local_currency:
            return _quantize_amount(rent), _quantize_amount(rent)
        rate = _level_on_or_before(exchange_rates, payment_date)
        amount_local = rent * rate if rate else ZERO
        return _quantize_amount(amount_local), _quantize_amount(rent)

    if currency != local_currency or exchange_rates is None:
        return _quantize_amount(rent), None
    if exchange_rates.latest_date is None or exchange_rates.latest_date < payment_date:
        return _quantize_amount(rent), None
    rate = exchange_rates.rate_on_or_before(payment_date)
    if not rate:
        return _quantize_amount(rent), None
    return _quantize_amount(rent), _quantize_amount(rent / rate)


def _level_on_or_before(series: IndicatorSeries | None, day: date) -> Decimal | None:
    if series is None:
        return None
    level = series.rate_on_or_before(day)
    return None if level is None else level.quantize(LEVEL_QUANTUM, rounding=ROUND_HALF_UP)


def _quantize_amount(value: Decimal) -> Decimal:
    return value.quantize(AMOUNT_QUANTUM, rounding=ROUND_HALF_UP)


def _quantize_rate(value: Decimal) -> Decimal:
    return value.quantize(RATE_QUANTUM, rounding=ROUND_HALF_UP)


def _coerce_amount(amount: Decimal | int | float | str) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
