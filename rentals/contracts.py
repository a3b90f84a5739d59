from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import List

from rentals.dates import month_start, shift_month
from rentals.errors import ConfigurationError
from rentals.indicators import IndicatorType

ZERO = Decimal("0")


class AdjustmentType(str, Enum):
    NONE = "NONE"
    FIXED_PERCENT = "FIXED_PERCENT"
    INDEX_LINKED = "INDEX_LINKED"

    @classmethod
    def parse(cls, value: "str | AdjustmentType") -> "AdjustmentType":
        if isinstance(value, AdjustmentType):
            return value
        normalized = value.strip().upper()
        try:
            return cls(normalized)
        except ValueError as exc:
            raise ValueError(f"Unsupported adjustment type: {value}") from exc


@dataclass(frozen=True)
class Contract:
    id: int
    property_id: int
    start_date: date
    base_rent_amount: Decimal
    currency: str
    duration_months: int
    adjustment_type: AdjustmentType = AdjustmentType.NONE
    adjustment_frequency_months: int = 0
    adjustment_index_type: IndicatorType | None = None
    adjustment_percent: Decimal | None = None
    tenant_name: str | None = None


def validate_contract(contract: Contract) -> None:
    """Reject adjustment settings the projector cannot honor."""
    if contract.base_rent_amount < ZERO:
        raise ConfigurationError(
            f"Contract {contract.id}: base rent must not be negative."
        )
    if contract.adjustment_type is AdjustmentType.NONE:
        return
    if contract.adjustment_frequency_months <= 0:
        raise ConfigurationError(
            f"Contract {contract.id}: adjustment frequency must be greater than zero "
            f"for {contract.adjustment_type.value} contracts."
        )
    if (
        contract.adjustment_type is AdjustmentType.INDEX_LINKED
        and contract.adjustment_index_type is None
    ):
        raise ConfigurationError(
            f"Contract {contract.id}: INDEX_LINKED contracts require an adjustment index type."
        )
    if (
        contract.adjustment_type is AdjustmentType.FIXED_PERCENT
        and contract.adjustment_percent is None
    ):
        raise ConfigurationError(
            f"Contract {contract.id}: FIXED_PERCENT contracts require an adjustment percent."
        )


def schedule_months(contract: Contract) -> List[date]:
    """Month starts covered by the contract, first month included, end excluded."""
    first_month = month_start(contract.start_date)
    return [shift_month(first_month, offset) for offset in range(max(contract.duration_months, 0))]


def is_adjustment_month(contract: Contract, month_index: int) -> bool:
    if contract.adjustment_type is AdjustmentType.NONE:
        return False
    frequency = contract.adjustment_frequency_months
    return month_index > 0 and frequency > 0 and month_index % frequency == 0


def adjustment_boundaries(contract: Contract) -> List[date]:
    first_month = month_start(contract.start_date)
    return [
        shift_month(first_month, offset)
        for offset in range(max(contract.duration_months, 0))
        if is_adjustment_month(contract, offset)
    ]


def end_date(contract: Contract) -> date:
    """First month after the contract's last scheduled month."""
    return shift_month(month_start(contract.start_date), max(contract.duration_months, 0))


def is_active(contract: Contract, today: date) -> bool:
    return month_start(contract.start_date) <= today < end_date(contract)
