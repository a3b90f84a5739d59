"""
Entry points the route layer, scripts and scheduled jobs call.

Each operation opens its own transaction. Regeneration of one contract is
mutually exclusive with itself and with payment confirmation for the same
contract; a second trigger while one is in flight is rejected.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Iterator, List, Optional, Sequence

from sqlalchemy import func, insert, select, update
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import DBAPIError

from rentals.cashflow_projection import CashflowCandidate, project_contract_cashflows
from rentals.config import Settings
from rentals.contracts import AdjustmentType, Contract, schedule_months
from rentals.dates import month_start
from rentals.errors import (
    CashflowNotFoundError,
    InvalidCashflowStateError,
    RegenerationInProgressError,
    RentalsError,
    TransientStoreError,
)
from rentals.indicators import IndicatorType
from rentals.logging import get_logger
from rentals.reconciliation import (
    CashflowStatus,
    ReconciliationResult,
    StoredCashflow,
    contract_amount,
    fetch_stored_cashflows,
    lock_contract_rows,
    reconcile,
    row_to_stored_cashflow,
)
from rentals.schema import rental_cashflows
from rentals.store import fetch_contract, list_contract_ids, load_indicator_series

logger = get_logger(__name__)

STATUS_OK = "ok"
STATUS_FAILED = "failed"


class ContractLockRegistry:
    """In-process mutual exclusion token per contract id."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._held: set[int] = set()

    @contextmanager
    def hold(self, contract_id: int) -> Iterator[None]:
        with self._guard:
            if contract_id in self._held:
                raise RegenerationInProgressError(
                    f"Contract {contract_id} is already being regenerated."
                )
            self._held.add(contract_id)
        try:
            yield
        finally:
            with self._guard:
                self._held.discard(contract_id)

    def is_held(self, contract_id: int) -> bool:
        with self._guard:
            return contract_id in self._held


CONTRACT_LOCKS = ContractLockRegistry()


@dataclass(frozen=True)
class ContractRegenerationStatus:
    contract_id: int
    status: str
    error: Optional[str] = None
    result: Optional[ReconciliationResult] = None


@dataclass
class BatchReport:
    results: List[ContractRegenerationStatus] = field(default_factory=list)

    @property
    def count(self) -> int:
        return sum(1 for item in self.results if item.status == STATUS_OK)

    @property
    def failed(self) -> List[ContractRegenerationStatus]:
        return [item for item in self.results if item.status == STATUS_FAILED]


@dataclass(frozen=True)
class ContractCashflowView:
    contract: Contract
    cashflows: List[StoredCashflow]
    awaiting_index: bool
    current_rent: Decimal


def project_for_contract(
    conn: Connection,
    contract: Contract,
    settings: Settings,
    as_of: Optional[date] = None,
) -> List[CashflowCandidate]:
    """Load one snapshot of every series the contract needs and project it."""
    exchange_rates = load_indicator_series(conn, IndicatorType.EXCHANGE_RATE)
    inflation = load_indicator_series(conn, IndicatorType.INFLATION_INDEX)
    index_series = None
    if (
        contract.adjustment_type is AdjustmentType.INDEX_LINKED
        and contract.adjustment_index_type is not None
    ):
        if contract.adjustment_index_type is IndicatorType.EXCHANGE_RATE:
            index_series = exchange_rates
        elif contract.adjustment_index_type is IndicatorType.INFLATION_INDEX:
            index_series = inflation
        else:
            index_series = load_indicator_series(conn, contract.adjustment_index_type)
    return project_contract_cashflows(
        contract,
        index_series,
        exchange_rates=exchange_rates,
        inflation=inflation,
        base_currency=settings.base_currency,
        local_currency=settings.local_currency,
        as_of=as_of,
    )


def regenerate_contract_cashflows(
    engine: Engine,
    contract_id: int,
    *,
    settings: Optional[Settings] = None,
    as_of: Optional[date] = None,
    locks: ContractLockRegistry = CONTRACT_LOCKS,
) -> ReconciliationResult:
    settings = settings or Settings()
    with locks.hold(contract_id):
        logger.info(
            "Regenerating cashflows for contract %s",
            contract_id,
            extra={"contract_id": contract_id},
        )
        try:
            with engine.begin() as conn:
                contract = fetch_contract(conn, contract_id)
                candidates = project_for_contract(conn, contract, settings, as_of)
                result = reconcile(conn, contract_id, candidates)
        except DBAPIError as exc:
            raise TransientStoreError(
                f"Store failure while regenerating contract {contract_id}."
            ) from exc
    if result.pending:
        logger.warning(
            "Contract %s has %s cashflows awaiting index data",
            contract_id,
            result.pending,
            extra={"contract_id": contract_id},
        )
    return result


def regenerate_all_cashflows(
    engine: Engine,
    *,
    settings: Optional[Settings] = None,
    as_of: Optional[date] = None,
    locks: ContractLockRegistry = CONTRACT_LOCKS,
) -> BatchReport:
    with _store_errors("listing contracts"):
        with engine.connect() as conn:
            contract_ids = list_contract_ids(conn)
    return _regenerate_batch(engine, contract_ids, settings=settings, as_of=as_of, locks=locks)


def regenerate_indexed_contracts(
    engine: Engine,
    indicator_type: IndicatorType,
    *,
    settings: Optional[Settings] = None,
    as_of: Optional[date] = None,
    locks: ContractLockRegistry = CONTRACT_LOCKS,
) -> BatchReport:
    """Re-project contracts whose schedule reads ``indicator_type``."""
    with _store_errors("listing contracts"):
        with engine.connect() as conn:
            contract_ids = list_contract_ids(conn, index_type=indicator_type)
    logger.info(
        "New %s data affects %s contracts", indicator_type.value, len(contract_ids)
    )
    return _regenerate_batch(engine, contract_ids, settings=settings, as_of=as_of, locks=locks)


def confirm_cashflow(
    engine: Engine,
    contract_id: int,
    month: date,
    amount_local: Decimal,
    amount_base: Optional[Decimal] = None,
    *,
    locks: ContractLockRegistry = CONTRACT_LOCKS,
) -> StoredCashflow:
    """Record an actual payment, making the month's row REAL."""
    if amount_local < 0:
        raise ValueError("Payment amount must not be negative.")
    if amount_base is not None and amount_base < 0:
        raise ValueError("Base amount must not be negative.")
    month = month_start(month)
    with locks.hold(contract_id):
        with engine.begin() as conn:
            contract = fetch_contract(conn, contract_id)
            lock_contract_rows(conn, contract_id)
            existing = _fetch_cashflow_row(conn, contract_id, month)
            values = {
                "amount_local": amount_local,
                "amount_base": amount_base,
                "status": CashflowStatus.REAL.value,
                "index_pending": False,
                "confirmed_at": func.now(),
            }
            if existing is None:
                months = schedule_months(contract)
                if month not in months:
                    raise CashflowNotFoundError(
                        f"Contract {contract_id} has no payment scheduled for {month.isoformat()}."
                    )
                conn.execute(
                    insert(rental_cashflows).values(
                        contract_id=contract_id,
                        date=month,
                        month_index=months.index(month),
                        **values,
                    )
                )
            else:
                conn.execute(
                    update(rental_cashflows)
                    .where(rental_cashflows.c.id == existing.id)
                    .values(**values)
                )
            confirmed = _fetch_cashflow_row(conn, contract_id, month)
    logger.info(
        "Contract %s: payment for %s confirmed at %s", contract_id, month.isoformat(), amount_local
    )
    return confirmed


def revert_cashflow(
    engine: Engine,
    contract_id: int,
    month: date,
    *,
    locks: ContractLockRegistry = CONTRACT_LOCKS,
) -> StoredCashflow:
    """Turn a REAL row back into PROJECTED; the next regeneration recomputes it."""
    month = month_start(month)
    with locks.hold(contract_id):
        with engine.begin() as conn:
            fetch_contract(conn, contract_id)
            lock_contract_rows(conn, contract_id)
            existing = _fetch_cashflow_row(conn, contract_id, month)
            if existing is None:
                raise CashflowNotFoundError(
                    f"Contract {contract_id} has no cashflow for {month.isoformat()}."
                )
            if existing.status is not CashflowStatus.REAL:
                raise InvalidCashflowStateError(
                    f"Cashflow for {month.isoformat()} is not confirmed."
                )
            conn.execute(
                update(rental_cashflows)
                .where(rental_cashflows.c.id == existing.id)
                .values(status=CashflowStatus.PROJECTED.value, confirmed_at=None)
            )
            reverted = _fetch_cashflow_row(conn, contract_id, month)
    return reverted


def contract_cashflow_view(
    engine: Engine,
    contract_id: int,
    *,
    settings: Optional[Settings] = None,
    as_of: Optional[date] = None,
) -> ContractCashflowView:
    settings = settings or Settings()
    today = as_of or date.today()
    with engine.connect() as conn:
        contract = fetch_contract(conn, contract_id)
        cashflows = fetch_stored_cashflows(conn, contract_id)
    awaiting_index = any(
        row.index_pending and row.status is CashflowStatus.PROJECTED for row in cashflows
    )
    current_rent = contract.base_rent_amount
    for row in cashflows:
        if row.date > today:
            break
        current_rent = contract_amount(row, contract.currency, settings.base_currency)
    return ContractCashflowView(
        contract=contract,
        cashflows=cashflows,
        awaiting_index=awaiting_index,
        current_rent=current_rent,
    )


def _regenerate_batch(
    engine: Engine,
    contract_ids: Sequence[int],
    *,
    settings: Optional[Settings],
    as_of: Optional[date],
    locks: ContractLockRegistry,
) -> BatchReport:
    report = BatchReport()
    for contract_id in contract_ids:
        try:
            result = regenerate_contract_cashflows(
                engine, contract_id, settings=settings, as_of=as_of, locks=locks
            )
        except RentalsError as exc:
            logger.error(
                "Regeneration failed for contract %s: %s",
                contract_id,
                exc,
                extra={"contract_id": contract_id},
            )
            report.results.append(
                ContractRegenerationStatus(contract_id, STATUS_FAILED, error=str(exc))
            )
        except Exception as exc:
            logger.exception(
                "Unexpected error regenerating contract %s",
                contract_id,
                extra={"contract_id": contract_id},
            )
            report.results.append(
                ContractRegenerationStatus(contract_id, STATUS_FAILED, error=str(exc))
            )
        else:
            report.results.append(
                ContractRegenerationStatus(contract_id, STATUS_OK, result=result)
            )
    logger.info(
        "Batch regeneration finished: %s ok, %s failed", report.count, len(report.failed)
    )
    return report


def _fetch_cashflow_row(
    conn: Connection, contract_id: int, month: date
) -> Optional[StoredCashflow]:
    row = conn.execute(
        select(rental_cashflows).where(
            rental_cashflows.c.contract_id == contract_id,
            rental_cashflows.c.date == month,
        )
    ).mappings().first()
    return row_to_stored_cashflow(row) if row is not None else None


@contextmanager
def _store_errors(action: str) -> Iterator[None]:
    try:
        yield
    except DBAPIError as exc:
        raise TransientStoreError(f"Store failure while {action}.") from exc
