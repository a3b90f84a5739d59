from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from sqlalchemy import delete, func, insert, select, update
from sqlalchemy.engine import Connection

from rentals.cashflow_projection import CashflowCandidate
from rentals.config import normalize_currency
from rentals.logging import get_logger
from rentals.schema import rental_cashflows

logger = get_logger(__name__)

# Values a regeneration writes; a PROJECTED row equal on all of them is left alone.
PROJECTED_FIELDS = (
    "month_index",
    "amount_local",
    "amount_base",
    "index_monthly_rate",
    "index_accumulated_rate",
    "index_pending",
    "exchange_rate",
    "exchange_rate_base",
    "exchange_rate_closing",
    "inflation_accumulated_rate",
    "devaluation_accumulated_rate",
)
DECIMAL_FIELDS = (
    "amount_local",
    "amount_base",
    "index_monthly_rate",
    "index_accumulated_rate",
    "exchange_rate",
    "exchange_rate_base",
    "exchange_rate_closing",
    "inflation_accumulated_rate",
    "devaluation_accumulated_rate",
)


class CashflowStatus(str, Enum):
    PROJECTED = "PROJECTED"
    REAL = "REAL"


@dataclass(frozen=True)
class StoredCashflow:
    id: int
    contract_id: int
    date: date
    month_index: int
    amount_local: Decimal
    status: CashflowStatus
    amount_base: Optional[Decimal] = None
    index_monthly_rate: Optional[Decimal] = None
    index_accumulated_rate: Optional[Decimal] = None
    index_pending: bool = False
    exchange_rate: Optional[Decimal] = None
    exchange_rate_base: Optional[Decimal] = None
    exchange_rate_closing: Optional[Decimal] = None
    inflation_accumulated_rate: Optional[Decimal] = None
    devaluation_accumulated_rate: Optional[Decimal] = None
    source_generation: int = 0


@dataclass(frozen=True)
class ReconciliationPlan:
    inserts: Tuple[CashflowCandidate, ...]
    updates: Tuple[Tuple[int, CashflowCandidate], ...]
    deletes: Tuple[int, ...]
    skipped: int
    unchanged: int


@dataclass(frozen=True)
class ReconciliationResult:
    contract_id: int
    created: int = 0
    updated: int = 0
    skipped: int = 0
    deleted: int = 0
    unchanged: int = 0
    pending: int = 0


def plan_reconciliation(
    stored_rows: Iterable[StoredCashflow],
    candidates: Sequence[CashflowCandidate],
) -> ReconciliationPlan:
    """Decide how freshly projected candidates merge into stored rows.

    REAL rows are never touched. PROJECTED rows are overwritten only when a
    value differs, so replaying the same candidates is a no-op.
    """
    stored_by_date: Dict[date, StoredCashflow] = {}
    for row in stored_rows:
        if row.date in stored_by_date:
            raise ValueError(
                f"Contract {row.contract_id} has two cashflows for {row.date.isoformat()}."
            )
        stored_by_date[row.date] = row

    candidate_dates = set()
    inserts: List[CashflowCandidate] = []
    updates: List[Tuple[int, CashflowCandidate]] = []
    skipped = 0
    unchanged = 0
    for candidate in candidates:
        if candidate.date in candidate_dates:
            raise ValueError(f"Duplicate candidate for {candidate.date.isoformat()}.")
        candidate_dates.add(candidate.date)

        stored = stored_by_date.get(candidate.date)
        if stored is None:
            inserts.append(candidate)
        elif stored.status is CashflowStatus.REAL:
            skipped += 1
        elif _matches(stored, candidate):
            unchanged += 1
        else:
            updates.append((stored.id, candidate))

    deletes: List[int] = []
    for stored_date, stored in stored_by_date.items():
        if stored_date in candidate_dates:
            continue
        if stored.status is CashflowStatus.REAL:
            skipped += 1
        else:
            deletes.append(stored.id)

    return ReconciliationPlan(
        inserts=tuple(inserts),
        updates=tuple(updates),
        deletes=tuple(sorted(deletes)),
        skipped=skipped,
        unchanged=unchanged,
    )


def reconcile(
    conn: Connection,
    contract_id: int,
    candidates: Sequence[CashflowCandidate],
) -> ReconciliationResult:
    """Apply a reconciliation plan for one contract on ``conn``.

    Runs inside the caller's transaction; the caller commits or rolls back
    the whole contract at once.
    """
    for candidate in candidates:
        if candidate.contract_id != contract_id:
            raise ValueError(
                f"Candidate for contract {candidate.contract_id} passed to contract {contract_id}."
            )

    lock_contract_rows(conn, contract_id)
    stored_rows = fetch_stored_cashflows(conn, contract_id)
    plan = plan_reconciliation(stored_rows, candidates)
    generation = max((row.source_generation for row in stored_rows), default=0) + 1

    if plan.inserts:
        conn.execute(
            insert(rental_cashflows),
            [
                {
                    "contract_id": contract_id,
                    "date": candidate.date,
                    "status": CashflowStatus.PROJECTED.value,
                    "source_generation": generation,
                    **_candidate_values(candidate),
                }
                for candidate in plan.inserts
            ],
        )
    for row_id, candidate in plan.updates:
        conn.execute(
            update(rental_cashflows)
            .where(
                rental_cashflows.c.id == row_id,
                rental_cashflows.c.status == CashflowStatus.PROJECTED.value,
            )
            .values(source_generation=generation, **_candidate_values(candidate))
        )
    if plan.deletes:
        conn.execute(
            delete(rental_cashflows).where(
                rental_cashflows.c.id.in_(plan.deletes),
                rental_cashflows.c.status == CashflowStatus.PROJECTED.value,
            )
        )

    result = ReconciliationResult(
        contract_id=contract_id,
        created=len(plan.inserts),
        updated=len(plan.updates),
        skipped=plan.skipped,
        deleted=len(plan.deletes),
        unchanged=plan.unchanged,
        pending=sum(1 for candidate in candidates if candidate.index_pending),
    )
    logger.info(
        "Reconciled contract %s: created=%s updated=%s skipped=%s deleted=%s unchanged=%s",
        contract_id,
        result.created,
        result.updated,
        result.skipped,
        result.deleted,
        result.unchanged,
        extra={"contract_id": contract_id},
    )
    return result


def fetch_stored_cashflows(conn: Connection, contract_id: int) -> List[StoredCashflow]:
    rows = conn.execute(
        select(rental_cashflows)
        .where(rental_cashflows.c.contract_id == contract_id)
        .order_by(rental_cashflows.c.date.asc())
    ).mappings().all()
    return [row_to_stored_cashflow(row) for row in rows]


def row_to_stored_cashflow(row: Mapping[str, Any]) -> StoredCashflow:
    values = {name: _optional_decimal(row[name]) for name in DECIMAL_FIELDS}
    return StoredCashflow(
        id=row["id"],
        contract_id=row["contract_id"],
        date=row["date"],
        month_index=row["month_index"],
        status=CashflowStatus(row["status"]),
        index_pending=bool(row["index_pending"]),
        source_generation=row["source_generation"] or 0,
        **values,
    )


def contract_amount(
    row: StoredCashflow | CashflowCandidate,
    currency: str,
    base_currency: str,
) -> Decimal:
    """The row's amount in the contract's own currency."""
    is_base = normalize_currency(currency) == normalize_currency(base_currency)
    if is_base and row.amount_base is not None:
        return row.amount_base
    return row.amount_local


def lock_contract_rows(conn: Connection, contract_id: int) -> None:
    """Serialize writers of one contract's cashflows for this transaction."""
    if conn.dialect.name == "postgresql":
        conn.execute(select(func.pg_advisory_xact_lock(contract_id)))


def _candidate_values(candidate: CashflowCandidate) -> Dict[str, Any]:
    return {name: getattr(candidate, name) for name in PROJECTED_FIELDS}


def _matches(stored: StoredCashflow, candidate: CashflowCandidate) -> bool:
    return all(getattr(stored, name) == getattr(candidate, name) for name in PROJECTED_FIELDS)


def _optional_decimal(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))
