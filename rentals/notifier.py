from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Mapping, Optional, Protocol

from sqlalchemy import delete, insert, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError, IntegrityError

from rentals.config import Settings
from rentals.contracts import (
    AdjustmentType,
    Contract,
    adjustment_boundaries,
    is_active,
    validate_contract,
)
from rentals.dates import shift_month
from rentals.errors import ConfigurationError
from rentals.logging import get_logger
from rentals.reconciliation import StoredCashflow, contract_amount, fetch_stored_cashflows
from rentals.schema import contract_adjustment_notices, contracts, notifications, properties
from rentals.store import row_to_contract

logger = get_logger(__name__)

NOTIFICATION_TYPE = "CONTRACT_ADJUSTMENT"


class NotificationSink(Protocol):
    def send(self, user_id: int, title: str, message: str, link: str | None) -> None:
        ...


@dataclass(frozen=True)
class DatabaseNotificationSink:
    """Delivers notifications to the in-app notification center table."""

    engine: Engine

    def send(self, user_id: int, title: str, message: str, link: str | None) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                insert(notifications).values(
                    user_id=user_id,
                    title=title,
                    message=message,
                    type=NOTIFICATION_TYPE,
                    link=link,
                )
            )


@dataclass(frozen=True)
class AdjustmentNotice:
    contract_id: int
    user_id: int
    boundary_date: date
    title: str
    message: str
    link: str
    awaiting_index: bool = False


def find_notifiable_boundary(
    contract: Contract,
    today: date,
    look_ahead_days: int,
    look_behind_days: int,
) -> Optional[date]:
    """Most recent adjustment boundary inside the window around ``today``."""
    window_start = today - timedelta(days=look_behind_days)
    window_end = today + timedelta(days=look_ahead_days)
    in_window = [
        boundary
        for boundary in adjustment_boundaries(contract)
        if window_start <= boundary <= window_end
    ]
    return max(in_window) if in_window else None


def check_contract_adjustments(
    engine: Engine,
    sink: Optional[NotificationSink] = None,
    *,
    today: Optional[date] = None,
    settings: Optional[Settings] = None,
) -> List[AdjustmentNotice]:
    """Notify owners once per contract adjustment boundary.

    A boundary is claimed in ``contract_adjustment_notices`` before delivery
    and released again if delivery fails, so re-running the sweep never
    notifies the same boundary twice.
    """
    settings = settings or Settings()
    sink = sink or DatabaseNotificationSink(engine)
    today = today or date.today()

    with engine.connect() as conn:
        rows = conn.execute(
            select(contracts, properties.c.user_id, properties.c.name.label("property_name"))
            .join(properties, properties.c.id == contracts.c.property_id)
            .where(contracts.c.adjustment_type != AdjustmentType.NONE.value)
            .order_by(contracts.c.id.asc())
        ).mappings().all()

    sent: List[AdjustmentNotice] = []
    for row in rows:
        contract = row_to_contract(row)
        context = {"contract_id": contract.id}
        try:
            validate_contract(contract)
        except ConfigurationError as exc:
            logger.warning(
                "Skipping contract %s in adjustment sweep: %s", contract.id, exc, extra=context
            )
            continue
        if not is_active(contract, today):
            continue

        boundary = find_notifiable_boundary(
            contract,
            today,
            settings.notify_look_ahead_days,
            settings.notify_look_behind_days,
        )
        if boundary is None:
            continue
        context["boundary_date"] = boundary.isoformat()
        try:
            notice = _notify_boundary(
                engine, sink, settings, contract, row, boundary, context
            )
        except DBAPIError:
            # One contract's store failure must not abort the sweep.
            logger.exception(
                "Store failure in adjustment sweep for contract %s", contract.id, extra=context
            )
            continue
        if notice is not None:
            sent.append(notice)

    return sent


def _notify_boundary(
    engine: Engine,
    sink: NotificationSink,
    settings: Settings,
    contract: Contract,
    row: Mapping[str, Any],
    boundary: date,
    context: Dict[str, Any],
) -> Optional[AdjustmentNotice]:
    if not _claim_boundary(engine, contract.id, boundary):
        logger.debug(
            "Contract %s already notified for %s",
            contract.id,
            boundary.isoformat(),
            extra=context,
        )
        return None

    with engine.connect() as conn:
        cashflows = fetch_stored_cashflows(conn, contract.id)
    notice = _build_notice(
        contract,
        row["user_id"],
        row["property_name"],
        boundary,
        cashflows,
        settings.base_currency,
    )
    try:
        sink.send(notice.user_id, notice.title, notice.message, notice.link)
    except Exception:
        logger.exception(
            "Notification delivery failed for contract %s, boundary %s",
            contract.id,
            boundary.isoformat(),
            extra=context,
        )
        _release_boundary(engine, contract.id, boundary)
        return None

    logger.info(
        "Notified user %s about contract %s adjustment on %s",
        notice.user_id,
        contract.id,
        boundary.isoformat(),
        extra=context,
    )
    return notice


def _claim_boundary(engine: Engine, contract_id: int, boundary: date) -> bool:
    try:
        with engine.begin() as conn:
            exists = conn.execute(
                select(contract_adjustment_notices.c.id).where(
                    contract_adjustment_notices.c.contract_id == contract_id,
                    contract_adjustment_notices.c.boundary_date == boundary,
                )
            ).first()
            if exists:
                return False
            conn.execute(
                insert(contract_adjustment_notices).values(
                    contract_id=contract_id,
                    boundary_date=boundary,
                )
            )
    except IntegrityError:
        return False
    return True


def _release_boundary(engine: Engine, contract_id: int, boundary: date) -> None:
    with engine.begin() as conn:
        conn.execute(
            delete(contract_adjustment_notices).where(
                contract_adjustment_notices.c.contract_id == contract_id,
                contract_adjustment_notices.c.boundary_date == boundary,
            )
        )


def _build_notice(
    contract: Contract,
    user_id: int,
    property_name: str,
    boundary: date,
    cashflows: List[StoredCashflow],
    base_currency: str,
) -> AdjustmentNotice:
    by_date = {row.date: row for row in cashflows}
    previous_row = by_date.get(shift_month(boundary, -1))
    boundary_row = by_date.get(boundary)
    old_rent = (
        contract_amount(previous_row, contract.currency, base_currency)
        if previous_row
        else contract.base_rent_amount
    )
    tenant = contract.tenant_name or "Tenant"
    title = f"Rent adjustment due: {property_name}"
    link = f"/rentals/contracts/{contract.id}"

    if boundary_row is None or boundary_row.index_pending:
        message = (
            f"{tenant}'s rent adjusts on {boundary.isoformat()}. "
            f"Awaiting index data; current rent is {old_rent} {contract.currency}."
        )
        return AdjustmentNotice(
            contract_id=contract.id,
            user_id=user_id,
            boundary_date=boundary,
            title=title,
            message=message,
            link=link,
            awaiting_index=True,
        )

    new_rent = contract_amount(boundary_row, contract.currency, base_currency)
    message = (
        f"{tenant}'s rent adjusts on {boundary.isoformat()}: "
        f"{old_rent} -> {new_rent} {contract.currency}"
    )
    if old_rent:
        percentage = ((new_rent / old_rent - 1) * 100).quantize(
            Decimal("0.1"), rounding=ROUND_HALF_UP
        )
        message += f" ({percentage}%)"
    return AdjustmentNotice(
        contract_id=contract.id,
        user_id=user_id,
        boundary_date=boundary,
        title=title,
        message=message + ".",
        link=link,
    )
