from datetime import date, datetime
from decimal import Decimal

from fastapi import FastAPI, Header, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from sqlalchemy import delete, insert, select, update
from sqlalchemy.exc import IntegrityError

from rentals.config import Settings, normalize_currency
from rentals.contracts import AdjustmentType, Contract, validate_contract
from rentals.dates import parse_month_value
from rentals.errors import (
    ConfigurationError,
    EntityNotFoundError,
    InvalidCashflowStateError,
    RegenerationInProgressError,
    RentalsError,
    TransientStoreError,
)
from rentals.indicators import IndicatorPoint, IndicatorType
from rentals.logging import get_logger, setup_logging
from rentals.notifier import check_contract_adjustments
from rentals.reconciliation import ReconciliationResult, StoredCashflow
from rentals.schema import (
    contract_adjustment_notices,
    contracts,
    create_db_engine,
    metadata,
    notifications,
    properties,
    rental_cashflows,
)
from rentals.service import (
    BatchReport,
    confirm_cashflow,
    contract_cashflow_view,
    regenerate_all_cashflows,
    regenerate_contract_cashflows,
    regenerate_indexed_contracts,
    revert_cashflow,
)
from rentals.store import list_indicator_points, upsert_indicator_point

logger = get_logger(__name__)

settings = Settings.from_env()

app = FastAPI()

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.frontend_origin],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

engine = create_db_engine(settings.database_url)


@app.on_event("startup")
def init_db() -> None:
    setup_logging(settings.log_level, settings.log_format)
    metadata.create_all(engine)


class PropertyPayload(BaseModel):
    name: str
    address: str | None = None

    @classmethod
    def validate_payload(cls, payload: "PropertyPayload") -> "PropertyPayload":
        payload.name = payload.name.strip()
        payload.address = payload.address.strip() if payload.address else None
        if not payload.name:
            raise ValueError("Property name required.")
        return payload


class PropertyResponse(BaseModel):
    id: int
    user_id: int
    name: str
    address: str | None = None
    created_at: datetime | None = None


class ContractPayload(BaseModel):
    property_id: int
    tenant_name: str | None = None
    start_date: date
    base_rent_amount: Decimal
    currency: str
    duration_months: int
    adjustment_type: str = AdjustmentType.NONE.value
    adjustment_index_type: str | None = None
    adjustment_frequency_months: int = 0
    adjustment_percent: Decimal | None = None

    @classmethod
    def validate_payload(cls, payload: "ContractPayload") -> "ContractPayload":
        payload.tenant_name = payload.tenant_name.strip() if payload.tenant_name else None
        payload.currency = normalize_currency(payload.currency)
        if payload.base_rent_amount <= 0:
            raise ValueError("Base rent must be greater than zero.")
        if payload.duration_months <= 0:
            raise ValueError("Duration must be greater than zero.")
        payload.adjustment_type = AdjustmentType.parse(payload.adjustment_type).value
        if payload.adjustment_index_type:
            payload.adjustment_index_type = IndicatorType.parse(
                payload.adjustment_index_type
            ).value
        else:
            payload.adjustment_index_type = None
        if payload.adjustment_type != AdjustmentType.INDEX_LINKED.value:
            payload.adjustment_index_type = None
        if payload.adjustment_type != AdjustmentType.FIXED_PERCENT.value:
            payload.adjustment_percent = None
        if payload.adjustment_type == AdjustmentType.NONE.value:
            payload.adjustment_frequency_months = 0
        validate_contract(payload.to_contract(contract_id=0))
        return payload

    def to_contract(self, contract_id: int) -> Contract:
        return Contract(
            id=contract_id,
            property_id=self.property_id,
            tenant_name=self.tenant_name,
            start_date=self.start_date,
            base_rent_amount=self.base_rent_amount,
            currency=self.currency,
            duration_months=self.duration_months,
            adjustment_type=AdjustmentType.parse(self.adjustment_type),
            adjustment_frequency_months=self.adjustment_frequency_months,
            adjustment_index_type=(
                IndicatorType.parse(self.adjustment_index_type)
                if self.adjustment_index_type
                else None
            ),
            adjustment_percent=self.adjustment_percent,
        )


class ContractResponse(BaseModel):
    id: int
    property_id: int
    tenant_name: str | None = None
    start_date: date
    base_rent_amount: Decimal
    currency: str
    duration_months: int
    adjustment_type: str
    adjustment_index_type: str | None = None
    adjustment_frequency_months: int
    adjustment_percent: Decimal | None = None
    cashflows_generated: int | None = None


class CashflowResponse(BaseModel):
    id: int
    date: date
    month_index: int
    amount_local: Decimal
    amount_base: Decimal | None = None
    status: str
    index_monthly_rate: Decimal | None = None
    index_accumulated_rate: Decimal | None = None
    index_pending: bool
    exchange_rate: Decimal | None = None
    exchange_rate_base: Decimal | None = None
    exchange_rate_closing: Decimal | None = None
    inflation_accumulated_rate: Decimal | None = None
    devaluation_accumulated_rate: Decimal | None = None
    source_generation: int


class ContractCashflowsResponse(BaseModel):
    contract_id: int
    currency: str
    awaiting_index: bool
    current_rent: Decimal
    cashflows: list[CashflowResponse]


class ReconciliationResponse(BaseModel):
    contract_id: int
    created: int
    updated: int
    skipped: int
    deleted: int
    unchanged: int
    pending: int


class BatchItemResponse(BaseModel):
    contract_id: int
    status: str
    error: str | None = None


class BatchRegenerationResponse(BaseModel):
    count: int
    results: list[BatchItemResponse]


class ConfirmCashflowPayload(BaseModel):
    amount_local: Decimal
    amount_base: Decimal | None = None

    @classmethod
    def validate_payload(cls, payload: "ConfirmCashflowPayload") -> "ConfirmCashflowPayload":
        if payload.amount_local < 0:
            raise ValueError("Amount must not be negative.")
        if payload.amount_base is not None and payload.amount_base < 0:
            raise ValueError("Base amount must not be negative.")
        return payload


class IndicatorPayload(BaseModel):
    type: str
    date: date
    value: Decimal
    interannual_value: Decimal | None = None
    is_manual: bool = False

    @classmethod
    def validate_payload(cls, payload: "IndicatorPayload") -> "IndicatorPayload":
        payload.type = IndicatorType.parse(payload.type).value
        if payload.type == IndicatorType.EXCHANGE_RATE.value and payload.value <= 0:
            raise ValueError("Exchange rate must be greater than zero.")
        return payload


class IndicatorResponse(BaseModel):
    type: str
    date: date
    value: Decimal
    interannual_value: Decimal | None = None
    is_manual: bool


class IndicatorIngestResponse(BaseModel):
    changed: bool
    regeneration: BatchRegenerationResponse | None = None


class AdjustmentSweepResponse(BaseModel):
    notified: int
    contract_ids: list[int]
    awaiting_index_contract_ids: list[int] = []


class NotificationResponse(BaseModel):
    id: int
    title: str
    message: str
    type: str
    link: str | None = None
    is_read: bool
    created_at: datetime | None = None


class NotificationListResponse(BaseModel):
    notifications: list[NotificationResponse]
    unread_count: int


def get_user_id(x_user_id: str | None) -> int:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing user identity.")
    try:
        return int(x_user_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid user identity.") from exc


def require_cron_secret(x_cron_secret: str | None) -> None:
    if settings.cron_secret and x_cron_secret != settings.cron_secret:
        raise HTTPException(status_code=401, detail="Invalid cron secret.")


def require_operator(x_cron_secret: str | None, x_user_id: str | None) -> None:
    """Batch and ingestion routes: the cron secret once one is configured."""
    if settings.cron_secret:
        require_cron_secret(x_cron_secret)
    else:
        get_user_id(x_user_id)


def http_error(exc: RentalsError) -> HTTPException:
    if isinstance(exc, EntityNotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ConfigurationError):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, (RegenerationInProgressError, InvalidCashflowStateError)):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, TransientStoreError):
        return HTTPException(status_code=503, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


def ensure_contract_owner(conn, contract_id: int, user_id: int) -> dict:
    row = conn.execute(
        select(contracts)
        .join(properties, properties.c.id == contracts.c.property_id)
        .where(contracts.c.id == contract_id, properties.c.user_id == user_id)
    ).mappings().first()
    if not row:
        raise HTTPException(status_code=404, detail="Contract not found.")
    return dict(row)


def ensure_property_owner(conn, property_id: int, user_id: int) -> None:
    exists = conn.execute(
        select(properties.c.id).where(
            properties.c.id == property_id,
            properties.c.user_id == user_id,
        )
    ).first()
    if not exists:
        raise HTTPException(status_code=404, detail="Property not found.")


def parse_month_param(value: str) -> date:
    try:
        return parse_month_value(value)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def contract_response(row, cashflows_generated: int | None = None) -> ContractResponse:
    return ContractResponse(
        id=row["id"],
        property_id=row["property_id"],
        tenant_name=row["tenant_name"],
        start_date=row["start_date"],
        base_rent_amount=row["base_rent_amount"],
        currency=row["currency"],
        duration_months=row["duration_months"],
        adjustment_type=row["adjustment_type"],
        adjustment_index_type=row["adjustment_index_type"],
        adjustment_frequency_months=row["adjustment_frequency_months"],
        adjustment_percent=row["adjustment_percent"],
        cashflows_generated=cashflows_generated,
    )


def cashflow_response(row: StoredCashflow) -> CashflowResponse:
    return CashflowResponse(
        id=row.id,
        date=row.date,
        month_index=row.month_index,
        amount_local=row.amount_local,
        amount_base=row.amount_base,
        status=row.status.value,
        index_monthly_rate=row.index_monthly_rate,
        index_accumulated_rate=row.index_accumulated_rate,
        index_pending=row.index_pending,
        exchange_rate=row.exchange_rate,
        exchange_rate_base=row.exchange_rate_base,
        exchange_rate_closing=row.exchange_rate_closing,
        inflation_accumulated_rate=row.inflation_accumulated_rate,
        devaluation_accumulated_rate=row.devaluation_accumulated_rate,
        source_generation=row.source_generation,
    )


def reconciliation_response(result: ReconciliationResult) -> ReconciliationResponse:
    return ReconciliationResponse(
        contract_id=result.contract_id,
        created=result.created,
        updated=result.updated,
        skipped=result.skipped,
        deleted=result.deleted,
        unchanged=result.unchanged,
        pending=result.pending,
    )


def batch_response(report: BatchReport) -> BatchRegenerationResponse:
    return BatchRegenerationResponse(
        count=report.count,
        results=[
            BatchItemResponse(contract_id=item.contract_id, status=item.status, error=item.error)
            for item in report.results
        ],
    )


def regenerate_or_raise(contract_id: int) -> ReconciliationResult:
    try:
        return regenerate_contract_cashflows(engine, contract_id, settings=settings)
    except RentalsError as exc:
        raise http_error(exc) from exc


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.get("/properties", response_model=list[PropertyResponse])
def list_properties(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[PropertyResponse]:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        rows = conn.execute(
            select(properties)
            .where(properties.c.user_id == user_id)
            .order_by(properties.c.name.asc())
        ).mappings().all()
    return [PropertyResponse(**row) for row in rows]


@app.post("/properties", response_model=PropertyResponse)
def create_property(
    payload: PropertyPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> PropertyResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = PropertyPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        row = conn.execute(
            insert(properties)
            .values(user_id=user_id, name=payload.name, address=payload.address)
            .returning(*properties.c)
        ).mappings().first()
    if not row:
        raise HTTPException(status_code=500, detail="Failed to create property.")
    return PropertyResponse(**row)


@app.delete("/properties/{property_id}")
def delete_property(
    property_id: int,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> dict:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        ensure_property_owner(conn, property_id, user_id)
        contract_ids = select(contracts.c.id).where(contracts.c.property_id == property_id)
        conn.execute(
            delete(rental_cashflows).where(rental_cashflows.c.contract_id.in_(contract_ids))
        )
        conn.execute(
            delete(contract_adjustment_notices).where(
                contract_adjustment_notices.c.contract_id.in_(contract_ids)
            )
        )
        conn.execute(delete(contracts).where(contracts.c.property_id == property_id))
        conn.execute(delete(properties).where(properties.c.id == property_id))
    return {"status": "deleted"}


@app.get("/contracts", response_model=list[ContractResponse])
def list_contracts(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[ContractResponse]:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        rows = conn.execute(
            select(contracts)
            .join(properties, properties.c.id == contracts.c.property_id)
            .where(properties.c.user_id == user_id)
            .order_by(contracts.c.start_date.desc())
        ).mappings().all()
    return [contract_response(row) for row in rows]


@app.post("/contracts", response_model=ContractResponse)
def create_contract(
    payload: ContractPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> ContractResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = ContractPayload.validate_payload(payload)
    except (ValueError, ConfigurationError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        ensure_property_owner(conn, payload.property_id, user_id)
        row = conn.execute(
            insert(contracts)
            .values(
                property_id=payload.property_id,
                tenant_name=payload.tenant_name,
                start_date=payload.start_date,
                base_rent_amount=payload.base_rent_amount,
                currency=payload.currency,
                duration_months=payload.duration_months,
                adjustment_type=payload.adjustment_type,
                adjustment_index_type=payload.adjustment_index_type,
                adjustment_frequency_months=payload.adjustment_frequency_months,
                adjustment_percent=payload.adjustment_percent,
            )
            .returning(*contracts.c)
        ).mappings().first()
    if not row:
        raise HTTPException(status_code=500, detail="Failed to create contract.")

    result = regenerate_or_raise(row["id"])
    return contract_response(row, cashflows_generated=result.created)


@app.get("/contracts/{contract_id}", response_model=ContractResponse)
def get_contract(
    contract_id: int,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> ContractResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        row = ensure_contract_owner(conn, contract_id, user_id)
    return contract_response(row)


@app.put("/contracts/{contract_id}", response_model=ContractResponse)
def update_contract(
    contract_id: int,
    payload: ContractPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> ContractResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = ContractPayload.validate_payload(payload)
    except (ValueError, ConfigurationError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        existing = ensure_contract_owner(conn, contract_id, user_id)
        ensure_property_owner(conn, payload.property_id, user_id)
        if existing["start_date"] != payload.start_date:
            raise HTTPException(
                status_code=400,
                detail="Contract start date cannot be changed; create a new contract instead.",
            )
        row = conn.execute(
            update(contracts)
            .where(contracts.c.id == contract_id)
            .values(
                property_id=payload.property_id,
                tenant_name=payload.tenant_name,
                base_rent_amount=payload.base_rent_amount,
                currency=payload.currency,
                duration_months=payload.duration_months,
                adjustment_type=payload.adjustment_type,
                adjustment_index_type=payload.adjustment_index_type,
                adjustment_frequency_months=payload.adjustment_frequency_months,
                adjustment_percent=payload.adjustment_percent,
            )
            .returning(*contracts.c)
        ).mappings().first()

    regenerate_or_raise(contract_id)
    return contract_response(row)


@app.delete("/contracts/{contract_id}")
def delete_contract(
    contract_id: int,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> dict:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        ensure_contract_owner(conn, contract_id, user_id)
        conn.execute(delete(rental_cashflows).where(rental_cashflows.c.contract_id == contract_id))
        conn.execute(
            delete(contract_adjustment_notices).where(
                contract_adjustment_notices.c.contract_id == contract_id
            )
        )
        conn.execute(delete(contracts).where(contracts.c.id == contract_id))
    return {"status": "deleted"}


@app.get("/contracts/{contract_id}/cashflows", response_model=ContractCashflowsResponse)
def get_contract_cashflows(
    contract_id: int,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> ContractCashflowsResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        ensure_contract_owner(conn, contract_id, user_id)
    try:
        view = contract_cashflow_view(engine, contract_id, settings=settings)
    except RentalsError as exc:
        raise http_error(exc) from exc
    return ContractCashflowsResponse(
        contract_id=contract_id,
        currency=view.contract.currency,
        awaiting_index=view.awaiting_index,
        current_rent=view.current_rent,
        cashflows=[cashflow_response(row) for row in view.cashflows],
    )


@app.post(
    "/contracts/{contract_id}/cashflows/regenerate",
    response_model=ReconciliationResponse,
)
def regenerate_contract(
    contract_id: int,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> ReconciliationResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        ensure_contract_owner(conn, contract_id, user_id)
    return reconciliation_response(regenerate_or_raise(contract_id))


@app.put("/contracts/{contract_id}/cashflows/{month}/confirm", response_model=CashflowResponse)
def confirm_contract_cashflow(
    contract_id: int,
    month: str,
    payload: ConfirmCashflowPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> CashflowResponse:
    user_id = get_user_id(x_user_id)
    payment_month = parse_month_param(month)
    try:
        payload = ConfirmCashflowPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    with engine.begin() as conn:
        ensure_contract_owner(conn, contract_id, user_id)
    try:
        row = confirm_cashflow(
            engine,
            contract_id,
            payment_month,
            payload.amount_local,
            payload.amount_base,
        )
    except RentalsError as exc:
        raise http_error(exc) from exc
    return cashflow_response(row)


@app.delete("/contracts/{contract_id}/cashflows/{month}/confirm", response_model=CashflowResponse)
def revert_contract_cashflow(
    contract_id: int,
    month: str,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> CashflowResponse:
    user_id = get_user_id(x_user_id)
    payment_month = parse_month_param(month)
    with engine.begin() as conn:
        ensure_contract_owner(conn, contract_id, user_id)
    try:
        row = revert_cashflow(engine, contract_id, payment_month)
    except RentalsError as exc:
        raise http_error(exc) from exc
    return cashflow_response(row)


@app.post("/cashflows/regenerate", response_model=BatchRegenerationResponse)
def regenerate_all(
    x_user_id: str | None = Header(None, alias="x-user-id"),
    x_cron_secret: str | None = Header(None, alias="x-cron-secret"),
) -> BatchRegenerationResponse:
    require_operator(x_cron_secret, x_user_id)
    try:
        report = regenerate_all_cashflows(engine, settings=settings)
    except RentalsError as exc:
        raise http_error(exc) from exc
    return batch_response(report)


@app.get("/indicators", response_model=list[IndicatorResponse])
def list_indicators(
    type: str = Query(...),
    start: str | None = Query(None),
    end: str | None = Query(None),
) -> list[IndicatorResponse]:
    try:
        indicator_type = IndicatorType.parse(type)
        start_date = date.fromisoformat(start) if start else None
        end_date = date.fromisoformat(end) if end else None
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    with engine.begin() as conn:
        points = list_indicator_points(conn, indicator_type, start_date, end_date)
    return [
        IndicatorResponse(
            type=point.type.value,
            date=point.date,
            value=point.value,
            interannual_value=point.interannual_value,
            is_manual=point.is_manual,
        )
        for point in points
    ]


@app.post("/indicators", response_model=IndicatorIngestResponse)
def ingest_indicator(
    payload: IndicatorPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
    x_cron_secret: str | None = Header(None, alias="x-cron-secret"),
) -> IndicatorIngestResponse:
    require_operator(x_cron_secret, x_user_id)
    try:
        payload = IndicatorPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    indicator_type = IndicatorType(payload.type)
    point = IndicatorPoint(
        type=indicator_type,
        date=payload.date,
        value=payload.value,
        interannual_value=payload.interannual_value,
        is_manual=payload.is_manual,
    )
    try:
        with engine.begin() as conn:
            changed = upsert_indicator_point(conn, point)
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="Indicator point already exists.") from exc

    if not changed:
        return IndicatorIngestResponse(changed=False)
    try:
        report = regenerate_indexed_contracts(engine, indicator_type, settings=settings)
    except RentalsError as exc:
        raise http_error(exc) from exc
    return IndicatorIngestResponse(changed=True, regeneration=batch_response(report))


@app.post("/cron/contract-adjustments", response_model=AdjustmentSweepResponse)
def run_contract_adjustment_sweep(
    x_cron_secret: str | None = Header(None, alias="x-cron-secret"),
) -> AdjustmentSweepResponse:
    require_cron_secret(x_cron_secret)
    notices = check_contract_adjustments(engine, settings=settings)
    return AdjustmentSweepResponse(
        notified=len(notices),
        contract_ids=[notice.contract_id for notice in notices],
        awaiting_index_contract_ids=[
            notice.contract_id for notice in notices if notice.awaiting_index
        ],
    )


@app.get("/notifications", response_model=NotificationListResponse)
def list_notifications(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> NotificationListResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        rows = conn.execute(
            select(notifications)
            .where(notifications.c.user_id == user_id)
            .order_by(notifications.c.created_at.desc(), notifications.c.id.desc())
            .limit(20)
        ).mappings().all()
        unread_count = len(
            conn.execute(
                select(notifications.c.id).where(
                    notifications.c.user_id == user_id,
                    notifications.c.is_read.is_(False),
                )
            ).all()
        )
    return NotificationListResponse(
        notifications=[
            NotificationResponse(
                id=row["id"],
                title=row["title"],
                message=row["message"],
                type=row["type"],
                link=row["link"],
                is_read=row["is_read"],
                created_at=row["created_at"],
            )
            for row in rows
        ],
        unread_count=unread_count,
    )
