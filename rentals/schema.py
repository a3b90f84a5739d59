from __future__ import annotations

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    UniqueConstraint,
    create_engine,
    event,
    func,
)
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

metadata = MetaData()

properties = Table(
    "properties",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False),
    Column("name", String(255), nullable=False),
    Column("address", String(500)),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

contracts = Table(
    "contracts",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column(
        "property_id",
        Integer,
        ForeignKey("properties.id", ondelete="CASCADE"),
        nullable=False,
    ),
    Column("tenant_name", String(255)),
    Column("start_date", Date, nullable=False),
    Column("base_rent_amount", Numeric(18, 2), nullable=False),
    Column("currency", String(3), nullable=False),
    Column("adjustment_type", String(20), nullable=False, server_default="NONE"),
    Column("adjustment_index_type", String(30)),
    Column("adjustment_frequency_months", Integer, nullable=False, server_default="0"),
    Column("adjustment_percent", Numeric(12, 8)),
    Column("duration_months", Integer, nullable=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

economic_indicators = Table(
    "economic_indicators",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("type", String(30), nullable=False),
    Column("date", Date, nullable=False),
    Column("value", Numeric(18, 6), nullable=False),
    Column("interannual_value", Numeric(18, 6)),
    Column("is_manual", Boolean, nullable=False, server_default="0"),
    Column("updated_at", DateTime, nullable=False, server_default=func.now()),
    UniqueConstraint("type", "date", name="uq_economic_indicators_type_date"),
)

rental_cashflows = Table(
    "rental_cashflows",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column(
        "contract_id",
        Integer,
        ForeignKey("contracts.id", ondelete="CASCADE"),
        nullable=False,
    ),
    Column("date", Date, nullable=False),
    Column("month_index", Integer, nullable=False),
    Column("amount_local", Numeric(18, 2), nullable=False),
    Column("amount_base", Numeric(18, 2)),
    Column("status", String(20), nullable=False, server_default="PROJECTED"),
    Column("index_monthly_rate", Numeric(18, 8)),
    Column("index_accumulated_rate", Numeric(18, 8)),
    Column("index_pending", Boolean, nullable=False, server_default="0"),
    Column("exchange_rate", Numeric(18, 6)),
    Column("exchange_rate_base", Numeric(18, 6)),
    Column("exchange_rate_closing", Numeric(18, 6)),
    Column("inflation_accumulated_rate", Numeric(18, 8)),
    Column("devaluation_accumulated_rate", Numeric(18, 8)),
    Column("source_generation", Integer, nullable=False, server_default="0"),
    Column("confirmed_at", DateTime),
    UniqueConstraint("contract_id", "date", name="uq_rental_cashflows_contract_date"),
)

notifications = Table(
    "notifications",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False),
    Column("title", String(255), nullable=False),
    Column("message", String(2000), nullable=False),
    Column("type", String(20), nullable=False, server_default="INFO"),
    Column("link", String(500)),
    Column("is_read", Boolean, nullable=False, server_default="0"),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

contract_adjustment_notices = Table(
    "contract_adjustment_notices",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column(
        "contract_id",
        Integer,
        ForeignKey("contracts.id", ondelete="CASCADE"),
        nullable=False,
    ),
    Column("boundary_date", Date, nullable=False),
    Column("notified_at", DateTime, nullable=False, server_default=func.now()),
    UniqueConstraint(
        "contract_id", "boundary_date", name="uq_adjustment_notices_contract_boundary"
    ),
)


def create_db_engine(database_url: str) -> Engine:
    connect_args = {}
    engine_kwargs = {}
    if database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False}
        if database_url in {"sqlite://", "sqlite:///:memory:"}:
            engine_kwargs["poolclass"] = StaticPool
    engine = create_engine(database_url, connect_args=connect_args, **engine_kwargs)
    if engine.dialect.name == "sqlite":
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
    return engine


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()
