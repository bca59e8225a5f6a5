"""Database schema and storage using SQLAlchemy."""

from datetime import datetime
from typing import Any

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    inspect,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class IntentDB(Base):
    """Local mirror of on-chain intents plus solver-only bookkeeping."""

    __tablename__ = "intents"

    intent_id = Column(String(66), primary_key=True)
    depositor = Column(String(42), nullable=False, index=True)
    # uint256 on-chain; kept as decimal text.
    usdc_amount = Column(String(78), nullable=False)
    currency = Column(Integer, nullable=False)
    status = Column(String(32), nullable=False, index=True)
    created_at = Column(DateTime, nullable=False)
    committed_at = Column(DateTime, nullable=True)

    selected_solver = Column(String(42), nullable=True, index=True)  # lowercased
    selected_route = Column(Integer, nullable=True)
    selected_fiat_amount = Column(BigInteger, nullable=True)
    receiving_info = Column(String(512), nullable=True)
    recipient_name = Column(String(256), nullable=True)

    quotes_submitted = Column(Boolean, default=False, nullable=False)
    fulfillment_tx_ref = Column(String(66), nullable=True)
    provider_transfer_id = Column(String(255), nullable=True, index=True)

    # Resumable pipeline checkpoints
    pipeline_step = Column(String(32), nullable=True)
    proof_path = Column(Text, nullable=True)
    attestation_json = Column(Text, nullable=True)
    claim_tx_hash = Column(String(66), nullable=True)

    error = Column(Text, nullable=True)
    failure_stage = Column(String(32), nullable=True)
    fiat_sent_alert = Column(Boolean, default=False, nullable=False, index=True)
    retry_count = Column(Integer, default=0, nullable=False)
    next_retry_at = Column(DateTime, nullable=True, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class QuoteDB(Base):
    """Quotes this solver produced, one per (intent, route)."""

    __tablename__ = "quotes"
    __table_args__ = (UniqueConstraint("intent_id", "route", name="uq_quote_intent_route"),)

    id = Column(String(80), primary_key=True)  # "{intent_id}-{route}"
    intent_id = Column(String(66), nullable=False, index=True)
    route = Column(Integer, nullable=False)
    fiat_amount = Column(BigInteger, nullable=False)
    fee = Column(String(78), nullable=False)
    estimated_time = Column(Integer, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    submitted_on_chain = Column(Boolean, default=False, nullable=False)
    tx_hash = Column(String(66), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class SolverStateDB(Base):
    """Small key/value table (last scanned block)."""

    __tablename__ = "solver_state"

    key = Column(String(64), primary_key=True)
    value = Column(Text, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


_engine = None
_SessionLocal = None

# Columns added after the first release; SQLite gets them via ALTER TABLE.
_INTENT_ADDITIVE_COLUMNS: dict[str, str] = {
    "pipeline_step": "VARCHAR(32)",
    "proof_path": "TEXT",
    "attestation_json": "TEXT",
    "claim_tx_hash": "VARCHAR(66)",
    "failure_stage": "VARCHAR(32)",
    "fiat_sent_alert": "BOOLEAN NOT NULL DEFAULT 0",
}


def init_db(db_url: str) -> None:
    """Initialize database connection and create tables."""
    global _engine, _SessionLocal

    _engine = create_engine(
        db_url,
        echo=False,
        pool_pre_ping=True,
        connect_args={"check_same_thread": False} if "sqlite" in db_url else {},
    )

    Base.metadata.create_all(bind=_engine)
    _SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=_engine)

    if "sqlite" in db_url:
        _ensure_sqlite_intent_columns(_engine)


def _ensure_sqlite_intent_columns(engine: Any) -> None:
    """Add missing intent columns on SQLite (additive-only, never drops)."""
    existing = {c["name"] for c in inspect(engine).get_columns("intents")}
    missing = {k: v for k, v in _INTENT_ADDITIVE_COLUMNS.items() if k not in existing}
    if not missing:
        return
    with engine.begin() as conn:
        for name, ddl in missing.items():
            conn.execute(text(f"ALTER TABLE intents ADD COLUMN {name} {ddl}"))


def get_engine() -> Any:
    if _engine is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _engine


def get_session() -> Session:
    """Get a database session."""
    if _SessionLocal is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _SessionLocal()
