"""SQLAlchemy models."""

from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, Float, Integer, String
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def utc_now() -> datetime:
    """Naive UTC; DateTime columns here carry no tzinfo."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_utc_naive(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class TradeRecord(Base):
    __tablename__ = "trades"

    id = Column(Integer, primary_key=True)
    side = Column(String, nullable=False, index=True)
    token_address = Column(String, nullable=False, index=True)
    symbol = Column(String, nullable=True)
    position_id = Column(String, nullable=True, index=True)
    # wei amounts overflow 64-bit integer columns; stored as decimal strings.
    amount_in = Column(String, nullable=False, default="0")
    amount_out = Column(String, nullable=False, default="0")
    tx_hash = Column(String, nullable=True)
    gas_used = Column(Integer, default=0, nullable=False)
    success = Column(Boolean, default=True, nullable=False)
    quote_fallback_used = Column(Boolean, default=False, nullable=False)
    reason = Column(String, nullable=True)
    created_at = Column(DateTime, default=utc_now, nullable=False)


class ClosedPosition(Base):
    __tablename__ = "closed_positions"

    id = Column(Integer, primary_key=True)
    position_id = Column(String, nullable=False, unique=True, index=True)
    token_address = Column(String, nullable=False, index=True)
    symbol = Column(String, nullable=True)
    entry_price = Column(String, nullable=False)
    exit_price = Column(String, nullable=False)
    cost_basis = Column(String, nullable=False)
    pnl_percent = Column(Float, default=0.0, nullable=False)
    close_reason = Column(String, nullable=True)
    tx_hash = Column(String, nullable=True)
    opened_at = Column(DateTime, nullable=False)
    closed_at = Column(DateTime, default=utc_now, nullable=False)
