"""Trade journal persistence."""

import logging
from typing import Optional

from sqlalchemy import create_engine, func
from sqlalchemy.orm import Session, sessionmaker

import config
from database.models import Base, ClosedPosition, TradeRecord, to_utc_naive, utc_now
from trading.models import Position, PositionEvent, TradeResult

logger = logging.getLogger(__name__)


class TradeJournal:
    def __init__(self, database_url: Optional[str] = None) -> None:
        self.engine = create_engine(database_url or config.DATABASE_URL, future=True)
        self.SessionLocal = sessionmaker(bind=self.engine, autoflush=False, autocommit=False, future=True)

    def init_db(self) -> None:
        Base.metadata.create_all(bind=self.engine)

    def get_db(self) -> Session:
        return self.SessionLocal()

    def record_trade(
        self,
        side: str,
        token_address: str,
        result: TradeResult,
        symbol: str = "",
        position_id: str = "",
        reason: str = "",
    ) -> TradeRecord:
        db = self.get_db()
        try:
            row = TradeRecord(
                side=side,
                token_address=token_address.lower(),
                symbol=symbol or None,
                position_id=position_id or None,
                amount_in=str(int(result.amount_in)),
                amount_out=str(int(result.amount_out)),
                tx_hash=result.tx_hash or None,
                gas_used=int(result.gas_used),
                success=bool(result.success),
                quote_fallback_used=bool(result.quote_fallback_used),
                reason=reason or result.error or None,
            )
            db.add(row)
            db.commit()
            db.refresh(row)
            return row
        finally:
            db.close()

    def record_close(self, position: Position, result: Optional[TradeResult], reason: str) -> ClosedPosition:
        db = self.get_db()
        try:
            row = ClosedPosition(
                position_id=position.id,
                token_address=position.token_address,
                symbol=position.token.symbol or None,
                entry_price=str(int(position.entry_price)),
                exit_price=str(int(position.current_price)),
                cost_basis=str(int(position.cost_basis)),
                pnl_percent=float(position.pnl_percent),
                close_reason=reason or None,
                tx_hash=(result.tx_hash if result else "") or None,
                opened_at=to_utc_naive(position.entry_time),
                closed_at=utc_now(),
            )
            db.add(row)
            db.commit()
            db.refresh(row)
            return row
        finally:
            db.close()

    def on_position_reduced(self, event: PositionEvent) -> None:
        if event.result is not None:
            self.record_trade(
                "sell",
                event.position.token_address,
                event.result,
                symbol=event.position.token.symbol,
                position_id=event.position.id,
                reason="partial",
            )

    def on_position_closed(self, event: PositionEvent) -> None:
        if event.result is not None:
            self.record_trade(
                "sell",
                event.position.token_address,
                event.result,
                symbol=event.position.token.symbol,
                position_id=event.position.id,
                reason=event.reason,
            )
        self.record_close(event.position, event.result, event.reason)
        logger.info("JOURNAL_CLOSE position=%s reason=%s", event.position.id, event.reason)

    def attach(self, risk_engine) -> None:
        risk_engine.position_reduced.subscribe(self.on_position_reduced)
        risk_engine.position_closed.subscribe(self.on_position_closed)

    def recent_trades(self, limit: int = 20) -> list[TradeRecord]:
        db = self.get_db()
        try:
            return db.query(TradeRecord).order_by(TradeRecord.id.desc()).limit(int(limit)).all()
        finally:
            db.close()

    def trade_stats(self) -> dict[str, float]:
        db = self.get_db()
        try:
            closed = db.query(func.count(ClosedPosition.id)).scalar() or 0
            wins = db.query(func.count(ClosedPosition.id)).filter(ClosedPosition.pnl_percent > 0).scalar() or 0
            avg_pnl = db.query(func.avg(ClosedPosition.pnl_percent)).scalar() or 0.0
            failed = db.query(func.count(TradeRecord.id)).filter(TradeRecord.success.is_(False)).scalar() or 0
            return {
                "closed_positions": int(closed),
                "wins": int(wins),
                "win_rate": (float(wins) / float(closed) * 100.0) if closed else 0.0,
                "avg_pnl_percent": float(avg_pnl),
                "failed_trades": int(failed),
            }
        finally:
            db.close()
