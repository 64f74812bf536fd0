"""Multi-level take-profit bookkeeping."""

from __future__ import annotations

import logging

from trading.models import Position, RiskConfig, TakeProfitLevel
from utils.units import percent_to_bps

logger = logging.getLogger(__name__)


class TakeProfitEngine:
    def __init__(self, risk: RiskConfig) -> None:
        self.risk = risk
        self._tracked: set[str] = set()

    def configure(self, risk: RiskConfig) -> None:
        self.risk = risk

    def track(self, position: Position) -> None:
        if not position.take_profit_levels:
            position.take_profit_levels = self.risk.build_levels()
        self._tracked.add(position.id)

    def untrack(self, position_id: str) -> None:
        self._tracked.discard(position_id)

    def is_tracked(self, position_id: str) -> bool:
        return position_id in self._tracked

    def claim_next(self, position: Position) -> TakeProfitLevel | None:
        """Lowest unfired level the current PnL has reached, marked fired."""
        if position.id not in self._tracked:
            return None
        for level in position.take_profit_levels:
            if level.fired:
                continue
            if position.pnl_percent >= level.percent:
                level.fired = True
                return level
            # Levels are ascending; nothing above an unreached level can qualify.
            break
        return None

    @staticmethod
    def rollback(level: TakeProfitLevel) -> None:
        level.fired = False

    @staticmethod
    def sell_amount(position: Position, level: TakeProfitLevel) -> int:
        bps = max(0, min(10_000, percent_to_bps(level.sell_percent)))
        return position.amount * bps // 10_000

    @staticmethod
    def add_level(position: Position, percent: float, sell_percent: float) -> None:
        position.take_profit_levels = [lv for lv in position.take_profit_levels if lv.percent != float(percent)]
        position.take_profit_levels.append(TakeProfitLevel(percent=float(percent), sell_percent=float(sell_percent)))
        position.take_profit_levels.sort(key=lambda lv: lv.percent)

    @staticmethod
    def remove_level(position: Position, percent: float) -> bool:
        before = len(position.take_profit_levels)
        position.take_profit_levels = [lv for lv in position.take_profit_levels if lv.percent != float(percent)]
        return len(position.take_profit_levels) != before
