"""Stop-loss tracking: fixed, trailing and time-based triggers."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from trading.models import Position, RiskConfig
from utils.units import scale_down

logger = logging.getLogger(__name__)


@dataclass
class StopLossState:
    position_id: str
    entry_price: int
    trigger_price: int
    highest_price: int
    entry_time: datetime


@dataclass
class StopLossTrigger:
    reason: str
    price: int
    state: StopLossState


class StopLossEngine:
    def __init__(self, risk: RiskConfig) -> None:
        self.risk = risk
        self._states: dict[str, StopLossState] = {}

    def configure(self, risk: RiskConfig) -> None:
        self.risk = risk

    def track(self, position: Position) -> StopLossState | None:
        if not self.risk.stop_loss_enabled:
            return None
        entry = int(position.entry_price)
        if self.risk.trailing_stop_enabled:
            trigger = scale_down(entry, self.risk.trailing_stop_percent)
        else:
            trigger = scale_down(entry, self.risk.stop_loss_percent)
        state = StopLossState(
            position_id=position.id,
            entry_price=entry,
            trigger_price=trigger,
            highest_price=entry,
            entry_time=position.entry_time,
        )
        self._states[position.id] = state
        logger.info("STOP_LOSS_ARMED position=%s entry=%s trigger=%s", position.id, entry, trigger)
        return state

    def rearm(self, state: StopLossState) -> None:
        """Re-register after a failed stop-loss sell, keeping the high-water mark."""
        self._states[state.position_id] = state

    def untrack(self, position_id: str) -> None:
        self._states.pop(position_id, None)

    def is_tracked(self, position_id: str) -> bool:
        return position_id in self._states

    def state(self, position_id: str) -> StopLossState | None:
        return self._states.get(position_id)

    def trigger_price(self, position_id: str) -> int | None:
        state = self._states.get(position_id)
        return state.trigger_price if state else None

    def observe(self, position_id: str, price: int, now: datetime | None = None) -> StopLossTrigger | None:
        """
        Feed one price observation. When a rule fires, the position is removed from
        tracking before this returns, so a concurrent observation cannot fire it again.
        """
        state = self._states.get(position_id)
        if state is None:
            return None
        price = int(price)

        if self.risk.trailing_stop_enabled and price > state.highest_price:
            state.highest_price = price
            candidate = scale_down(price, self.risk.trailing_stop_percent)
            if candidate > state.trigger_price:
                logger.debug(
                    "TRAILING_STOP_RAISED position=%s high=%s trigger=%s",
                    position_id,
                    price,
                    candidate,
                )
                state.trigger_price = candidate

        reason = ""
        if price <= state.trigger_price:
            reason = "trailing_stop" if state.highest_price > state.entry_price else "stop_loss"
        elif self.risk.time_stop_enabled and price < state.entry_price:
            current = now or datetime.now(timezone.utc)
            held_minutes = (current - state.entry_time).total_seconds() / 60.0
            if held_minutes >= float(self.risk.max_hold_minutes):
                reason = "time_stop"

        if not reason:
            return None
        del self._states[position_id]
        return StopLossTrigger(reason=reason, price=price, state=state)
