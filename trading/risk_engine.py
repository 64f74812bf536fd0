"""Open positions, admission control and automated exits."""

from __future__ import annotations

import asyncio
import dataclasses
import itertools
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import config
from monitor.price_aggregator import PriceAggregator, PricePoint
from trading.models import Position, PositionEvent, RiskConfig, SellDecision, TokenInfo, TradeResult
from trading.stop_loss import StopLossEngine, StopLossTrigger
from trading.take_profit import TakeProfitEngine
from utils.addressing import normalize_address
from utils.channels import Channel
from utils.units import format_base, implied_price

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _next_utc_midnight(now: datetime) -> datetime:
    day = now.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
    return day + timedelta(days=1)


class RiskEngine:
    def __init__(
        self,
        executor: Any,
        prices: PriceAggregator | None = None,
        risk_config: RiskConfig | None = None,
        strategy: Any = None,
        sweep_interval: float | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.executor = executor
        self.prices = prices
        self.risk = risk_config or RiskConfig.from_config()
        self.strategy = strategy
        self.clock = clock
        self.sweep_interval = float(sweep_interval or config.RISK_SWEEP_INTERVAL_SECONDS)

        self.stop_loss = StopLossEngine(self.risk)
        self.take_profit = TakeProfitEngine(self.risk)

        self.position_opened: Channel[PositionEvent] = Channel("position_opened")
        self.position_reduced: Channel[PositionEvent] = Channel("position_reduced")
        self.position_closed: Channel[PositionEvent] = Channel("position_closed")
        self.stop_loss_triggered: Channel[PositionEvent] = Channel("stop_loss_triggered")
        self.take_profit_triggered: Channel[PositionEvent] = Channel("take_profit_triggered")

        self._positions: dict[str, Position] = {}
        self._ids = itertools.count(1)
        self._daily_volume = 0
        self._daily_reset_at = _next_utc_midnight(self.clock())
        self._reserved_slots = 0
        self._reserved_volume = 0
        self._busy: set[str] = set()
        self._deferred: dict[str, list[int]] = {}
        self._sweep_task: asyncio.Task[None] | None = None
        self._unsubscribe_prices: Callable[[], None] | None = None

    # ---------------------------------------------------------------- config

    def configure(self, risk_config: RiskConfig | None = None, **overrides: Any) -> RiskConfig:
        """Swap risk parameters at runtime. New stop/take-profit levels apply to new positions."""
        base = risk_config or self.risk
        self.risk = dataclasses.replace(base, **overrides) if overrides else base
        self.stop_loss.configure(self.risk)
        self.take_profit.configure(self.risk)
        logger.info(
            "RISK_CONFIGURED sl=%.1f%% trailing=%s/%.1f%% max_pos=%s max_size=%s daily=%s",
            self.risk.stop_loss_percent,
            self.risk.trailing_stop_enabled,
            self.risk.trailing_stop_percent,
            self.risk.max_concurrent_positions,
            format_base(self.risk.max_position_size),
            format_base(self.risk.daily_limit),
        )
        return self.risk

    # -------------------------------------------------------------- admission

    def _roll_daily_window(self) -> None:
        now = self.clock()
        if now >= self._daily_reset_at:
            logger.info("DAILY_VOLUME_RESET previous=%s", format_base(self._daily_volume))
            self._daily_volume = 0
            self._daily_reset_at = _next_utc_midnight(now)

    @property
    def daily_volume(self) -> int:
        self._roll_daily_window()
        return self._daily_volume

    def remaining_daily_budget(self) -> int:
        self._roll_daily_window()
        return max(0, int(self.risk.daily_limit) - self._daily_volume - self._reserved_volume)

    def can_open(self, amount: int) -> tuple[bool, str]:
        self._roll_daily_window()
        amount = int(amount)
        open_count = len(self._positions) + self._reserved_slots
        if open_count >= int(self.risk.max_concurrent_positions):
            return False, f"max_positions_reached count={open_count} max={self.risk.max_concurrent_positions}"
        if amount > int(self.risk.max_position_size):
            return False, (
                f"position_size_exceeded amount={format_base(amount)} max={format_base(self.risk.max_position_size)}"
            )
        if self._daily_volume + self._reserved_volume + amount > int(self.risk.daily_limit):
            return False, f"daily_limit_exceeded remaining={format_base(self.remaining_daily_budget())}"
        return True, "ok"

    def reserve(self, amount: int) -> tuple[bool, str]:
        """Admission check that also holds a slot and budget until `open` or `release`."""
        ok, reason = self.can_open(amount)
        if ok:
            self._reserved_slots += 1
            self._reserved_volume += int(amount)
        return ok, reason

    def release(self, amount: int) -> None:
        self._reserved_slots = max(0, self._reserved_slots - 1)
        self._reserved_volume = max(0, self._reserved_volume - int(amount))

    # -------------------------------------------------------------- lifecycle

    async def open(
        self,
        token: TokenInfo | str,
        cost: int,
        tokens_received: int,
        entry_price: int | None = None,
        reserved: bool = False,
    ) -> Position:
        if int(tokens_received) <= 0:
            raise ValueError("tokens_received must be positive")
        if reserved:
            self.release(cost)
        info = token if isinstance(token, TokenInfo) else TokenInfo(address=normalize_address(token))
        price = int(entry_price) if entry_price else implied_price(cost, tokens_received)
        position = Position(
            id=f"pos-{next(self._ids)}",
            token=info,
            entry_price=price,
            current_price=price,
            amount=int(tokens_received),
            cost_basis=int(cost),
            entry_time=self.clock(),
            take_profit_levels=self.risk.build_levels() if self.risk.take_profit_enabled else [],
            high_price=price,
        )
        position.recompute_pnl()

        self._roll_daily_window()
        self._daily_volume += int(cost)
        self._positions[position.id] = position
        self.stop_loss.track(position)
        if self.risk.take_profit_enabled:
            self.take_profit.track(position)
        logger.info(
            "POSITION_OPENED id=%s token=%s symbol=%s cost=%s tokens=%s entry=%s",
            position.id,
            info.address,
            info.symbol or "-",
            format_base(cost),
            position.amount,
            price,
        )
        self.position_opened.publish(PositionEvent(position=position.snapshot()))
        if self.prices is not None:
            await self.prices.track(info.address)
        return position.snapshot()

    def reduce(self, position_id: str, sold_tokens: int, received: int, result: TradeResult | None = None) -> Position | None:
        position = self._positions.get(position_id)
        if position is None:
            return None
        sold = min(int(sold_tokens), position.amount)
        remaining = position.amount - sold
        if remaining <= 0:
            return self.close(position_id, result=result, reason="sold_out")
        position.cost_basis = position.cost_basis * remaining // position.amount
        position.amount = remaining
        position.recompute_pnl()
        logger.info(
            "POSITION_REDUCED id=%s sold=%s received=%s remaining=%s",
            position_id,
            sold,
            format_base(received),
            remaining,
        )
        snapshot = position.snapshot()
        self.position_reduced.publish(
            PositionEvent(position=snapshot, result=result, sold_tokens=sold, received=int(received))
        )
        return snapshot

    def close(self, position_id: str, result: TradeResult | None = None, reason: str = "manual") -> Position | None:
        position = self._positions.pop(position_id, None)
        if position is None:
            return None
        self.stop_loss.untrack(position_id)
        self.take_profit.untrack(position_id)
        if self.prices is not None and not self._positions_for(position.token_address):
            self.prices.untrack(position.token_address)
        logger.info(
            "POSITION_CLOSED id=%s token=%s reason=%s pnl=%.2f%% tx=%s",
            position_id,
            position.token_address,
            reason,
            position.pnl_percent,
            result.tx_hash if result else "-",
        )
        snapshot = position.snapshot()
        self.position_closed.publish(PositionEvent(position=snapshot, result=result, reason=reason))
        return snapshot

    # ---------------------------------------------------------------- queries

    def _positions_for(self, token: str) -> list[Position]:
        key = normalize_address(token)
        return [p for p in self._positions.values() if p.token_address == key]

    def positions(self) -> list[Position]:
        return [p.snapshot() for p in self._positions.values()]

    def get_position(self, position_id: str) -> Position | None:
        position = self._positions.get(position_id)
        return position.snapshot() if position else None

    def position_for_token(self, token: str) -> Position | None:
        matches = self._positions_for(token)
        return matches[0].snapshot() if matches else None

    def portfolio_value(self) -> int:
        return sum(p.current_value for p in self._positions.values())

    def summary(self) -> dict[str, Any]:
        cost = sum(p.cost_basis for p in self._positions.values())
        value = self.portfolio_value()
        return {
            "open_positions": len(self._positions),
            "total_cost": cost,
            "total_value": value,
            "unrealized_pnl": value - cost,
            "daily_volume": self.daily_volume,
            "remaining_daily_budget": self.remaining_daily_budget(),
        }

    # ------------------------------------------------------------- evaluation

    async def start(self) -> None:
        if self.prices is not None and self._unsubscribe_prices is None:
            self._unsubscribe_prices = self.prices.price_updates.subscribe(self.on_price_update)
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_loop())
        logger.info("RISK_ENGINE_STARTED sweep=%.1fs", self.sweep_interval)

    async def stop(self) -> None:
        if self._unsubscribe_prices is not None:
            self._unsubscribe_prices()
            self._unsubscribe_prices = None
        task, self._sweep_task = self._sweep_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            try:
                await self.sweep()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("RISK_SWEEP_FAILED err=%s", exc)

    async def on_price_update(self, point: PricePoint) -> None:
        for position in self._positions_for(point.token):
            await self.evaluate(position.id, point.price)

    async def sweep(self) -> None:
        for position_id in list(self._positions):
            position = self._positions.get(position_id)
            if position is None:
                continue
            price = position.current_price
            if self.prices is not None:
                quoted = await self.prices.current_price(position.token_address)
                price = quoted if quoted > 0 else price
            await self.evaluate(position_id, price)
            if self.strategy is not None and position_id in self._positions:
                await self._strategy_exit(position_id)

    async def evaluate(self, position_id: str, price: int) -> None:
        """
        Stop-loss then take-profit for one price. All sells of a position hold the same
        busy guard; prices arriving meanwhile are replayed in order once the in-flight
        sell returns, against whatever amount is left by then.
        """
        position = self._positions.get(position_id)
        if position is None or int(price) <= 0:
            return
        position.update_price(price)
        if not self._acquire(position_id):
            self._deferred.setdefault(position_id, []).append(int(price))
            logger.debug("EXIT_DEFERRED position=%s price=%s", position_id, price)
            return
        try:
            await self._evaluate_held(position, int(price))
            await self._replay_deferred(position)
        finally:
            self._deferred.pop(position_id, None)
            self._release(position_id)

    async def _replay_deferred(self, position: Position) -> None:
        while position.id in self._positions:
            queued = self._deferred.pop(position.id, None)
            if not queued:
                return
            for pending in queued:
                if position.id not in self._positions:
                    return
                await self._evaluate_held(position, pending)

    def _acquire(self, position_id: str) -> bool:
        if position_id in self._busy:
            return False
        self._busy.add(position_id)
        return True

    def _release(self, position_id: str) -> None:
        self._busy.discard(position_id)

    async def _evaluate_held(self, position: Position, price: int) -> None:
        trigger = self.stop_loss.observe(position.id, price, self.clock())
        if trigger is not None:
            await self._execute_stop_loss(position, trigger)
            return
        if self.risk.take_profit_enabled and self.take_profit.is_tracked(position.id):
            await self._run_take_profit(position)

    async def _execute_stop_loss(self, position: Position, trigger: StopLossTrigger) -> None:
        logger.warning(
            "STOP_LOSS_TRIGGERED position=%s token=%s reason=%s price=%s trigger=%s pnl=%.2f%%",
            position.id,
            position.token_address,
            trigger.reason,
            trigger.price,
            trigger.state.trigger_price,
            position.pnl_percent,
        )
        self.stop_loss_triggered.publish(PositionEvent(position=position.snapshot(), reason=trigger.reason))
        amount = position.amount
        result = await self.executor.sell(position.token_address, amount, self.risk.stop_loss_slippage)
        if result.success:
            self.close(position.id, result=result, reason=trigger.reason)
            return
        logger.error("STOP_LOSS_SELL_FAILED position=%s reason=%s", position.id, result.error)
        if position.id in self._positions:
            self.stop_loss.rearm(trigger.state)

    async def _run_take_profit(self, position: Position) -> None:
        while position.id in self._positions:
            if self._deferred.get(position.id):
                # A newer price is queued; let it reach the stop-loss before more levels.
                break
            level = self.take_profit.claim_next(position)
            if level is None:
                break
            amount = self.take_profit.sell_amount(position, level)
            if amount <= 0:
                logger.debug("TAKE_PROFIT_EMPTY position=%s level=%.1f%%", position.id, level.percent)
                continue
            logger.info(
                "TAKE_PROFIT_TRIGGERED position=%s level=%.1f%% pnl=%.2f%% sell=%s of=%s",
                position.id,
                level.percent,
                position.pnl_percent,
                amount,
                position.amount,
            )
            self.take_profit_triggered.publish(
                PositionEvent(position=position.snapshot(), reason=f"take_profit_{level.percent:g}", sold_tokens=amount)
            )
            result = await self.executor.sell(position.token_address, amount, self.risk.take_profit_slippage)
            if not result.success:
                self.take_profit.rollback(level)
                logger.warning(
                    "TAKE_PROFIT_SELL_FAILED position=%s level=%.1f%% reason=%s",
                    position.id,
                    level.percent,
                    result.error,
                )
                break
            self.reduce(position.id, amount, result.amount_out, result=result)

    async def _strategy_exit(self, position_id: str) -> None:
        position = self._positions.get(position_id)
        if position is None:
            return
        decision = self.strategy.should_sell(position.snapshot())
        if not decision.should_sell:
            return
        if not self._acquire(position_id):
            return
        try:
            await self._strategy_sell(position, decision)
            await self._replay_deferred(position)
        finally:
            self._deferred.pop(position_id, None)
            self._release(position_id)

    async def _strategy_sell(self, position: Position, decision: SellDecision) -> None:
        position_id = position.id
        amount = min(int(decision.amount or position.amount), position.amount)
        full_exit = amount >= position.amount
        state = self.stop_loss.state(position_id) if full_exit else None
        if full_exit:
            self.stop_loss.untrack(position_id)
        logger.info("STRATEGY_EXIT position=%s amount=%s reason=%s", position_id, amount, decision.reason)
        result = await self.executor.sell(position.token_address, amount, self.risk.stop_loss_slippage)
        if not result.success:
            logger.warning("STRATEGY_EXIT_FAILED position=%s reason=%s", position_id, result.error)
            if state is not None and position_id in self._positions:
                self.stop_loss.rearm(state)
            return
        if full_exit:
            self.close(position_id, result=result, reason=decision.sell_type or "strategy")
        else:
            self.reduce(position_id, amount, result.amount_out, result=result)
