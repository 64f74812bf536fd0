from __future__ import annotations

import asyncio
import unittest
from datetime import datetime, timedelta, timezone

from monitor.price_aggregator import PriceAggregator
from trading.models import PositionEvent, RiskConfig, SellDecision, TakeProfitLevel, TokenInfo, TradeResult
from trading.risk_engine import RiskEngine
from trading.take_profit import TakeProfitEngine
from utils.units import WEI

TOKEN = "0x1111111111111111111111111111111111111111"
OTHER = "0x2222222222222222222222222222222222222222"


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2024, 3, 10, 22, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now


class FakeExecutor:
    def __init__(self) -> None:
        self.sells: list[tuple[str, int, float]] = []
        self.failures: list[bool] = []
        self.gate: asyncio.Event | None = None

    async def sell(self, token: str, amount: int, slippage: float | None = None) -> TradeResult:
        if self.gate is not None:
            await self.gate.wait()
        self.sells.append((token, amount, slippage))
        if self.failures and self.failures.pop(0):
            return TradeResult(success=False, error="reverted", error_kind="venue")
        return TradeResult(success=True, amount_in=amount, amount_out=amount * 10, tx_hash=f"0x{len(self.sells):02x}")


class FakeStrategy:
    def __init__(self, sell: bool = True) -> None:
        self.sell = sell

    def should_sell(self, position):
        if not self.sell:
            return SellDecision(should_sell=False)
        return SellDecision(should_sell=True, reason="auto_sell", sell_type="strategy")


def _risk(**overrides) -> RiskConfig:
    base = dict(
        stop_loss_enabled=False,
        take_profit_levels=[(50.0, 50.0), (100.0, 100.0)],
        max_position_size=3 * WEI,
        max_concurrent_positions=5,
        daily_limit=5 * WEI,
    )
    base.update(overrides)
    return RiskConfig(**base)


class TakeProfitEngineTests(unittest.TestCase):
    def test_add_and_remove_levels_keep_order(self) -> None:
        engine = TakeProfitEngine(_risk())
        position = _position_stub()
        TakeProfitEngine.add_level(position, 75, 30)
        TakeProfitEngine.add_level(position, 25, 10)
        self.assertEqual([lv.percent for lv in position.take_profit_levels], [25.0, 75.0])
        self.assertTrue(TakeProfitEngine.remove_level(position, 25))
        self.assertFalse(TakeProfitEngine.remove_level(position, 25))
        engine.track(position)
        self.assertEqual(len(position.take_profit_levels), 1)

    def test_sell_amount_is_fraction_of_remaining(self) -> None:
        position = _position_stub()
        position.amount = 999
        self.assertEqual(TakeProfitEngine.sell_amount(position, TakeProfitLevel(50, 33.33)), 332)

    def test_claim_marks_fired_and_rollback_restores(self) -> None:
        engine = TakeProfitEngine(_risk())
        position = _position_stub()
        engine.track(position)
        position.pnl_percent = 60.0
        level = engine.claim_next(position)
        self.assertEqual(level.percent, 50.0)
        self.assertIsNone(engine.claim_next(position))
        TakeProfitEngine.rollback(level)
        self.assertIs(engine.claim_next(position), level)


def _position_stub():
    from trading.models import Position

    return Position(
        id="pos-x",
        token=TokenInfo(address=TOKEN),
        entry_price=100,
        current_price=100,
        amount=1000,
        cost_basis=WEI,
        entry_time=datetime(2024, 1, 1, tzinfo=timezone.utc),
    )


class RiskAdmissionTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.clock = FakeClock()
        self.engine = RiskEngine(FakeExecutor(), prices=None, risk_config=_risk(max_position_size=5 * WEI), clock=self.clock)

    async def test_daily_cap_reports_remaining_budget(self) -> None:
        for _ in range(2):
            ok, _ = self.engine.can_open(2 * WEI)
            self.assertTrue(ok)
            await self.engine.open(TOKEN, 2 * WEI, 1000 * WEI)
        ok, reason = self.engine.can_open(2 * WEI)
        self.assertFalse(ok)
        self.assertIn("daily_limit_exceeded", reason)
        self.assertIn("remaining=1.000000", reason)
        self.assertEqual(self.engine.remaining_daily_budget(), WEI)

    async def test_daily_window_resets_at_utc_midnight(self) -> None:
        await self.engine.open(TOKEN, 5 * WEI, 1000 * WEI)
        self.assertFalse(self.engine.can_open(1)[0])
        self.clock.now += timedelta(hours=2, minutes=1)
        self.assertTrue(self.engine.can_open(WEI)[0])
        self.assertEqual(self.engine.daily_volume, 0)

    async def test_position_size_and_count_limits(self) -> None:
        self.engine.configure(max_concurrent_positions=2, max_position_size=WEI)
        ok, reason = self.engine.can_open(2 * WEI)
        self.assertFalse(ok)
        self.assertIn("position_size_exceeded", reason)

        self.assertTrue(self.engine.reserve(WEI)[0])
        self.assertTrue(self.engine.reserve(WEI)[0])
        ok, reason = self.engine.can_open(WEI)
        self.assertFalse(ok)
        self.assertIn("max_positions_reached", reason)
        self.engine.release(WEI)
        self.assertTrue(self.engine.can_open(WEI)[0])

    async def test_reserved_open_converts_reservation(self) -> None:
        self.assertTrue(self.engine.reserve(2 * WEI)[0])
        await self.engine.open(TOKEN, 2 * WEI, 1000 * WEI, reserved=True)
        summary = self.engine.summary()
        self.assertEqual(summary["open_positions"], 1)
        self.assertEqual(summary["daily_volume"], 2 * WEI)
        self.assertEqual(summary["remaining_daily_budget"], 3 * WEI)

    async def test_open_derives_entry_price_and_rejects_empty_fill(self) -> None:
        position = await self.engine.open(TokenInfo(address=TOKEN, symbol="TST"), WEI, 1000 * WEI)
        self.assertEqual(position.entry_price, WEI // 1000)
        self.assertEqual(position.id, "pos-1")
        with self.assertRaises(ValueError):
            await self.engine.open(TOKEN, WEI, 0)

    async def test_snapshots_are_detached(self) -> None:
        position = await self.engine.open(TOKEN, WEI, 1000)
        position.amount = 1
        self.assertEqual(self.engine.get_position(position.id).amount, 1000)


class RiskLifecycleTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.clock = FakeClock()
        self.executor = FakeExecutor()
        self.engine = RiskEngine(self.executor, prices=None, risk_config=_risk(), clock=self.clock)
        self.closed: list[PositionEvent] = []
        self.reduced: list[PositionEvent] = []
        self.engine.position_closed.subscribe(self.closed.append)
        self.engine.position_reduced.subscribe(self.reduced.append)

    async def _open(self, token: str = TOKEN):
        return await self.engine.open(token, WEI, 1000, entry_price=100)

    async def test_reduce_to_zero_is_a_close(self) -> None:
        position = await self._open()
        self.engine.reduce(position.id, 400, WEI // 2)
        self.assertEqual(self.engine.get_position(position.id).amount, 600)
        self.assertEqual(self.engine.get_position(position.id).cost_basis, WEI * 600 // 1000)
        self.engine.reduce(position.id, 600, WEI // 2)
        self.assertIsNone(self.engine.get_position(position.id))
        self.assertEqual(len(self.reduced), 1)
        self.assertEqual([e.reason for e in self.closed], ["sold_out"])
        self.assertIsNone(self.engine.close(position.id))

    async def test_take_profit_levels_sell_from_remaining(self) -> None:
        position = await self._open()
        await self.engine.evaluate(position.id, 151)
        self.assertEqual([s[1] for s in self.executor.sells], [500])
        self.assertEqual(self.engine.get_position(position.id).amount, 500)

        await self.engine.evaluate(position.id, 151)
        self.assertEqual(len(self.executor.sells), 1)

        await self.engine.evaluate(position.id, 201)
        self.assertEqual([s[1] for s in self.executor.sells], [500, 500])
        self.assertIsNone(self.engine.get_position(position.id))
        self.assertEqual(self.closed[-1].reason, "sold_out")

    async def test_gap_through_two_levels_fires_both_in_order(self) -> None:
        position = await self._open()
        await self.engine.evaluate(position.id, 201)
        self.assertEqual([s[1] for s in self.executor.sells], [500, 500])
        self.assertIsNone(self.engine.get_position(position.id))

    async def test_failed_take_profit_sell_rolls_level_back(self) -> None:
        position = await self._open()
        self.executor.failures = [True]
        await self.engine.evaluate(position.id, 151)
        self.assertEqual(self.engine.get_position(position.id).amount, 1000)
        self.assertFalse(self.engine.get_position(position.id).take_profit_levels[0].fired)

        await self.engine.evaluate(position.id, 151)
        self.assertEqual(self.engine.get_position(position.id).amount, 500)

    async def test_concurrent_updates_sell_level_once(self) -> None:
        position = await self._open()
        self.executor.gate = asyncio.Event()
        first = asyncio.create_task(self.engine.evaluate(position.id, 151))
        await asyncio.sleep(0)
        await self.engine.evaluate(position.id, 151)
        self.executor.gate.set()
        await first
        self.assertEqual(len(self.executor.sells), 1)

    async def test_stop_loss_waits_for_in_flight_take_profit(self) -> None:
        self.engine.configure(stop_loss_enabled=True, stop_loss_percent=20.0)
        position = await self._open()
        self.executor.gate = asyncio.Event()
        first = asyncio.create_task(self.engine.evaluate(position.id, 151))
        await asyncio.sleep(0)
        await self.engine.evaluate(position.id, 79)
        self.assertEqual(self.executor.sells, [])
        self.executor.gate.set()
        await first

        self.assertEqual([s[1] for s in self.executor.sells], [500, 500])
        self.assertLessEqual(sum(s[1] for s in self.executor.sells), 1000)
        self.assertEqual(self.executor.sells[1][2], self.engine.risk.stop_loss_slippage)
        self.assertIsNone(self.engine.get_position(position.id))
        self.assertEqual(self.closed[-1].reason, "stop_loss")

    async def test_take_profit_not_claimed_while_stop_loss_sells(self) -> None:
        self.engine.configure(stop_loss_enabled=True, stop_loss_percent=20.0)
        position = await self._open()
        self.executor.gate = asyncio.Event()
        first = asyncio.create_task(self.engine.evaluate(position.id, 79))
        await asyncio.sleep(0)
        await self.engine.evaluate(position.id, 201)
        self.executor.gate.set()
        await first

        self.assertEqual([s[1] for s in self.executor.sells], [1000])
        self.assertIsNone(self.engine.get_position(position.id))

    async def test_strategy_exit_skips_position_with_sell_in_flight(self) -> None:
        self.engine.strategy = FakeStrategy()
        position = await self._open()
        self.executor.gate = asyncio.Event()
        first = asyncio.create_task(self.engine.evaluate(position.id, 151))
        await asyncio.sleep(0)
        await self.engine._strategy_exit(position.id)
        self.executor.gate.set()
        await first

        self.assertEqual([s[1] for s in self.executor.sells], [500])
        self.assertEqual(self.engine.get_position(position.id).amount, 500)

    async def test_stop_loss_sells_everything_and_closes(self) -> None:
        self.engine.configure(stop_loss_enabled=True, stop_loss_percent=20.0)
        position = await self._open()
        await self.engine.evaluate(position.id, 80)
        self.assertEqual(self.executor.sells, [(TOKEN, 1000, self.engine.risk.stop_loss_slippage)])
        self.assertEqual([e.reason for e in self.closed], ["stop_loss"])

    async def test_failed_stop_loss_sell_rearms(self) -> None:
        self.engine.configure(stop_loss_enabled=True, stop_loss_percent=20.0)
        triggered: list[PositionEvent] = []
        self.engine.stop_loss_triggered.subscribe(triggered.append)
        position = await self._open()
        self.executor.failures = [True]
        await self.engine.evaluate(position.id, 79)
        self.assertIsNotNone(self.engine.get_position(position.id))
        self.assertTrue(self.engine.stop_loss.is_tracked(position.id))

        await self.engine.evaluate(position.id, 78)
        self.assertIsNone(self.engine.get_position(position.id))
        self.assertEqual(len(triggered), 2)
        self.assertEqual(len(self.executor.sells), 2)

    async def test_close_untracks_price_only_when_last_holder(self) -> None:
        tracked: set[str] = set()

        class Prices:
            async def track(self, token: str) -> None:
                tracked.add(token)

            def untrack(self, token: str) -> None:
                tracked.discard(token)

        self.engine.prices = Prices()
        first = await self._open()
        second = await self._open()
        self.engine.close(first.id)
        self.assertIn(TOKEN, tracked)
        self.engine.close(second.id)
        self.assertNotIn(TOKEN, tracked)

    async def test_strategy_exit_during_sweep(self) -> None:
        self.engine.strategy = FakeStrategy()
        position = await self._open()
        await self.engine.sweep()
        self.assertEqual([s[1] for s in self.executor.sells], [1000])
        self.assertEqual(self.closed[-1].reason, "strategy")
        self.assertIsNone(self.engine.get_position(position.id))

    async def test_summary_and_portfolio_value(self) -> None:
        await self.engine.open(TOKEN, WEI, 2 * WEI, entry_price=WEI // 2)
        await self.engine.open(OTHER, WEI, 4 * WEI, entry_price=WEI // 4)
        summary = self.engine.summary()
        self.assertEqual(summary["open_positions"], 2)
        self.assertEqual(summary["total_cost"], 2 * WEI)
        self.assertEqual(summary["total_value"], 2 * WEI)
        self.assertEqual(summary["unrealized_pnl"], 0)
        self.assertEqual(self.engine.position_for_token(OTHER.upper().replace("0X", "0x")).amount, 4 * WEI)

    async def test_configure_applies_to_new_positions_only(self) -> None:
        first = await self._open()
        self.engine.configure(take_profit_levels=[(10.0, 100.0)])
        second = await self._open()
        self.assertEqual(len(self.engine.get_position(first.id).take_profit_levels), 2)
        self.assertEqual(len(self.engine.get_position(second.id).take_profit_levels), 1)


class PriceUpdateExitTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.executor = FakeExecutor()

        async def no_quote(token: str) -> int:
            return 0

        self.prices = PriceAggregator(no_quote, refresh_interval=3600)
        self.engine = RiskEngine(
            self.executor,
            prices=self.prices,
            risk_config=_risk(
                stop_loss_enabled=True,
                trailing_stop_enabled=True,
                trailing_stop_percent=10.0,
                take_profit_enabled=False,
            ),
            sweep_interval=3600,
            clock=FakeClock(),
        )
        self.closed: list[PositionEvent] = []
        self.engine.position_closed.subscribe(self.closed.append)
        await self.engine.start()

    async def asyncTearDown(self) -> None:
        await self.engine.stop()

    async def test_trailing_stop_fires_once_from_queued_updates(self) -> None:
        position = await self.engine.open(TOKEN, WEI, 1000, entry_price=100)
        for price in (100, 150, 120, 110):
            self.prices.record(TOKEN, price)
        await self.prices.price_updates.drain()

        self.assertEqual(self.executor.sells, [(TOKEN, 1000, self.engine.risk.stop_loss_slippage)])
        self.assertIsNone(self.engine.get_position(position.id))
        self.assertEqual([e.reason for e in self.closed], ["trailing_stop"])
        self.assertFalse(self.prices.is_tracked(TOKEN))

    async def test_updates_queued_behind_a_slow_sell_are_replayed(self) -> None:
        self.executor.gate = asyncio.Event()
        position = await self.engine.open(TOKEN, WEI, 1000, entry_price=100)
        for price in (150, 120, 110, 100):
            self.prices.record(TOKEN, price)
        for _ in range(5):
            await asyncio.sleep(0)
        self.executor.gate.set()
        await self.prices.price_updates.drain()

        self.assertEqual(len(self.executor.sells), 1)
        self.assertIsNone(self.engine.get_position(position.id))


if __name__ == "__main__":
    unittest.main()
