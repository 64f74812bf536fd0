from __future__ import annotations

import dataclasses
import unittest
from datetime import datetime, timezone

from chain.connection import ChainRPCError
from chain.venue import TokenBought, TokenSold
from monitor.analytics import TokenAnalytics, TokenAnalyticsService, activity_score, suspicious_reasons, trade_price_change
from trading.models import Position, SecurityAnalysis, TokenInfo
from trading.strategy import MomentumSettings, MomentumStrategy, SniperStrategy, build_strategy
from utils.units import WEI

TOKEN = "0x1111111111111111111111111111111111111111"
NOW = 1_700_100_000


def _stats(**overrides) -> TokenAnalytics:
    base = dict(
        token=TOKEN,
        volume_24h=10 * WEI,
        trades_24h=40,
        unique_buyers_24h=20,
        unique_sellers_24h=10,
        largest_buy=2 * WEI,
        largest_sell=WEI,
        buy_pressure=70.0,
        price_change_24h=30.0,
        whale_trades=2,
        price_change_5m=8.0,
        price_change_1h=25.0,
    )
    base.update(overrides)
    return TokenAnalytics(**base)


def _settings(**overrides) -> MomentumSettings:
    base = dict(
        buy_amount=WEI // 10,
        min_change_5m=5.0,
        min_change_1h=10.0,
        min_volume_24h=5 * WEI,
        min_trades_24h=20,
        min_activity_score=40,
        require_buy_pressure=True,
        sell_on_momentum_loss=True,
        momentum_loss_percent=10.0,
        max_risk_score=50,
    )
    base.update(overrides)
    return MomentumSettings(**base)


class FakeAnalytics:
    def __init__(self, stats: TokenAnalytics | None = None, error: Exception | None = None) -> None:
        self.stats = stats or _stats()
        self.error = error
        self.calls: list[str] = []

    async def token_analytics(self, token: str) -> TokenAnalytics:
        self.calls.append(token)
        if self.error is not None:
            raise self.error
        return self.stats


class FakePrices:
    def __init__(self, changes: dict[float, float] | None = None) -> None:
        self.changes = changes or {}

    def price_change(self, token: str, window_seconds: float) -> float:
        return self.changes.get(window_seconds, 0.0)


def _buy(base: int, tokens: int, ts: int, block: int) -> TokenBought:
    return TokenBought(token=TOKEN, block_number=block, tx_hash=f"0x{block:04x}", log_index=0, timestamp=ts,
                       buyer=f"0x{block:040x}", amount_in=base, amount_out=tokens)


def _sell(base: int, tokens: int, ts: int, block: int) -> TokenSold:
    return TokenSold(token=TOKEN, block_number=block, tx_hash=f"0x{block:04x}", log_index=0, timestamp=ts,
                     seller=f"0x{block:040x}", amount_in=tokens, amount_out=base)


class AnalyticsHelperTests(unittest.TestCase):
    def test_trade_price_change_uses_latest_trade_before_window(self) -> None:
        trades = [
            _buy(WEI, 1000 * WEI, NOW - 7200, 1),
            _buy(WEI, 800 * WEI, NOW - 600, 2),
            _sell(WEI, 500 * WEI, NOW - 10, 3),
        ]
        self.assertEqual(trade_price_change(trades, 300, NOW), 60.0)
        self.assertEqual(trade_price_change(trades, 3600, NOW), 100.0)
        self.assertEqual(trade_price_change(trades, 86_400, NOW), 0.0)
        self.assertEqual(trade_price_change(trades[:1], 300, NOW), 0.0)

    def test_activity_score_and_suspicious_flags(self) -> None:
        self.assertEqual(activity_score(_stats(), age_minutes=5), 50)
        self.assertEqual(activity_score(_stats(), age_minutes=120), 40)
        self.assertEqual(suspicious_reasons(_stats(), age_minutes=5), [])
        washed = _stats(volume_24h=20 * WEI, unique_buyers_24h=2)
        self.assertEqual(suspicious_reasons(washed, age_minutes=120), ["wash_trading"])
        dumped = _stats(largest_sell=6 * WEI, buy_pressure=20.0)
        self.assertEqual(suspicious_reasons(dumped, age_minutes=10), ["early_large_sell", "heavy_sell_pressure"])


class TradeDerivedChangeTests(unittest.IsolatedAsyncioTestCase):
    async def test_analytics_carry_trade_implied_window_changes(self) -> None:
        class Connection:
            async def current_height(self) -> int:
                return 50_000

        class Ingestion:
            connection = Connection()

            async def events_for_token(self, token, from_block, to_block):
                return {
                    "purchases": [_buy(WEI, 1000 * WEI, NOW - 7200, 1), _buy(WEI, 800 * WEI, NOW - 600, 2)],
                    "sales": [_sell(WEI, 500 * WEI, NOW - 10, 3)],
                }

        stats = await TokenAnalyticsService(Ingestion(), None).token_analytics(TOKEN, now=NOW)
        self.assertEqual(stats.price_change_5m, 60.0)
        self.assertEqual(stats.price_change_1h, 100.0)
        self.assertEqual(stats.price_change_24h, 0.0)
        self.assertEqual(stats.trades_24h, 3)


class MomentumStrategyTests(unittest.IsolatedAsyncioTestCase):
    def _strategy(self, analytics=None, prices=None, **settings) -> MomentumStrategy:
        return MomentumStrategy(analytics or FakeAnalytics(), prices, settings=_settings(**settings))

    async def test_buys_rising_active_token(self) -> None:
        decision = await self._strategy().decide_buy(TokenInfo(address=TOKEN, symbol="MCAT"))
        self.assertTrue(decision.should_buy)
        self.assertEqual(decision.amount, WEI // 10)
        self.assertAlmostEqual(decision.confidence, 0.6)
        self.assertEqual(decision.risk_score, 35)

    async def test_aggregator_history_overrides_trade_changes(self) -> None:
        prices = FakePrices({300: 2.0})
        decision = await self._strategy(prices=prices).decide_buy(TokenInfo(address=TOKEN))
        self.assertFalse(decision.should_buy)
        self.assertIn("change_5m_low", decision.reason)

    async def test_rejections(self) -> None:
        cases = {
            "volume_low": _stats(volume_24h=WEI),
            "trades_low": _stats(trades_24h=5),
            "buy_pressure_low": _stats(buy_pressure=45.0),
            "change_1h_low": _stats(price_change_1h=3.0),
            "suspicious": _stats(largest_sell=6 * WEI),
        }
        for reason, stats in cases.items():
            with self.subTest(reason=reason):
                decision = await self._strategy(FakeAnalytics(stats)).decide_buy(TokenInfo(address=TOKEN))
                self.assertFalse(decision.should_buy)
                self.assertTrue(decision.reason.startswith(reason), decision.reason)

    async def test_unsafe_token_skips_analytics(self) -> None:
        analytics = FakeAnalytics()
        decision = await self._strategy(analytics).decide_buy(
            TokenInfo(address=TOKEN), SecurityAnalysis(is_honeypot=True, risk_score=90)
        )
        self.assertFalse(decision.should_buy)
        self.assertEqual(decision.reason, "honeypot")
        self.assertEqual(analytics.calls, [])

    async def test_rpc_failure_is_a_no_buy(self) -> None:
        analytics = FakeAnalytics(error=ChainRPCError("get_logs failed"))
        decision = await self._strategy(analytics).decide_buy(TokenInfo(address=TOKEN))
        self.assertFalse(decision.should_buy)
        self.assertEqual(decision.reason, "analytics_unavailable")

    def test_momentum_loss_exit(self) -> None:
        strategy = self._strategy()
        position = Position(
            id="pos-1",
            token=TokenInfo(address=TOKEN, symbol="MCAT"),
            entry_price=100,
            current_price=150,
            amount=1000,
            cost_basis=WEI,
            entry_time=datetime(2024, 1, 1, tzinfo=timezone.utc),
            high_price=150,
        )
        self.assertFalse(strategy.should_sell(position).should_sell)
        position = dataclasses.replace(position, current_price=140)
        self.assertFalse(strategy.should_sell(position).should_sell)
        position = dataclasses.replace(position, current_price=135)
        decision = strategy.should_sell(position)
        self.assertTrue(decision.should_sell)
        self.assertEqual(decision.amount, 1000)
        self.assertEqual(decision.sell_type, "strategy")

        strategy.settings.sell_on_momentum_loss = False
        self.assertFalse(strategy.should_sell(position).should_sell)


class BuildStrategyTests(unittest.TestCase):
    def test_selection(self) -> None:
        analytics = FakeAnalytics()
        self.assertIsInstance(build_strategy("momentum", analytics=analytics), MomentumStrategy)
        self.assertIsInstance(build_strategy("Sniper"), SniperStrategy)
        self.assertIsInstance(build_strategy("unknown"), SniperStrategy)
        with self.assertRaises(ValueError):
            build_strategy("momentum")


if __name__ == "__main__":
    unittest.main()
