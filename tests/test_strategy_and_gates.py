from __future__ import annotations

import unittest
from datetime import datetime, timedelta, timezone

import config
from trading.gates import NoSentiment, PassThroughSecurity, QuoteRoundtripSecurity, build_security_provider
from trading.models import Position, SecurityAnalysis, SentimentAnalysis, TokenInfo
from trading.strategy import SniperSettings, SniperStrategy
from utils.units import WEI

TOKEN = "0x1111111111111111111111111111111111111111"
CREATOR = "0x2222222222222222222222222222222222222222"
NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class ConfigPatchMixin:
    def setUp(self) -> None:
        super().setUp()
        self._cfg_old: dict[str, object] = {}

    def patch_cfg(self, **kwargs: object) -> None:
        for key, value in kwargs.items():
            if key not in self._cfg_old:
                self._cfg_old[key] = getattr(config, key, None)
            setattr(config, key, value)

    def tearDown(self) -> None:
        for key, value in self._cfg_old.items():
            setattr(config, key, value)
        super().tearDown()


class FakeReader:
    def __init__(self, token_out: int = 1000, base_out: int = WEI // 5) -> None:
        self.token_out = token_out
        self.base_out = base_out
        self.fail = False

    async def quote_buy(self, token: str, amount: int) -> int:
        if self.fail:
            raise ValueError("execution reverted")
        return self.token_out

    async def quote_sell(self, token: str, amount: int) -> int:
        return self.base_out


def _token(**overrides) -> TokenInfo:
    base = dict(
        address=TOKEN,
        name="Moon Cat",
        symbol="MCAT",
        creator=CREATOR,
        created_at=NOW - timedelta(minutes=1),
        reserve_base=WEI,
        reserve_token=800 * WEI,
        total_supply=1000 * WEI,
    )
    base.update(overrides)
    return TokenInfo(**base)


class SecurityGateTests(ConfigPatchMixin, unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.patch_cfg(
            HONEYPOT_CHECK_ENABLED=True,
            RUG_CHECK_ENABLED=True,
            ROUNDTRIP_SELL_FRACTION=0.25,
            ROUNDTRIP_MIN_RATIO=0.7,
            MIN_LIQUIDITY=WEI // 2,
        )

    async def test_healthy_curve_passes(self) -> None:
        gate = QuoteRoundtripSecurity(FakeReader(), probe_amount=WEI)
        self.assertEqual(await gate.quick_check(_token()), (True, "ok"))
        analysis = await gate.analyze(_token())
        self.assertEqual(analysis.recommendation, "safe")
        self.assertEqual(analysis.risk_score, 0)

    async def test_one_way_curve_is_rejected(self) -> None:
        gate = QuoteRoundtripSecurity(FakeReader(base_out=WEI // 10), probe_amount=WEI)
        ok, reason = await gate.quick_check(_token())
        self.assertFalse(ok)
        self.assertIn("roundtrip_ratio_low", reason)

    async def test_unsellable_token_is_a_honeypot(self) -> None:
        gate = QuoteRoundtripSecurity(FakeReader(base_out=0), probe_amount=WEI)
        self.assertEqual(await gate.quick_check(_token()), (False, "sell_quote_zero"))
        analysis = await gate.analyze(_token())
        self.assertTrue(analysis.is_honeypot)
        self.assertEqual(analysis.recommendation, "avoid")

    async def test_quote_failure_is_reported(self) -> None:
        reader = FakeReader()
        reader.fail = True
        ok, reason = await QuoteRoundtripSecurity(reader, probe_amount=WEI).quick_check(_token())
        self.assertFalse(ok)
        self.assertTrue(reason.startswith("roundtrip_quote_failed"))

    async def test_rug_checks(self) -> None:
        gate = QuoteRoundtripSecurity(FakeReader(), probe_amount=WEI)
        self.assertEqual(await gate.quick_check(_token(is_migrated=True)), (False, "already_migrated"))
        ok, reason = await gate.quick_check(_token(reserve_base=WEI // 10))
        self.assertFalse(ok)
        self.assertIn("low_liquidity", reason)
        analysis = await gate.analyze(_token(reserve_base=WEI // 10, reserve_token=WEI))
        self.assertTrue(analysis.has_rug_risk)
        self.assertEqual(analysis.risk_score, 35)
        self.assertEqual(analysis.recommendation, "caution")

    async def test_builder_and_passthrough(self) -> None:
        self.patch_cfg(HONEYPOT_CHECK_ENABLED=False, RUG_CHECK_ENABLED=False)
        gate = build_security_provider(FakeReader())
        self.assertIsInstance(gate, PassThroughSecurity)
        self.assertEqual(await gate.quick_check(_token()), (True, "ok"))
        self.assertIsNone(await NoSentiment().analyze_token("MCAT", "Moon Cat"))


class SniperStrategyTests(unittest.TestCase):
    def _strategy(self, **overrides) -> SniperStrategy:
        settings = SniperSettings(
            buy_amount=WEI // 10,
            max_age_minutes=5,
            min_reserve=WEI // 2,
            max_reserve=10 * WEI,
            blacklisted_creators=[],
            whitelisted_creators=[],
            blacklisted_words=["scam"],
            min_sentiment_score=0,
            auto_sell_after_minutes=0,
        )
        for key, value in overrides.items():
            setattr(settings, key, value)
        strategy = SniperStrategy(settings)
        strategy.max_risk_score = 70
        return strategy

    def test_fresh_token_in_band_is_bought(self) -> None:
        decision = self._strategy().should_buy(_token(), SecurityAnalysis(), None, now=NOW)
        self.assertTrue(decision.should_buy)
        self.assertEqual(decision.amount, WEI // 10)
        self.assertAlmostEqual(decision.confidence, 0.7)

    def test_rejections(self) -> None:
        cases = [
            (self._strategy(), _token(created_at=NOW - timedelta(minutes=30)), None, "too_old"),
            (self._strategy(), _token(reserve_base=WEI // 10), None, "reserve_too_low"),
            (self._strategy(), _token(reserve_base=20 * WEI), None, "reserve_too_high"),
            (self._strategy(blacklisted_creators=[CREATOR]), _token(), None, "creator_blacklisted"),
            (self._strategy(whitelisted_creators=["0x" + "33" * 20]), _token(), None, "creator_not_whitelisted"),
            (self._strategy(), _token(name="Scam Coin"), None, "blacklisted_word"),
            (self._strategy(), _token(), SecurityAnalysis(is_honeypot=True), "honeypot"),
            (self._strategy(), _token(), SecurityAnalysis(risk_score=90), "risk_score_too_high"),
            (self._strategy(), _token(), SecurityAnalysis(recommendation="avoid"), "security_avoid"),
        ]
        for strategy, token, analysis, reason in cases:
            with self.subTest(reason=reason):
                decision = strategy.should_buy(token, analysis, None, now=NOW)
                self.assertFalse(decision.should_buy)
                self.assertTrue(decision.reason.startswith(reason), decision.reason)

    def test_sentiment_threshold(self) -> None:
        strategy = self._strategy(min_sentiment_score=40)
        self.assertEqual(strategy.should_buy(_token(), None, None, now=NOW).reason, "sentiment_unavailable")
        low = SentimentAnalysis(symbol="MCAT", score=10)
        self.assertFalse(strategy.should_buy(_token(), None, low, now=NOW).should_buy)
        high = SentimentAnalysis(symbol="MCAT", score=80)
        decision = strategy.should_buy(_token(), None, high, now=NOW)
        self.assertTrue(decision.should_buy)
        self.assertAlmostEqual(decision.confidence, 0.8)

    def test_disabled_strategy_never_buys(self) -> None:
        strategy = self._strategy()
        strategy.enabled = False
        self.assertEqual(strategy.should_buy(_token(), None, None, now=NOW).reason, "strategy_disabled")

    def test_timed_exit(self) -> None:
        strategy = self._strategy(auto_sell_after_minutes=10)
        position = Position(
            id="pos-1",
            token=_token(),
            entry_price=1,
            current_price=1,
            amount=500,
            cost_basis=1,
            entry_time=NOW,
        )
        self.assertFalse(strategy.should_sell(position, now=NOW + timedelta(minutes=9)).should_sell)
        decision = strategy.should_sell(position, now=NOW + timedelta(minutes=10))
        self.assertTrue(decision.should_sell)
        self.assertEqual(decision.amount, 500)
        self.assertEqual(decision.sell_type, "strategy")


if __name__ == "__main__":
    unittest.main()
