"""Entry/exit strategies consulted by the auto-trading loop and the risk sweep."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

import config
from chain.connection import ChainRPCError
from monitor.analytics import TokenAnalytics, activity_score, suspicious_reasons
from trading.models import (
    BuyDecision,
    Position,
    SecurityAnalysis,
    SellDecision,
    SentimentAnalysis,
    TokenInfo,
)
from utils.units import format_base

logger = logging.getLogger(__name__)


class BaseStrategy:
    name = "base"

    def __init__(self, max_risk_score: int | None = None) -> None:
        self.enabled = True
        self.max_risk_score = int(config.SNIPER_MAX_RISK_SCORE if max_risk_score is None else max_risk_score)

    def pre_check_buy(self, analysis: SecurityAnalysis | None) -> tuple[bool, str]:
        if not self.enabled:
            return False, "strategy_disabled"
        if analysis is None:
            return True, "ok"
        if analysis.is_honeypot:
            return False, "honeypot"
        if analysis.risk_score > self.max_risk_score:
            return False, f"risk_score_too_high score={analysis.risk_score} max={self.max_risk_score}"
        if analysis.recommendation == "avoid":
            return False, "security_avoid"
        return True, "ok"

    def should_buy(
        self,
        token: TokenInfo,
        analysis: SecurityAnalysis | None = None,
        sentiment: SentimentAnalysis | None = None,
    ) -> BuyDecision:
        return BuyDecision(should_buy=False, reason="not_implemented")

    async def decide_buy(
        self,
        token: TokenInfo,
        analysis: SecurityAnalysis | None = None,
        sentiment: SentimentAnalysis | None = None,
    ) -> BuyDecision:
        """Entry point for the auto-buy flow; strategies needing market data fetch it here."""
        return self.should_buy(token, analysis, sentiment)

    def should_sell(self, position: Position) -> SellDecision:
        return SellDecision(should_sell=False, reason="no_sell_conditions")

    def _log_decision(self, side: str, symbol: str, ok: bool, reason: str) -> None:
        logger.info("STRATEGY_DECISION strategy=%s side=%s symbol=%s ok=%s reason=%s", self.name, side, symbol, ok, reason)

    def _no(self, token: TokenInfo, reason: str) -> BuyDecision:
        self._log_decision("buy", token.symbol, False, reason)
        return BuyDecision(should_buy=False, reason=reason)


@dataclass
class SniperSettings:
    buy_amount: int = field(default_factory=lambda: int(config.SNIPER_BUY_AMOUNT))
    max_age_minutes: float = field(default_factory=lambda: float(config.SNIPER_MAX_AGE_MINUTES))
    min_reserve: int = field(default_factory=lambda: int(config.SNIPER_MIN_RESERVE))
    max_reserve: int = field(default_factory=lambda: int(config.SNIPER_MAX_RESERVE))
    blacklisted_creators: list[str] = field(default_factory=lambda: list(config.BLACKLISTED_CREATORS))
    whitelisted_creators: list[str] = field(default_factory=lambda: list(config.WHITELISTED_CREATORS))
    blacklisted_words: list[str] = field(default_factory=lambda: list(config.BLACKLISTED_WORDS))
    min_sentiment_score: int = field(default_factory=lambda: int(config.MIN_SENTIMENT_SCORE))
    auto_sell_after_minutes: float = field(default_factory=lambda: float(config.SNIPER_AUTO_SELL_MINUTES))


class SniperStrategy(BaseStrategy):
    """Buy fresh launches inside a reserve band; optional timed exit."""

    name = "sniper"

    def __init__(self, settings: SniperSettings | None = None) -> None:
        super().__init__()
        self.settings = settings or SniperSettings()

    def should_buy(
        self,
        token: TokenInfo,
        analysis: SecurityAnalysis | None = None,
        sentiment: SentimentAnalysis | None = None,
        now: datetime | None = None,
    ) -> BuyDecision:
        s = self.settings
        ok, reason = self.pre_check_buy(analysis)
        if not ok:
            return self._no(token, reason)

        age = token.age_minutes(now)
        if s.max_age_minutes > 0 and age > s.max_age_minutes:
            return self._no(token, f"too_old age_min={age:.0f}")
        if token.reserve_base < s.min_reserve:
            return self._no(token, f"reserve_too_low reserve={format_base(token.reserve_base)}")
        if s.max_reserve > 0 and token.reserve_base > s.max_reserve:
            return self._no(token, f"reserve_too_high reserve={format_base(token.reserve_base)}")

        creator = token.creator.lower()
        if creator in s.blacklisted_creators:
            return self._no(token, "creator_blacklisted")
        if s.whitelisted_creators and creator not in s.whitelisted_creators:
            return self._no(token, "creator_not_whitelisted")

        name, symbol = token.name.lower(), token.symbol.lower()
        for word in s.blacklisted_words:
            if word in name or word in symbol:
                return self._no(token, f"blacklisted_word word={word}")

        if s.min_sentiment_score > 0:
            if sentiment is None:
                return self._no(token, "sentiment_unavailable")
            if sentiment.score < s.min_sentiment_score:
                return self._no(token, f"sentiment_low score={sentiment.score} min={s.min_sentiment_score}")

        confidence = 0.7
        if s.whitelisted_creators:
            confidence += 0.1
        if sentiment is not None and sentiment.score > 50:
            confidence += 0.1
        if analysis is not None and analysis.risk_score > 20:
            confidence -= 0.1
        decision = BuyDecision(
            should_buy=True,
            amount=s.buy_amount,
            reason=f"new_token symbol={token.symbol} age_min={age:.0f}",
            confidence=min(confidence, 1.0),
            risk_score=analysis.risk_score if analysis is not None else 30,
        )
        self._log_decision("buy", token.symbol, True, decision.reason)
        return decision

    def should_sell(self, position: Position, now: datetime | None = None) -> SellDecision:
        if not self.enabled:
            return SellDecision(should_sell=False, reason="strategy_disabled")
        limit = self.settings.auto_sell_after_minutes
        if limit > 0:
            held = position.hold_minutes(now or datetime.now(timezone.utc))
            if held >= limit:
                self._log_decision("sell", position.token.symbol, True, f"auto_sell held_min={held:.0f}")
                return SellDecision(
                    should_sell=True,
                    amount=position.amount,
                    reason=f"auto_sell held_min={held:.0f}",
                    sell_type="strategy",
                )
        return SellDecision(should_sell=False, reason="no_sell_conditions")


@dataclass
class MomentumSettings:
    buy_amount: int = field(default_factory=lambda: int(config.MOMENTUM_BUY_AMOUNT))
    min_change_5m: float = field(default_factory=lambda: float(config.MOMENTUM_MIN_CHANGE_5M))
    min_change_1h: float = field(default_factory=lambda: float(config.MOMENTUM_MIN_CHANGE_1H))
    min_volume_24h: int = field(default_factory=lambda: int(config.MOMENTUM_MIN_VOLUME_24H))
    min_trades_24h: int = field(default_factory=lambda: int(config.MOMENTUM_MIN_TRADES_24H))
    min_activity_score: int = field(default_factory=lambda: int(config.MOMENTUM_MIN_ACTIVITY_SCORE))
    require_buy_pressure: bool = field(default_factory=lambda: bool(config.MOMENTUM_REQUIRE_BUY_PRESSURE))
    sell_on_momentum_loss: bool = field(default_factory=lambda: bool(config.MOMENTUM_SELL_ON_LOSS))
    momentum_loss_percent: float = field(default_factory=lambda: float(config.MOMENTUM_LOSS_PERCENT))
    max_risk_score: int = field(default_factory=lambda: int(config.MOMENTUM_MAX_RISK_SCORE))


class MomentumStrategy(BaseStrategy):
    """
    Buy tokens that are already trading with rising prices and broad participation;
    exit when the price gives back a set share of its high since entry.

    Windowed price changes come from the price aggregator when it has history for the
    token, otherwise from trade-implied prices in the 24h analytics.
    """

    name = "momentum"

    def __init__(self, analytics, prices=None, settings: MomentumSettings | None = None) -> None:
        self.settings = settings or MomentumSettings()
        super().__init__(max_risk_score=self.settings.max_risk_score)
        self.analytics = analytics
        self.prices = prices

    async def decide_buy(
        self,
        token: TokenInfo,
        analysis: SecurityAnalysis | None = None,
        sentiment: SentimentAnalysis | None = None,
    ) -> BuyDecision:
        ok, _ = self.pre_check_buy(analysis)
        if not ok:
            return self.should_buy(token, analysis, sentiment)
        try:
            stats = await self.analytics.token_analytics(token.address)
        except ChainRPCError as exc:
            logger.warning("MOMENTUM_ANALYTICS_FAILED token=%s err=%s", token.address, exc)
            return self._no(token, "analytics_unavailable")
        change_5m = self._window_change(token.address, 5 * 60, stats.price_change_5m)
        change_1h = self._window_change(token.address, 60 * 60, stats.price_change_1h)
        return self.should_buy(token, analysis, sentiment, stats=stats, change_5m=change_5m, change_1h=change_1h)

    def _window_change(self, token: str, window_seconds: float, fallback: float) -> float:
        if self.prices is not None:
            change = self.prices.price_change(token, window_seconds)
            if change:
                return change
        return fallback

    def should_buy(
        self,
        token: TokenInfo,
        analysis: SecurityAnalysis | None = None,
        sentiment: SentimentAnalysis | None = None,
        stats: TokenAnalytics | None = None,
        change_5m: float = 0.0,
        change_1h: float = 0.0,
        now: datetime | None = None,
    ) -> BuyDecision:
        s = self.settings
        ok, reason = self.pre_check_buy(analysis)
        if not ok:
            return self._no(token, reason)
        if stats is None:
            return self._no(token, "analytics_unavailable")

        if stats.volume_24h < s.min_volume_24h:
            return self._no(token, f"volume_low volume={format_base(stats.volume_24h)}")
        if stats.trades_24h < s.min_trades_24h:
            return self._no(token, f"trades_low trades={stats.trades_24h}")
        if s.require_buy_pressure and stats.buy_pressure <= 50:
            return self._no(token, f"buy_pressure_low pressure={stats.buy_pressure:.1f}")

        age = token.age_minutes(now)
        score = activity_score(stats, age)
        if score < s.min_activity_score:
            return self._no(token, f"activity_low score={score}")
        if change_5m < s.min_change_5m:
            return self._no(token, f"change_5m_low change={change_5m:.2f}")
        if change_1h < s.min_change_1h:
            return self._no(token, f"change_1h_low change={change_1h:.2f}")
        reasons = suspicious_reasons(stats, age)
        if reasons:
            return self._no(token, f"suspicious reason={reasons[0]}")

        confidence = 0.5
        if change_5m > 10:
            confidence += 0.1
        if change_1h > 20:
            confidence += 0.1
        if stats.volume_24h > s.min_volume_24h * 5:
            confidence += 0.1
        if sentiment is not None and sentiment.score > 60:
            confidence += 0.1
        decision = BuyDecision(
            should_buy=True,
            amount=s.buy_amount,
            reason=f"momentum change_5m={change_5m:.1f} change_1h={change_1h:.1f}",
            confidence=min(confidence, 1.0),
            risk_score=analysis.risk_score if analysis is not None and analysis.risk_score else 35,
        )
        self._log_decision("buy", token.symbol, True, decision.reason)
        return decision

    def should_sell(self, position: Position, now: datetime | None = None) -> SellDecision:
        if not self.enabled:
            return SellDecision(should_sell=False, reason="strategy_disabled")
        if not self.settings.sell_on_momentum_loss:
            return SellDecision(should_sell=False, reason="momentum_exit_disabled")
        high = max(int(position.high_price), int(position.entry_price))
        if high <= 0 or position.current_price >= high:
            return SellDecision(should_sell=False, reason="rising")
        drop = (high - int(position.current_price)) * 10_000 // high / 100.0
        if drop < self.settings.momentum_loss_percent:
            return SellDecision(should_sell=False, reason=f"drop_below_threshold drop={drop:.1f}")
        self._log_decision("sell", position.token.symbol, True, f"momentum_loss drop={drop:.1f}")
        return SellDecision(
            should_sell=True,
            amount=position.amount,
            reason=f"momentum_loss drop={drop:.1f}",
            sell_type="strategy",
        )


def build_strategy(name: str | None = None, analytics=None, prices=None) -> BaseStrategy:
    key = (name if name is not None else config.STRATEGY).strip().lower()
    if key == "momentum":
        if analytics is None:
            raise ValueError("momentum strategy needs a token analytics service")
        return MomentumStrategy(analytics, prices)
    if key != "sniper":
        logger.warning("STRATEGY_UNKNOWN name=%s fallback=sniper", key)
    return SniperStrategy()
