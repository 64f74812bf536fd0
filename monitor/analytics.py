"""Token trading analytics built from historical venue events."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass

import config
from utils.units import WEI, implied_price, percent_change

logger = logging.getLogger(__name__)

DAY_SECONDS = 24 * 60 * 60


@dataclass
class TokenAnalytics:
    token: str
    volume_24h: int
    trades_24h: int
    unique_buyers_24h: int
    unique_sellers_24h: int
    largest_buy: int
    largest_sell: int
    buy_pressure: float
    price_change_24h: float
    whale_trades: int
    price_change_5m: float = 0.0
    price_change_1h: float = 0.0


def trade_price_change(trades, window_seconds: float, now: float) -> float:
    """Percent change between the latest trade and the latest trade at or before now - window."""
    points = sorted(
        (ev.timestamp, ev.order_key, implied_price(ev.base_amount, ev.token_amount)) for ev in trades
    )
    points = [p for p in points if p[2] > 0]
    if len(points) < 2:
        return 0.0
    cutoff = now - float(window_seconds)
    reference = None
    for ts, _, price in reversed(points):
        if ts <= cutoff:
            reference = price
            break
    if reference is None:
        return 0.0
    return percent_change(reference, points[-1][2])


def activity_score(stats: TokenAnalytics, age_minutes: float) -> int:
    """0-100 blend of volume, trade count, distinct traders, buy pressure and freshness."""
    volume_points = min(stats.volume_24h / WEI, 30)
    trade_points = min(stats.trades_24h / 10, 20)
    trader_points = min((stats.unique_buyers_24h + stats.unique_sellers_24h) / 5, 20)
    pressure_points = 15 if stats.buy_pressure > 50 else 5
    age_points = 15 if age_minutes < 60 else 5
    return min(int(round(volume_points + trade_points + trader_points + pressure_points + age_points)), 100)


def suspicious_reasons(stats: TokenAnalytics, age_minutes: float) -> list[str]:
    reasons: list[str] = []
    if stats.volume_24h > 10 * WEI and stats.unique_buyers_24h < 5:
        reasons.append("wash_trading")
    if age_minutes < 30 and stats.largest_sell > 5 * WEI:
        reasons.append("early_large_sell")
    if 100 - stats.buy_pressure > 70 and stats.trades_24h > 10:
        reasons.append("heavy_sell_pressure")
    return reasons


class TokenAnalyticsService:
    def __init__(self, ingestion, prices=None, whale_threshold: int = WEI, cache_ttl: float = 300.0) -> None:
        self.ingestion = ingestion
        self.prices = prices
        self.whale_threshold = int(whale_threshold)
        self.cache_ttl = float(cache_ttl)
        self._cache: dict[str, tuple[float, TokenAnalytics]] = {}

    async def token_analytics(self, token: str, now: float | None = None) -> TokenAnalytics:
        key = token.lower()
        current = float(time.time() if now is None else now)
        cached = self._cache.get(key)
        if cached is not None and current - cached[0] <= self.cache_ttl:
            return cached[1]

        blocks_per_day = int(DAY_SECONDS / float(config.BLOCK_TIME_SECONDS))
        height = await self.ingestion.connection.current_height()
        events = await self.ingestion.events_for_token(key, max(0, height - blocks_per_day), height)
        trades = list(events["purchases"]) + list(events["sales"])
        cutoff = current - DAY_SECONDS
        purchases = [p for p in events["purchases"] if p.timestamp >= cutoff]
        sales = [s for s in events["sales"] if s.timestamp >= cutoff]

        buy_volume = sum(p.base_amount for p in purchases)
        sell_volume = sum(s.base_amount for s in sales)
        volume = buy_volume + sell_volume
        day_change = self.prices.price_change(key, DAY_SECONDS) if self.prices is not None else 0.0
        analytics = TokenAnalytics(
            token=key,
            volume_24h=volume,
            trades_24h=len(purchases) + len(sales),
            unique_buyers_24h=len({p.buyer for p in purchases}),
            unique_sellers_24h=len({s.seller for s in sales}),
            largest_buy=max((p.base_amount for p in purchases), default=0),
            largest_sell=max((s.base_amount for s in sales), default=0),
            buy_pressure=(buy_volume * 100 / volume) if volume > 0 else 50.0,
            price_change_24h=day_change or trade_price_change(trades, DAY_SECONDS, current),
            whale_trades=sum(1 for ev in purchases + sales if ev.base_amount >= self.whale_threshold),
            price_change_5m=trade_price_change(trades, 5 * 60, current),
            price_change_1h=trade_price_change(trades, 60 * 60, current),
        )
        self._cache[key] = (current, analytics)
        logger.debug("TOKEN_ANALYTICS token=%s trades=%s volume=%s", key, analytics.trades_24h, volume)
        return analytics
