"""Per-token price series, OHLC buckets and the priceUpdate feed."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict, deque
from dataclasses import dataclass
from typing import Awaitable, Callable

import config
from chain.venue import TokenBought, TokenSold
from utils.addressing import normalize_address
from utils.channels import Channel
from utils.units import implied_price, percent_change

logger = logging.getLogger(__name__)

QuoteSource = Callable[[str], Awaitable[int]]


@dataclass(frozen=True)
class PricePoint:
    token: str
    price: int
    timestamp: float
    source: str = "trade"


@dataclass
class OHLCBucket:
    start: int
    open: int
    high: int
    low: int
    close: int

    def update(self, price: int) -> None:
        self.high = max(self.high, price)
        self.low = min(self.low, price)
        self.close = price


class PriceAggregator:
    def __init__(
        self,
        quote_source: QuoteSource,
        history_limit: int | None = None,
        bucket_seconds: int | None = None,
        max_buckets: int | None = None,
        cache_ttl_seconds: float | None = None,
        refresh_interval: float | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.quote_source = quote_source
        self.history_limit = int(history_limit or config.PRICE_HISTORY_LIMIT)
        self.bucket_seconds = int(bucket_seconds or config.OHLC_BUCKET_SECONDS)
        self.max_buckets = int(max_buckets or config.OHLC_MAX_BUCKETS)
        self.cache_ttl_seconds = float(
            config.PRICE_CACHE_TTL_SECONDS if cache_ttl_seconds is None else cache_ttl_seconds
        )
        self.refresh_interval = float(refresh_interval or config.PRICE_REFRESH_INTERVAL_SECONDS)
        self.clock = clock

        self.price_updates: Channel[PricePoint] = Channel("price_update")

        self._tracked: set[str] = set()
        self._history: dict[str, deque[PricePoint]] = {}
        self._ohlc: dict[str, OrderedDict[int, OHLCBucket]] = {}
        self._cache: dict[str, tuple[float, int]] = {}
        self._unsubscribers: list[Callable[[], None]] = []
        self._refresh_task: asyncio.Task[None] | None = None

    # ------------------------------------------------------------- lifecycle

    def attach(self, ingestion) -> None:
        self._unsubscribers.append(ingestion.bought.subscribe(self.on_trade_event))
        self._unsubscribers.append(ingestion.sold.subscribe(self.on_trade_event))

    async def start(self, ingestion=None) -> None:
        if ingestion is not None and not self._unsubscribers:
            self.attach(ingestion)
        if self._refresh_task is None or self._refresh_task.done():
            self._refresh_task = asyncio.create_task(self._refresh_loop())
        logger.info("PRICE_AGGREGATOR_STARTED interval=%.1fs", self.refresh_interval)

    async def stop(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
        task, self._refresh_task = self._refresh_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _refresh_loop(self) -> None:
        while True:
            await asyncio.sleep(self.refresh_interval)
            await self.refresh_stale()

    # -------------------------------------------------------------- tracking

    async def track(self, token: str) -> None:
        key = normalize_address(token)
        if key in self._tracked:
            return
        self._tracked.add(key)
        self._history.setdefault(key, deque(maxlen=self.history_limit))
        self._ohlc.setdefault(key, OrderedDict())
        logger.info("PRICE_TRACK token=%s", key)
        await self.refresh(key)

    def untrack(self, token: str) -> None:
        key = normalize_address(token)
        if key not in self._tracked:
            return
        self._tracked.discard(key)
        self._history.pop(key, None)
        self._ohlc.pop(key, None)
        self._cache.pop(key, None)
        logger.info("PRICE_UNTRACK token=%s", key)

    def is_tracked(self, token: str) -> bool:
        return normalize_address(token) in self._tracked

    def tracked_tokens(self) -> list[str]:
        return sorted(self._tracked)

    # ------------------------------------------------------------- recording

    def on_trade_event(self, event: TokenBought | TokenSold) -> None:
        if event.token not in self._tracked:
            return
        price = implied_price(event.base_amount, event.token_amount)
        if price <= 0:
            return
        self.record(event.token, price, source=event.kind)

    def record(self, token: str, price: int, timestamp: float | None = None, source: str = "trade") -> PricePoint:
        key = normalize_address(token)
        ts = float(self.clock() if timestamp is None else timestamp)
        point = PricePoint(token=key, price=int(price), timestamp=ts, source=source)

        self._cache[key] = (ts, point.price)
        self._history.setdefault(key, deque(maxlen=self.history_limit)).append(point)
        self._update_ohlc(key, point)
        self.price_updates.publish(point)
        return point

    def _update_ohlc(self, token: str, point: PricePoint) -> None:
        buckets = self._ohlc.setdefault(token, OrderedDict())
        start = int(point.timestamp // self.bucket_seconds) * self.bucket_seconds
        bucket = buckets.get(start)
        if bucket is None:
            buckets[start] = OHLCBucket(start=start, open=point.price, high=point.price, low=point.price, close=point.price)
            while len(buckets) > self.max_buckets:
                buckets.popitem(last=False)
        else:
            bucket.update(point.price)

    async def refresh(self, token: str) -> int:
        key = normalize_address(token)
        try:
            price = int(await self.quote_source(key))
        except Exception as exc:
            logger.warning("PRICE_QUOTE_FAILED token=%s err=%s", key, exc)
            return 0
        if price > 0 and key in self._tracked:
            self.record(key, price, source="quote")
        return price

    async def refresh_stale(self) -> None:
        """Direct quote for tracked tokens with no recorded point in the last interval."""
        now = float(self.clock())
        for token in self.tracked_tokens():
            history = self._history.get(token)
            last_ts = history[-1].timestamp if history else 0.0
            if now - last_ts >= self.refresh_interval:
                await self.refresh(token)

    # --------------------------------------------------------------- queries

    async def current_price(self, token: str) -> int:
        key = normalize_address(token)
        cached = self._cache.get(key)
        if cached is not None and (float(self.clock()) - cached[0]) <= self.cache_ttl_seconds:
            return cached[1]
        try:
            price = int(await self.quote_source(key))
        except Exception as exc:
            logger.warning("PRICE_QUOTE_FAILED token=%s err=%s", key, exc)
            return cached[1] if cached is not None else 0
        if price > 0:
            self._cache[key] = (float(self.clock()), price)
        return price

    def price_change(self, token: str, window_seconds: float = 3600.0) -> float:
        """Percent change vs. the latest point at or before now - window; 0.0 means unknown."""
        history = self._history.get(normalize_address(token))
        if not history or len(history) < 2:
            return 0.0
        cutoff = float(self.clock()) - float(window_seconds)
        reference: PricePoint | None = None
        for point in reversed(history):
            if point.timestamp <= cutoff:
                reference = point
                break
        if reference is None:
            return 0.0
        return percent_change(reference.price, history[-1].price)

    def history(self, token: str, limit: int | None = None) -> list[PricePoint]:
        points = list(self._history.get(normalize_address(token), ()))
        if limit is not None and limit > 0:
            return points[-int(limit):]
        return points

    def ohlc(self, token: str) -> list[OHLCBucket]:
        buckets = self._ohlc.get(normalize_address(token))
        if not buckets:
            return []
        return [OHLCBucket(b.start, b.open, b.high, b.low, b.close) for b in buckets.values()]
