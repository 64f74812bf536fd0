"""Entry point for the venue trading agent."""

import argparse
import asyncio
import logging
import os
import signal
from logging.handlers import RotatingFileHandler

import config
from chain.connection import ConnectionManager
from config import APP_LOG_FILE, LOG_DIR, LOG_LEVEL
from database.db import TradeJournal
from monitor.analytics import TokenAnalyticsService
from monitor.event_ingestion import EventIngestion
from monitor.price_aggregator import PriceAggregator
from monitor.token_monitor import TokenMonitor
from trading.executor import TradeExecutor, VenueReader
from trading.gates import NoSentiment, build_security_provider
from trading.models import MonitoredToken
from trading.risk_engine import RiskEngine
from trading.strategy import build_strategy
from utils.units import format_base


def configure_logging() -> None:
    os.makedirs(LOG_DIR, exist_ok=True)
    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    file_handler = RotatingFileHandler(APP_LOG_FILE, maxBytes=1_000_000, backupCount=5, encoding="utf-8")
    file_handler.setFormatter(formatter)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)

    root = logging.getLogger()
    root.setLevel(getattr(logging, LOG_LEVEL.upper(), logging.INFO))
    root.handlers.clear()
    root.addHandler(file_handler)
    root.addHandler(console_handler)

    # RPC payloads at DEBUG include signed transactions.
    logging.getLogger("web3").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("aiohttp").setLevel(logging.WARNING)


logger = logging.getLogger(__name__)


class TradingAgent:
    def __init__(self, auto_trade: bool = False, strategy: str | None = None) -> None:
        self.auto_trade = bool(auto_trade)
        self.connection = ConnectionManager()
        self.ingestion = EventIngestion(self.connection)

        trading_enabled = self.auto_trade or bool(config.TRADING_ENABLED)
        self.executor = TradeExecutor(self.connection) if trading_enabled else None
        self.reader = self.executor or VenueReader(self.connection)

        self.prices = PriceAggregator(self.reader.get_token_price)
        self.analytics = TokenAnalyticsService(self.ingestion, self.prices)
        self.strategy = build_strategy(strategy or config.STRATEGY, analytics=self.analytics, prices=self.prices)
        self.risk = RiskEngine(self.executor, self.prices, strategy=self.strategy) if self.executor else None
        self.tokens = TokenMonitor(self.reader)
        self.security = build_security_provider(self.reader)
        self.sentiment = NoSentiment()
        self.journal = TradeJournal() if config.TRADE_JOURNAL_ENABLED else None
        self._status_task: asyncio.Task | None = None
        self._stopped = False

    async def start(self) -> None:
        await self.connection.connect()
        if self.executor is not None:
            balance = await self.executor.native_balance()
            logger.info("WALLET address=%s balance=%s", self.executor.wallet, format_base(balance))
        if self.journal is not None:
            self.journal.init_db()
            if self.risk is not None:
                self.journal.attach(self.risk)

        self.tokens.attach(self.ingestion)
        await self.prices.start(self.ingestion)
        if self.risk is not None:
            await self.risk.start()
        if self.auto_trade:
            self.tokens.new_token.subscribe(self.on_new_token)
        await self.ingestion.start()
        self._status_task = asyncio.create_task(self._status_loop())
        logger.info(
            "AGENT_STARTED mode=%s strategy=%s push=%s venue=%s",
            "auto" if self.auto_trade else "watch",
            self.strategy.name,
            self.connection.push_available,
            self.ingestion.venue_address,
        )

    async def on_new_token(self, token: MonitoredToken) -> None:
        info = token.info
        safe, reason = await self.security.quick_check(info)
        if not safe:
            logger.info("AUTO_BUY skip token=%s symbol=%s reason=%s", info.address, info.symbol, reason)
            return
        sentiment = await self.sentiment.analyze_token(info.symbol, info.name)
        analysis = await self.security.analyze(info)
        decision = await self.strategy.decide_buy(info, analysis, sentiment)
        if not decision.should_buy:
            return

        amount = min(int(decision.amount), int(config.MAX_BUY_AMOUNT))
        ok, reason = self.risk.reserve(amount)
        if not ok:
            logger.info("AUTO_BUY blocked token=%s reason=%s", info.address, reason)
            return
        try:
            result = await self.executor.buy_with_retry(info.address, amount)
        except Exception:
            self.risk.release(amount)
            raise
        if self.journal is not None:
            self.journal.record_trade("buy", info.address, result, symbol=info.symbol, reason=decision.reason)
        if not result.success:
            self.risk.release(amount)
            logger.warning("AUTO_BUY failed token=%s reason=%s", info.address, result.error)
            return
        if result.amount_out <= 0:
            self.risk.release(amount)
            logger.warning("AUTO_BUY empty_fill token=%s hash=%s", info.address, result.tx_hash)
            return
        await self.risk.open(info, result.amount_in, result.amount_out, reserved=True)

    async def _status_loop(self) -> None:
        while True:
            await asyncio.sleep(float(config.STATUS_LOG_INTERVAL_SECONDS))
            summary = self.risk.summary() if self.risk is not None else {}
            logger.info(
                "STATUS block=%s mode=%s events=%s tokens=%s tracked=%s open=%s value=%s daily_left=%s",
                self.ingestion.last_processed_height,
                self.ingestion.mode.value if self.ingestion.mode else "-",
                self.ingestion.stats["emitted"],
                self.tokens.stats["emitted"],
                len(self.prices.tracked_tokens()),
                summary.get("open_positions", 0),
                format_base(summary.get("total_value", 0)),
                format_base(summary.get("remaining_daily_budget", 0)),
            )

    async def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        task, self._status_task = self._status_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self.ingestion.stop()
        self.tokens.detach()
        await self.prices.stop()
        if self.risk is not None:
            await self.risk.stop()
            if self.risk.positions():
                logger.warning("SHUTDOWN open_positions=%s (left on chain)", len(self.risk.positions()))
        await self.connection.disconnect()
        logger.info("AGENT_STOPPED")


async def run(auto_trade: bool, strategy: str | None = None) -> None:
    agent = TradingAgent(auto_trade=auto_trade, strategy=strategy)
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, RuntimeError):
            # Windows event loops: Ctrl+C surfaces as KeyboardInterrupt instead.
            pass
    try:
        await agent.start()
        await stop_event.wait()
    finally:
        await agent.stop()


def main() -> None:
    parser = argparse.ArgumentParser(description="Bonding-curve venue trading agent")
    parser.add_argument("--auto", action="store_true", help="buy new tokens that pass strategy and risk gates")
    parser.add_argument("--strategy", choices=["sniper", "momentum"], help="entry/exit strategy (default: STRATEGY from env)")
    args = parser.parse_args()

    configure_logging()
    try:
        asyncio.run(run(auto_trade=args.auto, strategy=args.strategy))
    except KeyboardInterrupt:
        logger.info("Interrupted")


if __name__ == "__main__":
    main()
