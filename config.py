"""Application configuration."""

import os
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import List, Tuple

from dotenv import load_dotenv


def _load_dotenv_safe(dotenv_path: str | None = None, *, override: bool = False) -> None:
    """Load dotenv using UTF-8-SIG so BOM-prefixed files don't break first key parsing."""
    try:
        load_dotenv(dotenv_path=dotenv_path, override=override, encoding="utf-8-sig")
    except TypeError:
        # Older python-dotenv versions may not expose the `encoding` argument.
        load_dotenv(dotenv_path=dotenv_path, override=override)


# Load base environment first, then optional per-instance override env file.
_load_dotenv_safe()
_BOT_ENV_FILE = os.getenv("BOT_ENV_FILE", "").strip()
if _BOT_ENV_FILE:
    _bot_env_path = Path(_BOT_ENV_FILE).expanduser()
    if not _bot_env_path.is_absolute():
        _bot_env_path = (Path.cwd() / _bot_env_path).resolve()
    if not _bot_env_path.exists():
        raise FileNotFoundError(f"BOT_ENV_FILE does not exist: {_bot_env_path}")
    if not _bot_env_path.is_file():
        raise IsADirectoryError(f"BOT_ENV_FILE is not a file: {_bot_env_path}")
    try:
        _load_dotenv_safe(str(_bot_env_path), override=True)
    except (OSError, UnicodeError, ValueError) as exc:
        raise RuntimeError(f"Failed to load BOT_ENV_FILE '{_bot_env_path}': {exc}") from exc


_TRUE_VALUES = ("1", "true", "yes", "y", "on")


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in _TRUE_VALUES


def _parse_csv(raw: str) -> List[str]:
    return [item.strip() for item in str(raw or "").split(",") if item.strip()]


def _parse_base_amount(raw: str, default: str) -> int:
    """Decimal base-currency string ("0.1") -> integer wei."""
    try:
        value = Decimal(str(raw or default).strip())
    except (InvalidOperation, ValueError):
        value = Decimal(default)
    if value < 0:
        value = Decimal(0)
    return int(value * (10**18))


def _parse_take_profit_levels(raw: str) -> List[Tuple[float, float]]:
    """
    Parse "50:25,100:50,200:100" into (gain percent, sell percent of remaining) pairs.
    Bare percents ("50,100,200") sell 25%, 50%, ... and the last level sells everything.
    """
    chunks = _parse_csv(raw)
    out: List[Tuple[float, float]] = []
    for idx, chunk in enumerate(chunks):
        try:
            if ":" in chunk:
                percent_part, sell_part = chunk.split(":", 1)
                percent = float(percent_part.strip())
                sell_percent = float(sell_part.strip())
            else:
                percent = float(chunk)
                sell_percent = 100.0 if idx == len(chunks) - 1 else 25.0 + 25.0 * idx
        except ValueError:
            continue
        if percent <= 0:
            continue
        out.append((percent, max(0.0, min(100.0, sell_percent))))
    out.sort(key=lambda level: level[0])
    return out


# Chain / RPC
CHAIN_NAME = os.getenv("CHAIN_NAME", "bsc").strip().lower()
CHAIN_ID = int(os.getenv("CHAIN_ID", "56"))
_DEFAULT_RPC_URLS = ",".join(
    [
        "https://bsc-dataseed.binance.org/",
        "https://bsc-dataseed1.defibit.io/",
        "https://bsc-dataseed1.ninicoin.io/",
        "https://bsc-dataseed2.binance.org/",
    ]
)
RPC_URL = os.getenv("RPC_URL", "").strip()
RPC_URLS = ([RPC_URL] if RPC_URL else []) + [
    url for url in _parse_csv(os.getenv("RPC_URLS", _DEFAULT_RPC_URLS)) if url != RPC_URL
]
WSS_URL = os.getenv("WSS_URL", "wss://bsc-ws-node.nariox.org:443").strip()
RPC_TIMEOUT_SECONDS = max(1, int(os.getenv("RPC_TIMEOUT_SECONDS", "10")))
RPC_RETRY_ATTEMPTS = max(1, int(os.getenv("RPC_RETRY_ATTEMPTS", "3")))
RPC_RETRY_DELAY_SECONDS = max(0.0, float(os.getenv("RPC_RETRY_DELAY_SECONDS", "1")))
WS_ENABLED = _env_bool("WS_ENABLED", "true")
WS_HEARTBEAT_SECONDS = max(5.0, float(os.getenv("WS_HEARTBEAT_SECONDS", "20")))
WS_RECONNECT_BASE_SECONDS = max(0.0, float(os.getenv("WS_RECONNECT_BASE_SECONDS", "1")))
WS_RECONNECT_MAX_SECONDS = max(1.0, float(os.getenv("WS_RECONNECT_MAX_SECONDS", "30")))
WS_RECONNECT_MAX_ATTEMPTS = max(0, int(os.getenv("WS_RECONNECT_MAX_ATTEMPTS", "5")))
WS_CONNECT_TIMEOUT_SECONDS = max(1.0, float(os.getenv("WS_CONNECT_TIMEOUT_SECONDS", "10")))
DEFAULT_GAS_PRICE_GWEI = max(0.0, float(os.getenv("DEFAULT_GAS_PRICE_GWEI", "5")))

# Venue (four.meme TokenManager on BSC by default)
VENUE_ADDRESS = os.getenv("VENUE_ADDRESS", "0x5c952063c7fc8610FFDB798152D69F0B9550762b").strip()
WBNB_ADDRESS = os.getenv("WBNB_ADDRESS", "0xbb4CdB9CBd36B01bD1cBaEBF2De08d9173bc095c").strip()
BASE_SYMBOL = os.getenv("BASE_SYMBOL", "BNB").strip() or "BNB"
BLOCK_TIME_SECONDS = max(0.1, float(os.getenv("BLOCK_TIME_SECONDS", "3")))

# Ingestion
INGEST_BATCH_BLOCKS = max(1, int(os.getenv("INGEST_BATCH_BLOCKS", "100")))
INGEST_DEDUP_MAX = max(100, int(os.getenv("INGEST_DEDUP_MAX", "20000")))
INGEST_CURSOR_FILE = os.getenv("INGEST_CURSOR_FILE", "").strip()
INGEST_MAX_CATCHUP_BLOCKS = max(0, int(os.getenv("INGEST_MAX_CATCHUP_BLOCKS", "2000")))
HISTORICAL_LOOKBACK_BLOCKS = max(1, int(os.getenv("HISTORICAL_LOOKBACK_BLOCKS", "10000")))

# Prices
PRICE_REFRESH_INTERVAL_SECONDS = max(0.5, float(os.getenv("PRICE_REFRESH_INTERVAL_SECONDS", "5")))
PRICE_HISTORY_LIMIT = max(10, int(os.getenv("PRICE_HISTORY_LIMIT", "1000")))
OHLC_BUCKET_SECONDS = max(1, int(os.getenv("OHLC_BUCKET_SECONDS", "60")))
OHLC_MAX_BUCKETS = max(1, int(os.getenv("OHLC_MAX_BUCKETS", "1440")))
PRICE_CACHE_TTL_SECONDS = max(0.0, float(os.getenv("PRICE_CACHE_TTL_SECONDS", "300")))

# Risk
STOP_LOSS_ENABLED = _env_bool("STOP_LOSS_ENABLED", "true")
STOP_LOSS_PERCENT = max(0.0, min(99.0, float(os.getenv("STOP_LOSS_PERCENT", "20"))))
TRAILING_STOP_ENABLED = _env_bool("TRAILING_STOP_ENABLED", "false")
TRAILING_STOP_PERCENT = max(0.0, min(99.0, float(os.getenv("TRAILING_STOP_PERCENT", "10"))))
TIME_STOP_ENABLED = _env_bool("TIME_STOP_ENABLED", "false")
MAX_HOLD_MINUTES = max(1.0, float(os.getenv("MAX_HOLD_MINUTES", "60")))
STOP_LOSS_SLIPPAGE_PERCENT = max(0.1, float(os.getenv("STOP_LOSS_SLIPPAGE_PERCENT", "10")))
TAKE_PROFIT_ENABLED = _env_bool("TAKE_PROFIT_ENABLED", "true")
TAKE_PROFIT_LEVELS = _parse_take_profit_levels(os.getenv("TAKE_PROFIT_LEVELS", "50:25,100:50,200:100"))
TAKE_PROFIT_SLIPPAGE_PERCENT = max(0.1, float(os.getenv("TAKE_PROFIT_SLIPPAGE_PERCENT", "5")))
MAX_BUY_AMOUNT = _parse_base_amount(os.getenv("MAX_BUY_AMOUNT", "0.1"), "0.1")
MAX_POSITION_SIZE = _parse_base_amount(os.getenv("MAX_POSITION_SIZE", "1"), "1")
MAX_POSITIONS = max(1, int(os.getenv("MAX_POSITIONS", "5")))
DAILY_LIMIT = _parse_base_amount(os.getenv("DAILY_LIMIT", os.getenv("DAILY_LIMIT_BNB", "5")), "5")
RISK_SWEEP_INTERVAL_SECONDS = max(0.5, float(os.getenv("RISK_SWEEP_INTERVAL_SECONDS", "5")))

# Trading
TRADING_ENABLED = _env_bool("TRADING_ENABLED", "false")
PRIVATE_KEY = os.getenv("PRIVATE_KEY", "").strip()
WALLET_ADDRESS = os.getenv("WALLET_ADDRESS", "").strip()
DEFAULT_SLIPPAGE = float(os.getenv("DEFAULT_SLIPPAGE", "5"))
MIN_SLIPPAGE = max(0.0, float(os.getenv("MIN_SLIPPAGE", "0.1")))
MAX_SLIPPAGE = min(99.0, float(os.getenv("MAX_SLIPPAGE", "49")))
SLIPPAGE_RETRY_STEP = max(0.0, float(os.getenv("SLIPPAGE_RETRY_STEP", "2")))
GAS_PRICE_MULTIPLIER = max(1.0, float(os.getenv("GAS_PRICE_MULTIPLIER", "1.2")))
DEFAULT_GAS_LIMIT = max(21000, int(os.getenv("DEFAULT_GAS_LIMIT", "300000")))
TX_TIMEOUT_SECONDS = max(1.0, float(os.getenv("TX_TIMEOUT_SECONDS", "60")))
TRADE_MAX_RETRIES = max(1, int(os.getenv("TRADE_MAX_RETRIES", "3")))
TRADE_RETRY_DELAY_SECONDS = max(0.0, float(os.getenv("TRADE_RETRY_DELAY_SECONDS", "1")))
NONCE_RECONCILE_SECONDS = max(0.0, float(os.getenv("NONCE_RECONCILE_SECONDS", "30")))

# Safety gates
HONEYPOT_CHECK_ENABLED = _env_bool("HONEYPOT_CHECK_ENABLED", "true")
RUG_CHECK_ENABLED = _env_bool("RUG_CHECK_ENABLED", "true")
ROUNDTRIP_SELL_FRACTION = max(0.01, min(1.0, float(os.getenv("ROUNDTRIP_SELL_FRACTION", "0.25"))))
ROUNDTRIP_MIN_RATIO = max(0.0, float(os.getenv("ROUNDTRIP_MIN_RATIO", "0.7")))
MIN_LIQUIDITY = _parse_base_amount(os.getenv("MIN_LIQUIDITY", os.getenv("MIN_LIQUIDITY_BNB", "0.5")), "0.5")
SENTIMENT_ENABLED = _env_bool("SENTIMENT_ENABLED", "false")
MIN_SENTIMENT_SCORE = max(0, int(os.getenv("MIN_SENTIMENT_SCORE", os.getenv("MIN_TWITTER_SCORE", "0"))))

# Strategy
SNIPER_BUY_AMOUNT = _parse_base_amount(os.getenv("SNIPER_BUY_AMOUNT", os.getenv("MAX_BUY_AMOUNT", "0.1")), "0.1")
SNIPER_MAX_AGE_MINUTES = max(0.0, float(os.getenv("SNIPER_MAX_AGE_MINUTES", "5")))
SNIPER_MIN_RESERVE = _parse_base_amount(os.getenv("SNIPER_MIN_RESERVE", "0"), "0")
SNIPER_MAX_RESERVE = _parse_base_amount(os.getenv("SNIPER_MAX_RESERVE", "10"), "10")
SNIPER_AUTO_SELL_MINUTES = max(0.0, float(os.getenv("SNIPER_AUTO_SELL_MINUTES", "0")))
SNIPER_MAX_RISK_SCORE = max(0, int(os.getenv("SNIPER_MAX_RISK_SCORE", "70")))
BLACKLISTED_CREATORS = [a.lower() for a in _parse_csv(os.getenv("BLACKLISTED_CREATORS", ""))]
WHITELISTED_CREATORS = [a.lower() for a in _parse_csv(os.getenv("WHITELISTED_CREATORS", ""))]
BLACKLISTED_WORDS = [w.lower() for w in _parse_csv(os.getenv("BLACKLISTED_WORDS", "test,scam,rug"))]

STRATEGY = os.getenv("STRATEGY", "sniper").strip().lower() or "sniper"
MOMENTUM_BUY_AMOUNT = _parse_base_amount(os.getenv("MOMENTUM_BUY_AMOUNT", os.getenv("MAX_BUY_AMOUNT", "0.1")), "0.1")
MOMENTUM_MIN_CHANGE_5M = float(os.getenv("MOMENTUM_MIN_CHANGE_5M", "5"))
MOMENTUM_MIN_CHANGE_1H = float(os.getenv("MOMENTUM_MIN_CHANGE_1H", "10"))
MOMENTUM_MIN_VOLUME_24H = _parse_base_amount(os.getenv("MOMENTUM_MIN_VOLUME_24H", "5"), "5")
MOMENTUM_MIN_TRADES_24H = max(0, int(os.getenv("MOMENTUM_MIN_TRADES_24H", "20")))
MOMENTUM_MIN_ACTIVITY_SCORE = max(0, int(os.getenv("MOMENTUM_MIN_ACTIVITY_SCORE", "40")))
MOMENTUM_REQUIRE_BUY_PRESSURE = _env_bool("MOMENTUM_REQUIRE_BUY_PRESSURE", "true")
MOMENTUM_SELL_ON_LOSS = _env_bool("MOMENTUM_SELL_ON_LOSS", "true")
MOMENTUM_LOSS_PERCENT = max(0.1, float(os.getenv("MOMENTUM_LOSS_PERCENT", "10")))
MOMENTUM_MAX_RISK_SCORE = max(0, int(os.getenv("MOMENTUM_MAX_RISK_SCORE", "50")))

# Token discovery filter
TOKEN_FILTER_NAME_CONTAINS = [w.lower() for w in _parse_csv(os.getenv("TOKEN_FILTER_NAME_CONTAINS", ""))]
TOKEN_FILTER_NAME_EXCLUDES = [w.lower() for w in _parse_csv(os.getenv("TOKEN_FILTER_NAME_EXCLUDES", ""))]
TOKEN_FILTER_SYMBOL_CONTAINS = [w.lower() for w in _parse_csv(os.getenv("TOKEN_FILTER_SYMBOL_CONTAINS", ""))]
TOKEN_FILTER_SYMBOL_EXCLUDES = [w.lower() for w in _parse_csv(os.getenv("TOKEN_FILTER_SYMBOL_EXCLUDES", ""))]
RECENT_TOKENS_LIMIT = max(1, int(os.getenv("RECENT_TOKENS_LIMIT", "100")))

# Storage / logging
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///trades.db")
TRADE_JOURNAL_ENABLED = _env_bool("TRADE_JOURNAL_ENABLED", "false")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_DIR = os.getenv("LOG_DIR", "logs")
APP_LOG_FILE = os.getenv("APP_LOG_FILE", os.path.join(LOG_DIR, "app.log"))
STATUS_LOG_INTERVAL_SECONDS = max(5.0, float(os.getenv("STATUS_LOG_INTERVAL_SECONDS", "60")))
