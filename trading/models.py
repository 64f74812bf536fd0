"""Trading data model: token info, positions, risk config and trade outcomes."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import config
from utils.units import WEI, percent_change


@dataclass
class TokenInfo:
    address: str
    name: str = ""
    symbol: str = ""
    decimals: int = 18
    total_supply: int = 0
    creator: str = ""
    created_at: datetime | None = None
    reserve_base: int = 0
    reserve_token: int = 0
    is_migrated: bool = False
    price: int = 0

    def age_minutes(self, now: datetime | None = None) -> float:
        if self.created_at is None:
            return 0.0
        current = now or datetime.now(timezone.utc)
        return max(0.0, (current - self.created_at).total_seconds() / 60.0)


@dataclass
class MonitoredToken:
    info: TokenInfo
    discovered_at: datetime
    block_number: int
    tx_hash: str


@dataclass
class TakeProfitLevel:
    percent: float
    sell_percent: float
    fired: bool = False


@dataclass
class Position:
    id: str
    token: TokenInfo
    entry_price: int
    current_price: int
    amount: int
    cost_basis: int
    entry_time: datetime
    take_profit_levels: list[TakeProfitLevel] = field(default_factory=list)
    pnl_percent: float = 0.0
    pnl_base: int = 0
    high_price: int = 0

    @property
    def token_address(self) -> str:
        return self.token.address

    @property
    def is_open(self) -> bool:
        return self.amount > 0

    @property
    def current_value(self) -> int:
        return self.amount * self.current_price // WEI

    def hold_minutes(self, now: datetime | None = None) -> float:
        current = now or datetime.now(timezone.utc)
        return max(0.0, (current - self.entry_time).total_seconds() / 60.0)

    def update_price(self, price: int) -> None:
        self.current_price = int(price)
        self.high_price = max(self.high_price, self.current_price)
        self.recompute_pnl()

    def recompute_pnl(self) -> None:
        self.pnl_percent = percent_change(self.entry_price, self.current_price)
        self.pnl_base = self.current_value - self.cost_basis

    def snapshot(self) -> "Position":
        return copy.deepcopy(self)


@dataclass
class RiskConfig:
    stop_loss_enabled: bool = True
    stop_loss_percent: float = 20.0
    trailing_stop_enabled: bool = False
    trailing_stop_percent: float = 10.0
    time_stop_enabled: bool = False
    max_hold_minutes: float = 60.0
    take_profit_enabled: bool = True
    take_profit_levels: list[tuple[float, float]] = field(
        default_factory=lambda: [(50.0, 25.0), (100.0, 50.0), (200.0, 100.0)]
    )
    max_position_size: int = 1 * WEI
    max_concurrent_positions: int = 5
    daily_limit: int = 5 * WEI
    stop_loss_slippage: float = 10.0
    take_profit_slippage: float = 5.0

    @classmethod
    def from_config(cls) -> "RiskConfig":
        return cls(
            stop_loss_enabled=bool(config.STOP_LOSS_ENABLED),
            stop_loss_percent=float(config.STOP_LOSS_PERCENT),
            trailing_stop_enabled=bool(config.TRAILING_STOP_ENABLED),
            trailing_stop_percent=float(config.TRAILING_STOP_PERCENT),
            time_stop_enabled=bool(config.TIME_STOP_ENABLED),
            max_hold_minutes=float(config.MAX_HOLD_MINUTES),
            take_profit_enabled=bool(config.TAKE_PROFIT_ENABLED),
            take_profit_levels=list(config.TAKE_PROFIT_LEVELS),
            max_position_size=int(config.MAX_POSITION_SIZE),
            max_concurrent_positions=int(config.MAX_POSITIONS),
            daily_limit=int(config.DAILY_LIMIT),
            stop_loss_slippage=float(config.STOP_LOSS_SLIPPAGE_PERCENT),
            take_profit_slippage=float(config.TAKE_PROFIT_SLIPPAGE_PERCENT),
        )

    def build_levels(self) -> list[TakeProfitLevel]:
        return [
            TakeProfitLevel(percent=float(p), sell_percent=float(s))
            for p, s in sorted(self.take_profit_levels, key=lambda level: level[0])
        ]


@dataclass
class TradeResult:
    success: bool
    amount_in: int = 0
    amount_out: int = 0
    tx_hash: str = ""
    gas_used: int = 0
    error: str = ""
    error_kind: str = ""
    quote_fallback_used: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.error_kind == "terminal"


@dataclass
class PositionEvent:
    position: Position
    result: TradeResult | None = None
    reason: str = ""
    sold_tokens: int = 0
    received: int = 0


@dataclass
class SecurityAnalysis:
    is_honeypot: bool = False
    has_rug_risk: bool = False
    risk_score: int = 0
    issues: list[str] = field(default_factory=list)
    recommendation: str = "safe"


@dataclass
class SentimentAnalysis:
    symbol: str
    score: int
    mentions: int = 0
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class BuyDecision:
    should_buy: bool
    amount: int = 0
    reason: str = ""
    confidence: float = 0.0
    risk_score: int = 0


@dataclass
class SellDecision:
    should_sell: bool
    amount: int = 0
    reason: str = ""
    sell_type: str = "manual"
