"""Security and sentiment gates consulted before an entry."""

from __future__ import annotations

import logging
from typing import Protocol

import config
from trading.models import SecurityAnalysis, SentimentAnalysis, TokenInfo

logger = logging.getLogger(__name__)


class SecurityProvider(Protocol):
    async def quick_check(self, token: TokenInfo) -> tuple[bool, str]:
        ...

    async def analyze(self, token: TokenInfo) -> SecurityAnalysis:
        ...


class SentimentProvider(Protocol):
    async def analyze_token(self, symbol: str, name: str) -> SentimentAnalysis | None:
        ...


class PassThroughSecurity:
    """Used when no scanner is configured: every token passes."""

    async def quick_check(self, token: TokenInfo) -> tuple[bool, str]:
        return True, "ok"

    async def analyze(self, token: TokenInfo) -> SecurityAnalysis:
        return SecurityAnalysis()


class NoSentiment:
    async def analyze_token(self, symbol: str, name: str) -> SentimentAnalysis | None:
        return None


class QuoteRoundtripSecurity:
    """
    Quote base->token for the intended spend size, then token->base for a fraction of that
    output. Thin or one-way curves (sell quote far below the proportional spend) are
    rejected. This cannot see transfer taxes applied at execution time.
    """

    def __init__(self, reader, probe_amount: int | None = None) -> None:
        self.reader = reader
        self.probe_amount = int(probe_amount or config.MAX_BUY_AMOUNT)
        self.sell_fraction = float(config.ROUNDTRIP_SELL_FRACTION)
        self.min_ratio = float(config.ROUNDTRIP_MIN_RATIO)
        self.honeypot_enabled = bool(config.HONEYPOT_CHECK_ENABLED)
        self.rug_enabled = bool(config.RUG_CHECK_ENABLED)
        self.min_liquidity = int(config.MIN_LIQUIDITY)

    async def roundtrip_ratio(self, token: str) -> tuple[bool, str, float]:
        try:
            token_out = await self.reader.quote_buy(token, self.probe_amount)
            if token_out <= 0:
                return False, "buy_quote_zero", 0.0
            sell_in = max(1, int(token_out * self.sell_fraction))
            base_out = await self.reader.quote_sell(token, sell_in)
            if base_out <= 0:
                return False, "sell_quote_zero", 0.0
        except Exception as exc:
            return False, f"roundtrip_quote_failed:{exc}", 0.0
        denom = float(self.probe_amount) * self.sell_fraction
        ratio = float(base_out) / denom if denom > 0 else 0.0
        return True, "ok", ratio

    async def quick_check(self, token: TokenInfo) -> tuple[bool, str]:
        if self.rug_enabled:
            if token.is_migrated:
                return False, "already_migrated"
            if token.reserve_base < self.min_liquidity:
                return False, f"low_liquidity reserve={token.reserve_base}"
        if self.honeypot_enabled:
            ok, reason, ratio = await self.roundtrip_ratio(token.address)
            if not ok:
                return False, reason
            if ratio < self.min_ratio:
                return False, f"roundtrip_ratio_low ratio={ratio:.3f} min={self.min_ratio:.3f}"
        return True, "ok"

    async def analyze(self, token: TokenInfo) -> SecurityAnalysis:
        issues: list[str] = []
        risk_score = 0
        honeypot = False
        if self.honeypot_enabled:
            ok, reason, ratio = await self.roundtrip_ratio(token.address)
            if not ok:
                honeypot = True
                issues.append(reason)
                risk_score += 60
            elif ratio < self.min_ratio:
                issues.append(f"roundtrip_ratio_low:{ratio:.3f}")
                risk_score += 30
        rug = False
        if self.rug_enabled and token.reserve_base < self.min_liquidity:
            rug = True
            issues.append("low_liquidity")
            risk_score += 25
        if token.total_supply > 0 and token.reserve_token * 100 < token.total_supply * 5:
            issues.append("curve_nearly_exhausted")
            risk_score += 10
        risk_score = min(100, risk_score)
        if honeypot or risk_score >= 70:
            recommendation = "avoid"
        elif risk_score >= 30:
            recommendation = "caution"
        else:
            recommendation = "safe"
        analysis = SecurityAnalysis(
            is_honeypot=honeypot,
            has_rug_risk=rug,
            risk_score=risk_score,
            issues=issues,
            recommendation=recommendation,
        )
        logger.info(
            "SECURITY_ANALYSIS token=%s risk=%s recommendation=%s issues=%s",
            token.address,
            risk_score,
            recommendation,
            ",".join(issues) or "-",
        )
        return analysis


def build_security_provider(reader) -> SecurityProvider:
    if reader is None or not (config.HONEYPOT_CHECK_ENABLED or config.RUG_CHECK_ENABLED):
        return PassThroughSecurity()
    return QuoteRoundtripSecurity(reader)
