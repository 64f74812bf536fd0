"""Integer amount helpers (wei, 18-decimal fixed point prices, percents)."""

from __future__ import annotations

from decimal import Decimal

import config

WEI = 10**18
MAX_UINT256 = (2**256) - 1


def to_base_units(amount: float | str | Decimal) -> int:
    return int(Decimal(str(amount)) * WEI)


def format_base(amount: int, decimals: int = 6) -> str:
    value = Decimal(int(amount)) / Decimal(WEI)
    return f"{value:.{decimals}f} {config.BASE_SYMBOL}"


def percent_to_bps(percent: float) -> int:
    return int(round(float(percent) * 100))


def apply_slippage(expected_out: int, slippage_percent: float) -> int:
    """Minimum acceptable output for a quoted amount."""
    bps = max(0, min(10_000, percent_to_bps(slippage_percent)))
    return int(expected_out) * (10_000 - bps) // 10_000


def scale_down(value: int, percent: float) -> int:
    """value * (1 - percent/100) on integers."""
    bps = max(0, min(10_000, percent_to_bps(percent)))
    return int(value) * (10_000 - bps) // 10_000


def implied_price(base_amount: int, token_amount: int) -> int:
    """Base-currency wei per 1e18 token units."""
    if int(token_amount) <= 0:
        return 0
    return int(base_amount) * WEI // int(token_amount)


def percent_change(old: int, new: int) -> float:
    if int(old) <= 0:
        return 0.0
    return round((int(new) - int(old)) * 10_000 / int(old)) / 100.0
