"""Address normalization helpers."""

from __future__ import annotations

import re

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


def normalize_address(value: str | None) -> str:
    """Normalize on-chain address keys for internal maps/dedup."""
    return str(value or "").strip().lower()


def is_address(value: str | None) -> bool:
    return bool(_ADDRESS_RE.match(str(value or "").strip()))


def short_address(value: str | None) -> str:
    raw = normalize_address(value)
    if len(raw) < 12:
        return raw
    return f"{raw[:6]}...{raw[-4:]}"
