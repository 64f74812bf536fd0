"""New-token discovery: TokenCreated events -> filter -> newToken notifications."""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone

import config
from chain.venue import TokenCreated
from trading.models import MonitoredToken, TokenInfo
from utils.channels import Channel

logger = logging.getLogger(__name__)


@dataclass
class TokenFilter:
    name_contains: list[str] = field(default_factory=lambda: list(config.TOKEN_FILTER_NAME_CONTAINS))
    name_excludes: list[str] = field(default_factory=lambda: list(config.TOKEN_FILTER_NAME_EXCLUDES))
    symbol_contains: list[str] = field(default_factory=lambda: list(config.TOKEN_FILTER_SYMBOL_CONTAINS))
    symbol_excludes: list[str] = field(default_factory=lambda: list(config.TOKEN_FILTER_SYMBOL_EXCLUDES))
    creator_whitelist: list[str] = field(default_factory=lambda: list(config.WHITELISTED_CREATORS))
    creator_blacklist: list[str] = field(default_factory=lambda: list(config.BLACKLISTED_CREATORS))

    def check(self, name: str, symbol: str, creator: str) -> tuple[bool, str]:
        name_l, symbol_l, creator_l = name.lower(), symbol.lower(), creator.lower()
        if self.name_contains and not any(w in name_l for w in self.name_contains):
            return False, "name_not_matched"
        if any(w in name_l for w in self.name_excludes):
            return False, "name_excluded"
        if self.symbol_contains and not any(w in symbol_l for w in self.symbol_contains):
            return False, "symbol_not_matched"
        if any(w in symbol_l for w in self.symbol_excludes):
            return False, "symbol_excluded"
        if self.creator_whitelist and creator_l not in self.creator_whitelist:
            return False, "creator_not_whitelisted"
        if creator_l in self.creator_blacklist:
            return False, "creator_blacklisted"
        return True, "ok"


class TokenMonitor:
    def __init__(self, reader, token_filter: TokenFilter | None = None, recent_limit: int | None = None) -> None:
        self.reader = reader
        self.filter = token_filter or TokenFilter()
        self.recent: deque[MonitoredToken] = deque(maxlen=int(recent_limit or config.RECENT_TOKENS_LIMIT))
        self.new_token: Channel[MonitoredToken] = Channel("new_token")
        self.stats = {"seen": 0, "filtered": 0, "info_failed": 0, "emitted": 0}
        self._unsubscribe = None

    def attach(self, ingestion) -> None:
        if self._unsubscribe is None:
            self._unsubscribe = ingestion.created.subscribe(self.on_token_created)

    def detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    async def on_token_created(self, event: TokenCreated) -> MonitoredToken | None:
        self.stats["seen"] += 1
        ok, reason = self.filter.check(event.name, event.symbol, event.creator)
        if not ok:
            self.stats["filtered"] += 1
            logger.debug("TOKEN_FILTERED token=%s symbol=%s reason=%s", event.token, event.symbol, reason)
            return None
        info = await self.reader.token_info(event.token)
        if info is None:
            self.stats["info_failed"] += 1
            info = TokenInfo(
                address=event.token,
                name=event.name,
                symbol=event.symbol,
                creator=event.creator,
                created_at=datetime.fromtimestamp(event.timestamp, tz=timezone.utc) if event.timestamp else None,
            )
        token = MonitoredToken(
            info=info,
            discovered_at=datetime.now(timezone.utc),
            block_number=event.block_number,
            tx_hash=event.tx_hash,
        )
        self.recent.appendleft(token)
        self.stats["emitted"] += 1
        logger.info(
            "TOKEN_DISCOVERED token=%s symbol=%s name=%s creator=%s block=%s",
            info.address,
            info.symbol,
            info.name,
            info.creator,
            event.block_number,
        )
        self.new_token.publish(token)
        return token

    def recent_tokens(self, limit: int = 10) -> list[MonitoredToken]:
        return list(self.recent)[: max(0, int(limit))]
