"""Venue event ingestion: websocket push when available, block-range polling otherwise."""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from enum import Enum
from typing import Any

import config
from chain.connection import ConnectionManager
from chain.venue import (
    EVENT_NAMES,
    ChainEvent,
    TokenBought,
    TokenCreated,
    TokenMigrated,
    TokenSold,
    address_topic,
    all_topics,
    event_topic,
    parse_log,
)
from utils.addressing import normalize_address
from utils.channels import Channel
from utils.state_file import read_json, write_json_atomic

logger = logging.getLogger(__name__)


class IngestionState(str, Enum):
    IDLE = "idle"
    LISTENING = "listening"


class IngestionMode(str, Enum):
    PUSH = "push"
    POLL = "poll"


class EventIngestion:
    def __init__(
        self,
        connection: ConnectionManager,
        venue_address: str | None = None,
        batch_blocks: int | None = None,
        poll_interval: float | None = None,
        cursor_file: str | None = None,
    ) -> None:
        self.connection = connection
        self.venue_address = normalize_address(venue_address or config.VENUE_ADDRESS)
        self.batch_blocks = max(1, int(batch_blocks or config.INGEST_BATCH_BLOCKS))
        self.poll_interval = float(poll_interval or config.BLOCK_TIME_SECONDS)
        self.cursor_file = config.INGEST_CURSOR_FILE if cursor_file is None else cursor_file

        self.states: dict[str, IngestionState] = {kind: IngestionState.IDLE for kind in EVENT_NAMES}
        self.mode: IngestionMode | None = None
        self.last_processed_height = 0

        self.created: Channel[TokenCreated] = Channel("token_created")
        self.bought: Channel[TokenBought] = Channel("token_bought")
        self.sold: Channel[TokenSold] = Channel("token_sold")
        self.migrated: Channel[TokenMigrated] = Channel("token_migrated")
        self.events: Channel[ChainEvent] = Channel("chain_events")

        self._seen: OrderedDict[tuple[str, int], None] = OrderedDict()
        self._seen_limit = int(config.INGEST_DEDUP_MAX)
        self._poll_task: asyncio.Task[None] | None = None
        self._push_handle = ""
        self._catchup_target: int | None = None
        self._unsubscribe_degraded = None
        self.stats = {"emitted": 0, "duplicates": 0, "parse_errors": 0, "poll_errors": 0}

    @property
    def running(self) -> bool:
        return any(state == IngestionState.LISTENING for state in self.states.values())

    def _log_filter(self) -> dict[str, Any]:
        return {"address": self.venue_address, "topics": [all_topics()]}

    async def start(self) -> None:
        if self.running:
            logger.warning("INGEST_ALREADY_RUNNING mode=%s", self.mode.value if self.mode else "-")
            return
        height = await self.connection.current_height()
        self.last_processed_height = self._initial_cursor(height)
        self._unsubscribe_degraded = self.connection.degraded.subscribe(self._on_push_degraded)
        if self.connection.push_available:
            self._push_handle = await self.connection.subscribe("logs", self._on_push_log, self._log_filter())
            self.mode = IngestionMode.PUSH
            if self.last_processed_height < height:
                # Persisted cursor behind head: backfill the gap once before live push.
                self._catchup_target = height
                self._poll_task = asyncio.create_task(self._catch_up(height))
        else:
            self.mode = IngestionMode.POLL
            self._poll_task = asyncio.create_task(self._poll_loop())
        for kind in self.states:
            self.states[kind] = IngestionState.LISTENING
        logger.info(
            "INGEST_STARTED mode=%s venue=%s from_block=%s",
            self.mode.value,
            self.venue_address,
            self.last_processed_height,
        )

    def _initial_cursor(self, height: int) -> int:
        if not self.cursor_file:
            return int(height)
        saved = read_json(self.cursor_file, default={}) or {}
        try:
            cursor = int(saved.get("last_processed_height", 0))
        except (TypeError, ValueError, AttributeError):
            cursor = 0
        if cursor <= 0 or cursor > height:
            return int(height)
        floor = int(height) - int(config.INGEST_MAX_CATCHUP_BLOCKS)
        if cursor < floor:
            logger.warning("INGEST_CURSOR_TOO_OLD saved=%s resume_from=%s", cursor, floor)
            return floor
        logger.info("INGEST_CURSOR_RESUMED saved=%s head=%s", cursor, height)
        return cursor

    def _save_cursor(self) -> None:
        if not self.cursor_file:
            return
        try:
            write_json_atomic(self.cursor_file, {"last_processed_height": int(self.last_processed_height)})
        except OSError as exc:
            logger.warning("INGEST_CURSOR_SAVE_FAILED path=%s err=%s", self.cursor_file, exc)

    async def stop(self) -> None:
        task, self._poll_task = self._poll_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        handle, self._push_handle = self._push_handle, ""
        if handle:
            await self.connection.unsubscribe(handle)
        if self._unsubscribe_degraded is not None:
            self._unsubscribe_degraded()
            self._unsubscribe_degraded = None
        was_running = self.running
        for kind in self.states:
            self.states[kind] = IngestionState.IDLE
        self.mode = None
        if was_running:
            self._save_cursor()
            logger.info("INGEST_STOPPED last_block=%s", self.last_processed_height)

    # ------------------------------------------------------------------ poll

    async def _poll_loop(self) -> None:
        while True:
            try:
                await self.poll_once()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self.stats["poll_errors"] += 1
                logger.warning(
                    "INGEST_POLL_FAILED from=%s err=%s",
                    self.last_processed_height + 1,
                    exc,
                )
            await asyncio.sleep(self.poll_interval)

    async def _catch_up(self, target_height: int) -> None:
        try:
            while self.last_processed_height < target_height:
                try:
                    await self.poll_once(head=target_height)
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    self.stats["poll_errors"] += 1
                    logger.warning("INGEST_CATCHUP_FAILED from=%s err=%s", self.last_processed_height + 1, exc)
                    await asyncio.sleep(self.poll_interval)
        finally:
            self._catchup_target = None

    async def poll_once(self, head: int | None = None) -> list[ChainEvent]:
        """
        Scan one bounded block range and emit its events in block order.
        The cursor only moves after a successful query, so a failing range is retried.
        """
        height = int(head if head is not None else await self.connection.current_height())
        if height <= self.last_processed_height:
            return []
        from_block = self.last_processed_height + 1
        to_block = min(height, self.last_processed_height + self.batch_blocks)
        rows = await self.connection.get_logs(
            {**self._log_filter(), "fromBlock": from_block, "toBlock": to_block}
        )
        events = self._parse_rows(rows)
        events.sort(key=lambda ev: ev.order_key)
        emitted = [ev for ev in events if self._emit(ev)]
        self.last_processed_height = to_block
        self._save_cursor()
        if emitted:
            logger.debug("INGEST_POLL range=%s-%s events=%s", from_block, to_block, len(emitted))
        return emitted

    def _parse_rows(self, rows: list[Any]) -> list[ChainEvent]:
        events: list[ChainEvent] = []
        for row in rows or []:
            try:
                event = parse_log(row)
            except ValueError as exc:
                self.stats["parse_errors"] += 1
                logger.warning("INGEST_PARSE_FAILED err=%s", exc)
                continue
            if event is not None:
                events.append(event)
        return events

    # ------------------------------------------------------------------ push

    def _on_push_log(self, raw: Any) -> None:
        try:
            event = parse_log(raw)
        except ValueError as exc:
            self.stats["parse_errors"] += 1
            logger.warning("INGEST_PARSE_FAILED err=%s", exc)
            return
        if event is None:
            return
        if not self._emit(event) or self._catchup_target is not None:
            # Backfill owns the cursor until it reaches the subscription height.
            return
        # The rest of this block may still be in flight; a poll fallback rescans it.
        complete = event.block_number - 1
        if complete > self.last_processed_height:
            self.last_processed_height = complete

    def _on_push_degraded(self, reason: str) -> None:
        if self.mode != IngestionMode.PUSH:
            return
        logger.warning("INGEST_FALLBACK_TO_POLL reason=%s from_block=%s", reason, self.last_processed_height + 1)
        self._push_handle = ""
        self.mode = IngestionMode.POLL
        if self._poll_task is not None and not self._poll_task.done():
            self._poll_task.cancel()
        self._poll_task = asyncio.create_task(self._poll_loop())

    # ------------------------------------------------------------------ emit

    def _emit(self, event: ChainEvent) -> bool:
        key = event.dedup_key
        if key in self._seen:
            self.stats["duplicates"] += 1
            return False
        self._seen[key] = None
        while len(self._seen) > self._seen_limit:
            self._seen.popitem(last=False)

        self.stats["emitted"] += 1
        if isinstance(event, TokenCreated):
            self.created.publish(event)
        elif isinstance(event, TokenBought):
            self.bought.publish(event)
        elif isinstance(event, TokenSold):
            self.sold.publish(event)
        elif isinstance(event, TokenMigrated):
            self.migrated.publish(event)
        self.events.publish(event)
        return True

    # ------------------------------------------------------------ historical

    async def historical_events(
        self,
        from_block: int,
        to_block: int | None = None,
        topics: list[Any] | None = None,
    ) -> list[ChainEvent]:
        """Chunked range query; does not emit or touch the live cursor."""
        end = int(to_block if to_block is not None else await self.connection.current_height())
        start = max(0, int(from_block))
        out: list[ChainEvent] = []
        while start <= end:
            chunk_end = min(end, start + self.batch_blocks - 1)
            rows = await self.connection.get_logs(
                {
                    "address": self.venue_address,
                    "topics": topics or [all_topics()],
                    "fromBlock": start,
                    "toBlock": chunk_end,
                }
            )
            out.extend(self._parse_rows(rows))
            start = chunk_end + 1
        out.sort(key=lambda ev: ev.order_key)
        return out

    async def events_for_token(
        self,
        token: str,
        from_block: int | None = None,
        to_block: int | None = None,
    ) -> dict[str, list[Any]]:
        end = int(to_block if to_block is not None else await self.connection.current_height())
        start = int(from_block) if from_block is not None else max(0, end - int(config.HISTORICAL_LOOKBACK_BLOCKS))
        topics = [
            [event_topic(EVENT_NAMES["bought"]), event_topic(EVENT_NAMES["sold"])],
            None,
            address_topic(token),
        ]
        events = await self.historical_events(start, end, topics=topics)
        wanted = normalize_address(token)
        return {
            "purchases": [ev for ev in events if isinstance(ev, TokenBought) and ev.token == wanted],
            "sales": [ev for ev in events if isinstance(ev, TokenSold) and ev.token == wanted],
        }
