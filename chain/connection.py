"""Chain connectivity: HTTP JSON-RPC with ordered failover plus optional websocket push."""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable

import aiohttp
from web3 import HTTPProvider, Web3
from web3.exceptions import TimeExhausted, TransactionNotFound

import config
from utils.channels import Channel

logger = logging.getLogger(__name__)

PUSH_KINDS = ("logs", "newHeads", "newPendingTransactions")


class ChainConnectionError(RuntimeError):
    """Raised when no configured endpoint answers the liveness probe."""


class ChainRPCError(RuntimeError):
    """Raised when RPC operations fail after retries."""


@dataclass
class ChainLink:
    endpoint_index: int = 0
    connected: bool = False
    push_handle: Any = None
    push_available: bool = False
    degraded: bool = False
    reconnect_attempts: int = 0


@dataclass
class PushSubscription:
    handle: str
    kind: str
    handler: Callable[[Any], None]
    params: dict[str, Any] | None = None
    remote_id: str = ""
    extra: dict[str, Any] = field(default_factory=dict)


class ConnectionManager:
    def __init__(self, rpc_urls: list[str] | None = None, wss_url: str | None = None) -> None:
        self.rpc_urls = [u for u in (rpc_urls if rpc_urls is not None else config.RPC_URLS) if u]
        self.wss_url = str(config.WSS_URL if wss_url is None else wss_url or "").strip()
        self.link = ChainLink()
        self.web3: Web3 | None = None
        self.degraded: Channel[str] = Channel("push_degraded")

        self._subscriptions: dict[str, PushSubscription] = {}
        self._by_remote_id: dict[str, str] = {}
        self._pending_subscribes: dict[int, str] = {}
        self._request_ids = itertools.count(1)
        self._handle_ids = itertools.count(1)
        self._session: aiohttp.ClientSession | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._closing = False

    # ------------------------------------------------------------------ http

    @property
    def connected(self) -> bool:
        return self.link.connected

    @property
    def push_available(self) -> bool:
        return self.link.push_available

    @property
    def endpoint(self) -> str:
        if not self.rpc_urls:
            return ""
        return self.rpc_urls[self.link.endpoint_index % len(self.rpc_urls)]

    def _build_web3(self, index: int) -> Web3:
        provider = self.rpc_urls[index % len(self.rpc_urls)]
        return Web3(
            HTTPProvider(
                provider,
                request_kwargs={"timeout": config.RPC_TIMEOUT_SECONDS},
            )
        )

    def _rotate_provider(self) -> None:
        if len(self.rpc_urls) <= 1:
            return
        self.link.endpoint_index = (self.link.endpoint_index + 1) % len(self.rpc_urls)
        self.web3 = self._build_web3(self.link.endpoint_index)
        logger.warning("RPC_ROTATED endpoint=%s", self.endpoint)

    @staticmethod
    def _probe(w3: Web3) -> int:
        return int(w3.eth.block_number)

    async def connect(self) -> int:
        """Connect HTTP (fatal on failure) and then try the push transport (non-fatal)."""
        self._closing = False
        height = await self._connect_http(self.link.endpoint_index)
        if config.WS_ENABLED and self.wss_url:
            await self._start_push()
        else:
            logger.info("PUSH_DISABLED reason=%s", "no_wss_url" if not self.wss_url else "ws_disabled")
        return height

    async def switch_endpoint(self) -> int:
        return await self._connect_http(self.link.endpoint_index + 1)

    async def _connect_http(self, start_index: int) -> int:
        if not self.rpc_urls:
            raise ChainConnectionError("RPC_URLS is empty")
        last_error: Exception | None = None
        count = len(self.rpc_urls)
        for offset in range(count):
            index = (start_index + offset) % count
            w3 = self._build_web3(index)
            try:
                height = await asyncio.to_thread(self._probe, w3)
            except Exception as exc:
                last_error = exc
                logger.warning("RPC_PROBE_FAILED endpoint=%s err=%s", self.rpc_urls[index], exc)
                continue
            self.web3 = w3
            self.link.endpoint_index = index
            self.link.connected = True
            logger.info("RPC_CONNECTED endpoint=%s height=%s", self.rpc_urls[index], height)
            return height
        self.link.connected = False
        raise ChainConnectionError(f"no_rpc_endpoint_reachable tried={count} last_error={last_error}")

    def _require_web3(self) -> Web3:
        if self.web3 is None:
            raise ChainRPCError("not_connected")
        return self.web3

    async def _read(self, op_name: str, fn: Callable[[Web3], Any]) -> Any:
        attempts = max(1, int(config.RPC_RETRY_ATTEMPTS))
        delay = float(config.RPC_RETRY_DELAY_SECONDS)
        last_error: Exception | None = None
        for attempt in range(1, attempts + 1):
            w3 = self._require_web3()
            try:
                return await asyncio.to_thread(fn, w3)
            except Exception as exc:  # pragma: no cover - network/runtime dependent
                last_error = exc
                logger.debug("RPC_RETRY op=%s attempt=%s/%s err=%s", op_name, attempt, attempts, exc)
                if attempt < attempts:
                    await asyncio.sleep(delay)
        self._rotate_provider()
        raise ChainRPCError(f"{op_name} failed after {attempts} attempts: {last_error}")

    async def current_height(self) -> int:
        return int(await self._read("block_number", self._probe))

    async def gas_price(self) -> int:
        def _fetch(w3: Web3) -> int:
            return int(w3.eth.gas_price or 0)

        observed = int(await self._read("gas_price", _fetch))
        if observed <= 0:
            observed = int(Web3.to_wei(config.DEFAULT_GAS_PRICE_GWEI, "gwei"))
        multiplier_milli = int(round(float(config.GAS_PRICE_MULTIPLIER) * 1000))
        return observed * multiplier_milli // 1000

    async def balance(self, address: str) -> int:
        checksum = Web3.to_checksum_address(address)
        return int(await self._read("get_balance", lambda w3: w3.eth.get_balance(checksum)))

    async def transaction_count(self, address: str) -> int:
        checksum = Web3.to_checksum_address(address)
        return int(
            await self._read(
                "get_transaction_count",
                lambda w3: w3.eth.get_transaction_count(checksum, "pending"),
            )
        )

    async def call(self, to: str, data: str) -> bytes:
        tx = {"to": Web3.to_checksum_address(to), "data": data}
        return bytes(await self._read("eth_call", lambda w3: w3.eth.call(tx)))

    async def get_logs(self, params: dict[str, Any]) -> list[Any]:
        query = dict(params)
        if query.get("address"):
            query["address"] = Web3.to_checksum_address(query["address"])
        return list(await self._read("get_logs", lambda w3: w3.eth.get_logs(query)))

    async def receipt(self, tx_hash: str) -> Any | None:
        def _fetch(w3: Web3) -> Any | None:
            try:
                return w3.eth.get_transaction_receipt(tx_hash)
            except TransactionNotFound:
                return None

        return await self._read("get_transaction_receipt", _fetch)

    async def submit(self, raw_tx: bytes) -> str:
        """Broadcast a signed transaction. Never retried."""
        w3 = self._require_web3()
        tx_hash = await asyncio.to_thread(w3.eth.send_raw_transaction, raw_tx)
        text = tx_hash.hex() if hasattr(tx_hash, "hex") else str(tx_hash)
        return text if text.startswith("0x") else f"0x{text}"

    async def wait_for_receipt(self, tx_hash: str, timeout: float) -> Any | None:
        """Receipt, or None when it does not arrive within `timeout` seconds."""
        w3 = self._require_web3()
        try:
            return await asyncio.to_thread(
                w3.eth.wait_for_transaction_receipt,
                tx_hash,
                timeout=float(timeout),
                poll_latency=min(1.0, float(config.BLOCK_TIME_SECONDS)),
            )
        except TimeExhausted:
            logger.warning("RECEIPT_TIMEOUT hash=%s timeout=%.1fs", tx_hash, float(timeout))
            return None

    # ------------------------------------------------------------------ push

    def reconnect_delay(self, attempt: int) -> float:
        base = float(config.WS_RECONNECT_BASE_SECONDS)
        cap = float(config.WS_RECONNECT_MAX_SECONDS)
        return min(cap, base * (2 ** max(0, int(attempt))))

    async def _start_push(self) -> bool:
        try:
            await self._open_push()
        except Exception as exc:
            self.link.push_available = False
            logger.warning("PUSH_UNAVAILABLE url=%s err=%s fallback=polling", self.wss_url, exc)
            return False
        self._reader_task = asyncio.create_task(self._push_loop())
        return True

    async def _open_push(self) -> None:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        ws = await asyncio.wait_for(
            self._session.ws_connect(self.wss_url, heartbeat=float(config.WS_HEARTBEAT_SECONDS)),
            timeout=float(config.WS_CONNECT_TIMEOUT_SECONDS),
        )
        self.link.push_handle = ws
        self.link.push_available = True
        self.link.degraded = False
        self._by_remote_id.clear()
        self._pending_subscribes.clear()
        logger.info("PUSH_CONNECTED url=%s", self.wss_url)
        await self._resubscribe_all()

    async def _resubscribe_all(self) -> None:
        for sub in list(self._subscriptions.values()):
            sub.remote_id = ""
            await self._send_subscribe(sub)

    async def _send_subscribe(self, sub: PushSubscription) -> None:
        ws = self.link.push_handle
        if ws is None or ws.closed:
            return
        request_id = next(self._request_ids)
        params: list[Any] = [sub.kind]
        if sub.params:
            params.append(sub.params)
        self._pending_subscribes[request_id] = sub.handle
        try:
            await ws.send_json({"jsonrpc": "2.0", "id": request_id, "method": "eth_subscribe", "params": params})
        except (aiohttp.ClientError, ConnectionError, RuntimeError) as exc:
            # Re-armed by _resubscribe_all once the reader reconnects.
            self._pending_subscribes.pop(request_id, None)
            logger.warning("PUSH_SUBSCRIBE_SEND_FAILED kind=%s err=%s", sub.kind, exc)

    async def _push_loop(self) -> None:
        while not self._closing:
            ws = self.link.push_handle
            try:
                async for msg in ws:
                    if msg.type == aiohttp.WSMsgType.TEXT:
                        self._on_push_message(msg.data)
                    elif msg.type in (aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR):
                        break
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # pragma: no cover - network/runtime dependent
                logger.warning("PUSH_READ_FAILED err=%s", exc)
            if self._closing:
                return
            logger.warning("PUSH_LOST url=%s", self.wss_url)
            self.link.push_handle = None
            if not await self._reconnect_push():
                return

    async def _reconnect_push(self) -> bool:
        max_attempts = int(config.WS_RECONNECT_MAX_ATTEMPTS)
        while not self._closing and self.link.reconnect_attempts < max_attempts:
            delay = self.reconnect_delay(self.link.reconnect_attempts)
            self.link.reconnect_attempts += 1
            logger.info(
                "PUSH_RECONNECT attempt=%s/%s delay=%.1fs",
                self.link.reconnect_attempts,
                max_attempts,
                delay,
            )
            await asyncio.sleep(delay)
            try:
                await self._open_push()
            except Exception as exc:
                logger.warning("PUSH_RECONNECT_FAILED attempt=%s err=%s", self.link.reconnect_attempts, exc)
                continue
            self.link.reconnect_attempts = 0
            return True
        if self._closing:
            return False
        self.link.push_available = False
        self.link.degraded = True
        logger.error("PUSH_DEGRADED attempts=%s mode=polling_only", self.link.reconnect_attempts)
        self.degraded.publish("reconnect_exhausted")
        return False

    def _on_push_message(self, raw: str | bytes) -> None:
        try:
            data = json.loads(raw)
        except ValueError:
            logger.debug("PUSH_BAD_JSON payload=%r", raw[:200] if raw else raw)
            return
        if not isinstance(data, dict):
            return
        if "id" in data and data.get("method") is None:
            handle = self._pending_subscribes.pop(int(data.get("id") or 0), "")
            sub = self._subscriptions.get(handle)
            if sub is None:
                return
            if data.get("error"):
                logger.warning("PUSH_SUBSCRIBE_FAILED kind=%s err=%s", sub.kind, data.get("error"))
                return
            sub.remote_id = str(data.get("result") or "")
            self._by_remote_id[sub.remote_id] = handle
            logger.info("PUSH_SUBSCRIBED kind=%s id=%s", sub.kind, sub.remote_id)
            return
        if data.get("method") != "eth_subscription":
            return
        params = data.get("params") or {}
        handle = self._by_remote_id.get(str(params.get("subscription") or ""))
        sub = self._subscriptions.get(handle or "")
        if sub is None:
            return
        try:
            sub.handler(params.get("result"))
        except Exception:
            logger.exception("PUSH_HANDLER_FAILED kind=%s", sub.kind)

    async def subscribe(
        self,
        kind: str,
        handler: Callable[[Any], None],
        params: dict[str, Any] | None = None,
    ) -> str:
        if kind not in PUSH_KINDS:
            raise ValueError(f"unsupported subscription kind: {kind}")
        handle = f"sub-{next(self._handle_ids)}"
        sub = PushSubscription(handle=handle, kind=kind, handler=handler, params=params)
        self._subscriptions[handle] = sub
        await self._send_subscribe(sub)
        return handle

    async def unsubscribe(self, handle: str) -> None:
        sub = self._subscriptions.pop(handle, None)
        if sub is None:
            return
        if sub.remote_id:
            self._by_remote_id.pop(sub.remote_id, None)
            ws = self.link.push_handle
            if ws is not None and not ws.closed:
                try:
                    await ws.send_json(
                        {
                            "jsonrpc": "2.0",
                            "id": next(self._request_ids),
                            "method": "eth_unsubscribe",
                            "params": [sub.remote_id],
                        }
                    )
                except (aiohttp.ClientError, ConnectionError, RuntimeError) as exc:
                    logger.debug("PUSH_UNSUBSCRIBE_SEND_FAILED id=%s err=%s", sub.remote_id, exc)

    async def disconnect(self) -> None:
        self._closing = True
        task, self._reader_task = self._reader_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        ws, self.link.push_handle = self.link.push_handle, None
        if ws is not None and not ws.closed:
            await ws.close()
        session, self._session = self._session, None
        if session is not None and not session.closed:
            await session.close()
        self._subscriptions.clear()
        self._by_remote_id.clear()
        self._pending_subscribes.clear()
        self.link.push_available = False
        self.link.connected = False
        self.web3 = None
        logger.info("CHAIN_DISCONNECTED")
