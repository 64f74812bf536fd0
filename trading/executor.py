"""On-chain trade execution against the bonding-curve venue."""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable

from eth_account import Account
from web3 import Web3

import config
from chain.connection import ChainRPCError, ConnectionManager
from chain.venue import (
    ERC20_ABI,
    VENUE_ABI,
    TokenBought,
    TokenSold,
    decode_result,
    encode_call,
    parse_log,
)
from trading.models import TokenInfo, TradeResult
from utils.addressing import is_address, normalize_address
from utils.units import MAX_UINT256, apply_slippage, format_base

logger = logging.getLogger(__name__)

TERMINAL = "terminal"
VENUE = "venue"
TRANSPORT = "transport"


class TradeSubmitError(RuntimeError):
    def __init__(self, reason: str, kind: str = VENUE, tx_hash: str = "") -> None:
        super().__init__(reason)
        self.reason = reason
        self.kind = kind
        self.tx_hash = tx_hash


def _get(row: Any, key: str, default: Any = None) -> Any:
    if isinstance(row, dict):
        return row.get(key, default)
    try:
        return row[key]
    except (KeyError, TypeError):
        return getattr(row, key, default)


class NonceManager:
    """
    In-process account nonce counter. Seeded from the chain's pending count and
    reconciled against it every `reconcile_seconds`; reset from chain after failures.
    """

    def __init__(
        self,
        connection: ConnectionManager,
        address: str,
        reconcile_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.connection = connection
        self.address = address
        self.reconcile_seconds = float(
            config.NONCE_RECONCILE_SECONDS if reconcile_seconds is None else reconcile_seconds
        )
        self.clock = clock
        self._next: int | None = None
        self._synced_at = 0.0
        self._lock = asyncio.Lock()

    @property
    def pending(self) -> int | None:
        return self._next

    async def next_nonce(self) -> int:
        async with self._lock:
            now = self.clock()
            if self._next is None or (now - self._synced_at) >= self.reconcile_seconds:
                chain_nonce = int(await self.connection.transaction_count(self.address))
                self._next = chain_nonce if self._next is None else max(self._next, chain_nonce)
                self._synced_at = now
            nonce = self._next
            self._next += 1
            return nonce

    async def reset(self) -> None:
        async with self._lock:
            try:
                self._next = int(await self.connection.transaction_count(self.address))
                self._synced_at = self.clock()
            except ChainRPCError as exc:
                # Re-seeded on the next call.
                self._next = None
                logger.warning("NONCE_RESET_FAILED address=%s err=%s", self.address, exc)
                return
            logger.info("NONCE_RESET address=%s next=%s", self.address, self._next)


class VenueReader:
    """Read-only venue and ERC20 queries (quotes, prices, token metadata)."""

    def __init__(self, connection: ConnectionManager, venue_address: str | None = None) -> None:
        self.connection = connection
        self.venue = Web3.to_checksum_address(venue_address or config.VENUE_ADDRESS)

    async def _call(self, abi: list[dict[str, Any]], to: str, fn_name: str, args: list[Any]) -> tuple[Any, ...]:
        data = encode_call(abi, fn_name, args)
        raw = await self.connection.call(to, data)
        return decode_result(abi, fn_name, raw)

    async def quote_buy(self, token: str, base_amount: int) -> int:
        (out,) = await self._call(VENUE_ABI, self.venue, "calculateBuyAmount", [token, int(base_amount)])
        return int(out)

    async def quote_sell(self, token: str, token_amount: int) -> int:
        (out,) = await self._call(VENUE_ABI, self.venue, "calculateSellAmount", [token, int(token_amount)])
        return int(out)

    async def get_token_price(self, token: str) -> int:
        try:
            (price,) = await self._call(VENUE_ABI, self.venue, "getTokenPrice", [token])
        except (ChainRPCError, ValueError) as exc:
            logger.debug("TOKEN_PRICE_FAILED token=%s err=%s", token, exc)
            return 0
        return int(price)

    async def token_balance(self, token: str, owner: str) -> int:
        (balance,) = await self._call(ERC20_ABI, token, "balanceOf", [owner])
        return int(balance)

    async def allowance(self, token: str, owner: str, spender: str) -> int:
        (value,) = await self._call(ERC20_ABI, token, "allowance", [owner, spender])
        return int(value)

    async def token_decimals(self, token: str) -> int:
        """Best-effort ERC20 decimals() with a safe fallback."""
        try:
            (dec,) = await self._call(ERC20_ABI, token, "decimals", [])
        except (ChainRPCError, ValueError):
            return 18
        dec = int(dec)
        return dec if 0 <= dec <= 255 else 18

    async def token_info(self, token: str) -> TokenInfo | None:
        try:
            creator, total_supply, reserve_base, reserve_token, created_at, is_migrated = await self._call(
                VENUE_ABI, self.venue, "tokens", [token]
            )
            (name,) = await self._call(ERC20_ABI, token, "name", [])
            (symbol,) = await self._call(ERC20_ABI, token, "symbol", [])
        except (ChainRPCError, ValueError) as exc:
            logger.warning("TOKEN_INFO_FAILED token=%s err=%s", token, exc)
            return None
        return TokenInfo(
            address=normalize_address(token),
            name=str(name),
            symbol=str(symbol),
            decimals=await self.token_decimals(token),
            total_supply=int(total_supply),
            creator=normalize_address(creator),
            created_at=datetime.fromtimestamp(int(created_at), tz=timezone.utc) if int(created_at) > 0 else None,
            reserve_base=int(reserve_base),
            reserve_token=int(reserve_token),
            is_migrated=bool(is_migrated),
            price=await self.get_token_price(token),
        )


class TradeExecutor(VenueReader):
    def __init__(
        self,
        connection: ConnectionManager,
        private_key: str | None = None,
        wallet_address: str | None = None,
        venue_address: str | None = None,
    ) -> None:
        super().__init__(connection, venue_address)
        key = config.PRIVATE_KEY if private_key is None else private_key
        if not key:
            raise ValueError("PRIVATE_KEY is empty")
        self.account = Account.from_key(key)
        wallet = (config.WALLET_ADDRESS if wallet_address is None else wallet_address) or self.account.address
        if normalize_address(wallet) != normalize_address(self.account.address):
            raise ValueError("WALLET_ADDRESS does not match PRIVATE_KEY")
        self.wallet = Web3.to_checksum_address(self.account.address)
        self.nonces = NonceManager(connection, self.wallet)

    async def native_balance(self) -> int:
        return await self.connection.balance(self.wallet)

    # ----------------------------------------------------------- validation

    @staticmethod
    def _validate(token: str, amount: int, slippage_percent: float) -> tuple[bool, str]:
        if not is_address(token):
            return False, f"invalid_token_address:{token}"
        if int(amount) <= 0:
            return False, "invalid_amount"
        if not (float(config.MIN_SLIPPAGE) <= float(slippage_percent) <= float(config.MAX_SLIPPAGE)):
            return False, (
                f"invalid_slippage value={slippage_percent} "
                f"min={config.MIN_SLIPPAGE} max={config.MAX_SLIPPAGE}"
            )
        return True, "ok"

    @staticmethod
    def _failed(side: str, token: str, reason: str, kind: str, amount_in: int = 0, tx_hash: str = "") -> TradeResult:
        logger.warning("TRADE_FAILED side=%s token=%s kind=%s reason=%s", side, token, kind, reason)
        return TradeResult(success=False, amount_in=int(amount_in), tx_hash=tx_hash, error=reason, error_kind=kind)

    # ------------------------------------------------------------ submission

    async def _send(self, data: str, value: int, op: str, to: str | None = None) -> tuple[str, Any]:
        gas_limit = int(config.DEFAULT_GAS_LIMIT)
        try:
            gas_price = await self.connection.gas_price()
            balance = await self.connection.balance(self.wallet)
        except ChainRPCError as exc:
            raise TradeSubmitError(f"preflight_failed:{exc}", kind=TRANSPORT) from exc
        worst_cost = gas_limit * gas_price + int(value)
        if worst_cost > balance:
            raise TradeSubmitError(
                f"insufficient_balance have={format_base(balance)} want={format_base(worst_cost)}",
                kind=TERMINAL,
            )

        try:
            nonce = await self.nonces.next_nonce()
        except ChainRPCError as exc:
            raise TradeSubmitError(f"nonce_unavailable:{exc}", kind=TRANSPORT) from exc
        tx = {
            "from": self.wallet,
            "to": Web3.to_checksum_address(to or self.venue),
            "value": int(value),
            "data": data,
            "gas": gas_limit,
            "gasPrice": int(gas_price),
            "nonce": int(nonce),
            "chainId": int(config.CHAIN_ID),
        }
        try:
            signed = self.account.sign_transaction(tx)
            raw_tx = getattr(signed, "raw_transaction", None)
            if raw_tx is None:
                raw_tx = getattr(signed, "rawTransaction", None)
            if raw_tx is None:
                raise RuntimeError("signed_tx_missing_raw_bytes")
            tx_hash = await self.connection.submit(raw_tx)
        except Exception as exc:
            await self.nonces.reset()
            raise TradeSubmitError(f"submit_failed:{exc}") from exc
        logger.info("TX_SUBMITTED op=%s hash=%s nonce=%s gas_price=%s", op, tx_hash, nonce, gas_price)

        receipt = await self.connection.wait_for_receipt(tx_hash, float(config.TX_TIMEOUT_SECONDS))
        if receipt is None:
            await self.nonces.reset()
            raise TradeSubmitError(f"receipt_timeout hash={tx_hash}", tx_hash=tx_hash)
        if int(_get(receipt, "status", 0) or 0) != 1:
            await self.nonces.reset()
            raise TradeSubmitError(f"tx_reverted hash={tx_hash}", tx_hash=tx_hash)
        return tx_hash, receipt

    async def _ensure_allowance(self, token: str, required_amount: int) -> None:
        current = await self.allowance(token, self.wallet, self.venue)
        if current >= int(required_amount):
            return
        logger.info("APPROVE token=%s spender=%s", token, self.venue)
        data = encode_call(ERC20_ABI, "approve", [self.venue, MAX_UINT256])
        await self._send(data, 0, "approve", to=token)

    def _realized_output(self, receipt: Any, side: str, token: str) -> int | None:
        wanted = normalize_address(token)
        wallet = normalize_address(self.wallet)
        venue = normalize_address(self.venue)
        for row in _get(receipt, "logs", None) or []:
            if normalize_address(str(_get(row, "address", "") or "")) != venue:
                continue
            try:
                event = parse_log(row)
            except ValueError:
                continue
            if event is None or event.token != wanted:
                continue
            if side == "buy" and isinstance(event, TokenBought) and event.buyer == wallet:
                return event.amount_out
            if side == "sell" and isinstance(event, TokenSold) and event.seller == wallet:
                return event.amount_out
        return None

    def _success(self, side: str, token: str, amount_in: int, expected: int, tx_hash: str, receipt: Any) -> TradeResult:
        realized = self._realized_output(receipt, side, token)
        fallback = realized is None
        if fallback:
            logger.warning("TRADE_OUTPUT_FROM_QUOTE side=%s token=%s hash=%s", side, token, tx_hash)
        result = TradeResult(
            success=True,
            amount_in=int(amount_in),
            amount_out=int(expected if fallback else realized),
            tx_hash=tx_hash,
            gas_used=int(_get(receipt, "gasUsed", 0) or 0),
            quote_fallback_used=fallback,
        )
        logger.info(
            "TRADE_OK side=%s token=%s in=%s out=%s hash=%s gas=%s",
            side,
            token,
            result.amount_in,
            result.amount_out,
            tx_hash,
            result.gas_used,
        )
        return result

    # ---------------------------------------------------------------- trades

    async def buy(self, token: str, base_amount: int, slippage_percent: float | None = None) -> TradeResult:
        slippage = float(config.DEFAULT_SLIPPAGE if slippage_percent is None else slippage_percent)
        ok, reason = self._validate(token, base_amount, slippage)
        if not ok:
            return self._failed("buy", token, reason, TERMINAL, base_amount)
        try:
            expected = await self.quote_buy(token, base_amount)
        except (ChainRPCError, ValueError) as exc:
            await self.nonces.reset()
            return self._failed("buy", token, f"quote_failed:{exc}", VENUE, base_amount)
        if expected <= 0:
            await self.nonces.reset()
            return self._failed("buy", token, "quote_zero", VENUE, base_amount)

        min_out = apply_slippage(expected, slippage)
        data = encode_call(VENUE_ABI, "buyToken", [token, min_out])
        try:
            tx_hash, receipt = await self._send(data, int(base_amount), "buy")
        except TradeSubmitError as exc:
            return self._failed("buy", token, exc.reason, exc.kind, base_amount, exc.tx_hash)
        return self._success("buy", token, base_amount, expected, tx_hash, receipt)

    async def sell(self, token: str, token_amount: int, slippage_percent: float | None = None) -> TradeResult:
        slippage = float(config.DEFAULT_SLIPPAGE if slippage_percent is None else slippage_percent)
        ok, reason = self._validate(token, token_amount, slippage)
        if not ok:
            return self._failed("sell", token, reason, TERMINAL, token_amount)
        try:
            held = await self.token_balance(token, self.wallet)
        except (ChainRPCError, ValueError) as exc:
            return self._failed("sell", token, f"balance_failed:{exc}", TRANSPORT, token_amount)
        if held < int(token_amount):
            return self._failed(
                "sell", token, f"insufficient_token_balance have={held} need={int(token_amount)}", TERMINAL, token_amount
            )
        try:
            await self._ensure_allowance(token, token_amount)
            expected = await self.quote_sell(token, token_amount)
        except TradeSubmitError as exc:
            return self._failed("sell", token, f"approve_failed:{exc.reason}", exc.kind, token_amount, exc.tx_hash)
        except (ChainRPCError, ValueError) as exc:
            await self.nonces.reset()
            return self._failed("sell", token, f"quote_failed:{exc}", VENUE, token_amount)
        if expected <= 0:
            await self.nonces.reset()
            return self._failed("sell", token, "quote_zero", VENUE, token_amount)

        min_out = apply_slippage(expected, slippage)
        data = encode_call(VENUE_ABI, "sellToken", [token, int(token_amount), min_out])
        try:
            tx_hash, receipt = await self._send(data, 0, "sell")
        except TradeSubmitError as exc:
            return self._failed("sell", token, exc.reason, exc.kind, token_amount, exc.tx_hash)
        return self._success("sell", token, token_amount, expected, tx_hash, receipt)

    async def sell_all(self, token: str, slippage_percent: float | None = None) -> TradeResult:
        if not is_address(token):
            return self._failed("sell", token, f"invalid_token_address:{token}", TERMINAL)
        try:
            held = await self.token_balance(token, self.wallet)
        except (ChainRPCError, ValueError) as exc:
            return self._failed("sell", token, f"balance_failed:{exc}", TRANSPORT)
        if held <= 0:
            return self._failed("sell", token, "no_token_balance", TERMINAL)
        return await self.sell(token, held, slippage_percent)

    async def buy_with_retry(
        self,
        token: str,
        base_amount: int,
        slippage_percent: float | None = None,
        max_attempts: int | None = None,
    ) -> TradeResult:
        slippage = float(config.DEFAULT_SLIPPAGE if slippage_percent is None else slippage_percent)
        attempts = max(1, int(max_attempts or config.TRADE_MAX_RETRIES))
        result = TradeResult(success=False, error="not_attempted")
        for attempt in range(1, attempts + 1):
            result = await self.buy(token, base_amount, slippage)
            if result.success:
                return result
            if result.is_terminal:
                logger.warning("BUY_RETRY_ABORTED token=%s reason=%s", token, result.error)
                return result
            if attempt < attempts:
                delay = float(config.TRADE_RETRY_DELAY_SECONDS) * attempt
                slippage = min(slippage + float(config.SLIPPAGE_RETRY_STEP), float(config.MAX_SLIPPAGE))
                logger.info(
                    "BUY_RETRY token=%s attempt=%s/%s slippage=%.2f delay=%.1fs",
                    token,
                    attempt + 1,
                    attempts,
                    slippage,
                    delay,
                )
                await asyncio.sleep(delay)
        return result
