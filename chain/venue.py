"""Venue (bonding-curve token manager) and ERC20 ABI surface, call codec and log parsing."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, ClassVar

from eth_abi import decode as abi_decode
from eth_abi import encode as abi_encode
from web3 import Web3

from utils.addressing import normalize_address


ERC20_ABI: list[dict[str, Any]] = [
    {
        "name": "name",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "string"}],
    },
    {
        "name": "symbol",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "string"}],
    },
    {
        "name": "decimals",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint8"}],
    },
    {
        "name": "balanceOf",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "owner", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "allowance",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "owner", "type": "address"}, {"name": "spender", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "approve",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "spender", "type": "address"}, {"name": "value", "type": "uint256"}],
        "outputs": [{"name": "", "type": "bool"}],
    },
]


VENUE_ABI: list[dict[str, Any]] = [
    {
        "name": "calculateBuyAmount",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "token", "type": "address"}, {"name": "amountIn", "type": "uint256"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "calculateSellAmount",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "token", "type": "address"}, {"name": "amountIn", "type": "uint256"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "getTokenPrice",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "token", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "tokens",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "token", "type": "address"}],
        "outputs": [
            {"name": "creator", "type": "address"},
            {"name": "totalSupply", "type": "uint256"},
            {"name": "reserveBase", "type": "uint256"},
            {"name": "reserveToken", "type": "uint256"},
            {"name": "createdAt", "type": "uint256"},
            {"name": "isMigrated", "type": "bool"},
        ],
    },
    {
        "name": "buyToken",
        "type": "function",
        "stateMutability": "payable",
        "inputs": [{"name": "token", "type": "address"}, {"name": "minAmountOut", "type": "uint256"}],
        "outputs": [],
    },
    {
        "name": "sellToken",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "token", "type": "address"},
            {"name": "amount", "type": "uint256"},
            {"name": "minAmountOut", "type": "uint256"},
        ],
        "outputs": [],
    },
    {
        "name": "TokenCreated",
        "type": "event",
        "anonymous": False,
        "inputs": [
            {"name": "token", "type": "address", "indexed": True},
            {"name": "creator", "type": "address", "indexed": True},
            {"name": "name", "type": "string", "indexed": False},
            {"name": "symbol", "type": "string", "indexed": False},
            {"name": "timestamp", "type": "uint256", "indexed": False},
        ],
    },
    {
        "name": "TokenPurchase",
        "type": "event",
        "anonymous": False,
        "inputs": [
            {"name": "buyer", "type": "address", "indexed": True},
            {"name": "token", "type": "address", "indexed": True},
            {"name": "amountIn", "type": "uint256", "indexed": False},
            {"name": "amountOut", "type": "uint256", "indexed": False},
            {"name": "timestamp", "type": "uint256", "indexed": False},
        ],
    },
    {
        "name": "TokenSale",
        "type": "event",
        "anonymous": False,
        "inputs": [
            {"name": "seller", "type": "address", "indexed": True},
            {"name": "token", "type": "address", "indexed": True},
            {"name": "amountIn", "type": "uint256", "indexed": False},
            {"name": "amountOut", "type": "uint256", "indexed": False},
            {"name": "timestamp", "type": "uint256", "indexed": False},
        ],
    },
    {
        "name": "TokenMigrated",
        "type": "event",
        "anonymous": False,
        "inputs": [
            {"name": "token", "type": "address", "indexed": True},
            {"name": "pair", "type": "address", "indexed": False},
            {"name": "liquidity", "type": "uint256", "indexed": False},
            {"name": "timestamp", "type": "uint256", "indexed": False},
        ],
    },
]


def _abi_entry(abi: list[dict[str, Any]], name: str, kind: str) -> dict[str, Any]:
    for entry in abi:
        if entry.get("type") == kind and entry.get("name") == name:
            return entry
    raise KeyError(f"abi_entry_missing {kind}={name}")


def _signature(entry: dict[str, Any]) -> str:
    types = ",".join(str(item["type"]) for item in entry.get("inputs", []))
    return f"{entry['name']}({types})"


def event_topic(name: str) -> str:
    entry = _abi_entry(VENUE_ABI, name, "event")
    return "0x" + Web3.keccak(text=_signature(entry)).hex().lower().replace("0x", "")


def encode_call(abi: list[dict[str, Any]], fn_name: str, args: list[Any] | tuple[Any, ...] = ()) -> str:
    """Calldata hex for a function call: 4-byte selector + ABI-encoded arguments."""
    entry = _abi_entry(abi, fn_name, "function")
    types = [str(item["type"]) for item in entry.get("inputs", [])]
    normalized = [
        Web3.to_checksum_address(value) if type_ == "address" else value for type_, value in zip(types, args)
    ]
    selector = Web3.keccak(text=_signature(entry))[:4]
    return "0x" + (bytes(selector) + abi_encode(types, normalized)).hex()


def decode_result(abi: list[dict[str, Any]], fn_name: str, data: bytes | str) -> tuple[Any, ...]:
    entry = _abi_entry(abi, fn_name, "function")
    types = [str(item["type"]) for item in entry.get("outputs", [])]
    raw = _to_bytes(data)
    if not raw and types:
        raise ValueError(f"empty_call_result fn={fn_name}")
    return tuple(abi_decode(types, raw))


@dataclass(frozen=True)
class ChainEvent:
    token: str
    block_number: int
    tx_hash: str
    log_index: int
    timestamp: int

    kind: ClassVar[str] = "event"

    @property
    def dedup_key(self) -> tuple[str, int]:
        return (self.tx_hash, self.log_index)

    @property
    def order_key(self) -> tuple[int, int]:
        return (self.block_number, self.log_index)


@dataclass(frozen=True)
class TokenCreated(ChainEvent):
    creator: str
    name: str
    symbol: str

    kind: ClassVar[str] = "created"


@dataclass(frozen=True)
class TokenBought(ChainEvent):
    buyer: str
    amount_in: int
    amount_out: int

    kind: ClassVar[str] = "bought"

    @property
    def base_amount(self) -> int:
        return self.amount_in

    @property
    def token_amount(self) -> int:
        return self.amount_out


@dataclass(frozen=True)
class TokenSold(ChainEvent):
    seller: str
    amount_in: int
    amount_out: int

    kind: ClassVar[str] = "sold"

    @property
    def base_amount(self) -> int:
        return self.amount_out

    @property
    def token_amount(self) -> int:
        return self.amount_in


@dataclass(frozen=True)
class TokenMigrated(ChainEvent):
    pair: str
    liquidity: int

    kind: ClassVar[str] = "migrated"


EVENT_NAMES: dict[str, str] = {
    "created": "TokenCreated",
    "bought": "TokenPurchase",
    "sold": "TokenSale",
    "migrated": "TokenMigrated",
}

TOPIC_TO_KIND: dict[str, str] = {event_topic(name): kind for kind, name in EVENT_NAMES.items()}


def all_topics() -> list[str]:
    return list(TOPIC_TO_KIND.keys())


def _to_bytes(value: Any) -> bytes:
    if value is None:
        return b""
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    text = str(value).strip()
    if text.startswith("0x") or text.startswith("0X"):
        text = text[2:]
    return bytes.fromhex(text)


def _to_hex(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    text = str(value or "").strip().lower()
    if text and not text.startswith("0x"):
        text = "0x" + text
    return text


def _to_int(value: Any) -> int:
    if isinstance(value, int):
        return value
    text = str(value or "0").strip()
    return int(text, 16) if text.lower().startswith("0x") else int(text)


def _topic_to_address(topic: Any) -> str:
    clean = _to_hex(topic).replace("0x", "").rjust(64, "0")
    return f"0x{clean[-40:]}"


def address_topic(address: str) -> str:
    clean = normalize_address(address).replace("0x", "")
    return "0x" + clean.rjust(64, "0")


def _get(row: Any, key: str) -> Any:
    if isinstance(row, dict):
        return row.get(key)
    try:
        return row[key]
    except (KeyError, TypeError):
        return getattr(row, key, None)


def parse_log(row: Any) -> ChainEvent | None:
    """
    Parse one venue log (web3 AttributeDict or raw JSON-RPC dict) into a ChainEvent.
    Returns None for logs that are not one of the four venue events.
    Raises ValueError for malformed payloads.
    """
    topics = [_to_hex(t) for t in (_get(row, "topics") or [])]
    if not topics:
        return None
    kind = TOPIC_TO_KIND.get(topics[0])
    if kind is None:
        return None

    common = {
        "block_number": _to_int(_get(row, "blockNumber")),
        "tx_hash": _to_hex(_get(row, "transactionHash")),
        "log_index": _to_int(_get(row, "logIndex")),
    }
    data = _to_bytes(_get(row, "data"))
    try:
        if kind == "created":
            if len(topics) < 3:
                raise ValueError("TokenCreated missing indexed topics")
            name, symbol, ts = abi_decode(["string", "string", "uint256"], data)
            return TokenCreated(
                token=_topic_to_address(topics[1]),
                creator=_topic_to_address(topics[2]),
                name=str(name),
                symbol=str(symbol),
                timestamp=int(ts),
                **common,
            )
        if kind in ("bought", "sold"):
            if len(topics) < 3:
                raise ValueError(f"{EVENT_NAMES[kind]} missing indexed topics")
            amount_in, amount_out, ts = abi_decode(["uint256", "uint256", "uint256"], data)
            trader = _topic_to_address(topics[1])
            token = _topic_to_address(topics[2])
            if kind == "bought":
                return TokenBought(
                    token=token,
                    buyer=trader,
                    amount_in=int(amount_in),
                    amount_out=int(amount_out),
                    timestamp=int(ts),
                    **common,
                )
            return TokenSold(
                token=token,
                seller=trader,
                amount_in=int(amount_in),
                amount_out=int(amount_out),
                timestamp=int(ts),
                **common,
            )
        if len(topics) < 2:
            raise ValueError("TokenMigrated missing indexed topics")
        pair, liquidity, ts = abi_decode(["address", "uint256", "uint256"], data)
        return TokenMigrated(
            token=_topic_to_address(topics[1]),
            pair=normalize_address(pair),
            liquidity=int(liquidity),
            timestamp=int(ts),
            **common,
        )
    except ValueError:
        raise
    except Exception as exc:
        raise ValueError(f"log_decode_failed kind={kind}: {exc}") from exc
