"""Order descriptors for the order-matching bridge.

An order is one side of a two-sided match: a maker authorises a call
(`target` + `calldata`) and a replacement mask naming which calldata bytes the
counter-order may overwrite. Signatures are carried, not verified, here;
verification belongs to the bridge.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional


NULL_ADDRESS = "0x0000000000000000000000000000000000000000"


class Side(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class SaleKind(str, Enum):
    FIXED_PRICE = "FIXED_PRICE"
    DUTCH_AUCTION = "DUTCH_AUCTION"


class HowToCall(str, Enum):
    CALL = "CALL"
    DELEGATE_CALL = "DELEGATE_CALL"


class FeeMethod(str, Enum):
    PROTOCOL_FEE = "PROTOCOL_FEE"
    SPLIT_FEE = "SPLIT_FEE"


@dataclass(frozen=True)
class Signature:
    v: int
    r: str
    s: str


@dataclass(frozen=True)
class Order:
    exchange: str
    maker: str
    side: Side
    target: str
    calldata: bytes
    replacement_pattern: bytes
    base_price: int
    taker: str = NULL_ADDRESS
    fee_recipient: str = NULL_ADDRESS
    static_target: str = NULL_ADDRESS
    static_extradata: bytes = b""
    payment_token: str = NULL_ADDRESS
    sale_kind: SaleKind = SaleKind.FIXED_PRICE
    how_to_call: HowToCall = HowToCall.CALL
    fee_method: FeeMethod = FeeMethod.SPLIT_FEE
    maker_relayer_fee: int = 0
    taker_relayer_fee: int = 0
    extra: int = 0
    listing_time: int = 0
    # 0 means the order never expires.
    expiration_time: int = 0
    salt: int = 0
    signature: Optional[Signature] = None
    reusable: bool = False

    def canonical_dict(self) -> dict[str, Any]:
        """Hashed fields. The signature and the reuse flag are not part of the order identity."""
        return {
            "exchange": self.exchange.lower(),
            "maker": self.maker.lower(),
            "taker": self.taker.lower(),
            "fee_recipient": self.fee_recipient.lower(),
            "side": self.side.value,
            "sale_kind": self.sale_kind.value,
            "how_to_call": self.how_to_call.value,
            "fee_method": self.fee_method.value,
            "target": self.target.lower(),
            "calldata": self.calldata.hex(),
            "replacement_pattern": self.replacement_pattern.hex(),
            "static_target": self.static_target.lower(),
            "static_extradata": self.static_extradata.hex(),
            "payment_token": self.payment_token.lower(),
            "maker_relayer_fee": self.maker_relayer_fee,
            "taker_relayer_fee": self.taker_relayer_fee,
            "base_price": self.base_price,
            "extra": self.extra,
            "listing_time": self.listing_time,
            "expiration_time": self.expiration_time,
            "salt": self.salt,
        }

    def order_hash(self) -> str:
        body = json.dumps(self.canonical_dict(), sort_keys=True, separators=(",", ":"))
        return "0x" + hashlib.sha256(body.encode("utf-8")).hexdigest()

    def to_dict(self) -> dict[str, Any]:
        d = self.canonical_dict()
        d["calldata"] = "0x" + d["calldata"]
        d["replacement_pattern"] = "0x" + d["replacement_pattern"]
        d["static_extradata"] = "0x" + d["static_extradata"]
        d["signature"] = (
            {"v": self.signature.v, "r": self.signature.r, "s": self.signature.s} if self.signature else None
        )
        d["reusable"] = self.reusable
        return d

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "Order":
        sig = d.get("signature")
        return cls(
            exchange=str(d["exchange"]),
            maker=str(d["maker"]),
            side=Side(d["side"]),
            target=str(d["target"]),
            calldata=_hex_to_bytes(d.get("calldata", "0x")),
            replacement_pattern=_hex_to_bytes(d.get("replacement_pattern", "0x")),
            base_price=_to_int(d["base_price"]),
            taker=str(d.get("taker") or NULL_ADDRESS),
            fee_recipient=str(d.get("fee_recipient") or NULL_ADDRESS),
            static_target=str(d.get("static_target") or NULL_ADDRESS),
            static_extradata=_hex_to_bytes(d.get("static_extradata", "0x")),
            payment_token=str(d.get("payment_token") or NULL_ADDRESS),
            sale_kind=SaleKind(d.get("sale_kind", SaleKind.FIXED_PRICE.value)),
            how_to_call=HowToCall(d.get("how_to_call", HowToCall.CALL.value)),
            fee_method=FeeMethod(d.get("fee_method", FeeMethod.SPLIT_FEE.value)),
            maker_relayer_fee=_to_int(d.get("maker_relayer_fee", 0)),
            taker_relayer_fee=_to_int(d.get("taker_relayer_fee", 0)),
            extra=_to_int(d.get("extra", 0)),
            listing_time=_to_int(d.get("listing_time", 0)),
            expiration_time=_to_int(d.get("expiration_time", 0)),
            salt=_to_int(d.get("salt", 0)),
            signature=Signature(v=int(sig["v"]), r=str(sig["r"]), s=str(sig["s"])) if sig else None,
            reusable=bool(d.get("reusable", False)),
        )


def _hex_to_bytes(v: Any) -> bytes:
    if isinstance(v, (bytes, bytearray)):
        return bytes(v)
    s = str(v)
    if s.startswith("0x"):
        s = s[2:]
    return bytes.fromhex(s)


def _to_int(v: Any) -> int:
    # Accept "0x.." quantities as well as plain ints.
    if isinstance(v, str):
        return int(v, 16) if v.startswith("0x") else int(v)
    if isinstance(v, bool):
        raise ValueError("boolean is not a quantity")
    return int(v)


def _is_null(address: str) -> bool:
    return not address or address.lower() == NULL_ADDRESS


def _same(a: str, b: str) -> bool:
    return a.lower() == b.lower()


def _is_hex32(s: str) -> bool:
    body = s[2:] if s.startswith("0x") else s
    if len(body) != 64:
        return False
    try:
        int(body, 16)
    except ValueError:
        return False
    return True


def validate_order_parameters(order: Order) -> Optional[str]:
    """Return the first structural problem with `order`, or None."""
    if _is_null(order.maker):
        return "maker must be set"
    if _is_null(order.target):
        return "target must be set"
    if len(order.replacement_pattern) != len(order.calldata):
        return "replacement_pattern length must equal calldata length"
    if order.base_price < 0 or order.extra < 0:
        return "prices must be non-negative"
    if order.expiration_time != 0 and order.listing_time >= order.expiration_time:
        return "listing_time must precede expiration_time"
    if order.sale_kind == SaleKind.DUTCH_AUCTION and order.expiration_time == 0:
        return "dutch auction requires an expiration_time"
    return None


def validate_signature_shape(order: Order) -> Optional[str]:
    sig = order.signature
    if sig is None:
        return "signature missing"
    if sig.v not in (27, 28):
        return "signature v must be 27 or 28"
    if not _is_hex32(sig.r) or not _is_hex32(sig.s):
        return "signature r/s must be 32-byte hex"
    return None


def can_settle(order: Order, now: int) -> bool:
    return order.listing_time < now and (order.expiration_time == 0 or now < order.expiration_time)


def current_price(order: Order, now: int) -> int:
    if order.sale_kind == SaleKind.FIXED_PRICE:
        return order.base_price
    elapsed = max(0, min(now, order.expiration_time) - order.listing_time)
    span = order.expiration_time - order.listing_time
    diff = order.extra * elapsed // span
    if order.side == Side.SELL:
        return order.base_price - diff
    return order.base_price + diff


def calculate_match_price(buy: Order, sell: Order, now: int) -> int:
    """Sell side's current price; the buy side must bid at least that much."""
    sell_price = current_price(sell, now)
    buy_price = current_price(buy, now)
    if buy_price < sell_price:
        raise ValueError(f"buy price {buy_price} below sell price {sell_price}")
    return sell_price


def orders_can_match(buy: Order, sell: Order, now: int) -> Optional[str]:
    """Return the first reason the two orders are not complementary, or None."""
    for label, order in (("buy", buy), ("sell", sell)):
        problem = validate_order_parameters(order)
        if problem:
            return f"{label} order: {problem}"
    if buy.side != Side.BUY or sell.side != Side.SELL:
        return "orders must be one BUY and one SELL"
    if not _same(buy.exchange, sell.exchange):
        return "orders target different exchanges"
    if buy.fee_method != sell.fee_method:
        return "fee methods differ"
    if not _same(buy.payment_token, sell.payment_token):
        return "payment tokens differ"
    if not _is_null(sell.taker) and not _same(sell.taker, buy.maker):
        return "sell order is reserved for another taker"
    if not _is_null(buy.taker) and not _same(buy.taker, sell.maker):
        return "buy order is reserved for another taker"
    # Exactly one side names the fee recipient.
    if _is_null(sell.fee_recipient) == _is_null(buy.fee_recipient):
        return "exactly one order must name a fee recipient"
    if not _same(buy.target, sell.target):
        return "targets differ"
    if buy.how_to_call != sell.how_to_call:
        return "call kinds differ"
    if buy.sale_kind != sell.sale_kind:
        return "sale kinds differ"
    if not can_settle(buy, now):
        return "buy order outside its listing window"
    if not can_settle(sell, now):
        return "sell order outside its listing window"
    if current_price(buy, now) < current_price(sell, now):
        return "buy price below sell price"
    return None
