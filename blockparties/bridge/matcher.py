"""Order-matching bridge.

The bridge is the external settlement collaborator: it verifies both
signatures, checks the orders are complementary, patches each order's
calldata through the counter-order's replacement mask and executes both
calls atomically. Exchanges only depend on `OrderMatchingBridge`.

Two collaborators live here:
- `DryRunBridge`: mechanical validation only (no cryptography, no calls)
- `ReplayProtectedBridge`: at-most-once use of every non-reusable order
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Protocol

from blockparties.core.errors import SettlementFailed
from blockparties.core.ids import new_settlement_id
from blockparties.core.idempotency import IdempotencyStore, InMemoryIdempotencyStore

from .orders import (
    Order,
    calculate_match_price,
    orders_can_match,
    validate_signature_shape,
)


logger = logging.getLogger(__name__)


class SettlementStatus(str, Enum):
    SETTLED = "SETTLED"
    REJECTED = "REJECTED"


@dataclass(frozen=True)
class SettlementResult:
    status: SettlementStatus
    buy_hash: str
    sell_hash: str
    price: int
    bridge: str
    settlement_id: Optional[str] = None
    message: Optional[str] = None


class OrderMatchingBridge(Protocol):
    name: str

    def validate_and_execute(self, buy: Order, sell: Order) -> SettlementResult:
        ...


def _rejected(buy: Order, sell: Order, bridge: str, message: str) -> SettlementResult:
    return SettlementResult(
        status=SettlementStatus.REJECTED,
        buy_hash=buy.order_hash(),
        sell_hash=sell.order_hash(),
        price=0,
        bridge=bridge,
        message=message,
    )


class DryRunBridge:
    """Stub bridge.

    Checks order parameters, signature shape and complementarity, then echoes
    a settled match. Real signature recovery and calldata patching happen in
    the external protocol.
    """

    name = "dry-run"

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock

    def validate_and_execute(self, buy: Order, sell: Order) -> SettlementResult:
        now = int(self._clock())
        for label, order in (("buy", buy), ("sell", sell)):
            problem = validate_signature_shape(order)
            if problem:
                return _rejected(buy, sell, self.name, f"{label} order: {problem}")

        reason = orders_can_match(buy, sell, now)
        if reason:
            return _rejected(buy, sell, self.name, reason)

        buy_hash = buy.order_hash()
        sell_hash = sell.order_hash()
        return SettlementResult(
            status=SettlementStatus.SETTLED,
            buy_hash=buy_hash,
            sell_hash=sell_hash,
            price=calculate_match_price(buy, sell, now),
            bridge=self.name,
            settlement_id=new_settlement_id(buy_hash, sell_hash, now),
            message="dry_run",
        )


class ReplayProtectedBridge:
    """Wraps a bridge so that every non-reusable order settles at most once.

    Any failure of the inner bridge (exception or rejected result) surfaces as
    `SettlementFailed`; used order hashes are only recorded after a settled match.
    Marks are never released: a settlement cannot be taken back, so a caller
    that rolls back its own state afterwards still finds the orders used.
    """

    def __init__(
        self,
        inner: OrderMatchingBridge,
        *,
        store: Optional[IdempotencyStore] = None,
        ttl_seconds: int = 30 * 24 * 3600,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._inner = inner
        self._store = store or InMemoryIdempotencyStore()
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self.name = getattr(inner, "name", "bridge")

    def _key(self, order_hash: str) -> str:
        return f"order:{order_hash}"

    def _ttl_for(self, order: Order) -> int:
        if order.expiration_time:
            # Keep the mark at least until the order could no longer settle anyway.
            return max(int(order.expiration_time - self._clock()), 1)
        return self._ttl_seconds

    def is_used(self, order: Order) -> bool:
        return self._store.seen(self._key(order.order_hash()))

    def validate_and_execute(self, buy: Order, sell: Order) -> SettlementResult:
        with self._lock:
            for order in (buy, sell):
                if not order.reusable and self.is_used(order):
                    raise SettlementFailed(f"order {order.order_hash()} was already settled")

            try:
                result = self._inner.validate_and_execute(buy, sell)
            except SettlementFailed:
                raise
            except Exception as e:
                logger.warning("settlement_error", extra={"bridge": self.name, "error": str(e)})
                raise SettlementFailed(f"bridge {self.name} failed: {e}") from e

            if result.status != SettlementStatus.SETTLED:
                raise SettlementFailed(result.message or "settlement rejected")

            for order in (buy, sell):
                if not order.reusable:
                    self._store.mark(self._key(order.order_hash()), ttl_seconds=self._ttl_for(order))
            return result
