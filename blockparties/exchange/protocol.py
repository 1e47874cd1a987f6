"""Protocol exchange: buy/sell settled through an order-matching bridge.

Flow per party:
- `create_party(..., duration)` opens a binding in CREATED with an expiry
- the party owner lists it (`list_party`) with a signed SELL order at the listing price
- `buy` matches a BUY order against the listed SELL order; the buyer's payment
  is deposited on their behalf and the bridge settles in the same atomic step
- `sell` lets the holder release the claim through a fresh matched pair; the
  binding returns to CREATED until the owner lists a new SELL order
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Callable

from blockparties.bridge.matcher import OrderMatchingBridge, SettlementStatus
from blockparties.bridge.orders import Order, Side, calculate_match_price, orders_can_match
from blockparties.contracts import streams
from blockparties.core.errors import InvalidOrder, InvalidState, SettlementFailed, Unauthorized, require_positive_int
from blockparties.core.message_bus import PendingEvent

from .base import BaseExchange, ExchangeBinding, ListingState


logger = logging.getLogger(__name__)


class ProtocolExchange(BaseExchange):
    source_service = "protocol-exchange"

    def __init__(self, ledger, *, address: str, bridge: OrderMatchingBridge, **kwargs) -> None:
        super().__init__(ledger, address=address, **kwargs)
        self.bridge = bridge

    def create_party(self, caller: str, owner: str, threshold: int, target: int, duration: int) -> int:
        price = require_positive_int("target", target)
        duration = require_positive_int("duration", duration)
        with self._lock:
            binding = self._register(
                caller,
                owner,
                threshold,
                target,
                price=price,
                state=ListingState.CREATED,
                expires_at=self.now() + duration,
            )
            return binding.party_id

    def list_party(self, caller: str, party_id: int, sell_order: Order) -> ExchangeBinding:
        with self._lock:
            binding = self.get_binding(party_id)
            if caller != self.ledger.get_party(party_id).owner:
                raise Unauthorized(f"{caller} does not own party {party_id}")
            self._require_state(binding, ListingState.CREATED)
            self._require_not_expired(binding)

            if sell_order.side != Side.SELL:
                raise InvalidOrder("listing requires a SELL order")
            if sell_order.base_price != binding.price:
                raise InvalidOrder(f"sell order price {sell_order.base_price} differs from listing price {binding.price}")
            if sell_order.expiration_time == 0 or sell_order.expiration_time > (binding.expires_at or 0):
                raise InvalidOrder("sell order must expire no later than the listing")

            order_hash = sell_order.order_hash()
            event = self._listed_event(replace(binding, order_hash=order_hash))
            return self._transition(binding, [event], state=ListingState.LISTED, order_hash=order_hash)

    def buy(self, caller: str, party_id: int, buy_order: Order, sell_order: Order) -> ExchangeBinding:
        with self._lock:
            binding = self.get_binding(party_id)
            self._require_state(binding, ListingState.LISTED)
            self._require_not_expired(binding)
            if sell_order.order_hash() != binding.order_hash:
                raise InvalidOrder("sell order is not the one listed for this party")

            price = self._precheck(buy_order, sell_order)
            buyer = buy_order.maker

            self.ledger.deposit_on_behalf(
                self.address,
                party_id,
                buyer,
                price,
                settle=self._settle_hook(buy_order, sell_order, streams.EXCHANGE_BOUGHT_V1, binding, buyer, price),
            )

            updated = self._store(
                binding, state=ListingState.SOLD, holder=buyer, filled_amount=price, order_hash=None
            )
            logger.info("protocol_buy", extra={"party_id": party_id, "buyer": buyer, "relayer": caller, "price": price})
            return updated

    def sell(self, caller: str, party_id: int, buy_order: Order, sell_order: Order) -> ExchangeBinding:
        with self._lock:
            binding = self.get_binding(party_id)
            self._require_state(binding, ListingState.SOLD)
            holder = binding.holder or ""
            if sell_order.maker.lower() != holder.lower():
                raise Unauthorized(f"sell order maker {sell_order.maker} does not hold the claim on party {party_id}")

            self._precheck(buy_order, sell_order)
            amount = binding.filled_amount

            self.ledger.withdraw_on_behalf(
                self.address,
                party_id,
                holder,
                amount,
                settle=self._settle_hook(buy_order, sell_order, streams.EXCHANGE_SOLD_V1, binding, holder, amount),
            )

            updated = self._store(binding, state=ListingState.CREATED, holder=None, filled_amount=0)
            logger.info("protocol_sell", extra={"party_id": party_id, "seller": holder, "relayer": caller})
            return updated

    def _require_not_expired(self, binding: ExchangeBinding) -> None:
        if binding.expires_at is not None and self.now() >= binding.expires_at:
            raise InvalidState(f"party {binding.party_id} listing expired at {binding.expires_at}")

    def _precheck(self, buy_order: Order, sell_order: Order) -> int:
        now = self.now()
        if buy_order.exchange.lower() != self.address.lower():
            raise InvalidOrder(f"orders are addressed to {buy_order.exchange}, not {self.address}")
        reason = orders_can_match(buy_order, sell_order, now)
        if reason:
            raise InvalidOrder(reason)
        return calculate_match_price(buy_order, sell_order, now)

    def _settle_hook(
        self,
        buy_order: Order,
        sell_order: Order,
        schema: str,
        binding: ExchangeBinding,
        counterparty: str,
        amount: int,
    ) -> Callable[[], list[PendingEvent]]:
        # A settled match is not reverted if a later ledger step fails: the order
        # hashes stay used and the parties must sign fresh orders.
        def settle() -> list[PendingEvent]:
            result = self.bridge.validate_and_execute(buy_order, sell_order)
            if result.status != SettlementStatus.SETTLED:
                raise SettlementFailed(result.message or "settlement rejected")
            return [self._trade_event(schema, binding, counterparty, amount, result.settlement_id)]

        return settle
