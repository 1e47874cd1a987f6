"""Sample exchange: the simplified buy/sell path.

The listing price is the party's `target`. A buyer pays the price into the
party and holds the resulting claim; selling releases that claim back to the
holder and re-lists the party. No order matching is involved.
"""

from __future__ import annotations

from dataclasses import replace

from blockparties.contracts import streams
from blockparties.core.errors import Unauthorized, require_positive_int

from .base import BaseExchange, ExchangeBinding, ListingState


class SampleExchange(BaseExchange):
    source_service = "sample-exchange"

    def create_party(self, caller: str, owner: str, threshold: int, target: int) -> int:
        price = require_positive_int("target", target)
        with self._lock:
            binding = self._register(
                caller, owner, threshold, target, listed=True, price=price, state=ListingState.LISTED
            )
            return binding.party_id

    def buy(self, caller: str, party_id: int) -> ExchangeBinding:
        with self._lock:
            binding = self.get_binding(party_id)
            self._require_state(binding, ListingState.LISTED)

            self.ledger.deposit_on_behalf(
                self.address,
                party_id,
                caller,
                binding.price,
                settle=lambda: [self._trade_event(streams.EXCHANGE_BOUGHT_V1, binding, caller, binding.price, None)],
            )
            return self._store(binding, state=ListingState.SOLD, holder=caller, filled_amount=binding.price)

    def sell(self, caller: str, party_id: int) -> ExchangeBinding:
        with self._lock:
            binding = self.get_binding(party_id)
            self._require_state(binding, ListingState.SOLD)
            holder = binding.holder or ""
            if caller != holder:
                raise Unauthorized(f"{caller} does not hold the claim on party {party_id}")
            relisted = replace(binding, state=ListingState.LISTED, holder=None, filled_amount=0)

            self.ledger.withdraw_on_behalf(
                self.address,
                party_id,
                holder,
                binding.filled_amount,
                settle=lambda: [
                    self._trade_event(streams.EXCHANGE_SOLD_V1, binding, holder, binding.filled_amount, None),
                    self._listed_event(relisted),
                ],
            )
            return self._store(binding, state=ListingState.LISTED, holder=None, filled_amount=0)
