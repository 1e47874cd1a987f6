"""Exchange adapter plumbing shared by every venue.

An exchange is a whitelisted identity that creates parties in the ledger and
mediates buy/sell of claims on them. Each party it creates gets one binding:

    CREATED -> LISTED -> SOLD -> (re-armed) ...
    CREATED | LISTED -> CANCELLED (terminal)

A failed buy/sell leaves both the ledger and the binding untouched.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Callable, Optional, Protocol, Sequence

from blockparties.contracts import streams
from blockparties.core.errors import InvalidState, PartyNotFound, Unauthorized
from blockparties.core.message_bus import MessageBus, PendingEvent, build_event
from blockparties.ledger.ledger import Ledger


logger = logging.getLogger(__name__)


class ListingState(str, Enum):
    CREATED = "CREATED"
    LISTED = "LISTED"
    SOLD = "SOLD"
    CANCELLED = "CANCELLED"


@dataclass(frozen=True)
class ExchangeBinding:
    party_id: int
    exchange: str
    price: int
    state: ListingState
    expires_at: Optional[int] = None
    holder: Optional[str] = None
    filled_amount: int = 0
    order_hash: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "party_id": self.party_id,
            "exchange": self.exchange,
            "price": self.price,
            "state": self.state.value,
            "expires_at": self.expires_at,
            "holder": self.holder,
            "filled_amount": self.filled_amount,
            "order_hash": self.order_hash,
        }


class Exchange(Protocol):
    """Capability the ledger's callers see: create a party, buy and sell claims on it."""

    address: str

    def create_party(self, caller: str, owner: str, threshold: int, target: int, *venue_params: Any) -> int:
        ...

    def buy(self, caller: str, party_id: int, *args: Any) -> ExchangeBinding:
        ...

    def sell(self, caller: str, party_id: int, *args: Any) -> ExchangeBinding:
        ...


class BaseExchange:
    source_service = "exchange"

    def __init__(
        self,
        ledger: Ledger,
        *,
        address: str,
        bus: Optional[MessageBus] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not address:
            raise ValueError("exchange address must be non-empty")
        self.ledger = ledger
        self.address = address
        self._bus = bus
        self._clock = clock
        self._bindings: dict[int, ExchangeBinding] = {}
        # Lock order: exchange, then ledger.
        self._lock = threading.RLock()

    def now(self) -> int:
        return int(self._clock())

    def find_binding(self, party_id: int) -> Optional[ExchangeBinding]:
        return self._bindings.get(party_id)

    def get_binding(self, party_id: int) -> ExchangeBinding:
        binding = self.find_binding(party_id)
        if binding is None:
            raise PartyNotFound(party_id)
        return binding

    def cancel(self, caller: str, party_id: int) -> ExchangeBinding:
        """Withdraw the listing. Only the party owner may cancel, and not while a claim is sold."""
        with self._lock:
            binding = self.get_binding(party_id)
            if caller != self.ledger.get_party(party_id).owner:
                raise Unauthorized(f"{caller} does not own party {party_id}")
            self._require_state(binding, ListingState.CREATED, ListingState.LISTED)
            event = self._prepare(
                streams.EXCHANGE_CANCELLED_V1,
                {"party_id": party_id, "exchange": self.address, "by": caller},
            )
            return self._transition(binding, [event], state=ListingState.CANCELLED, order_hash=None)

    def _register(
        self,
        caller: str,
        owner: str,
        threshold: int,
        target: int,
        *,
        listed: bool = False,
        **binding_fields: Any,
    ) -> ExchangeBinding:
        """Create the ledger party as this exchange and record its binding.

        With `listed`, the listing event goes out in the same step as `party.created`.
        """
        created: list[ExchangeBinding] = []

        def bind(party_id: int) -> list[PendingEvent]:
            binding = ExchangeBinding(party_id=party_id, exchange=self.address, **binding_fields)
            created.append(binding)
            return [self._listed_event(binding)] if listed else []

        party_id = self.ledger.create_party(self.address, owner, threshold, target, extra_events=bind)
        binding = created[0]
        self._bindings[party_id] = binding
        logger.info(
            "exchange_party_created",
            extra={"party_id": party_id, "exchange": self.address, "caller": caller, "state": binding.state.value},
        )
        return binding

    def _require_state(self, binding: ExchangeBinding, *allowed: ListingState) -> None:
        if binding.state not in allowed:
            expected = "/".join(s.value for s in allowed)
            raise InvalidState(f"party {binding.party_id} listing is {binding.state.value}, expected {expected}")

    def _store(self, binding: ExchangeBinding, **changes: Any) -> ExchangeBinding:
        updated = replace(binding, **changes)
        self._bindings[binding.party_id] = updated
        if updated.state != binding.state:
            logger.info(
                "listing_transition",
                extra={"party_id": binding.party_id, "from": binding.state.value, "to": updated.state.value},
            )
        return updated

    def _transition(self, binding: ExchangeBinding, events: Sequence[PendingEvent], **changes: Any) -> ExchangeBinding:
        """Store a binding change that involves no ledger movement and publish its events."""
        updated = self._store(binding, **changes)
        try:
            self._publish(events)
        except Exception:
            logger.warning("listing_transition_rolled_back", extra={"party_id": binding.party_id})
            self._bindings[binding.party_id] = binding
            raise
        return updated

    def _listed_event(self, binding: ExchangeBinding) -> PendingEvent:
        return self._prepare(
            streams.EXCHANGE_LISTED_V1,
            {
                "party_id": binding.party_id,
                "exchange": self.address,
                "price": binding.price,
                "order_hash": binding.order_hash,
            },
        )

    def _trade_event(
        self, schema: str, binding: ExchangeBinding, counterparty: str, amount: int, settlement_id: Optional[str]
    ) -> PendingEvent:
        return self._prepare(
            schema,
            {
                "party_id": binding.party_id,
                "exchange": self.address,
                "counterparty": counterparty,
                "amount": amount,
                "settlement_id": settlement_id,
            },
        )

    def _prepare(self, schema: str, payload: dict) -> PendingEvent:
        return schema, build_event(schema=schema, payload=payload, source_service=self.source_service)

    def _publish(self, events: Sequence[PendingEvent]) -> None:
        if self._bus is not None and events:
            self._bus.publish_batch(events)
