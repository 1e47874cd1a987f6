"""Stake-accounting ledger.

Owns every party, its escrowed balance and the per-depositor stakes.

Rules:
- only whitelisted hosts create parties; ids are sequential and a rejected
  creation consumes no id
- amounts are exact integers; withdrawals are limited by the caller's raw stake
- the value transfer, the bookkeeping update and the event publication form
  one atomic step; on any failure the previous snapshot is kept and the
  transfer is reversed
- one event per successful state change, none on failure
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Optional, Sequence

from blockparties.access.registry import AccessRegistry
from blockparties.contracts import streams
from blockparties.core.errors import (
    InsufficientStake,
    PartyNotFound,
    require_identity,
    require_non_negative_int,
    require_positive_int,
)
from blockparties.core.message_bus import MessageBus, PendingEvent, build_event

from .models import Party
from .repository import InMemoryPartyRepository, PartyRepository
from .transfers import InMemoryWallet, ValueTransfer


logger = logging.getLogger(__name__)

# Runs inside the atomic step; may return events to publish with the ledger's own.
SettleHook = Callable[[], Optional[Sequence[PendingEvent]]]


class Ledger:
    def __init__(
        self,
        registry: AccessRegistry,
        *,
        repository: Optional[PartyRepository] = None,
        transfer: Optional[ValueTransfer] = None,
        bus: Optional[MessageBus] = None,
        source_service: str = "ledger",
    ) -> None:
        self.registry = registry
        self._repository = repository or InMemoryPartyRepository()
        self._transfer = transfer or InMemoryWallet()
        self._bus = bus
        self._source_service = source_service
        # Re-entrant: on-behalf operations nest into _credit/_debit.
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Parties
    # ------------------------------------------------------------------

    def create_party(
        self,
        caller: str,
        owner: str,
        threshold: int,
        target: int,
        *,
        extra_events: Optional[Callable[[int], Sequence[PendingEvent]]] = None,
    ) -> int:
        """Create an empty party on behalf of a whitelisted host and return its id.

        `extra_events` receives the new id and returns events published in the
        same step as `party.created` (an exchange's listing, for instance).
        """
        with self._lock:
            self.registry.require_whitelisted(caller)
            owner = require_identity("owner", owner)
            threshold = require_non_negative_int("threshold", threshold)
            target = require_non_negative_int("target", target)

            party = Party(
                party_id=self._repository.next_id(),
                owner=owner,
                creator=caller,
                threshold=threshold,
                target=target,
            )
            pending = [
                self._prepare(
                    streams.PARTY_CREATED_V1,
                    {
                        "party_id": party.party_id,
                        "creator": caller,
                        "owner": owner,
                        "threshold": threshold,
                        "target": target,
                    },
                )
            ]
            if extra_events is not None:
                pending.extend(extra_events(party.party_id))

            self._repository.save(party)
            try:
                self._publish(pending)
            except Exception:
                logger.warning("party_creation_rolled_back", extra={"party_id": party.party_id, "creator": caller})
                self._repository.delete(party.party_id)
                raise
            logger.info("party_created", extra={"party_id": party.party_id, "creator": caller, "owner": owner})
            return party.party_id

    def get_party(self, party_id: int) -> Party:
        party = self._repository.get(party_id)
        if party is None:
            raise PartyNotFound(party_id)
        return party

    def get_balance(self, party_id: int) -> int:
        return self.get_party(party_id).balance

    def get_stake(self, party_id: int, depositor: str) -> int:
        return self.get_party(party_id).stake_of(depositor)

    def get_giga_stake(self, party_id: int, depositor: str) -> int:
        """`floor(stake * 10**9 / balance)`, or 0 for an empty party."""
        return self.get_party(party_id).giga_stake_of(depositor)

    # ------------------------------------------------------------------
    # Depositor operations
    # ------------------------------------------------------------------

    def deposit(self, caller: str, party_id: int, amount: int) -> Party:
        return self._credit(via=caller, party_id=party_id, depositor=caller, amount=amount, settle=None)

    def withdraw(self, caller: str, party_id: int, amount: int) -> Party:
        return self._debit(via=caller, party_id=party_id, holder=caller, amount=amount, settle=None)

    # ------------------------------------------------------------------
    # Exchange-mediated operations
    # ------------------------------------------------------------------

    def deposit_on_behalf(
        self,
        caller: str,
        party_id: int,
        depositor: str,
        amount: int,
        *,
        settle: Optional[SettleHook] = None,
    ) -> Party:
        """Credit `depositor` with funds collected from them, mediated by a whitelisted exchange.

        `settle` runs inside the same atomic step; if it raises, or publishing
        the events fails, the collected funds are returned and nothing is committed.
        """
        with self._lock:
            self.registry.require_whitelisted(caller)
            return self._credit(via=caller, party_id=party_id, depositor=depositor, amount=amount, settle=settle)

    def withdraw_on_behalf(
        self,
        caller: str,
        party_id: int,
        holder: str,
        amount: int,
        *,
        settle: Optional[SettleHook] = None,
    ) -> Party:
        """Release `amount` of `holder`'s stake to `holder`, mediated by a whitelisted exchange."""
        with self._lock:
            self.registry.require_whitelisted(caller)
            return self._debit(via=caller, party_id=party_id, holder=holder, amount=amount, settle=settle)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _credit(
        self,
        *,
        via: str,
        party_id: int,
        depositor: str,
        amount: int,
        settle: Optional[SettleHook],
    ) -> Party:
        amount = require_positive_int("amount", amount)
        with self._lock:
            party = self.get_party(party_id)
            updated = party.credit(depositor, amount)
            pending = [self._prepare(streams.PARTY_DEPOSITED_V1, self._movement_payload(updated, depositor, amount, via))]

            self._transfer.collect(depositor, amount)
            try:
                self._repository.save(updated)
                if settle is not None:
                    pending.extend(settle() or ())
                self._publish(pending)
            except Exception:
                logger.warning(
                    "deposit_rolled_back",
                    extra={"party_id": party_id, "depositor": depositor, "amount": amount},
                )
                self._repository.save(party)
                self._transfer.send(depositor, amount)
                raise
            return updated

    def _debit(
        self,
        *,
        via: str,
        party_id: int,
        holder: str,
        amount: int,
        settle: Optional[SettleHook],
    ) -> Party:
        amount = require_positive_int("amount", amount)
        with self._lock:
            party = self.get_party(party_id)
            if amount > party.stake_of(holder):
                raise InsufficientStake()
            updated = party.debit(holder, amount)
            pending = [self._prepare(streams.PARTY_WITHDRAWN_V1, self._movement_payload(updated, holder, amount, via))]

            self._repository.save(updated)
            sent = False
            try:
                # Settlement precedes the release, so a rejected settlement never pays out.
                if settle is not None:
                    pending.extend(settle() or ())
                self._transfer.send(holder, amount)
                sent = True
                self._publish(pending)
            except Exception:
                logger.warning(
                    "withdrawal_rolled_back",
                    extra={"party_id": party_id, "holder": holder, "amount": amount},
                )
                if sent:
                    self._transfer.collect(holder, amount)
                self._repository.save(party)
                raise
            return updated

    @staticmethod
    def _movement_payload(party: Party, depositor: str, amount: int, via: str) -> dict:
        return {
            "party_id": party.party_id,
            "depositor": depositor,
            "amount": amount,
            "balance": party.balance,
            "stake": party.stake_of(depositor),
            "via": via,
        }

    def _prepare(self, schema: str, payload: dict) -> PendingEvent:
        return schema, build_event(schema=schema, payload=payload, source_service=self._source_service)

    def _publish(self, pending: Sequence[PendingEvent]) -> None:
        if self._bus is not None and pending:
            self._bus.publish_batch(pending)
