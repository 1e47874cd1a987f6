"""Host whitelist.

A single registry owner, fixed at construction, decides which identities may
create parties and act as exchanges. Membership checks are O(1) in every
backing store.
"""

from __future__ import annotations

import logging
import threading
from typing import Optional, Protocol

from blockparties.contracts import streams
from blockparties.core.errors import Unauthorized, require_identity
from blockparties.core.message_bus import MessageBus, PendingEvent, build_event


logger = logging.getLogger(__name__)


class WhitelistStore(Protocol):
    def add(self, address: str) -> bool:
        """Add `address`; return False if it was already present."""
        ...

    def remove(self, address: str) -> bool:
        """Remove `address`; return False if it was absent."""
        ...

    def contains(self, address: str) -> bool:
        ...


class InMemoryWhitelistStore:
    def __init__(self) -> None:
        self._members: set[str] = set()

    def add(self, address: str) -> bool:
        if address in self._members:
            return False
        self._members.add(address)
        return True

    def remove(self, address: str) -> bool:
        if address not in self._members:
            return False
        self._members.discard(address)
        return True

    def contains(self, address: str) -> bool:
        return address in self._members


class RedisWhitelistStore:
    """Redis set backed whitelist (SADD / SREM / SISMEMBER)."""

    def __init__(self, redis_client, *, key: str = "blockparties:whitelist"):
        self._client = redis_client
        self._key = key

    def add(self, address: str) -> bool:
        return int(self._client.sadd(self._key, address)) == 1

    def remove(self, address: str) -> bool:
        return int(self._client.srem(self._key, address)) == 1

    def contains(self, address: str) -> bool:
        return bool(self._client.sismember(self._key, address))


class AccessRegistry:
    def __init__(
        self,
        owner: str,
        *,
        store: Optional[WhitelistStore] = None,
        bus: Optional[MessageBus] = None,
        source_service: str = "access-registry",
    ) -> None:
        self.owner = require_identity("registry owner", owner)
        self._store = store or InMemoryWhitelistStore()
        self._bus = bus
        self._source_service = source_service
        self._lock = threading.RLock()

    def _require_owner(self, caller: str) -> None:
        if caller != self.owner:
            raise Unauthorized(f"{caller} is not the registry owner")

    def whitelist_host(self, caller: str, address: str) -> bool:
        """Whitelist `address`. Returns True only when the entry is new."""
        with self._lock:
            self._require_owner(caller)
            address = require_identity("address", address)
            if self._store.contains(address):
                return False
            event = self._prepare(streams.ACCESS_HOST_WHITELISTED_V1, address=address, by=caller)
            if not self._store.add(address):
                return False
            try:
                self._publish(event)
            except Exception:
                logger.warning("host_whitelist_rolled_back", extra={"address": address})
                self._store.remove(address)
                raise
            logger.info("host_whitelisted", extra={"address": address})
            return True

    def remove_host(self, caller: str, address: str) -> bool:
        with self._lock:
            self._require_owner(caller)
            if not self._store.contains(address):
                return False
            event = self._prepare(streams.ACCESS_HOST_REMOVED_V1, address=address, by=caller)
            if not self._store.remove(address):
                return False
            try:
                self._publish(event)
            except Exception:
                logger.warning("host_removal_rolled_back", extra={"address": address})
                self._store.add(address)
                raise
            logger.info("host_removed", extra={"address": address})
            return True

    def is_whitelisted(self, address: str) -> bool:
        return self._store.contains(address)

    def require_whitelisted(self, address: str) -> None:
        if not self.is_whitelisted(address):
            raise Unauthorized(f"{address} is not whitelisted")

    def _prepare(self, schema: str, *, address: str, by: str) -> PendingEvent:
        payload = {"address": address, "by": by}
        return schema, build_event(schema=schema, payload=payload, source_service=self._source_service)

    def _publish(self, event: PendingEvent) -> None:
        if self._bus is not None:
            self._bus.publish(*event)
