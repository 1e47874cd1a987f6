"""Value transfer primitive.

`collect` moves funds from an identity into escrow, `send` releases escrowed
funds to an identity. Both either complete or raise.
"""

from __future__ import annotations

import threading
from typing import Mapping, Optional, Protocol

from blockparties.core.errors import InsufficientFunds


class ValueTransfer(Protocol):
    def collect(self, source: str, amount: int) -> None:
        ...

    def send(self, recipient: str, amount: int) -> None:
        ...

    def balance_of(self, identity: str) -> int:
        ...


class InMemoryWallet:
    """Integer balances per identity plus a single escrow account."""

    def __init__(self, balances: Optional[Mapping[str, int]] = None) -> None:
        self._lock = threading.Lock()
        self._balances: dict[str, int] = {k: int(v) for k, v in (balances or {}).items()}
        self.escrowed = 0

    def collect(self, source: str, amount: int) -> None:
        with self._lock:
            available = self._balances.get(source, 0)
            if available < amount:
                raise InsufficientFunds(f"{source} holds {available}, needs {amount}")
            self._balances[source] = available - amount
            self.escrowed += amount

    def send(self, recipient: str, amount: int) -> None:
        with self._lock:
            if self.escrowed < amount:
                raise InsufficientFunds(f"escrow holds {self.escrowed}, needs {amount}")
            self.escrowed -= amount
            self._balances[recipient] = self._balances.get(recipient, 0) + amount

    def balance_of(self, identity: str) -> int:
        with self._lock:
            return self._balances.get(identity, 0)
