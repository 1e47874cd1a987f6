from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Mapping

# Giga-stakes express a depositor's share of the balance scaled by 10**9.
GIGA = 1_000_000_000


@dataclass(frozen=True)
class Party:
    """Immutable snapshot of one pooled escrow.

    Every mutation returns a new snapshot, so a failed operation can simply keep
    the previous one. `balance == sum(stakes.values())` holds for every instance.
    """

    party_id: int
    owner: str
    creator: str
    threshold: int
    target: int
    balance: int = 0
    stakes: Mapping[str, int] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self) -> None:
        if self.party_id < 1:
            raise ValueError("party_id must be >= 1")
        stakes = {k: int(v) for k, v in self.stakes.items() if v}
        if any(v < 0 for v in stakes.values()):
            raise ValueError("stakes must be non-negative")
        if sum(stakes.values()) != self.balance:
            raise ValueError(f"balance {self.balance} does not match stakes total {sum(stakes.values())}")
        object.__setattr__(self, "stakes", MappingProxyType(stakes))

    def stake_of(self, depositor: str) -> int:
        return self.stakes.get(depositor, 0)

    def giga_stake_of(self, depositor: str) -> int:
        if self.balance == 0:
            return 0
        return self.stake_of(depositor) * GIGA // self.balance

    def credit(self, depositor: str, amount: int) -> "Party":
        stakes = dict(self.stakes)
        stakes[depositor] = stakes.get(depositor, 0) + amount
        return self._replace(balance=self.balance + amount, stakes=stakes)

    def debit(self, depositor: str, amount: int) -> "Party":
        stakes = dict(self.stakes)
        remaining = stakes.get(depositor, 0) - amount
        if remaining < 0:
            raise ValueError("debit exceeds stake")
        if remaining:
            stakes[depositor] = remaining
        else:
            stakes.pop(depositor, None)
        return self._replace(balance=self.balance - amount, stakes=stakes)

    def _replace(self, *, balance: int, stakes: dict[str, int]) -> "Party":
        return Party(
            party_id=self.party_id,
            owner=self.owner,
            creator=self.creator,
            threshold=self.threshold,
            target=self.target,
            balance=balance,
            stakes=stakes,
            created_at=self.created_at,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "party_id": self.party_id,
            "owner": self.owner,
            "creator": self.creator,
            "threshold": self.threshold,
            "target": self.target,
            "balance": self.balance,
            "stakes": dict(self.stakes),
            "created_at": self.created_at.isoformat(),
        }
