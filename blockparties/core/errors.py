"""Error taxonomy shared by the ledger, registry, exchanges and bridge.

Every error is raised synchronously by the failing operation. None is retried
internally, and none leaves partially applied state behind.
"""

from __future__ import annotations


class BlockPartiesError(Exception):
    code = "error"


class Unauthorized(BlockPartiesError):
    code = "unauthorized"


class NotFound(BlockPartiesError):
    code = "not_found"


class PartyNotFound(NotFound):
    def __init__(self, party_id: int) -> None:
        super().__init__(f"party {party_id} does not exist")
        self.party_id = party_id


class InvalidAmount(BlockPartiesError):
    code = "invalid_amount"


class InvalidIdentity(BlockPartiesError):
    code = "invalid_identity"


class InsufficientStake(BlockPartiesError):
    code = "insufficient_stake"

    def __init__(self, message: str = "The amount requested exceeds the sender's stake") -> None:
        super().__init__(message)


class InsufficientFunds(BlockPartiesError):
    code = "insufficient_funds"


class InvalidState(BlockPartiesError):
    code = "invalid_state"


class SettlementFailed(BlockPartiesError):
    code = "settlement_failed"


class InvalidOrder(SettlementFailed):
    """An order pair was rejected before reaching the bridge."""

    code = "invalid_order"


def require_positive_int(name: str, value: object) -> int:
    # bool is an int subclass; True must not pass as 1.
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidAmount(f"{name} must be an integer")
    if value <= 0:
        raise InvalidAmount(f"{name} must be > 0")
    return value


def require_non_negative_int(name: str, value: object) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidAmount(f"{name} must be an integer")
    if value < 0:
        raise InvalidAmount(f"{name} must be >= 0")
    return value


def require_identity(name: str, value: object) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidIdentity(f"{name} must be a non-empty identity")
    return value
