from __future__ import annotations

import uuid


# Settlement ids are derived, so replaying the same match yields the same id.
_SETTLEMENT_NAMESPACE = uuid.uuid5(uuid.NAMESPACE_URL, "blockparties:settlement")


def new_event_id() -> str:
    return str(uuid.uuid4())


def new_trace_id() -> str:
    return str(uuid.uuid4())


def new_settlement_id(buy_hash: str, sell_hash: str, at: int) -> str:
    return str(uuid.uuid5(_SETTLEMENT_NAMESPACE, f"{buy_hash}|{sell_hash}|{at}"))
