from __future__ import annotations

# v1 stream names (frozen semantics for v1). Stream name equals schema name.

ACCESS_HOST_WHITELISTED_V1 = "access.host.whitelisted.v1"
ACCESS_HOST_REMOVED_V1 = "access.host.removed.v1"

PARTY_CREATED_V1 = "party.created.v1"
PARTY_DEPOSITED_V1 = "party.deposited.v1"
PARTY_WITHDRAWN_V1 = "party.withdrawn.v1"

EXCHANGE_LISTED_V1 = "exchange.listed.v1"
EXCHANGE_BOUGHT_V1 = "exchange.bought.v1"
EXCHANGE_SOLD_V1 = "exchange.sold.v1"
EXCHANGE_CANCELLED_V1 = "exchange.cancelled.v1"

ALL_STREAMS = (
    ACCESS_HOST_WHITELISTED_V1,
    ACCESS_HOST_REMOVED_V1,
    PARTY_CREATED_V1,
    PARTY_DEPOSITED_V1,
    PARTY_WITHDRAWN_V1,
    EXCHANGE_LISTED_V1,
    EXCHANGE_BOUGHT_V1,
    EXCHANGE_SOLD_V1,
    EXCHANGE_CANCELLED_V1,
)
