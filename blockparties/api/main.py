"""HTTP surface over the ledger, the host registry and both exchanges.

Callers identify themselves with the `X-Caller` header. In dev mode (no Redis
or PostgreSQL configured) every store is in-memory and the wallet starts from
the balances in config/settings.yaml.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

from fastapi import FastAPI, Header, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
import uvicorn

from blockparties.access.registry import AccessRegistry, InMemoryWhitelistStore, RedisWhitelistStore
from blockparties.bridge import DryRunBridge, Order, ReplayProtectedBridge
from blockparties.core.errors import (
    BlockPartiesError,
    InsufficientFunds,
    InsufficientStake,
    InvalidAmount,
    InvalidIdentity,
    InvalidOrder,
    InvalidState,
    NotFound,
    SettlementFailed,
    Unauthorized,
)
from blockparties.core.idempotency import IdempotencyStore, InMemoryIdempotencyStore, RedisIdempotencyStore
from blockparties.core.message_bus import InMemoryMessageBus, MessageBus, RedisStreamBus
from blockparties.core.settings import Settings, load_settings
from blockparties.exchange.protocol import ProtocolExchange
from blockparties.exchange.sample import SampleExchange
from blockparties.ledger.ledger import Ledger
from blockparties.ledger.repository import InMemoryPartyRepository, PostgresPartyRepository
from blockparties.ledger.transfers import InMemoryWallet


logger = logging.getLogger(__name__)


_STATUS_BY_ERROR: list[tuple[type[BlockPartiesError], int]] = [
    (Unauthorized, 403),
    (NotFound, 404),
    (InvalidAmount, 400),
    (InvalidIdentity, 400),
    (InvalidOrder, 400),
    (InsufficientFunds, 402),
    (InsufficientStake, 409),
    (InvalidState, 409),
    (SettlementFailed, 502),
]


@dataclass
class Services:
    registry: AccessRegistry
    ledger: Ledger
    exchange: SampleExchange
    protocol: ProtocolExchange
    wallet: InMemoryWallet
    bus: MessageBus


def build_services(s: Settings) -> Services:
    orders: IdempotencyStore
    if s.redis_url:
        logger.info("Using Redis bus, whitelist and order replay store")
        redis_bus = RedisStreamBus(s.redis_url)
        client = redis_bus._get_client()
        bus: MessageBus = redis_bus
        store = RedisWhitelistStore(client)
        orders = RedisIdempotencyStore(client, key_prefix="blockparties:orders")
    else:
        logger.info("Using in-memory bus, whitelist and order replay store (dev mode)")
        bus = InMemoryMessageBus()
        store = InMemoryWhitelistStore()
        orders = InMemoryIdempotencyStore()

    if s.postgres_dsn:
        logger.info("Using PostgreSQL party repository")
        repository = PostgresPartyRepository(s.postgres_dsn)
    else:
        logger.info("Using in-memory party repository (dev mode)")
        repository = InMemoryPartyRepository()

    wallet = InMemoryWallet(s.wallet_balances)
    registry = AccessRegistry(s.registry_owner, store=store, bus=bus)
    ledger = Ledger(registry, repository=repository, transfer=wallet, bus=bus)
    exchange = SampleExchange(ledger, address=s.exchange_address, bus=bus)
    # No settlement network is wired in; the dry-run bridge stands in for it.
    bridge = ReplayProtectedBridge(DryRunBridge(), store=orders, ttl_seconds=s.order_replay_ttl_seconds)
    protocol = ProtocolExchange(ledger, address=s.protocol_exchange_address, bridge=bridge, bus=bus)
    return Services(
        registry=registry,
        ledger=ledger,
        exchange=exchange,
        protocol=protocol,
        wallet=wallet,
        bus=bus,
    )


class HostRequest(BaseModel):
    address: str


class CreatePartyRequest(BaseModel):
    owner: str
    threshold: int = 0
    target: int


class AmountRequest(BaseModel):
    amount: int


class ProtocolPartyRequest(BaseModel):
    owner: str
    threshold: int = 0
    target: int
    duration: int


class ListRequest(BaseModel):
    sell_order: dict[str, Any]


class MatchRequest(BaseModel):
    buy_order: dict[str, Any]
    sell_order: dict[str, Any]


def _parse_order(d: dict[str, Any]) -> Order:
    try:
        return Order.from_dict(d)
    except (KeyError, TypeError, ValueError) as e:
        raise InvalidOrder(f"malformed order: {e}") from e


def create_app(services: Services) -> FastAPI:
    app = FastAPI(title="BlockParties API")

    @app.exception_handler(BlockPartiesError)
    async def _domain_error(request: Request, exc: BlockPartiesError) -> JSONResponse:
        status = next((code for cls, code in _STATUS_BY_ERROR if isinstance(exc, cls)), 400)
        return JSONResponse(status_code=status, content={"error": exc.code, "detail": str(exc)})

    @app.get("/health")
    def health() -> dict:
        return {"status": "ok"}

    @app.post("/hosts")
    def whitelist_host(body: HostRequest, x_caller: str = Header(...)) -> dict:
        added = services.registry.whitelist_host(x_caller, body.address)
        return {"address": body.address, "whitelisted": True, "added": added}

    @app.delete("/hosts/{address}")
    def remove_host(address: str, x_caller: str = Header(...)) -> dict:
        removed = services.registry.remove_host(x_caller, address)
        return {"address": address, "whitelisted": False, "removed": removed}

    @app.get("/hosts/{address}")
    def is_whitelisted(address: str) -> dict:
        return {"address": address, "whitelisted": services.registry.is_whitelisted(address)}

    @app.post("/parties")
    def create_party(body: CreatePartyRequest, x_caller: str = Header(...)) -> dict:
        party_id = services.exchange.create_party(x_caller, body.owner, body.threshold, body.target)
        return {"party_id": party_id}

    @app.get("/parties/{party_id}")
    def get_party(party_id: int) -> dict:
        out: dict[str, Any] = services.ledger.get_party(party_id).to_dict()
        binding = services.exchange.find_binding(party_id) or services.protocol.find_binding(party_id)
        out["listing"] = binding.to_dict() if binding else None
        return out

    @app.get("/parties/{party_id}/balance")
    def get_balance(party_id: int) -> dict:
        return {"party_id": party_id, "balance": services.ledger.get_balance(party_id)}

    @app.get("/parties/{party_id}/stakes/{depositor}")
    def get_stake(party_id: int, depositor: str) -> dict:
        party = services.ledger.get_party(party_id)
        return {
            "party_id": party_id,
            "depositor": depositor,
            "stake": party.stake_of(depositor),
            "giga_stake": party.giga_stake_of(depositor),
        }

    @app.post("/parties/{party_id}/deposit")
    def deposit(party_id: int, body: AmountRequest, x_caller: str = Header(...)) -> dict:
        party = services.ledger.deposit(x_caller, party_id, body.amount)
        return {"party_id": party_id, "balance": party.balance, "stake": party.stake_of(x_caller)}

    @app.post("/parties/{party_id}/withdraw")
    def withdraw(party_id: int, body: AmountRequest, x_caller: str = Header(...)) -> dict:
        party = services.ledger.withdraw(x_caller, party_id, body.amount)
        return {"party_id": party_id, "balance": party.balance, "stake": party.stake_of(x_caller)}

    @app.post("/parties/{party_id}/buy")
    def buy(party_id: int, x_caller: str = Header(...)) -> dict:
        return services.exchange.buy(x_caller, party_id).to_dict()

    @app.post("/parties/{party_id}/sell")
    def sell(party_id: int, x_caller: str = Header(...)) -> dict:
        return services.exchange.sell(x_caller, party_id).to_dict()

    @app.post("/parties/{party_id}/cancel")
    def cancel(party_id: int, x_caller: str = Header(...)) -> dict:
        venue = services.protocol if services.protocol.find_binding(party_id) else services.exchange
        return venue.cancel(x_caller, party_id).to_dict()

    @app.post("/protocol/parties")
    def create_protocol_party(body: ProtocolPartyRequest, x_caller: str = Header(...)) -> dict:
        party_id = services.protocol.create_party(x_caller, body.owner, body.threshold, body.target, body.duration)
        return {"party_id": party_id}

    @app.get("/protocol/parties/{party_id}")
    def get_protocol_listing(party_id: int) -> dict:
        return services.protocol.get_binding(party_id).to_dict()

    @app.post("/protocol/parties/{party_id}/list")
    def list_protocol_party(party_id: int, body: ListRequest, x_caller: str = Header(...)) -> dict:
        return services.protocol.list_party(x_caller, party_id, _parse_order(body.sell_order)).to_dict()

    @app.post("/protocol/parties/{party_id}/buy")
    def protocol_buy(party_id: int, body: MatchRequest, x_caller: str = Header(...)) -> dict:
        buy_order, sell_order = _parse_order(body.buy_order), _parse_order(body.sell_order)
        return services.protocol.buy(x_caller, party_id, buy_order, sell_order).to_dict()

    @app.post("/protocol/parties/{party_id}/sell")
    def protocol_sell(party_id: int, body: MatchRequest, x_caller: str = Header(...)) -> dict:
        buy_order, sell_order = _parse_order(body.buy_order), _parse_order(body.sell_order)
        return services.protocol.sell(x_caller, party_id, buy_order, sell_order).to_dict()

    @app.get("/wallets/{identity}")
    def wallet_balance(identity: str) -> dict:
        return {"identity": identity, "balance": services.wallet.balance_of(identity)}

    return app


def main(settings_path: Optional[str] = None) -> None:
    logging.basicConfig(level=logging.INFO)
    s = load_settings(settings_path) if settings_path else load_settings()
    services = build_services(s)
    # The bundled exchanges must be hosts to create parties.
    services.registry.whitelist_host(s.registry_owner, s.exchange_address)
    services.registry.whitelist_host(s.registry_owner, s.protocol_exchange_address)
    logger.info(f"Starting BlockParties API on {s.api_host}:{s.api_port} (env={s.env})")
    uvicorn.run(create_app(services), host=s.api_host, port=s.api_port)


if __name__ == "__main__":
    main()
