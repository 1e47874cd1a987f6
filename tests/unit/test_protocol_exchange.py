from __future__ import annotations

from dataclasses import asdict

import pytest

from blockparties.access.registry import AccessRegistry
from blockparties.bridge import DryRunBridge, Order, ReplayProtectedBridge, Side, Signature
from blockparties.contracts import streams
from blockparties.contracts.validation import validate_envelope_dict
from blockparties.core.errors import InvalidOrder, InvalidState, SettlementFailed, Unauthorized
from blockparties.core.message_bus import InMemoryMessageBus
from blockparties.core.models import EventEnvelope
from blockparties.exchange import ListingState, ProtocolExchange
from blockparties.ledger.ledger import Ledger
from blockparties.ledger.transfers import InMemoryWallet


NOW = 1_700_000_000
REGISTRY_OWNER = "0xregistry-owner"
EXCHANGE = "0x" + "a" * 40
TARGET = "0x" + "b" * 40
FEE_RECIPIENT = "0x" + "c" * 40
PARTY_OWNER = "0x" + "d" * 40
BUYER = "0x" + "e" * 40
TAKER = "0x" + "f" * 40
RELAYER = "0xrelayer"
SIG = Signature(v=27, r="0x" + "11" * 32, s="0x" + "22" * 32)


def _to_wire(ev: EventEnvelope) -> dict:
    d = asdict(ev)
    d["produced_at"] = ev.produced_at.isoformat()
    return d


def _order(side: Side, maker: str, *, price: int = 200, salt: int = 1, **kw) -> Order:
    fields = dict(
        exchange=EXCHANGE,
        maker=maker,
        side=side,
        target=TARGET,
        calldata=b"\x23\xb8\x72\xdd" + b"\x00" * 32,
        replacement_pattern=b"\x00" * 4 + b"\xff" * 32,
        base_price=price,
        fee_recipient=FEE_RECIPIENT if side == Side.SELL else "0x" + "0" * 40,
        listing_time=NOW - 10,
        expiration_time=NOW + 1800,
        salt=salt,
        signature=SIG,
    )
    fields.update(kw)
    return Order(**fields)


class _Clock:
    def __init__(self, now: int) -> None:
        self.now = now

    def __call__(self) -> float:
        return float(self.now)


class _FlakyBus(InMemoryMessageBus):
    def __init__(self) -> None:
        super().__init__()
        self.down = False

    def publish_batch(self, events) -> None:
        if self.down:
            raise ConnectionError("bus unreachable")
        super().publish_batch(events)


def _setup(balances: dict | None = None):
    clock = _Clock(NOW)
    bus = _FlakyBus()
    registry = AccessRegistry(REGISTRY_OWNER)
    registry.whitelist_host(REGISTRY_OWNER, EXCHANGE)
    wallet = InMemoryWallet(balances if balances is not None else {BUYER: 1000})
    ledger = Ledger(registry, transfer=wallet, bus=bus)
    bridge = ReplayProtectedBridge(DryRunBridge(clock=clock), clock=clock)
    exchange = ProtocolExchange(ledger, address=EXCHANGE, bridge=bridge, bus=bus, clock=clock)
    return exchange, ledger, wallet, bus, clock


def _listed(exchange: ProtocolExchange) -> tuple[int, Order]:
    p = exchange.create_party(PARTY_OWNER, PARTY_OWNER, 0, 200, 3600)
    sell = _order(Side.SELL, PARTY_OWNER)
    exchange.list_party(PARTY_OWNER, p, sell)
    return p, sell


def test_create_party_starts_unlisted_with_expiry() -> None:
    exchange, ledger, _, bus, _ = _setup()
    p = exchange.create_party(PARTY_OWNER, PARTY_OWNER, 0, 200, 3600)

    binding = exchange.get_binding(p)
    assert binding.state == ListingState.CREATED
    assert binding.expires_at == NOW + 3600
    assert ledger.get_party(p).creator == EXCHANGE
    assert bus.published(streams.EXCHANGE_LISTED_V1) == []


def test_list_party_records_sell_order_hash() -> None:
    exchange, _, _, bus, _ = _setup()
    p, sell = _listed(exchange)

    binding = exchange.get_binding(p)
    assert binding.state == ListingState.LISTED
    assert binding.order_hash == sell.order_hash()
    payload = bus.published(streams.EXCHANGE_LISTED_V1)[0][1].payload
    assert payload["order_hash"] == sell.order_hash()
    assert payload["price"] == 200


def test_list_party_rejects_bad_listings() -> None:
    exchange, _, _, _, _ = _setup()
    p = exchange.create_party(PARTY_OWNER, PARTY_OWNER, 0, 200, 3600)

    with pytest.raises(Unauthorized):
        exchange.list_party(BUYER, p, _order(Side.SELL, PARTY_OWNER))
    with pytest.raises(InvalidOrder):
        exchange.list_party(PARTY_OWNER, p, _order(Side.BUY, PARTY_OWNER))
    with pytest.raises(InvalidOrder):
        exchange.list_party(PARTY_OWNER, p, _order(Side.SELL, PARTY_OWNER, price=199))
    with pytest.raises(InvalidOrder):
        exchange.list_party(PARTY_OWNER, p, _order(Side.SELL, PARTY_OWNER, expiration_time=NOW + 7200))
    assert exchange.get_binding(p).state == ListingState.CREATED


def test_expired_listing_cannot_be_listed() -> None:
    exchange, _, _, _, clock = _setup()
    p = exchange.create_party(PARTY_OWNER, PARTY_OWNER, 0, 200, 3600)
    clock.now = NOW + 3600
    with pytest.raises(InvalidState):
        exchange.list_party(PARTY_OWNER, p, _order(Side.SELL, PARTY_OWNER))


def test_buy_settles_through_bridge_and_credits_buyer() -> None:
    exchange, ledger, wallet, bus, _ = _setup()
    p, sell = _listed(exchange)
    buy = _order(Side.BUY, BUYER)

    binding = exchange.buy(RELAYER, p, buy, sell)

    assert binding.state == ListingState.SOLD
    assert binding.holder == BUYER
    assert binding.filled_amount == 200
    assert ledger.get_balance(p) == 200
    assert ledger.get_stake(p, BUYER) == 200
    assert wallet.balance_of(BUYER) == 800

    bought = bus.published(streams.EXCHANGE_BOUGHT_V1)
    assert len(bought) == 1
    assert bought[0][1].payload["counterparty"] == BUYER
    assert bought[0][1].payload["settlement_id"]
    for _, ev in bus.published():
        validate_envelope_dict(_to_wire(ev))


def test_buy_with_unlisted_sell_order_is_rejected() -> None:
    exchange, ledger, _, _, _ = _setup()
    p, _ = _listed(exchange)
    other_sell = _order(Side.SELL, PARTY_OWNER, salt=99)

    with pytest.raises(InvalidOrder):
        exchange.buy(RELAYER, p, _order(Side.BUY, BUYER), other_sell)
    assert ledger.get_balance(p) == 0


def test_rejected_settlement_leaves_everything_untouched() -> None:
    exchange, ledger, wallet, bus, _ = _setup()
    p, sell = _listed(exchange)
    bus.clear()
    unsigned_buy = _order(Side.BUY, BUYER, signature=None)

    with pytest.raises(SettlementFailed):
        exchange.buy(RELAYER, p, unsigned_buy, sell)

    assert exchange.get_binding(p).state == ListingState.LISTED
    assert ledger.get_balance(p) == 0
    assert wallet.balance_of(BUYER) == 1000
    assert wallet.escrowed == 0
    assert bus.published() == []


def test_mismatched_orders_fail_before_reaching_ledger() -> None:
    exchange, ledger, _, _, _ = _setup()
    p, sell = _listed(exchange)
    low_bid = _order(Side.BUY, BUYER, price=150)

    with pytest.raises(InvalidOrder, match="price"):
        exchange.buy(RELAYER, p, low_bid, sell)
    assert ledger.get_balance(p) == 0


def test_holder_sells_and_binding_returns_to_created() -> None:
    exchange, ledger, wallet, bus, _ = _setup()
    p, sell = _listed(exchange)
    exchange.buy(RELAYER, p, _order(Side.BUY, BUYER), sell)

    with pytest.raises(Unauthorized):
        exchange.sell(RELAYER, p, _order(Side.BUY, TAKER, salt=2), _order(Side.SELL, TAKER, salt=2))

    binding = exchange.sell(RELAYER, p, _order(Side.BUY, TAKER, salt=2), _order(Side.SELL, BUYER, salt=2))

    assert binding.state == ListingState.CREATED
    assert binding.holder is None
    assert ledger.get_balance(p) == 0
    assert wallet.balance_of(BUYER) == 1000
    assert bus.published(streams.EXCHANGE_SOLD_V1)[0][1].payload["amount"] == 200


def test_settled_orders_cannot_be_replayed() -> None:
    exchange, ledger, wallet, _, _ = _setup()
    p, sell = _listed(exchange)
    buy = _order(Side.BUY, BUYER)
    exchange.buy(RELAYER, p, buy, sell)
    exchange.sell(RELAYER, p, _order(Side.BUY, TAKER, salt=2), _order(Side.SELL, BUYER, salt=2))

    # Re-listing the same order is accepted; settling it again is not.
    exchange.list_party(PARTY_OWNER, p, sell)
    with pytest.raises(SettlementFailed, match="already settled"):
        exchange.buy(RELAYER, p, buy, sell)

    assert exchange.get_binding(p).state == ListingState.LISTED
    assert ledger.get_balance(p) == 0
    assert wallet.balance_of(BUYER) == 1000


def test_reusable_orders_may_settle_again() -> None:
    exchange, ledger, _, _, _ = _setup()
    p = exchange.create_party(PARTY_OWNER, PARTY_OWNER, 0, 200, 3600)
    sell = _order(Side.SELL, PARTY_OWNER, reusable=True)
    buy = _order(Side.BUY, BUYER, reusable=True)

    exchange.list_party(PARTY_OWNER, p, sell)
    exchange.buy(RELAYER, p, buy, sell)
    exchange.sell(RELAYER, p, _order(Side.BUY, TAKER, salt=2), _order(Side.SELL, BUYER, salt=2))
    exchange.list_party(PARTY_OWNER, p, sell)
    exchange.buy(RELAYER, p, buy, sell)

    assert ledger.get_stake(p, BUYER) == 200


def test_listing_is_unchanged_when_publishing_fails() -> None:
    exchange, _, _, bus, _ = _setup()
    p = exchange.create_party(PARTY_OWNER, PARTY_OWNER, 0, 200, 3600)
    bus.down = True

    with pytest.raises(ConnectionError):
        exchange.list_party(PARTY_OWNER, p, _order(Side.SELL, PARTY_OWNER))
    binding = exchange.get_binding(p)
    assert binding.state == ListingState.CREATED
    assert binding.order_hash is None


def test_failed_publish_after_settlement_rolls_back_but_keeps_orders_used() -> None:
    exchange, ledger, wallet, bus, _ = _setup()
    p, sell = _listed(exchange)
    buy = _order(Side.BUY, BUYER)
    bus.down = True

    with pytest.raises(ConnectionError):
        exchange.buy(RELAYER, p, buy, sell)

    assert exchange.get_binding(p).state == ListingState.LISTED
    assert ledger.get_balance(p) == 0
    assert wallet.balance_of(BUYER) == 1000
    assert wallet.escrowed == 0
    assert exchange.bridge.is_used(buy) and exchange.bridge.is_used(sell)

    bus.down = False
    with pytest.raises(SettlementFailed, match="already settled"):
        exchange.buy(RELAYER, p, buy, sell)
