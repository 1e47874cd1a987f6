from __future__ import annotations

import time

from fastapi.testclient import TestClient

from blockparties.api.main import build_services, create_app
from blockparties.bridge import NULL_ADDRESS, Order, Side, Signature
from blockparties.core.settings import Settings


OWNER = "0xregistry-owner"
EXCHANGE = "sample-exchange"
PROTOCOL = "0x" + "a" * 40
ALICE = "0xalice"
BOB = "0xbob"


def _client() -> tuple[TestClient, object]:
    s = Settings(
        env="test",
        registry_owner=OWNER,
        exchange_address=EXCHANGE,
        protocol_exchange_address=PROTOCOL,
        wallet_balances={ALICE: 1000, BOB: 1000},
    )
    services = build_services(s)
    return TestClient(create_app(services)), services


def _whitelist_exchange(client: TestClient) -> None:
    r = client.post("/hosts", json={"address": EXCHANGE}, headers={"X-Caller": OWNER})
    assert r.status_code == 200
    assert r.json()["added"] is True


def test_health() -> None:
    client, _ = _client()
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok"}


def test_only_registry_owner_can_whitelist() -> None:
    client, _ = _client()
    r = client.post("/hosts", json={"address": EXCHANGE}, headers={"X-Caller": ALICE})
    assert r.status_code == 403
    assert r.json()["error"] == "unauthorized"
    assert client.get(f"/hosts/{EXCHANGE}").json()["whitelisted"] is False


def test_party_lifecycle_over_http() -> None:
    client, services = _client()
    _whitelist_exchange(client)

    r = client.post("/parties", json={"owner": ALICE, "threshold": 0, "target": 200}, headers={"X-Caller": ALICE})
    assert r.status_code == 200
    party_id = r.json()["party_id"]
    assert party_id == 1

    r = client.post(f"/parties/{party_id}/deposit", json={"amount": 100}, headers={"X-Caller": ALICE})
    assert r.json() == {"party_id": 1, "balance": 100, "stake": 100}

    r = client.get(f"/parties/{party_id}/stakes/{ALICE}")
    assert r.json()["giga_stake"] == 1_000_000_000

    r = client.post(f"/parties/{party_id}/buy", headers={"X-Caller": BOB})
    assert r.json()["state"] == "SOLD"
    assert client.get(f"/parties/{party_id}/balance").json()["balance"] == 300

    r = client.post(f"/parties/{party_id}/sell", headers={"X-Caller": BOB})
    assert r.json()["state"] == "LISTED"
    assert client.get(f"/parties/{party_id}/balance").json()["balance"] == 100
    assert client.get(f"/wallets/{BOB}").json()["balance"] == 1000

    detail = client.get(f"/parties/{party_id}").json()
    assert detail["creator"] == EXCHANGE
    assert detail["listing"]["state"] == "LISTED"


def test_domain_errors_map_to_status_codes() -> None:
    client, _ = _client()
    assert client.post("/parties", json={"owner": ALICE, "target": 200}, headers={"X-Caller": ALICE}).status_code == 403

    _whitelist_exchange(client)
    client.post("/parties", json={"owner": ALICE, "target": 200}, headers={"X-Caller": ALICE})

    assert client.get("/parties/99").status_code == 404
    assert client.post("/parties/1/deposit", json={"amount": 0}, headers={"X-Caller": ALICE}).status_code == 400
    assert client.post("/parties/1/deposit", json={"amount": 5000}, headers={"X-Caller": ALICE}).status_code == 402

    client.post("/parties/1/deposit", json={"amount": 100}, headers={"X-Caller": ALICE})
    r = client.post("/parties/1/withdraw", json={"amount": 200}, headers={"X-Caller": ALICE})
    assert r.status_code == 409
    assert r.json()["detail"] == "The amount requested exceeds the sender's stake"

    assert client.post("/parties/1/sell", headers={"X-Caller": BOB}).status_code == 409


def test_caller_header_is_required() -> None:
    client, _ = _client()
    assert client.post("/hosts", json={"address": EXCHANGE}).status_code == 422


def _signed(side: Side, maker: str, now: int, salt: int = 1) -> dict:
    return Order(
        exchange=PROTOCOL,
        maker=maker,
        side=side,
        target="0x" + "b" * 40,
        calldata=b"\x00" * 8,
        replacement_pattern=b"\xff" * 8,
        base_price=200,
        fee_recipient=("0x" + "c" * 40) if side == Side.SELL else NULL_ADDRESS,
        listing_time=now - 10,
        expiration_time=now + 1800,
        salt=salt,
        signature=Signature(v=27, r="0x" + "11" * 32, s="0x" + "22" * 32),
    ).to_dict()


def test_protocol_exchange_over_http() -> None:
    client, _ = _client()
    r = client.post("/hosts", json={"address": PROTOCOL}, headers={"X-Caller": OWNER})
    assert r.status_code == 200

    r = client.post(
        "/protocol/parties",
        json={"owner": ALICE, "target": 200, "duration": 3600},
        headers={"X-Caller": ALICE},
    )
    party_id = r.json()["party_id"]
    assert client.get(f"/protocol/parties/{party_id}").json()["state"] == "CREATED"

    now = int(time.time())
    sell = _signed(Side.SELL, ALICE, now)
    r = client.post(f"/protocol/parties/{party_id}/list", json={"sell_order": sell}, headers={"X-Caller": ALICE})
    assert r.json()["state"] == "LISTED"

    buy = _signed(Side.BUY, BOB, now)
    r = client.post(
        f"/protocol/parties/{party_id}/buy",
        json={"buy_order": buy, "sell_order": sell},
        headers={"X-Caller": "0xrelayer"},
    )
    assert r.status_code == 200
    assert r.json()["holder"] == BOB
    assert client.get(f"/wallets/{BOB}").json()["balance"] == 800

    # Same pair again: the listing is SOLD, so the state check fails first.
    r = client.post(
        f"/protocol/parties/{party_id}/buy",
        json={"buy_order": buy, "sell_order": sell},
        headers={"X-Caller": "0xrelayer"},
    )
    assert r.status_code == 409


def test_malformed_order_is_a_bad_request() -> None:
    client, _ = _client()
    client.post("/hosts", json={"address": PROTOCOL}, headers={"X-Caller": OWNER})
    client.post("/protocol/parties", json={"owner": ALICE, "target": 200, "duration": 3600}, headers={"X-Caller": ALICE})

    r = client.post("/protocol/parties/1/list", json={"sell_order": {"side": "SELL"}}, headers={"X-Caller": ALICE})
    assert r.status_code == 400
    assert r.json()["error"] == "invalid_order"


def test_blank_identities_are_bad_requests() -> None:
    client, services = _client()
    r = client.post("/hosts", json={"address": "  "}, headers={"X-Caller": OWNER})
    assert r.status_code == 400
    assert r.json()["error"] == "invalid_identity"
    assert services.registry.is_whitelisted("  ") is False

    _whitelist_exchange(client)
    r = client.post("/parties", json={"owner": " ", "target": 200}, headers={"X-Caller": ALICE})
    assert r.status_code == 400
    r = client.post("/parties", json={"owner": ALICE, "target": 200}, headers={"X-Caller": ALICE})
    assert r.json()["party_id"] == 1
