from __future__ import annotations

from datetime import datetime
from typing import Any

from . import streams


ENVELOPE_REQUIRED_KEYS = {
    "event_id",
    "trace_id",
    "produced_at",
    "schema",
    "schema_version",
    "payload",
}
ENVELOPE_OPTIONAL_KEYS = {"source_service"}


def _require_exact_keys(obj: dict[str, Any], *, required: set[str], optional: set[str] | None = None) -> None:
    optional = optional or set()
    keys = set(obj.keys())
    missing = required - keys
    extra = keys - required - optional
    if missing:
        raise ValueError(f"missing keys: {sorted(missing)}")
    if extra:
        raise ValueError(f"extra keys not allowed in v1: {sorted(extra)}")


def _require_str(d: dict[str, Any], k: str) -> str:
    v = d.get(k)
    if not isinstance(v, str) or not v.strip():
        raise ValueError(f"{k} must be non-empty string")
    return v


def _require_optional_str(d: dict[str, Any], k: str) -> str | None:
    v = d.get(k)
    if v is None:
        return None
    return _require_str(d, k)


def _require_int(d: dict[str, Any], k: str) -> int:
    v = d.get(k)
    # Ledger amounts are exact integers; bools and floats are rejected.
    if isinstance(v, bool) or not isinstance(v, int):
        raise ValueError(f"{k} must be int")
    return v


def _parse_iso8601(s: str) -> datetime:
    try:
        dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
    except Exception as e:  # pragma: no cover
        raise ValueError(f"invalid ISO8601 timestamp: {s}") from e
    if dt.tzinfo is None:
        raise ValueError("timestamp must include timezone")
    return dt


def _require_party_id(d: dict[str, Any]) -> int:
    party_id = _require_int(d, "party_id")
    if party_id < 1:
        raise ValueError("party_id must be >= 1")
    return party_id


def validate_envelope_dict(event: dict[str, Any]) -> None:
    """Strict v1 validation.

    - v1 does not allow extra fields (schema evolution uses v2 streams)
    - payload must match schema-specific rules
    """

    _require_exact_keys(event, required=ENVELOPE_REQUIRED_KEYS, optional=ENVELOPE_OPTIONAL_KEYS)
    _require_str(event, "event_id")
    _require_str(event, "trace_id")
    produced_at = _require_str(event, "produced_at")
    _parse_iso8601(produced_at)

    schema = _require_str(event, "schema")
    schema_version = _require_int(event, "schema_version")
    if schema_version != 1 or not schema.endswith(".v1"):
        raise ValueError("schema_version must be 1 and schema must end with .v1")

    payload = event.get("payload")
    if not isinstance(payload, dict):
        raise ValueError("payload must be object")
    validate_payload(schema, payload)


def validate_payload(schema: str, payload: dict[str, Any]) -> None:
    if schema in (streams.ACCESS_HOST_WHITELISTED_V1, streams.ACCESS_HOST_REMOVED_V1):
        _require_exact_keys(payload, required={"address", "by"})
        _require_str(payload, "address")
        _require_str(payload, "by")
        return

    if schema == streams.PARTY_CREATED_V1:
        _require_exact_keys(payload, required={"party_id", "creator", "owner", "threshold", "target"})
        _require_party_id(payload)
        _require_str(payload, "creator")
        _require_str(payload, "owner")
        for k in ["threshold", "target"]:
            if _require_int(payload, k) < 0:
                raise ValueError(f"{k} must be >= 0")
        return

    if schema in (streams.PARTY_DEPOSITED_V1, streams.PARTY_WITHDRAWN_V1):
        _require_exact_keys(payload, required={"party_id", "depositor", "amount", "balance", "stake", "via"})
        _require_party_id(payload)
        _require_str(payload, "depositor")
        if _require_int(payload, "amount") <= 0:
            raise ValueError("amount must be > 0")
        balance = _require_int(payload, "balance")
        stake = _require_int(payload, "stake")
        if stake < 0 or balance < stake:
            raise ValueError("stake must be within 0..balance")
        _require_str(payload, "via")
        return

    if schema == streams.EXCHANGE_LISTED_V1:
        _require_exact_keys(payload, required={"party_id", "exchange", "price", "order_hash"})
        _require_party_id(payload)
        _require_str(payload, "exchange")
        if _require_int(payload, "price") <= 0:
            raise ValueError("price must be > 0")
        _require_optional_str(payload, "order_hash")
        return

    if schema in (streams.EXCHANGE_BOUGHT_V1, streams.EXCHANGE_SOLD_V1):
        _require_exact_keys(payload, required={"party_id", "exchange", "counterparty", "amount", "settlement_id"})
        _require_party_id(payload)
        _require_str(payload, "exchange")
        _require_str(payload, "counterparty")
        if _require_int(payload, "amount") <= 0:
            raise ValueError("amount must be > 0")
        _require_optional_str(payload, "settlement_id")
        return

    if schema == streams.EXCHANGE_CANCELLED_V1:
        _require_exact_keys(payload, required={"party_id", "exchange", "by"})
        _require_party_id(payload)
        _require_str(payload, "exchange")
        _require_str(payload, "by")
        return

    # For new schemas: add v2 stream, then update this mapping.
    raise ValueError(f"unknown schema: {schema}")
