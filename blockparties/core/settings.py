from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict

import os


@dataclass(frozen=True)
class Settings:
    env: str
    registry_owner: str
    exchange_address: str
    protocol_exchange_address: str = "protocol-exchange"
    redis_url: str | None = None
    postgres_dsn: str | None = None
    order_replay_ttl_seconds: int = 30 * 24 * 3600
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    # Dev-mode opening balances for the in-memory wallet.
    wallet_balances: Dict[str, int] = field(default_factory=dict)


def load_settings(path: str | Path = "config/settings.yaml") -> Settings:
    p = Path(path)

    # Keep imports optional at module import time (tests/tools may not need YAML).
    try:
        import yaml  # type: ignore
    except ModuleNotFoundError as e:  # pragma: no cover
        raise ModuleNotFoundError(
            "PyYAML is required to load config/settings.yaml. Install with: pip install pyyaml"
        ) from e

    data: Dict[str, Any] = yaml.safe_load(p.read_text(encoding="utf-8")) or {}

    # Env overrides (used for compose profile isolation).
    env_redis_url = os.getenv("BLOCKPARTIES_REDIS_URL")
    env_postgres_dsn = os.getenv("BLOCKPARTIES_POSTGRES_DSN")
    env_registry_owner = os.getenv("BLOCKPARTIES_REGISTRY_OWNER")

    registry = data.get("registry", {})
    exchange = data.get("exchange", {})
    api = data.get("api", {})
    wallet = data.get("wallet", {})

    registry_owner = env_registry_owner or registry["owner"]
    balances = {str(k): int(v) for k, v in (wallet.get("balances") or {}).items()}

    return Settings(
        env=data.get("env", "dev"),
        registry_owner=str(registry_owner),
        exchange_address=str(exchange.get("address", "sample-exchange")),
        protocol_exchange_address=str(exchange.get("protocol_address", "protocol-exchange")),
        redis_url=env_redis_url or data.get("redis", {}).get("url"),
        postgres_dsn=env_postgres_dsn or data.get("postgres", {}).get("dsn"),
        order_replay_ttl_seconds=int(exchange.get("order_replay_ttl_seconds", 30 * 24 * 3600)),
        api_host=str(api.get("host", "0.0.0.0")),
        api_port=int(api.get("port", 8000)),
        wallet_balances=balances,
    )
