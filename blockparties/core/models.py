from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class EventEnvelope:
    event_id: str
    trace_id: str
    produced_at: datetime
    schema: str
    schema_version: int
    payload: Dict[str, Any]
    source_service: Optional[str] = None


def envelope_to_wire_dict(event: EventEnvelope) -> dict[str, Any]:
    """Plain dict form of an envelope (ISO-8601 `produced_at`), as sent on the bus."""
    d = asdict(event)
    produced_at = event.produced_at
    if produced_at.tzinfo is None:
        produced_at = produced_at.replace(tzinfo=timezone.utc)
    d["produced_at"] = produced_at.isoformat()
    return d
