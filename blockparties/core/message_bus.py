from __future__ import annotations

import json
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable, Optional, Sequence

from .ids import new_event_id, new_trace_id
from .models import EventEnvelope, envelope_to_wire_dict

from blockparties.contracts.validation import validate_envelope_dict


# (stream, envelope) built and validated before the state change it announces.
PendingEvent = tuple[str, EventEnvelope]


class MessageBus:
    """Abstraction for publishing state-change events to indexers."""

    def publish(self, stream: str, event: EventEnvelope) -> None:  # pragma: no cover
        raise NotImplementedError

    def publish_batch(self, events: Sequence[PendingEvent]) -> None:
        """Publish every event of one state change. Buses that can should make this all-or-nothing."""
        for stream, event in events:
            self.publish(stream, event)

    def consume(self, stream: str, group: str, consumer: str) -> Iterable[EventEnvelope]:  # pragma: no cover
        raise NotImplementedError


def build_event(
    *,
    schema: str,
    payload: dict[str, Any],
    source_service: str,
    trace_id: Optional[str] = None,
    produced_at: Optional[datetime] = None,
) -> EventEnvelope:
    """Build a v1 envelope and validate it against the contract."""
    ev = EventEnvelope(
        event_id=new_event_id(),
        trace_id=trace_id or new_trace_id(),
        produced_at=produced_at or datetime.now(timezone.utc),
        schema=schema,
        schema_version=1,
        payload=payload,
        source_service=source_service,
    )
    validate_envelope_dict(envelope_to_wire_dict(ev))
    return ev


class InMemoryMessageBus(MessageBus):
    """Process-local bus used in dev mode and tests."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._published: list[tuple[str, EventEnvelope]] = []

    def publish(self, stream: str, event: EventEnvelope) -> None:
        with self._lock:
            self._published.append((stream, event))

    def publish_batch(self, events: Sequence[PendingEvent]) -> None:
        with self._lock:
            self._published.extend(events)

    def consume(self, stream: str, group: str = "", consumer: str = "") -> Iterable[EventEnvelope]:
        with self._lock:
            items = list(self._published)
        for s, ev in items:
            if s == stream:
                yield ev

    def published(self, stream: Optional[str] = None) -> list[tuple[str, EventEnvelope]]:
        with self._lock:
            if stream is None:
                return list(self._published)
            return [(s, e) for s, e in self._published if s == stream]

    def clear(self) -> None:
        with self._lock:
            self._published.clear()


@dataclass(frozen=True)
class ReceivedMessage:
    stream: str
    message_id: str
    envelope: EventEnvelope
    fields: dict[str, str]


class RedisStreamBus(MessageBus):
    """Redis Streams implementation.

    Each event is stored as a single `event` field holding the JSON wire dict.
    """

    def __init__(
        self,
        redis_url: str,
        *,
        block_ms: int = 5000,
        read_count: int = 10,
        client=None,
    ):
        self.redis_url = redis_url
        self._client = client
        self.block_ms = block_ms
        self.read_count = read_count

    def _get_client(self):
        if self._client is None:
            import redis  # type: ignore

            self._client = redis.Redis.from_url(self.redis_url, decode_responses=True)
        return self._client

    def _ensure_group(self, stream: str, group: str) -> None:
        client = self._get_client()
        try:
            client.xgroup_create(name=stream, groupname=group, id="0", mkstream=True)
        except Exception as e:
            # BUSYGROUP means it already exists.
            if "BUSYGROUP" not in str(e):
                raise

    def _wire_dict_to_envelope(self, d: dict) -> EventEnvelope:
        # validate first (strict)
        validate_envelope_dict(d)
        produced_at = datetime.fromisoformat(str(d["produced_at"]).replace("Z", "+00:00"))
        return EventEnvelope(
            event_id=d["event_id"],
            trace_id=d["trace_id"],
            produced_at=produced_at,
            schema=d["schema"],
            schema_version=int(d["schema_version"]),
            payload=d["payload"],
            source_service=d.get("source_service"),
        )

    def publish(self, stream: str, event: EventEnvelope) -> None:
        client = self._get_client()
        wire = envelope_to_wire_dict(event)
        validate_envelope_dict(wire)
        body = json.dumps(wire, ensure_ascii=False)
        client.xadd(stream, {"event": body})

    def publish_batch(self, events: Sequence[PendingEvent]) -> None:
        # MULTI/EXEC: either every entry of the batch lands or none does.
        pipe = self._get_client().pipeline(transaction=True)
        for stream, event in events:
            wire = envelope_to_wire_dict(event)
            validate_envelope_dict(wire)
            pipe.xadd(stream, {"event": json.dumps(wire, ensure_ascii=False)})
        pipe.execute()

    def consume(self, stream: str, group: str, consumer: str) -> Iterable[EventEnvelope]:
        # Convenience helper: yields envelopes (no ack semantics).
        for msg in self.poll(stream=stream, group=group, consumer=consumer):
            yield msg.envelope

    def poll(self, *, stream: str, group: str, consumer: str) -> list[ReceivedMessage]:
        self._ensure_group(stream, group)
        client = self._get_client()
        resp = client.xreadgroup(
            groupname=group,
            consumername=consumer,
            streams={stream: ">"},
            count=self.read_count,
            block=self.block_ms,
        )
        out: list[ReceivedMessage] = []
        for (sname, items) in resp or []:
            for (msg_id, fields) in items:
                raw = dict(fields)
                body = raw.get("event")
                if not body:
                    # malformed message, left unacked for inspection
                    continue
                env = self._wire_dict_to_envelope(json.loads(body))
                out.append(ReceivedMessage(stream=sname, message_id=msg_id, envelope=env, fields=raw))
        return out

    def ack(self, *, stream: str, group: str, message_id: str) -> None:
        client = self._get_client()
        client.xack(stream, group, message_id)
