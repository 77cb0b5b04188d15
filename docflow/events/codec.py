from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Optional

from ..common.errors import MalformedEnvelopeError
from ..common.time_util import parse_iso, to_utc_iso
from .models import DEFAULT_AGGREGATE_TYPE, EventEnvelope, EventType, InboundMessage

# Body keys that describe the envelope itself; anything else in a flat body is payload.
_ENVELOPE_KEYS = frozenset(
    {"eventId", "eventType", "aggregateId", "documentId", "aggregateType", "timestamp", "correlationId", "payload"}
)


@dataclass(frozen=True)
class TransportMessage:
    """One delivery as handed over by the transport (body + properties)."""

    body: bytes
    message_id: Optional[str] = None
    correlation_id: Optional[str] = None
    routing_key: Optional[str] = None
    headers: dict[str, Any] = field(default_factory=dict)
    attempt: int = 1


def _dumps(obj: Any) -> bytes:
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":"), sort_keys=True).encode("utf-8")


def encode_envelope(
    env: EventEnvelope,
    *,
    correlation_id: Optional[str] = None,
    message_id: Optional[str] = None,
) -> TransportMessage:
    body = {
        "eventId": env.event_id,
        "eventType": env.event_type.value,
        "aggregateId": env.aggregate_id,
        "aggregateType": env.aggregate_type,
        "timestamp": env.timestamp,
        "payload": env.payload_dict(),
    }
    return TransportMessage(
        body=_dumps(body),
        message_id=message_id or env.event_id,
        correlation_id=correlation_id,
        routing_key=env.event_type.routing_key,
        headers={"eventType": env.event_type.value, "aggregateId": env.aggregate_id},
    )


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    s = str(value).strip()
    return s or None


def _event_type(body: dict[str, Any], raw: TransportMessage) -> EventType:
    # header first, then body, then the routing key (document.uploaded -> DocumentUploaded)
    name = _text(raw.headers.get("eventType")) or _text(body.get("eventType"))
    if name is None:
        derived = EventType.from_routing_key(raw.routing_key)
        if derived is None:
            raise MalformedEnvelopeError("eventType is missing", field="eventType")
        return derived
    try:
        return EventType(name)
    except ValueError:
        raise MalformedEnvelopeError(f"unknown eventType: {name!r}", field="eventType") from None


def decode_message(raw: TransportMessage, *, received_at: str) -> InboundMessage:
    """Decode a transport message into an InboundMessage.

    Raises MalformedEnvelopeError when a required field is missing or invalid.
    Both the nested form ({"payload": {...}}) and the flat form (payload fields
    next to the envelope fields, documentId as aggregate id) are accepted.
    """
    try:
        body = json.loads(raw.body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        raise MalformedEnvelopeError("message body is not valid JSON", field="body") from None
    if not isinstance(body, dict):
        raise MalformedEnvelopeError("message body must be a JSON object", field="body")

    event_id = _text(body.get("eventId")) or _text(raw.headers.get("eventId"))
    if event_id is None:
        raise MalformedEnvelopeError("eventId is missing", field="eventId")

    event_type = _event_type(body, raw)

    aggregate_id = (
        _text(body.get("aggregateId"))
        or _text(body.get("documentId"))
        or _text(raw.headers.get("aggregateId"))
    )
    if aggregate_id is None:
        raise MalformedEnvelopeError("aggregateId is missing", field="aggregateId")

    ts_raw = _text(body.get("timestamp"))
    if ts_raw is None:
        raise MalformedEnvelopeError("timestamp is missing", field="timestamp")
    try:
        timestamp = to_utc_iso(parse_iso(ts_raw))
    except (ValueError, OverflowError):
        raise MalformedEnvelopeError(f"timestamp is not ISO-8601: {ts_raw!r}", field="timestamp") from None

    if "payload" in body:
        payload = body["payload"] if body["payload"] is not None else {}
        if not isinstance(payload, dict):
            raise MalformedEnvelopeError("payload must be a JSON object", field="payload")
    else:
        payload = {k: v for k, v in body.items() if k not in _ENVELOPE_KEYS}

    envelope = EventEnvelope(
        event_id=event_id,
        event_type=event_type,
        aggregate_id=aggregate_id,
        timestamp=timestamp,
        payload=payload,
        aggregate_type=_text(body.get("aggregateType")) or DEFAULT_AGGREGATE_TYPE,
    )
    correlation_id = (
        _text(raw.correlation_id)
        or _text(raw.headers.get("correlationId"))
        or _text(body.get("correlationId"))
    )
    return InboundMessage(
        envelope=envelope,
        received_at=received_at,
        message_id=raw.message_id,
        correlation_id=correlation_id,
        routing_key=raw.routing_key or event_type.routing_key,
        attempt=raw.attempt,
    )
