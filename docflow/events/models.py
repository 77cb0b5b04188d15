from __future__ import annotations

import copy
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping, Optional

from ..common.time_util import utc_now_iso
from ..common.trace import new_id

DEFAULT_AGGREGATE_TYPE = "Document"


class EventType(str, Enum):
    """Closed, append-only set of document lifecycle events."""

    DOCUMENT_UPLOADED = "DocumentUploaded"
    DOCUMENT_VALIDATED = "DocumentValidated"
    DOCUMENT_REJECTED = "DocumentRejected"
    DOCUMENT_ENRICHED = "DocumentEnriched"

    @property
    def routing_key(self) -> str:
        # DocumentUploaded -> document.uploaded
        return "document." + self.value[len("Document"):].lower()

    @classmethod
    def from_routing_key(cls, routing_key: Optional[str]) -> Optional["EventType"]:
        if not routing_key:
            return None
        name = "".join(p[:1].upper() + p[1:] for p in routing_key.split(".") if p)
        try:
            return cls(name)
        except ValueError:
            return None


@dataclass(frozen=True, eq=False)
class EventEnvelope:
    """Immutable domain event.

    Note:
    - Build new events with `EventEnvelope.create` (or the per-type helpers below);
      the constructor itself is used when decoding events that already have an id.
    - `payload` is deep-copied and exposed read-only, so a caller holding the
      original mapping cannot change the envelope afterwards.
    - Identity is `event_id` alone.
    """

    event_id: str
    event_type: EventType
    aggregate_id: str
    timestamp: str
    payload: Mapping[str, Any] = field(default_factory=dict)
    aggregate_type: str = DEFAULT_AGGREGATE_TYPE

    def __post_init__(self) -> None:
        if not self.event_id:
            raise ValueError("event_id is required")
        if not self.aggregate_id:
            raise ValueError("aggregate_id is required")
        object.__setattr__(self, "event_type", EventType(self.event_type))
        object.__setattr__(self, "payload", MappingProxyType(copy.deepcopy(dict(self.payload or {}))))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, EventEnvelope):
            return NotImplemented
        return self.event_id == other.event_id

    def __hash__(self) -> int:
        return hash(self.event_id)

    @classmethod
    def create(
        cls,
        event_type: EventType | str,
        aggregate_id: str,
        payload: Optional[Mapping[str, Any]] = None,
        *,
        aggregate_type: str = DEFAULT_AGGREGATE_TYPE,
    ) -> "EventEnvelope":
        """Stamp a fresh event_id and the creation time."""
        return cls(
            event_id=new_id(),
            event_type=EventType(event_type),
            aggregate_id=aggregate_id,
            timestamp=utc_now_iso(),
            payload=payload or {},
            aggregate_type=aggregate_type,
        )

    def payload_dict(self) -> dict[str, Any]:
        """A mutable deep copy of the payload (for serialization)."""
        return copy.deepcopy(dict(self.payload))


@dataclass(frozen=True)
class InboundMessage:
    """An envelope as received by one consumer, with its transport metadata.

    message_id / correlation_id / routing_key are for observability and the
    audit record only; they never take part in idempotency decisions.
    """

    envelope: EventEnvelope
    received_at: str
    message_id: Optional[str] = None
    correlation_id: Optional[str] = None
    routing_key: Optional[str] = None
    attempt: int = 1

    @property
    def event_id(self) -> str:
        return self.envelope.event_id

    @property
    def event_type(self) -> EventType:
        return self.envelope.event_type

    @property
    def aggregate_id(self) -> str:
        return self.envelope.aggregate_id


# -------------------------
# Per-type factories
# -------------------------

def document_uploaded(
    aggregate_id: str,
    document_name: str,
    content_type: str,
    file_size: int,
    uploaded_by: Optional[str] = None,
) -> EventEnvelope:
    payload: dict[str, Any] = {
        "documentName": document_name,
        "contentType": content_type,
        "fileSize": file_size,
    }
    if uploaded_by:
        payload["uploadedBy"] = uploaded_by
    return EventEnvelope.create(EventType.DOCUMENT_UPLOADED, aggregate_id, payload)


def document_validated(aggregate_id: str, validation_result: str, validated_by: str) -> EventEnvelope:
    return EventEnvelope.create(
        EventType.DOCUMENT_VALIDATED,
        aggregate_id,
        {"validationResult": validation_result, "validatedBy": validated_by},
    )


def document_rejected(aggregate_id: str, rejection_reason: str, failed_validation_rule: str) -> EventEnvelope:
    return EventEnvelope.create(
        EventType.DOCUMENT_REJECTED,
        aggregate_id,
        {"rejectionReason": rejection_reason, "failedValidationRule": failed_validation_rule},
    )


def document_enriched(
    aggregate_id: str,
    classification: str,
    extracted_metadata: Optional[Mapping[str, str]] = None,
) -> EventEnvelope:
    return EventEnvelope.create(
        EventType.DOCUMENT_ENRICHED,
        aggregate_id,
        {"classification": classification, "extractedMetadata": dict(extracted_metadata or {})},
    )
