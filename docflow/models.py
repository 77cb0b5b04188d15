from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


# -------------------------
# HTTP envelopes & errors
# -------------------------

class OkEnvelope(BaseModel):
    status: Literal["ok"] = "ok"
    trace_id: str
    data: Any


class ErrorEnvelope(BaseModel):
    status: Literal["error"] = "error"
    code: str
    message: str
    trace_id: str
    data: Any = Field(default_factory=dict)


# -------------------------
# Audit
# -------------------------

class TimelineResult(BaseModel):
    aggregate_id: str
    ordered_event_descriptions: List[str]
    event_count: int


class AuditRecordItem(BaseModel):
    event_id: str
    event_type: str
    aggregate_id: str
    aggregate_type: str
    timestamp: str
    received_at: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    routing_key: Optional[str] = None
    message_id: Optional[str] = None
    correlation_id: Optional[str] = None


class AuditListResult(BaseModel):
    items: List[AuditRecordItem]
    count: int


class AuditStats(BaseModel):
    total_events: int
    by_event_type: Dict[str, int]


# -------------------------
# Notifications
# -------------------------

class NotificationItem(BaseModel):
    event_id: str
    event_type: str
    aggregate_id: str
    recipient: str
    channel: str
    subject: Optional[str] = None
    message: str = ""
    sent_at: str
    routing_key: Optional[str] = None


class NotificationHistoryResult(BaseModel):
    items: List[NotificationItem]
    count: int


class NotificationExists(BaseModel):
    event_id: str
    notified: bool


class TypeCount(BaseModel):
    event_type: str
    count: int
