from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from ..common.auth import require_bearer
from ..common.errors import ApiError
from ..common.time_util import utc_now_iso
from ..common.trace import new_trace_id
from ..core.runtime import ServiceRuntime
from ..events.models import EventType
from ..models import (
    AuditListResult,
    AuditRecordItem,
    AuditStats,
    NotificationExists,
    NotificationHistoryResult,
    NotificationItem,
    OkEnvelope,
    TimelineResult,
    TypeCount,
)
from ..storage.audit import AuditRecord
from ..storage.notifications import NotificationRecord

router = APIRouter()


def ok(trace_id: str, data: dict):
    return OkEnvelope(trace_id=trace_id, data=data)


def _runtime(request: Request) -> ServiceRuntime:
    return request.app.state.runtime


def _event_type(value: str) -> EventType:
    """Accept the type name (DocumentValidated) or its routing key (document.validated)."""
    try:
        return EventType(value)
    except ValueError:
        pass
    et = EventType.from_routing_key(value)
    if et is None:
        raise ApiError(
            code="INVALID_ARGUMENT",
            message=f"unknown event type: {value}",
            http_status=400,
            data={"allowed": [t.value for t in EventType]},
        )
    return et


def _audit_item(r: AuditRecord) -> AuditRecordItem:
    return AuditRecordItem(
        event_id=r.event_id,
        event_type=r.event_type,
        aggregate_id=r.aggregate_id,
        aggregate_type=r.aggregate_type,
        timestamp=r.timestamp,
        received_at=r.received_at,
        payload=r.payload,
        routing_key=r.routing_key,
        message_id=r.message_id,
        correlation_id=r.correlation_id,
    )


def _notification_item(r: NotificationRecord) -> NotificationItem:
    return NotificationItem(
        event_id=r.event_id,
        event_type=r.event_type,
        aggregate_id=r.aggregate_id,
        recipient=r.recipient,
        channel=r.channel,
        subject=r.subject,
        message=r.message,
        sent_at=r.sent_at,
        routing_key=r.routing_key,
    )


@router.get("/health")
def health_check(request: Request):
    # Health endpoint must be public (no auth)
    trace_id = new_trace_id()
    runtime: Optional[ServiceRuntime] = getattr(request.app.state, "runtime", None)
    consumers = {}
    if runtime is not None:
        consumers = {p.consumer: ("up" if p.running else "down") for p in runtime.pools}
    return ok(trace_id, {"service": "docflow", "time_utc": utc_now_iso(), "consumers": consumers}).model_dump()


# -------------------------
# Audit
# -------------------------

@router.get("/audit/timeline/{aggregate_id}")
def audit_timeline(request: Request, aggregate_id: str, _: None = Depends(require_bearer)):
    trace_id = new_trace_id()
    audit = _runtime(request).audit
    descriptions = audit.timeline_for(aggregate_id)
    result = TimelineResult(
        aggregate_id=aggregate_id,
        ordered_event_descriptions=descriptions,
        event_count=len(descriptions),
    )
    return ok(trace_id, result.model_dump()).model_dump()


@router.get("/audit/events/type/{event_type}")
def audit_by_type(
    request: Request,
    event_type: str,
    limit: int = Query(default=100, ge=1, le=1000),
    _: None = Depends(require_bearer),
):
    trace_id = new_trace_id()
    et = _event_type(event_type)
    rows = _runtime(request).audit.list_by_type(et.value, limit=limit)
    items = [_audit_item(r) for r in rows]
    return ok(trace_id, AuditListResult(items=items, count=len(items)).model_dump()).model_dump()


@router.get("/audit/events/{event_id}")
def audit_event(request: Request, event_id: str, _: None = Depends(require_bearer)):
    trace_id = new_trace_id()
    record = _runtime(request).audit.lookup(event_id)
    if record is None:
        raise ApiError(code="NOT_FOUND", message="Audit record not found", http_status=404, data={"event_id": event_id})
    return ok(trace_id, _audit_item(record).model_dump()).model_dump()


@router.get("/audit/stats")
def audit_stats(request: Request, _: None = Depends(require_bearer)):
    trace_id = new_trace_id()
    stats = AuditStats(**_runtime(request).audit.stats())
    return ok(trace_id, stats.model_dump()).model_dump()


@router.get("/audit")
def audit_records(
    request: Request,
    aggregate_id: str = Query(..., min_length=1),
    _: None = Depends(require_bearer),
):
    trace_id = new_trace_id()
    items = [_audit_item(r) for r in _runtime(request).audit.records_for(aggregate_id)]
    return ok(trace_id, AuditListResult(items=items, count=len(items)).model_dump()).model_dump()


# -------------------------
# Notifications
# -------------------------

@router.get("/notifications")
def notification_history(
    request: Request,
    aggregate_id: Optional[str] = Query(default=None),
    recipient: Optional[str] = Query(default=None),
    _: None = Depends(require_bearer),
):
    trace_id = new_trace_id()
    if bool(aggregate_id) == bool(recipient):
        raise ApiError(
            code="INVALID_ARGUMENT",
            message="exactly one of aggregate_id or recipient is required",
            http_status=400,
        )
    ledger = _runtime(request).notifications
    if aggregate_id:
        rows = ledger.history_for_aggregate(aggregate_id)
    else:
        rows = ledger.history_for_recipient(recipient or "")
    items = [_notification_item(r) for r in rows]
    return ok(trace_id, NotificationHistoryResult(items=items, count=len(items)).model_dump()).model_dump()


@router.get("/notifications/events/{event_id}")
def notification_exists(request: Request, event_id: str, _: None = Depends(require_bearer)):
    trace_id = new_trace_id()
    notified = _runtime(request).notifications.has_notified(event_id)
    return ok(trace_id, NotificationExists(event_id=event_id, notified=notified).model_dump()).model_dump()


@router.get("/notifications/stats/{event_type}")
def notification_stats(request: Request, event_type: str, _: None = Depends(require_bearer)):
    trace_id = new_trace_id()
    et = _event_type(event_type)
    count = _runtime(request).notifications.count_by_type(et.value)
    return ok(trace_id, TypeCount(event_type=et.value, count=count).model_dump()).model_dump()
