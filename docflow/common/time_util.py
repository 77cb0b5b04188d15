from __future__ import annotations

from datetime import datetime, timezone


def utc_now_iso() -> str:
    """返回 UTC 时间的 ISO-8601 字符串（微秒精度，带 Z）。"""
    return to_utc_iso(datetime.now(timezone.utc))


def to_utc_iso(dt: datetime) -> str:
    # fixed width, so stored values sort lexicographically
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds").replace("+00:00", "Z")


def parse_iso(value: str) -> datetime:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC."""
    text = value.strip()
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt
