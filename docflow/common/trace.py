from __future__ import annotations

import ulid


def new_id() -> str:
    """Generate a globally unique, sortable identifier (ULID, 26 chars)."""
    return str(ulid.new())


def new_correlation_id() -> str:
    """Generate correlation_id (same format as IDs)."""
    return new_id()


def new_trace_id() -> str:
    return new_id()
