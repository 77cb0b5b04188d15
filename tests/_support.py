# -*- coding: utf-8 -*-
"""
测试公共工具：临时 SQLite 数据库、构造传输消息。
- 每个用例独立的临时目录，不污染项目里的 data/。
"""

import json
import sys
import tempfile
import unittest
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from docflow.events.codec import TransportMessage  # noqa: E402
from docflow.storage.db import SqliteStore  # noqa: E402


def temp_dir(case: unittest.TestCase, prefix: str = "docflow-test-") -> Path:
    tmp = tempfile.TemporaryDirectory(prefix=prefix)
    case.addCleanup(tmp.cleanup)
    return Path(tmp.name)


def temp_store(case: unittest.TestCase, schema: str = "", name: str = "consumer.db") -> SqliteStore:
    """Open a store in a fresh temp dir; closed before the dir is removed."""
    base = temp_dir(case)
    store = SqliteStore(str(base / name), schema=schema)
    case.addCleanup(store.close)
    return store


def raw_message(body, *, routing_key=None, headers=None, correlation_id=None, message_id=None, attempt=1):
    """A transport message with a hand-written body (dict is JSON-encoded)."""
    if isinstance(body, (dict, list)):
        data = json.dumps(body).encode("utf-8")
    elif isinstance(body, str):
        data = body.encode("utf-8")
    else:
        data = body
    return TransportMessage(
        body=data,
        message_id=message_id,
        correlation_id=correlation_id,
        routing_key=routing_key,
        headers=dict(headers or {}),
        attempt=attempt,
    )
