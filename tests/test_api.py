# -*- coding: utf-8 -*-
"""
查询 API 测试：FastAPI TestClient + 临时数据库。
"""

import os
import unittest
from unittest import mock

from fastapi.testclient import TestClient

from _support import temp_dir

from docflow.app import create_app
from docflow.core.config import ConfigManager
from docflow.core.runtime import build_runtime
from docflow.events.codec import encode_envelope
from docflow.events.models import document_enriched, document_rejected, document_uploaded, document_validated

TOKEN = "test-token"
AUTH = {"Authorization": f"Bearer {TOKEN}"}


class TestQueryApi(unittest.TestCase):
    def setUp(self):
        env = mock.patch.dict(os.environ, {"DOCFLOW_API_TOKEN": TOKEN})
        env.start()
        self.addCleanup(env.stop)

        cm = ConfigManager(repo_root=temp_dir(self))
        self.runtime = build_runtime(cm.load(), config_manager=cm)
        self.client = TestClient(create_app(self.runtime))
        self.client.__enter__()
        self.addCleanup(self.client.__exit__, None, None, None)

        self.uploaded = document_uploaded("doc-A", "a.pdf", "application/pdf", 10, uploaded_by="alice@example.com")
        self.validated = document_validated("doc-A", "PASSED", "validator")
        self.enriched = document_enriched("doc-A", "invoice")
        self.rejected = document_rejected("doc-B", "File too large", "max-size")
        for ev in (self.uploaded, self.validated, self.enriched, self.rejected):
            self.deliver(ev)

    def deliver(self, envelope):
        msg = encode_envelope(envelope)
        for pool in self.runtime.pools:
            pool.processor.process(msg)

    def get(self, path, **kwargs):
        return self.client.get(f"/v1{path}", headers=AUTH, **kwargs)

    def test_health_is_public(self):
        r = self.client.get("/v1/health")
        self.assertEqual(r.status_code, 200)
        data = r.json()["data"]
        self.assertEqual(data["service"], "docflow")
        self.assertEqual(data["consumers"], {"audit": "up", "notification": "up"})

    def test_auth_required(self):
        r = self.client.get("/v1/audit/stats")
        self.assertEqual(r.status_code, 401)
        self.assertEqual(r.json()["code"], "UNAUTHORIZED")
        r = self.client.get("/v1/audit/stats", headers={"Authorization": "Bearer wrong"})
        self.assertEqual(r.status_code, 401)

    def test_timeline(self):
        r = self.get("/audit/timeline/doc-A")
        self.assertEqual(r.status_code, 200)
        body = r.json()
        self.assertEqual(body["status"], "ok")
        self.assertTrue(body["trace_id"])
        self.assertEqual(
            body["data"],
            {
                "aggregate_id": "doc-A",
                "ordered_event_descriptions": [
                    "DocumentUploaded (documentName=a.pdf)",
                    "DocumentValidated (validatedBy=validator)",
                    "DocumentEnriched (classification=invoice)",
                ],
                "event_count": 3,
            },
        )

    def test_timeline_unchanged_by_redelivery(self):
        self.deliver(self.validated)
        self.assertEqual(self.get("/audit/timeline/doc-A").json()["data"]["event_count"], 3)

    def test_timeline_unknown_aggregate_is_empty(self):
        data = self.get("/audit/timeline/nope").json()["data"]
        self.assertEqual(data["event_count"], 0)
        self.assertEqual(data["ordered_event_descriptions"], [])

    def test_audit_event_lookup(self):
        r = self.get(f"/audit/events/{self.enriched.event_id}")
        self.assertEqual(r.status_code, 200)
        data = r.json()["data"]
        self.assertEqual(data["event_type"], "DocumentEnriched")
        self.assertEqual(data["payload"]["classification"], "invoice")
        self.assertEqual(data["routing_key"], "document.enriched")

        r = self.get("/audit/events/missing")
        self.assertEqual(r.status_code, 404)
        self.assertEqual(r.json()["code"], "NOT_FOUND")

    def test_audit_by_aggregate_and_type(self):
        data = self.get("/audit", params={"aggregate_id": "doc-A"}).json()["data"]
        self.assertEqual(data["count"], 3)
        self.assertEqual(data["items"][0]["event_id"], self.uploaded.event_id)

        data = self.get("/audit/events/type/DocumentRejected").json()["data"]
        self.assertEqual([i["aggregate_id"] for i in data["items"]], ["doc-B"])
        # routing key form is accepted too
        data = self.get("/audit/events/type/document.rejected").json()["data"]
        self.assertEqual(data["count"], 1)

        r = self.get("/audit/events/type/DocumentDeleted")
        self.assertEqual(r.status_code, 400)
        self.assertEqual(r.json()["code"], "INVALID_ARGUMENT")

    def test_audit_stats(self):
        data = self.get("/audit/stats").json()["data"]
        self.assertEqual(data["total_events"], 4)
        self.assertEqual(data["by_event_type"]["DocumentUploaded"], 1)

    def test_notification_history(self):
        data = self.get("/notifications", params={"aggregate_id": "doc-A"}).json()["data"]
        # Uploaded does not notify; Validated + Enriched do
        self.assertEqual(data["count"], 2)
        self.assertEqual({i["event_type"] for i in data["items"]}, {"DocumentValidated", "DocumentEnriched"})

        data = self.get("/notifications", params={"recipient": "user@example.com"}).json()["data"]
        self.assertEqual(data["count"], 3)

        self.assertEqual(self.get("/notifications").status_code, 400)
        self.assertEqual(self.get("/notifications", params={"aggregate_id": "a", "recipient": "b"}).status_code, 400)

    def test_notification_exists_and_stats(self):
        data = self.get(f"/notifications/events/{self.rejected.event_id}").json()["data"]
        self.assertTrue(data["notified"])
        data = self.get(f"/notifications/events/{self.uploaded.event_id}").json()["data"]
        self.assertFalse(data["notified"])

        self.deliver(self.validated)
        data = self.get("/notifications/stats/DocumentValidated").json()["data"]
        self.assertEqual(data, {"event_type": "DocumentValidated", "count": 1})


if __name__ == "__main__":
    unittest.main(verbosity=2)
