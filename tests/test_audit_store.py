# -*- coding: utf-8 -*-
import unittest

from _support import temp_store

from docflow.storage.audit import AUDIT_SCHEMA, AuditRecord, AuditTrailStore, describe


def record(event_id, event_type, received_at, *, aggregate_id="doc-A", timestamp=None, **payload):
    return AuditRecord(
        event_id=event_id,
        event_type=event_type,
        aggregate_id=aggregate_id,
        timestamp=timestamp or received_at,
        received_at=received_at,
        payload=payload,
    )


class TestDescribe(unittest.TestCase):
    def test_descriptions(self):
        self.assertEqual(
            describe(record("e", "DocumentEnriched", "t", classification="invoice")),
            "DocumentEnriched (classification=invoice)",
        )
        self.assertEqual(
            describe(record("e", "DocumentUploaded", "t", documentName="a.pdf")),
            "DocumentUploaded (documentName=a.pdf)",
        )
        self.assertEqual(
            describe(record("e", "DocumentRejected", "t", rejectionReason="too large")),
            "DocumentRejected (reason=too large)",
        )
        self.assertEqual(describe(record("e", "DocumentValidated", "t")), "DocumentValidated")


class TestAuditTrailStore(unittest.TestCase):
    def setUp(self):
        self.audit = AuditTrailStore(temp_store(self, AUDIT_SCHEMA, "audit.db"))

    def test_timeline_in_receipt_order(self):
        # 事件时间戳乱序，但时间线按接收顺序
        self.audit.append(record("e1", "DocumentUploaded", "2024-05-01T10:00:00.000001Z",
                                 timestamp="2024-05-01T10:00:05.000000Z", documentName="a.pdf"))
        self.audit.append(record("e2", "DocumentValidated", "2024-05-01T10:00:00.000002Z",
                                 timestamp="2024-05-01T10:00:01.000000Z"))
        self.audit.append(record("e3", "DocumentEnriched", "2024-05-01T10:00:00.000003Z",
                                 classification="invoice"))
        self.audit.append(record("other", "DocumentUploaded", "2024-05-01T10:00:00.000004Z", aggregate_id="doc-B"))

        self.assertEqual(
            self.audit.timeline_for("doc-A"),
            [
                "DocumentUploaded (documentName=a.pdf)",
                "DocumentValidated",
                "DocumentEnriched (classification=invoice)",
            ],
        )
        self.assertEqual(self.audit.count_for("doc-A"), 3)
        self.assertEqual([r.event_id for r in self.audit.records_for("doc-A")], ["e1", "e2", "e3"])

    def test_same_received_at_falls_back_to_insert_order(self):
        ts = "2024-05-01T10:00:00.000000Z"
        for i in range(5):
            self.audit.append(record(f"e{i}", "DocumentUploaded", ts, timestamp=ts))
        self.assertEqual([r.event_id for r in self.audit.records_for("doc-A")], [f"e{i}" for i in range(5)])

    def test_same_received_at_ordered_by_timestamp(self):
        received = "2024-05-01T10:00:00.000000Z"
        self.audit.append(record("late", "DocumentEnriched", received, timestamp="2024-05-01T09:00:03.000000Z"))
        self.audit.append(record("middle", "DocumentValidated", received, timestamp="2024-05-01T09:00:02.000000Z"))
        self.audit.append(record("early", "DocumentUploaded", received, timestamp="2024-05-01T09:00:01.000000Z"))

        self.assertEqual([r.event_id for r in self.audit.records_for("doc-A")], ["early", "middle", "late"])

    def test_append_is_idempotent(self):
        r = record("e1", "DocumentUploaded", "2024-05-01T10:00:00.000000Z")
        self.assertTrue(self.audit.append(r))
        self.assertFalse(self.audit.append(r))
        self.assertEqual(self.audit.count_for("doc-A"), 1)

    def test_timeline_grows_monotonically(self):
        lengths = []
        for i in range(4):
            self.audit.append(record(f"e{i}", "DocumentValidated", f"2024-05-01T10:00:0{i}.000000Z"))
            lengths.append(len(self.audit.timeline_for("doc-A")))
        self.assertEqual(lengths, [1, 2, 3, 4])

    def test_unknown_aggregate(self):
        self.assertEqual(self.audit.timeline_for("missing"), [])
        self.assertEqual(self.audit.count_for("missing"), 0)
        self.assertIsNone(self.audit.lookup("missing"))

    def test_lookup_round_trips_fields(self):
        r = AuditRecord(
            event_id="e1",
            event_type="DocumentEnriched",
            aggregate_id="doc-A",
            timestamp="2024-05-01T09:00:00.000000Z",
            received_at="2024-05-01T10:00:00.000000Z",
            payload={"classification": "invoice", "extractedMetadata": {"vendor": "ACME"}},
            routing_key="document.enriched",
            message_id="m-1",
            correlation_id="c-1",
        )
        self.audit.append(r)
        self.assertEqual(self.audit.lookup("e1"), r)

    def test_by_type_and_stats(self):
        self.audit.append(record("e1", "DocumentUploaded", "2024-05-01T10:00:01.000000Z"))
        self.audit.append(record("e2", "DocumentUploaded", "2024-05-01T10:00:02.000000Z", aggregate_id="doc-B"))
        self.audit.append(record("e3", "DocumentRejected", "2024-05-01T10:00:03.000000Z"))

        self.assertEqual(self.audit.count_by_type("DocumentUploaded"), 2)
        self.assertEqual([r.event_id for r in self.audit.list_by_type("DocumentUploaded")], ["e2", "e1"])
        self.assertEqual(len(self.audit.list_by_type("DocumentUploaded", limit=1)), 1)
        self.assertEqual(
            self.audit.stats(),
            {"total_events": 3, "by_event_type": {"DocumentUploaded": 2, "DocumentRejected": 1}},
        )


if __name__ == "__main__":
    unittest.main(verbosity=2)
