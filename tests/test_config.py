# -*- coding: utf-8 -*-
import json
import os
import unittest
from unittest import mock

from _support import temp_dir

from docflow.capabilities.log_channel import LogNotificationChannel
from docflow.core.config import ConfigManager, ServiceConfig
from docflow.core.runtime import build_channel
from docflow.modules.webhook_channel import WebhookNotificationChannel


class TestConfigManager(unittest.TestCase):
    def setUp(self):
        # 清掉可能影响结果的环境变量
        clean = {k: v for k, v in os.environ.items() if not k.startswith("DOCFLOW_")}
        env = mock.patch.dict(os.environ, clean, clear=True)
        env.start()
        self.addCleanup(env.stop)
        self.root = temp_dir(self)
        self.cm = ConfigManager(repo_root=self.root)

    def test_missing_file_is_written_with_defaults(self):
        cfg = self.cm.load()
        self.assertEqual(cfg, ServiceConfig())
        self.assertEqual(cfg.audit.db_path, "data/audit.db")
        self.assertEqual(cfg.transport.max_delivery_attempts, 5)
        written = json.loads((self.root / "config" / "docflow.json").read_text(encoding="utf-8"))
        self.assertEqual(written["channel"]["mode"], "log")

    def test_file_values_are_used(self):
        path = self.root / "config" / "docflow.json"
        path.parent.mkdir(parents=True)
        path.write_text(json.dumps({"audit": {"db_path": "x/audit.db", "concurrency": 8}}), encoding="utf-8")

        cfg = self.cm.load()
        self.assertEqual(cfg.audit.db_path, "x/audit.db")
        self.assertEqual(cfg.audit.concurrency, 8)
        self.assertEqual(cfg.notification.db_path, "data/notification.db")

    def test_corrupted_file_is_backed_up(self):
        path = self.root / "config" / "docflow.json"
        path.parent.mkdir(parents=True)
        path.write_text("{broken", encoding="utf-8")

        cfg = self.cm.load()
        self.assertEqual(cfg, ServiceConfig())
        backups = list(path.parent.glob("docflow.json.bad-*"))
        self.assertEqual(len(backups), 1)
        self.assertEqual(backups[0].read_text(encoding="utf-8"), "{broken")
        json.loads(path.read_text(encoding="utf-8"))

    def test_env_overrides_file(self):
        with mock.patch.dict(
            os.environ,
            {
                "DOCFLOW_AUDIT_CONCURRENCY": "2",
                "DOCFLOW_MAX_DELIVERY_ATTEMPTS": "7",
                "DOCFLOW_CHANNEL_MODE": " WEBHOOK ",
                "DOCFLOW_WEBHOOK_URL": "http://hooks.local/notify",
                "DOCFLOW_LOG_FORMAT": "console",
            },
        ):
            cfg = self.cm.load()
        self.assertEqual(cfg.audit.concurrency, 2)
        self.assertEqual(cfg.transport.max_delivery_attempts, 7)
        self.assertEqual(cfg.channel.mode, "webhook")
        self.assertEqual(cfg.channel.webhook_url, "http://hooks.local/notify")
        self.assertEqual(cfg.logging.format, "console")

    def test_bad_env_value_is_ignored(self):
        with mock.patch.dict(os.environ, {"DOCFLOW_AUDIT_CONCURRENCY": "many"}):
            cfg = self.cm.load()
        self.assertEqual(cfg.audit.concurrency, 4)

    def test_invalid_values_fall_back_to_defaults(self):
        with mock.patch.dict(os.environ, {"DOCFLOW_AUDIT_CONCURRENCY": "0"}):
            cfg = self.cm.load()
        self.assertEqual(cfg, ServiceConfig())

    def test_config_path_override_relative_to_root(self):
        with mock.patch.dict(os.environ, {"DOCFLOW_CONFIG_PATH": "etc/custom.json"}):
            self.assertEqual(self.cm.resolve_path(), self.root / "etc" / "custom.json")
            self.cm.load()
        self.assertTrue((self.root / "etc" / "custom.json").exists())

    def test_resolve_db_path_creates_parent(self):
        p = self.cm.resolve_db_path("data/sub/audit.db")
        self.assertEqual(p, self.root / "data" / "sub" / "audit.db")
        self.assertTrue(p.parent.is_dir())


class TestBuildChannel(unittest.TestCase):
    def test_log_by_default(self):
        self.assertIsInstance(build_channel(ServiceConfig()), LogNotificationChannel)

    def test_webhook_without_url_falls_back(self):
        cfg = ServiceConfig.model_validate({"channel": {"mode": "webhook"}})
        self.assertIsInstance(build_channel(cfg), LogNotificationChannel)

    def test_webhook(self):
        cfg = ServiceConfig.model_validate({"channel": {"mode": "webhook", "webhook_url": "http://hooks.local"}})
        channel = build_channel(cfg)
        self.addCleanup(channel.close)
        self.assertIsInstance(channel, WebhookNotificationChannel)
        self.assertEqual(channel.name, "WEBHOOK")


if __name__ == "__main__":
    unittest.main(verbosity=2)
