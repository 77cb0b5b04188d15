from __future__ import annotations

import json
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Literal, Optional

from pydantic import BaseModel, Field, ValidationError

from ..common.logger import get_logger

logger = get_logger(__name__)


class ConsumerConfig(BaseModel):
    """One consumer service: its own database and worker pool."""

    db_path: str
    concurrency: int = Field(default=4, ge=1)
    processing_deadline_s: float = Field(default=30.0, gt=0)


class TransportConfig(BaseModel):
    max_delivery_attempts: int = Field(default=5, ge=1)
    initial_backoff_s: float = Field(default=1.0, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1)
    max_backoff_s: float = Field(default=10.0, ge=0)


class ChannelConfig(BaseModel):
    """Notification channel.

    Notes:
    - "log" simulates e-mail by logging (no external dependency)
    - "webhook" POSTs JSON to webhook_url
    """

    mode: Literal["log", "webhook"] = "log"
    default_recipient: str = "user@example.com"
    webhook_url: Optional[str] = None
    webhook_token: Optional[str] = None
    timeout_s: float = 10.0
    max_attempts: int = Field(default=3, ge=1)


class LoggingConfig(BaseModel):
    level: str = "INFO"
    format: Literal["json", "console"] = "json"


class ServiceConfig(BaseModel):
    """Runtime configuration loaded from file + env overrides."""

    audit: ConsumerConfig = Field(default_factory=lambda: ConsumerConfig(db_path="data/audit.db"))
    notification: ConsumerConfig = Field(default_factory=lambda: ConsumerConfig(db_path="data/notification.db"))
    transport: TransportConfig = Field(default_factory=TransportConfig)
    channel: ChannelConfig = Field(default_factory=ChannelConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


# env var -> (section, key, parser)
_ENV_OVERRIDES: dict[str, tuple[str, str, Callable[[str], Any]]] = {
    "DOCFLOW_AUDIT_DB_PATH": ("audit", "db_path", str),
    "DOCFLOW_AUDIT_CONCURRENCY": ("audit", "concurrency", int),
    "DOCFLOW_AUDIT_DEADLINE_S": ("audit", "processing_deadline_s", float),
    "DOCFLOW_NOTIFICATION_DB_PATH": ("notification", "db_path", str),
    "DOCFLOW_NOTIFICATION_CONCURRENCY": ("notification", "concurrency", int),
    "DOCFLOW_NOTIFICATION_DEADLINE_S": ("notification", "processing_deadline_s", float),
    "DOCFLOW_MAX_DELIVERY_ATTEMPTS": ("transport", "max_delivery_attempts", int),
    "DOCFLOW_INITIAL_BACKOFF_S": ("transport", "initial_backoff_s", float),
    "DOCFLOW_MAX_BACKOFF_S": ("transport", "max_backoff_s", float),
    "DOCFLOW_CHANNEL_MODE": ("channel", "mode", lambda v: v.strip().lower()),
    "DOCFLOW_DEFAULT_RECIPIENT": ("channel", "default_recipient", str),
    "DOCFLOW_WEBHOOK_URL": ("channel", "webhook_url", str),
    "DOCFLOW_WEBHOOK_TOKEN": ("channel", "webhook_token", str),
    "DOCFLOW_WEBHOOK_TIMEOUT_S": ("channel", "timeout_s", float),
    "DOCFLOW_WEBHOOK_MAX_ATTEMPTS": ("channel", "max_attempts", int),
    "DOCFLOW_LOG_LEVEL": ("logging", "level", lambda v: v.strip().upper()),
    "DOCFLOW_LOG_FORMAT": ("logging", "format", lambda v: v.strip().lower()),
}


class ConfigManager:
    """Load configuration from JSON file with environment overrides.

    - default < config file < environment variables
    - self-healing:
        * if config file is missing: write a default config (best-effort)
        * if config file is corrupted: backup the bad file then write a default config
    - a bad env value is ignored (logged), never fatal
    """

    def __init__(self, repo_root: Optional[Path] = None) -> None:
        self.repo_root = repo_root or Path(__file__).resolve().parents[2]
        self.default_path = self.repo_root / "config" / "docflow.json"

    def _default_data(self) -> dict:
        return ServiceConfig().model_dump()

    def _write_default(self, cfg_path: Path) -> None:
        cfg_path.parent.mkdir(parents=True, exist_ok=True)
        cfg_path.write_text(
            json.dumps(self._default_data(), indent=2, ensure_ascii=False),
            encoding="utf-8",
        )

    def _heal(self, cfg_path: Path, *, corrupted: bool) -> dict:
        try:
            if corrupted:
                ts = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
                cfg_path.replace(cfg_path.with_suffix(cfg_path.suffix + f".bad-{ts}"))
            self._write_default(cfg_path)
        except OSError as e:
            logger.warning("config_heal_failed", path=str(cfg_path), error=str(e))
        return self._default_data()

    def resolve_path(self) -> Path:
        cfg_path = Path(os.getenv("DOCFLOW_CONFIG_PATH", str(self.default_path)))
        if not cfg_path.is_absolute():
            # interpret relative paths from repo root (not process CWD)
            cfg_path = self.repo_root / cfg_path
        return cfg_path

    def load(self) -> ServiceConfig:
        cfg_path = self.resolve_path()

        if cfg_path.exists():
            try:
                data = json.loads(cfg_path.read_text(encoding="utf-8"))
                if not isinstance(data, dict):
                    raise ValueError("config root must be an object")
            except ValueError:
                logger.warning("config_corrupted", path=str(cfg_path))
                data = self._heal(cfg_path, corrupted=True)
        else:
            data = self._heal(cfg_path, corrupted=False)

        for env_name, (section, key, parse) in _ENV_OVERRIDES.items():
            raw = os.getenv(env_name)
            if raw is None or raw.strip() == "":
                continue
            try:
                value = parse(raw)
            except ValueError:
                logger.warning("config_env_ignored", env=env_name, value=raw)
                continue
            if not isinstance(data.get(section), dict):
                data[section] = self._default_data()[section]
            data[section][key] = value

        try:
            return ServiceConfig.model_validate(data)
        except ValidationError as e:
            logger.warning("config_invalid_using_defaults", error=str(e))
            return ServiceConfig()

    def resolve_db_path(self, db_path: str) -> Path:
        p = Path(db_path)
        if not p.is_absolute():
            p = self.repo_root / p
        p.parent.mkdir(parents=True, exist_ok=True)
        return p
