"""
Configuration loader for the IVR relay.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./ivr_relay.db"              # postgresql:// | sqlite://
    store_backend: str = "memory"                      # "sql" | "memory"


@dataclass
class TelephonyConfig:
    auth_token: str = ""                               # used for X-Twilio-Signature checks
    public_base_url: str = "http://localhost:8000"     # base for <Gather action=...>
    validate_signatures: bool = False
    finish_on_key: str = "#"
    error_message: str = "We encountered an error. The call will now end. Goodbye."


@dataclass
class ChatConfig:
    bot_token: str = ""
    api_base_url: str = "https://api.telegram.org"
    timeout_s: float = 5.0
    parse_mode: str = ""                               # "" | "HTML" | "MarkdownV2"


@dataclass
class NotificationConfig:
    enabled: bool = True
    poll_interval_s: float = 3.0
    batch_size: int = 50
    max_retries: int = 3
    pacing_ms: int = 200                # delay between sends on one call thread
    dedup_ttl_s: float = 3600.0
    retention_days: int = 30            # call_states and metrics
    sent_retention_days: int = 7        # delivered notifications
    cleanup_interval_s: int = 1800


@dataclass
class Settings:
    app_name: str = "IvrRelay"
    debug: bool = False
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    telephony: TelephonyConfig = field(default_factory=TelephonyConfig)
    chat: ChatConfig = field(default_factory=ChatConfig)
    notifications: NotificationConfig = field(default_factory=NotificationConfig)
    scenarios: list[dict[str, Any]] = field(default_factory=list)


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values (unset → "")."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, "")
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def _as_bool(value: Any) -> bool:
    # env-substituted values arrive as strings
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "IVR_RELAY_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = _as_bool(raw.get("debug", settings.debug))

        if "database" in raw:
            db = raw["database"] or {}
            settings.database = DatabaseConfig(
                url=db.get("url", settings.database.url),
                store_backend=db.get("store_backend", settings.database.store_backend),
            )

        if "telephony" in raw:
            tel = raw["telephony"] or {}
            defaults = TelephonyConfig()
            settings.telephony = TelephonyConfig(
                auth_token=tel.get("auth_token", ""),
                public_base_url=tel.get("public_base_url", defaults.public_base_url).rstrip("/"),
                validate_signatures=_as_bool(tel.get("validate_signatures", False)),
                finish_on_key=tel.get("finish_on_key", defaults.finish_on_key),
                error_message=tel.get("error_message", defaults.error_message),
            )

        if "chat" in raw:
            ch = raw["chat"] or {}
            defaults = ChatConfig()
            settings.chat = ChatConfig(
                bot_token=ch.get("bot_token", ""),
                api_base_url=ch.get("api_base_url", defaults.api_base_url).rstrip("/"),
                timeout_s=float(ch.get("timeout_s", defaults.timeout_s)),
                parse_mode=ch.get("parse_mode", ""),
            )

        if "notifications" in raw:
            n = raw["notifications"] or {}
            defaults = NotificationConfig()
            settings.notifications = NotificationConfig(
                enabled=_as_bool(n.get("enabled", True)),
                poll_interval_s=float(n.get("poll_interval_s", defaults.poll_interval_s)),
                batch_size=int(n.get("batch_size", defaults.batch_size)),
                max_retries=int(n.get("max_retries", defaults.max_retries)),
                pacing_ms=int(n.get("pacing_ms", defaults.pacing_ms)),
                dedup_ttl_s=float(n.get("dedup_ttl_s", defaults.dedup_ttl_s)),
                retention_days=int(n.get("retention_days", defaults.retention_days)),
                sent_retention_days=int(n.get("sent_retention_days", defaults.sent_retention_days)),
                cleanup_interval_s=int(n.get("cleanup_interval_s", defaults.cleanup_interval_s)),
            )

        settings.scenarios = raw.get("scenarios", []) or []

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
