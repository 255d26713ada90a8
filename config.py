import json
import logging
import os
from dataclasses import asdict, dataclass, field
from typing import Optional

DATA_PATH = os.path.expanduser("~/.usage-monitor")
CONFIG_FILE = "config.json"
SETTINGS_FILE = "settings.json"

logger = logging.getLogger(__name__)


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() not in {"0", "false", "no", "off"}


@dataclass
class MonitorConfig:
    data_path: str = DATA_PATH
    log_level: str = "INFO"
    api_host: str = "127.0.0.1"
    api_port: int = 19532
    api_token: Optional[str] = None
    autostart: bool = True

    @property
    def db_path(self) -> str:
        return os.path.join(self.data_path, "usage_monitor.db")

    @property
    def settings_path(self) -> str:
        return os.path.join(self.data_path, SETTINGS_FILE)


def load_config() -> MonitorConfig:
    """
    Load process configuration. Priority:
    1. environment variables (USAGE_MONITOR_*)
    2. <data_path>/config.json overrides
    3. dataclass defaults
    """
    data_path = os.getenv("USAGE_MONITOR_DATA_PATH", DATA_PATH)
    config_path = os.path.join(data_path, CONFIG_FILE)

    overrides: dict = {}
    if os.path.exists(config_path):
        with open(config_path) as f:
            overrides = json.load(f)

    return MonitorConfig(
        data_path=data_path,
        log_level=os.getenv(
            "USAGE_MONITOR_LOG_LEVEL", overrides.get("log_level", MonitorConfig.log_level)
        ),
        api_host=overrides.get("api_host", MonitorConfig.api_host),
        api_port=int(overrides.get("api_port", MonitorConfig.api_port)),
        api_token=os.getenv("USAGE_MONITOR_API_TOKEN", overrides.get("api_token")),
        autostart=_env_flag("USAGE_MONITOR_AUTOSTART", overrides.get("autostart", True)),
    )


# ── user settings ────────────────────────────────────────────


@dataclass
class NotificationSettings:
    enabled: bool = True
    thresholds: list[int] = field(default_factory=lambda: [50, 75, 90])
    notify_on_reset: bool = True
    notify_on_expiry: bool = True
    dnd_enabled: bool = False
    dnd_start_time: Optional[str] = "22:00"   # "HH:MM" local time
    dnd_end_time: Optional[str] = "08:00"


@dataclass
class Settings:
    refresh_mode: str = "adaptive"            # 'adaptive' | 'fixed'
    refresh_interval: int = 300
    notifications: NotificationSettings = field(default_factory=NotificationSettings)
    providers: dict[str, bool] = field(default_factory=lambda: {"claude": True})

    def provider_enabled(self, provider_id: str) -> bool:
        return bool(self.providers.get(provider_id, False))

    def to_dict(self) -> dict:
        return asdict(self)


def _normalize_thresholds(values) -> list[int]:
    return sorted({int(v) for v in values})


def settings_from_dict(raw: dict) -> Settings:
    defaults = Settings()
    notif_raw = raw.get("notifications", {}) or {}
    notif_defaults = NotificationSettings()
    notifications = NotificationSettings(
        enabled=notif_raw.get("enabled", notif_defaults.enabled),
        thresholds=_normalize_thresholds(notif_raw.get("thresholds", notif_defaults.thresholds)),
        notify_on_reset=notif_raw.get("notify_on_reset", notif_defaults.notify_on_reset),
        notify_on_expiry=notif_raw.get("notify_on_expiry", notif_defaults.notify_on_expiry),
        dnd_enabled=notif_raw.get("dnd_enabled", notif_defaults.dnd_enabled),
        dnd_start_time=notif_raw.get("dnd_start_time", notif_defaults.dnd_start_time),
        dnd_end_time=notif_raw.get("dnd_end_time", notif_defaults.dnd_end_time),
    )
    return Settings(
        refresh_mode=raw.get("refresh_mode", defaults.refresh_mode),
        refresh_interval=int(raw.get("refresh_interval", defaults.refresh_interval)),
        notifications=notifications,
        providers=dict(raw.get("providers", defaults.providers)),
    )


class SettingsStore:
    """JSON-file backed settings; falls back to defaults on a missing or bad file."""

    def __init__(self, path: str):
        self.path = path

    def get(self) -> Settings:
        if not os.path.exists(self.path):
            return Settings()
        try:
            with open(self.path) as f:
                raw = json.load(f)
            if not isinstance(raw, dict):
                raise ValueError(f"expected a JSON object, got {type(raw).__name__}")
            return settings_from_dict(raw)
        except (OSError, ValueError, TypeError, AttributeError) as e:
            logger.warning("Failed to read settings from %s: %s", self.path, e)
            return Settings()

    def save(self, settings: Settings):
        os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
        with open(self.path, "w") as f:
            json.dump(settings.to_dict(), f, indent=2, ensure_ascii=False)

    def update(self, payload: dict) -> Settings:
        merged = self.get().to_dict()
        for key in ("refresh_mode", "refresh_interval", "providers"):
            if key in payload:
                merged[key] = payload[key]
        if "notifications" in payload:
            merged["notifications"].update(payload["notifications"] or {})
        settings = settings_from_dict(merged)
        self.save(settings)
        return settings
