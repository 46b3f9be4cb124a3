import os

import structlog
import yaml

from settings_schema import SettingsSchema, validate_settings

APP_VERSION = "1.0.0"
DB_ENV_VAR = "IRONINSIGHT_DB"

logger = structlog.get_logger(__name__)


class YamlConfig:
    """Load and save settings to a YAML file."""

    def __init__(self, path: str = "settings.yaml") -> None:
        self.path = path

    def load(self) -> dict:
        if not os.path.exists(self.path):
            return {}
        with open(self.path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"{self.path} must contain a mapping")
        return data

    def save(self, data: dict) -> None:
        validate_settings(data)
        with open(self.path, "w", encoding="utf-8") as f:
            yaml.safe_dump(dict(data), f)


def load_settings(path: str = "settings.yaml") -> SettingsSchema:
    """Return validated settings from ``path`` with environment overrides."""
    data = YamlConfig(path).load()
    db_override = os.environ.get(DB_ENV_VAR)
    if db_override:
        data["db_path"] = db_override
    settings = validate_settings(data)
    logger.debug("settings_loaded", path=path, db_path=settings.db_path)
    return settings
