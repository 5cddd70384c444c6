import logging
import os
from pathlib import Path
from threading import RLock
from typing import Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger("apiproxy")
SETTINGS_PATH = Path(os.getenv("APIPROXY_CONFIG_PATH", "/etc/apiproxy/config.yaml"))

# Request body size limit (DoS mitigation)
DEFAULT_MAX_BODY_BYTES = 1 * 1024 * 1024   # 1 MiB

_lock = RLock()
_settings_cache: Optional["Settings"] = None
_settings_loaded = False


class Settings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    max_body_bytes: int = Field(default=DEFAULT_MAX_BODY_BYTES, gt=0)
    """Largest inbound POST body accepted before answering 413."""


def load_settings_from_file(path: Path = SETTINGS_PATH) -> Settings:
    if not path.exists():
        return Settings()
    with path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    return Settings.model_validate(data)


def set_settings(settings: Settings) -> None:
    global _settings_cache, _settings_loaded
    with _lock:
        _settings_cache = settings
        _settings_loaded = True


def get_settings() -> Settings:
    with _lock:
        if _settings_cache is None:
            set_settings(load_settings_from_file())
        return _settings_cache


def reload_settings() -> Settings:
    settings = load_settings_from_file()
    set_settings(settings)
    logger.info("Settings loaded from %s", SETTINGS_PATH if SETTINGS_PATH.exists() else "defaults")
    return settings


def settings_loaded() -> bool:
    with _lock:
        return _settings_loaded
