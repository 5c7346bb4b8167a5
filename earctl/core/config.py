"""Runtime settings loaded from the user's XDG config directory."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from earctl.core.documents import load_validator, read_yaml, validate
from earctl.core.errors import ConfigError
from earctl.core.model import Category

DEFAULT_RFCOMM_CHANNEL = 1
DEFAULT_RESPONSE_TIMEOUT_S = 2.0
LOG_LEVEL_ENV = "EARCTL_LOG_LEVEL"
LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class Settings:
    default_channel: int = DEFAULT_RFCOMM_CHANNEL
    response_timeout_s: float = DEFAULT_RESPONSE_TIMEOUT_S
    category_timeouts: dict[Category, float] = field(default_factory=dict)
    retries: int = 1
    connect_timeout_s: float = 10.0
    discovery_timeout_s: float = 10.0
    log_level: str = "WARNING"

    def timeout_for(self, category: Category) -> float:
        return self.category_timeouts.get(category, self.response_timeout_s)


def config_path() -> Path:
    xdg_config = Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))
    return xdg_config / "earctl/config.yaml"


def _build_settings(doc: dict[str, Any]) -> Settings:
    settings = Settings()
    overrides: dict[str, Any] = {}
    for key in (
        "default_channel",
        "response_timeout_s",
        "retries",
        "connect_timeout_s",
        "discovery_timeout_s",
    ):
        if key in doc:
            overrides[key] = doc[key]
    if "log_level" in doc:
        overrides["log_level"] = str(doc["log_level"]).upper()
    if "category_timeouts" in doc:
        overrides["category_timeouts"] = {
            Category(name): float(value) for name, value in doc["category_timeouts"].items()
        }
    return replace(settings, **overrides)


def load_settings(path: Path | None = None) -> Settings:
    """Read settings from ``path`` (default ``$XDG_CONFIG_HOME/earctl/config.yaml``).

    A missing file yields defaults. ``EARCTL_LOG_LEVEL`` wins over the file.
    """
    source = path or config_path()
    settings = Settings()
    if source.is_file():
        doc = read_yaml(source, load_error=ConfigError, validation_error=ConfigError)
        validate(doc, load_validator("config.schema.json"), source, error=ConfigError)
        settings = _build_settings(doc)
        LOGGER.debug("Loaded settings from %s", source)

    env_level = os.environ.get(LOG_LEVEL_ENV)
    if env_level:
        settings = replace(settings, log_level=env_level.strip().upper())
    return settings
