"""
Configuration -- ``<home>/config/config.yaml``.

Missing or broken config never stops SaveKeep: it logs a warning and
falls back to defaults, the same way session and sync state do.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger("savekeep.config")

CONFIG_RELPATH = Path("config") / "config.yaml"


class SaveKeepConfig(BaseModel):
    """Persistent configuration for a SaveKeep home."""

    base_url: str = "http://localhost:8080/"
    request_timeout: float = Field(default=15.0, gt=0)
    archive_grace_seconds: float = Field(default=2.75, ge=0)
    store_backend: Literal["json", "memory"] = "json"
    log_level: str = "WARNING"

    @field_validator("base_url")
    @classmethod
    def _check_base_url(cls, value: str) -> str:
        value = value.strip()
        if not value.startswith(("http://", "https://")):
            raise ValueError("base_url must use http(s) protocol")
        if not value.endswith("/"):
            raise ValueError("base_url must end in a /")
        return value


def load_config(home: Path) -> SaveKeepConfig:
    """Load configuration from disk, or defaults.

    Args:
        home: SaveKeep home directory.
    """
    config_file = home / CONFIG_RELPATH
    if config_file.exists():
        try:
            data = yaml.safe_load(config_file.read_text(encoding="utf-8")) or {}
            return SaveKeepConfig(**data)
        except (yaml.YAMLError, ValueError, TypeError) as exc:
            logger.warning("Failed to load config: %s, using defaults", exc)
    return SaveKeepConfig()


def save_config(home: Path, config: SaveKeepConfig) -> Path:
    """Persist configuration to disk. Returns the file written."""
    config_file = home / CONFIG_RELPATH
    config_file.parent.mkdir(parents=True, exist_ok=True)
    config_file.write_text(
        yaml.dump(config.model_dump(mode="json"), default_flow_style=False),
        encoding="utf-8",
    )
    return config_file
