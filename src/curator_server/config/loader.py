"""ConfigLoader — per-environment YAML layered under CURATOR_* variables."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import yaml

from curator_server.config.settings import ENV_PREFIX, Settings

logger = logging.getLogger(__name__)

_CONFIG_ROOT = Path(__file__).resolve().parent


class ConfigLoader:
    """Resolve the active environment's settings file and build Settings."""

    @staticmethod
    def config_path(env: str) -> Path:
        """Settings file for ``env``; CURATOR_CONFIG_FILE points elsewhere."""
        explicit = os.environ.get(f"{ENV_PREFIX}CONFIG_FILE")
        if explicit:
            return Path(explicit).expanduser()
        return _CONFIG_ROOT / env / "settings.yaml"

    @staticmethod
    def read_file(path: Path) -> dict[str, Any]:
        """Parse a YAML mapping of setting names. Missing files are empty."""
        if not path.is_file():
            return {}
        raw = yaml.safe_load(path.read_text()) or {}
        if not isinstance(raw, dict):
            logger.warning("Ignoring %s: top level is not a mapping", path)
            return {}
        values: dict[str, Any] = {}
        for key, value in raw.items():
            name = str(key).lower()
            if name not in Settings.model_fields:
                logger.warning("Ignoring unknown setting %r in %s", key, path)
                continue
            values[name] = value
        return values

    @staticmethod
    def load_settings(**overrides: Any) -> Settings:
        """Build Settings: overrides > CURATOR_* env vars > YAML > defaults.

        pydantic-settings ranks init kwargs above the environment, so any
        file value that also has an env var is left out of the kwargs.
        """
        env = os.environ.get(f"{ENV_PREFIX}ENV", "dev")
        from_file = {
            name: value
            for name, value in ConfigLoader.read_file(ConfigLoader.config_path(env)).items()
            if f"{ENV_PREFIX}{name.upper()}" not in os.environ
        }
        return Settings(**{**from_file, **overrides})
