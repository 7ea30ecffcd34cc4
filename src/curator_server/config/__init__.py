"""Configuration package — re-exports for convenience."""

from curator_server.config.loader import ConfigLoader
from curator_server.config.settings import Settings

__all__ = ["ConfigLoader", "Settings"]
