"""Process-wide logging setup."""

from __future__ import annotations

import logging
import sys

_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"


class LogConfig:
    """Configure the root logger once at startup. All methods are static."""

    @staticmethod
    def configure(level: str | int = "INFO") -> None:
        """Install a single stderr handler on the root logger.

        Calling again replaces the handler instead of stacking another one.
        """
        root = logging.getLogger()
        for handler in list(root.handlers):
            if getattr(handler, "_curator", False):
                root.removeHandler(handler)
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(_FORMAT))
        handler._curator = True  # type: ignore[attr-defined]
        root.addHandler(handler)
        root.setLevel(LogConfig.to_level(level))

    @staticmethod
    def to_level(level: str | int) -> int:
        """Map a level name or number to a logging level, defaulting to INFO."""
        if isinstance(level, int):
            return level
        resolved = logging.getLevelName(level.strip().upper())
        return resolved if isinstance(resolved, int) else logging.INFO
