"""Timezone and observation-clock helpers."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

_TICK = timedelta(microseconds=1)


class Time:
    """Static helpers for datetime normalization."""

    @staticmethod
    def now() -> datetime:
        """Timezone-aware UTC now."""
        return datetime.now(timezone.utc)

    @staticmethod
    def ensure_utc(dt: datetime) -> datetime:
        """Ensure a datetime is UTC-aware. SQLite and host agents may omit tzinfo."""
        if dt.tzinfo is None:
            return dt.replace(tzinfo=timezone.utc)
        return dt

    @staticmethod
    def after(previous: datetime | None) -> datetime:
        """Now, or one tick past ``previous`` if the clock has not moved beyond it.

        Locally generated observations must sort strictly after the stored one.
        """
        now = Time.now()
        if previous is None:
            return now
        previous = Time.ensure_utc(previous)
        return now if now > previous else previous + _TICK

    @staticmethod
    def format_uptime(seconds: float | None) -> str | None:
        """Compact uptime: whole days when at least one, else whole hours."""
        if seconds is None:
            return None
        total = int(seconds)
        days = total // 86400
        if days > 0:
            return f"{days}d"
        return f"{(total % 86400) // 3600}h"
