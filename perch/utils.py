"""Shared formatting helpers."""

from __future__ import annotations

from datetime import datetime, timedelta


def format_duration(delta: timedelta) -> str:
    """Compact duration: '45s', '12m', '2h', '2h15m', '3d'."""
    secs = max(0, int(delta.total_seconds()))
    if secs < 60:
        return f"{secs}s"
    if secs < 3600:
        return f"{secs // 60}m"
    if secs < 86400:
        hours, mins = secs // 3600, (secs % 3600) // 60
        return f"{hours}h" if mins == 0 else f"{hours}h{mins}m"
    return f"{secs // 86400}d"


def clock(dt: datetime | None, with_seconds: bool = False) -> str:
    """Local wall-clock time of an aware datetime, or 'never'."""
    if dt is None:
        return "never"
    return dt.astimezone().strftime("%H:%M:%S" if with_seconds else "%H:%M")


def truncate(text: str, width: int) -> str:
    if width <= 0:
        return ""
    if len(text) <= width:
        return text
    if width <= 3:
        return text[:width]
    return text[: width - 3] + "..."
