"""Formatting utilities for display and notification text."""
from datetime import datetime, timezone


def format_value(value, unit=""):
    """Format a metric value with its unit. Large byte counts are scaled."""
    if value is None:
        return "N/A"
    value = float(value)
    if unit == "bytes":
        for suffix, scale in (("GB", 1024 ** 3), ("MB", 1024 ** 2), ("KB", 1024)):
            if abs(value) >= scale:
                return f"{value / scale:,.2f} {suffix}"
        return f"{value:,.0f} B"
    if unit == "%":
        return f"{value:.2f}%"
    if value.is_integer():
        text = f"{value:,.0f}"
    else:
        text = f"{value:,.2f}"
    return f"{text} {unit}".strip()


def format_compact(n):
    """Format number compactly: 1200000 → '1.2M'."""
    if n is None:
        return "N/A"
    n = float(n)
    if abs(n) >= 1_000_000_000:
        return f"{n / 1_000_000_000:.1f}B"
    elif abs(n) >= 1_000_000:
        return f"{n / 1_000_000:.1f}M"
    elif abs(n) >= 1_000:
        return f"{n / 1_000:.1f}K"
    return str(int(n))


def format_duration(seconds):
    """600 → '10m', 5400 → '1h30m'."""
    if seconds is None:
        return "N/A"
    seconds = int(seconds)
    if seconds < 60:
        return f"{seconds}s"
    if seconds < 3600:
        return f"{seconds // 60}m"
    hours, rest = divmod(seconds, 3600)
    if hours < 24:
        return f"{hours}h{rest // 60}m" if rest >= 60 else f"{hours}h"
    return f"{hours // 24}d"


def format_severity(severity, with_color=False):
    sev = severity.value if hasattr(severity, "value") else str(severity)
    if not with_color:
        return sev.upper()
    color = {
        "emergency": "bold white on red",
        "critical": "bold red",
        "warning": "yellow",
        "info": "blue",
    }.get(sev, "white")
    return f"[{color}]{sev.upper()}[/{color}]"


def format_timestamp(ts):
    """Format a datetime to human-readable string."""
    if ts is None:
        return "N/A"
    if isinstance(ts, str):
        return ts
    return ts.strftime("%Y-%m-%d %H:%M:%S UTC")


def time_ago(dt, now=None):
    """Return human-readable time since dt. E.g., '3h ago', '2d ago'."""
    if dt is None:
        return "N/A"
    now = now or datetime.now(timezone.utc)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    seconds = int((now - dt).total_seconds())

    if seconds < 60:
        return f"{seconds}s ago"
    elif seconds < 3600:
        return f"{seconds // 60}m ago"
    elif seconds < 86400:
        return f"{seconds // 3600}h ago"
    else:
        return f"{seconds // 86400}d ago"
