from __future__ import annotations

from datetime import UTC, date, datetime, timedelta


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def now_seconds() -> float:
    return utc_now().timestamp()


def parse_timestamp_seconds(value: str) -> float | None:
    """Parse an ISO date or datetime string to epoch seconds; naive values are UTC."""
    normalized = value.strip()
    if normalized == "":
        return None
    try:
        parsed = datetime.fromisoformat(normalized.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.timestamp()


def history_window(interval: str, today: date) -> tuple[date, date]:
    # intraday codes carry a minute or hour suffix
    if "m" in interval or "h" in interval:
        return today - timedelta(days=30), today
    try:
        start = today.replace(year=today.year - 2)
    except ValueError:
        start = today.replace(year=today.year - 2, day=28)
    return start, today
