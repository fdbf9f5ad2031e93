from __future__ import annotations

import re
from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo

_CYCLE_RE = re.compile(r"^(\d{4})-W(\d{2})$")


def cycle_for_date(day: date) -> str:
    iso_year, iso_week, _ = day.isocalendar()
    return f"{iso_year}-W{iso_week:02d}"


def current_cycle(now: datetime | None = None, tz: str = "UTC") -> str:
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return cycle_for_date(now.astimezone(ZoneInfo(tz)).date())


def parse_cycle(cycle: str) -> date:
    """Return the Monday that starts ``cycle``; raises ValueError when malformed."""
    m = _CYCLE_RE.match(cycle or "")
    if not m:
        raise ValueError(f"cycle must look like YYYY-Www, got {cycle!r}")
    year, week = int(m.group(1)), int(m.group(2))
    try:
        return date.fromisocalendar(year, week, 1)
    except ValueError:
        raise ValueError(f"week {week:02d} does not exist in ISO year {year}")


def cycle_window(cycle: str, lookback_cycles: int) -> list[str]:
    """The ``lookback_cycles`` cycles ending at ``cycle``, newest first."""
    start = parse_cycle(cycle)
    return [cycle_for_date(start - timedelta(weeks=i)) for i in range(max(0, lookback_cycles))]
