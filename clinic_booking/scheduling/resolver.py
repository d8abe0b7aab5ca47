"""Turns weekly hours plus date-range overrides into the open window for one date."""

import logging
from dataclasses import dataclass
from datetime import date, datetime, time
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from clinic_booking.core import config
from clinic_booking.models.availability import CLOSING_OVERRIDE_KINDS, OVERRIDE_REDUCED_HOURS

logger = logging.getLogger(__name__)

REDUCED_HOURS_INTERSECT = "intersect"
REDUCED_HOURS_REPLACE = "replace"


@dataclass(frozen=True)
class EffectiveWindow:
    open: bool
    window_start: datetime | None = None
    window_end: datetime | None = None
    # Set when a reduced_hours override applied; slots must stay inside it.
    reduced_window: tuple[datetime, datetime] | None = None


CLOSED = EffectiveWindow(open=False)


def get_zone(name: str | None) -> ZoneInfo:
    try:
        return ZoneInfo(name or config.DEFAULT_TIMEZONE)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %r, falling back to %s", name, config.DEFAULT_TIMEZONE)
        return ZoneInfo(config.DEFAULT_TIMEZONE)


def day_of_week(target_date: date) -> int:
    """0 = Sunday ... 6 = Saturday."""
    return (target_date.weekday() + 1) % 7


def local_datetime(target_date: date, clock_time: time, tz: ZoneInfo) -> datetime:
    return datetime.combine(target_date, clock_time, tzinfo=tz)


def local_today(tz: ZoneInfo, now: datetime) -> date:
    return now.astimezone(tz).date()


def override_applies(override, target_date: date) -> bool:
    return override.start_date <= target_date <= override.end_date


def resolve_window(
    weekly_rows,
    overrides,
    target_date: date,
    tz: ZoneInfo,
    reduced_hours_mode: str = REDUCED_HOURS_INTERSECT,
) -> EffectiveWindow:
    dow = day_of_week(target_date)
    weekly = next((row for row in weekly_rows if row.day_of_week == dow), None)
    if weekly is None or not weekly.is_available:
        return CLOSED

    active = [override for override in overrides if override_applies(override, target_date)]
    if any(override.kind in CLOSING_OVERRIDE_KINDS for override in active):
        return CLOSED

    window_start = local_datetime(target_date, weekly.start_time, tz)
    window_end = local_datetime(target_date, weekly.end_time, tz)

    reduced_window = None
    for override in active:
        if override.kind != OVERRIDE_REDUCED_HOURS:
            continue
        if override.start_time is None or override.end_time is None:
            continue
        override_start = local_datetime(target_date, override.start_time, tz)
        override_end = local_datetime(target_date, override.end_time, tz)
        if reduced_window is None:
            reduced_window = (override_start, override_end)
        else:
            # Several reduced periods on one date: only the common part stays open.
            reduced_window = (max(reduced_window[0], override_start), min(reduced_window[1], override_end))

    if reduced_window is not None:
        if reduced_hours_mode == REDUCED_HOURS_REPLACE:
            window_start, window_end = reduced_window
        else:
            window_start = max(window_start, reduced_window[0])
            window_end = min(window_end, reduced_window[1])

    if window_end <= window_start:
        return CLOSED

    return EffectiveWindow(
        open=True,
        window_start=window_start,
        window_end=window_end,
        reduced_window=reduced_window,
    )
