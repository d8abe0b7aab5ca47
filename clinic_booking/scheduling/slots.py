"""Candidate slot generation for a single resolved window."""

import math
from dataclasses import dataclass
from datetime import date, datetime, timedelta

from clinic_booking.core.errors import BookingValidationError
from clinic_booking.scheduling.policy import BookingPolicyConfig
from clinic_booking.scheduling.resolver import EffectiveWindow


@dataclass(frozen=True)
class Slot:
    start: datetime
    end: datetime
    available: bool = True


def earliest_start_today(now_local: datetime, duration_minutes: int, buffer_minutes: int,
                         minimum_notice_minutes: int) -> datetime:
    """``now + buffer + notice`` rounded up to the next ``duration`` boundary,
    counted from the top of the hour."""
    earliest = now_local + timedelta(minutes=buffer_minutes + minimum_notice_minutes)
    hour_start = earliest.replace(minute=0, second=0, microsecond=0)
    offset_seconds = (earliest - hour_start).total_seconds()
    step_seconds = duration_minutes * 60
    rounded_seconds = math.ceil(offset_seconds / step_seconds) * step_seconds
    return hour_start + timedelta(seconds=rounded_seconds)


def is_bookable_date(target_date: date, today: date, policy: BookingPolicyConfig) -> bool:
    if target_date < today:
        return False
    if target_date > today + timedelta(days=policy.advance_booking_days):
        return False
    if target_date == today and not policy.same_day_booking_allowed:
        return False
    return True


def generate_slots(
    window: EffectiveWindow,
    target_date: date,
    policy: BookingPolicyConfig,
    duration_minutes: int,
    now: datetime,
) -> list[Slot]:
    if duration_minutes <= 0:
        raise BookingValidationError("Appointment duration must be positive.")
    if not window.open:
        return []

    now_local = now.astimezone(window.window_start.tzinfo)
    today = now_local.date()
    if not is_bookable_date(target_date, today, policy):
        return []

    earliest = None
    if target_date == today:
        earliest = earliest_start_today(
            now_local, duration_minutes, policy.buffer_minutes, policy.minimum_notice_minutes
        )

    length = timedelta(minutes=duration_minutes)
    step = timedelta(minutes=duration_minutes + policy.buffer_minutes)

    slots: list[Slot] = []
    current = window.window_start
    while current + length <= window.window_end:
        if earliest is None or current >= earliest:
            slots.append(Slot(start=current, end=current + length))
        current += step

    return slots
