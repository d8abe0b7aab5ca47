from collections.abc import Iterable, Sequence
from datetime import datetime

from clinic_booking.scheduling.slots import Slot


def overlaps(start_a: datetime, end_a: datetime, start_b: datetime, end_b: datetime) -> bool:
    """Closed-open interval overlap; back-to-back intervals do not overlap."""
    return start_a < end_b and end_a > start_b


def filter_conflicts(
    slots: Sequence[Slot],
    taken_bookings: Iterable[tuple[datetime, datetime]],
    reduced_window: tuple[datetime, datetime] | None = None,
    max_appointments_per_day: int | None = None,
) -> list[Slot]:
    """Drop slots that collide with a taken booking or leave the reduced-hours window.

    ``taken_bookings`` holds the (start, end) of every slot-occupying booking on the date.
    """
    taken = list(taken_bookings)

    if max_appointments_per_day is not None and len(taken) >= max_appointments_per_day:
        return []

    remaining: list[Slot] = []
    for slot in slots:
        if reduced_window is not None and (slot.start < reduced_window[0] or slot.end > reduced_window[1]):
            continue
        if any(overlaps(slot.start, slot.end, booked_start, booked_end) for booked_start, booked_end in taken):
            continue
        remaining.append(slot)

    return remaining
