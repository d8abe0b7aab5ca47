"""Per-organization booking policy, resolved once from the appointment config row."""

from dataclasses import dataclass

from clinic_booking.core import config


@dataclass(frozen=True)
class BookingPolicyConfig:
    slot_duration_minutes: int = config.DEFAULT_SLOT_DURATION_MINUTES
    buffer_minutes: int = config.DEFAULT_BUFFER_MINUTES
    minimum_notice_minutes: int = config.MINIMUM_NOTICE_MINUTES
    advance_booking_days: int = config.DEFAULT_ADVANCE_BOOKING_DAYS
    same_day_booking_allowed: bool = config.DEFAULT_SAME_DAY_BOOKING_ALLOWED
    max_appointments_per_day: int | None = None
    reduced_hours_mode: str = config.REDUCED_HOURS_MODE
    online_conferencing_enabled: bool = False
    online_conferencing_appointment_type_id: int | None = None

    def is_online_type(self, appointment_type_id: int | None) -> bool:
        return (
            self.online_conferencing_enabled
            and appointment_type_id is not None
            and appointment_type_id == self.online_conferencing_appointment_type_id
        )


def _pick(value, default):
    return default if value is None else value


def resolve_policy(appointment_config=None) -> BookingPolicyConfig:
    """Fill the gaps in an organization's AppointmentConfig row with the
    configured defaults. ``None`` (no row) yields the defaults."""
    defaults = BookingPolicyConfig()
    if appointment_config is None:
        return defaults

    return BookingPolicyConfig(
        slot_duration_minutes=_pick(appointment_config.slot_duration_minutes, defaults.slot_duration_minutes),
        buffer_minutes=_pick(appointment_config.buffer_time_minutes, defaults.buffer_minutes),
        minimum_notice_minutes=_pick(appointment_config.minimum_notice_minutes, defaults.minimum_notice_minutes),
        advance_booking_days=_pick(appointment_config.advance_booking_days, defaults.advance_booking_days),
        same_day_booking_allowed=_pick(
            appointment_config.same_day_booking_allowed, defaults.same_day_booking_allowed
        ),
        max_appointments_per_day=appointment_config.max_appointments_per_day,
        reduced_hours_mode=_pick(appointment_config.reduced_hours_mode, defaults.reduced_hours_mode),
        online_conferencing_enabled=bool(appointment_config.online_conferencing_enabled),
        online_conferencing_appointment_type_id=appointment_config.online_conferencing_appointment_type_id,
    )
