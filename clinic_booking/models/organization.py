"""Organization (tenant) and per-organization booking configuration."""

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, func

from clinic_booking.core import config
from clinic_booking.database import Base


class Organization(Base):
    """A clinic or practice whose calendar is being booked."""
    __tablename__ = "organization"

    id = Column(Integer, primary_key=True)
    name = Column(String, nullable=False)
    slug = Column(String, unique=True, index=True, nullable=False)
    description = Column(String)
    timezone = Column(String, nullable=False, default=config.DEFAULT_TIMEZONE)
    contact_email = Column(String)
    public_booking_enabled = Column(Boolean, nullable=False, default=False)

    google_integration_enabled = Column(Boolean, nullable=False, default=False)
    google_access_token = Column(String)
    google_refresh_token = Column(String)
    google_token_expires_at = Column(DateTime)
    google_calendar_id = Column(String)

    stripe_enabled = Column(Boolean, nullable=False, default=False)
    stripe_secret_key = Column(String)
    stripe_webhook_secret = Column(String)

    created_at = Column(DateTime, server_default=func.now())


class AppointmentConfig(Base):
    """Booking policy overrides for one organization. Every column is optional
    in spirit; missing rows fall back to the defaults in core.config."""
    __tablename__ = "organization_appointment_config"

    id = Column(Integer, primary_key=True)
    organization_id = Column(Integer, ForeignKey("organization.id"), unique=True, nullable=False)
    slot_duration_minutes = Column(Integer)
    buffer_time_minutes = Column(Integer)
    minimum_notice_minutes = Column(Integer)
    advance_booking_days = Column(Integer)
    same_day_booking_allowed = Column(Boolean)
    max_appointments_per_day = Column(Integer)
    reduced_hours_mode = Column(String)  # intersect/replace, null = REDUCED_HOURS_MODE
    online_conferencing_enabled = Column(Boolean, nullable=False, default=False)
    online_conferencing_appointment_type_id = Column(Integer, ForeignKey("organization_appointment_type.id"))
