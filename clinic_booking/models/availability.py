"""Weekly opening hours and date-range schedule overrides."""

from sqlalchemy import Boolean, Column, Date, ForeignKey, Integer, String, Time, UniqueConstraint

from clinic_booking.database import Base

OVERRIDE_UNAVAILABLE = "unavailable"
OVERRIDE_REDUCED_HOURS = "reduced_hours"
# Kinds carried over from older data; they close the day like "unavailable".
OVERRIDE_HOLIDAY = "holiday"
OVERRIDE_MAINTENANCE = "maintenance"
CLOSING_OVERRIDE_KINDS = frozenset({OVERRIDE_UNAVAILABLE, OVERRIDE_HOLIDAY, OVERRIDE_MAINTENANCE})


class WeeklyAvailability(Base):
    """Recurring opening hours for one day of the week (0 = Sunday)."""
    __tablename__ = "organization_availability"
    __table_args__ = (UniqueConstraint("organization_id", "day_of_week", name="uq_availability_org_day"),)

    id = Column(Integer, primary_key=True)
    organization_id = Column(Integer, ForeignKey("organization.id"), nullable=False, index=True)
    day_of_week = Column(Integer, nullable=False)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)
    is_available = Column(Boolean, nullable=False, default=True)


class ScheduleOverride(Base):
    """Exception to the weekly hours for an inclusive range of dates."""
    __tablename__ = "organization_schedule_override"

    id = Column(Integer, primary_key=True)
    organization_id = Column(Integer, ForeignKey("organization.id"), nullable=False)
    title = Column(String, nullable=False, default="")
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)
    kind = Column(String, nullable=False, default=OVERRIDE_UNAVAILABLE)
    start_time = Column(Time)
    end_time = Column(Time)
