"""Appointment type and appointment (booking) model definitions."""

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, func

from clinic_booking.database import Base


class AppointmentType(Base):
    """A bookable service: fixes the slot length and whether payment is required."""
    __tablename__ = "organization_appointment_type"

    id = Column(Integer, primary_key=True)
    organization_id = Column(Integer, ForeignKey("organization.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    description = Column(String)
    duration_minutes = Column(Integer, nullable=False, default=30)
    is_active = Column(Boolean, nullable=False, default=True)
    requires_payment = Column(Boolean, nullable=False, default=False)
    payment_reference = Column(String)


class Appointment(Base):
    """Represents a booked appointment. Times are stored as naive UTC."""
    __tablename__ = "appointments"

    id = Column(Integer, primary_key=True)
    organization_id = Column(Integer, ForeignKey("organization.id"), nullable=False)
    patient_id = Column(Integer, ForeignKey("patient.id"), nullable=False)
    appointment_type_id = Column(Integer, ForeignKey("organization_appointment_type.id"))
    title = Column(String, nullable=False)
    notes = Column(String)
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)
    status = Column(String, nullable=False)
    payment_status = Column(String, nullable=False)
    meeting_link = Column(String)
    calendar_event_id = Column(String)
    checkout_session_id = Column(String)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())
