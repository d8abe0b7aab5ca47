"""Patient model definitions."""

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, UniqueConstraint, func

from clinic_booking.database import Base


class Patient(Base):
    """A patient, unique by lower-cased email across organizations."""
    __tablename__ = "patient"

    id = Column(Integer, primary_key=True)
    first_name = Column(String, nullable=False)
    last_name = Column(String, nullable=False)
    email = Column(String, unique=True, index=True, nullable=False)
    phone_number = Column(String)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())


class PatientOrganization(Base):
    """Links a patient to each organization they have booked with."""
    __tablename__ = "patient_organization"
    __table_args__ = (UniqueConstraint("patient_id", "organization_id", name="uq_patient_organization"),)

    id = Column(Integer, primary_key=True)
    patient_id = Column(Integer, ForeignKey("patient.id"), nullable=False)
    organization_id = Column(Integer, ForeignKey("organization.id"), nullable=False)
    created_at = Column(DateTime, server_default=func.now())
