"""User model definitions."""

from sqlalchemy import Column, ForeignKey, Integer, String
from clinic_booking.database import Base


class User(Base):
    """Organization staff member allowed to manage bookings."""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True)
    organization_id = Column(Integer, ForeignKey("organization.id"))
    role = Column(String)  # owner/member
