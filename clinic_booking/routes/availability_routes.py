from datetime import date, datetime

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from clinic_booking.booking.service import BookingEngine
from clinic_booking.core.errors import BookingError
from clinic_booking.database import ensure_booking_schema, get_db
from clinic_booking.routes.dependencies import database_unavailable, get_booking_engine, to_http_exception

router = APIRouter(tags=['availability'])


class AppointmentTypeResponse(BaseModel):
    id: int
    name: str
    description: str | None = None
    duration_minutes: int
    requires_payment: bool

    class Config:
        from_attributes = True


class BookingPolicyResponse(BaseModel):
    slot_duration_minutes: int
    buffer_minutes: int
    minimum_notice_minutes: int
    advance_booking_days: int
    same_day_booking_allowed: bool


class PublicOrganizationResponse(BaseModel):
    id: int
    name: str
    slug: str
    description: str | None = None
    timezone: str
    appointment_types: list[AppointmentTypeResponse]
    policy: BookingPolicyResponse


class AvailableDateResponse(BaseModel):
    date: date
    slot_count: int


class SlotResponse(BaseModel):
    start_time: datetime
    end_time: datetime
    available: bool


def ensure_database_ready() -> None:
    try:
        ensure_booking_schema()
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.get('/{slug}', response_model=PublicOrganizationResponse)
def get_public_organization(
    slug: str,
    db: Session = Depends(get_db),
    engine: BookingEngine = Depends(get_booking_engine),
):
    ensure_database_ready()

    try:
        public = engine.get_public_organization(slug)
        organization = public.organization
        policy = public.policy

        return PublicOrganizationResponse(
            id=organization.id,
            name=organization.name,
            slug=organization.slug,
            description=organization.description,
            timezone=organization.timezone,
            appointment_types=[
                AppointmentTypeResponse.model_validate(appointment_type)
                for appointment_type in public.appointment_types
            ],
            policy=BookingPolicyResponse(
                slot_duration_minutes=policy.slot_duration_minutes,
                buffer_minutes=policy.buffer_minutes,
                minimum_notice_minutes=policy.minimum_notice_minutes,
                advance_booking_days=policy.advance_booking_days,
                same_day_booking_allowed=policy.same_day_booking_allowed,
            ),
        )
    except BookingError as exc:
        raise to_http_exception(exc) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.get('/{slug}/dates', response_model=list[AvailableDateResponse])
def list_available_dates(
    slug: str,
    start: date | None = Query(default=None),
    end: date | None = Query(default=None),
    appointment_type_id: int | None = Query(default=None),
    db: Session = Depends(get_db),
    engine: BookingEngine = Depends(get_booking_engine),
):
    if start is not None and end is not None and end < start:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail='End date must not be before start date.',
        )

    ensure_database_ready()

    try:
        return [
            AvailableDateResponse(date=available.date, slot_count=available.slot_count)
            for available in engine.list_available_dates(slug, start, end, appointment_type_id)
        ]
    except BookingError as exc:
        raise to_http_exception(exc) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.get('/{slug}/slots', response_model=list[SlotResponse])
def list_available_slots(
    slug: str,
    slot_date: date = Query(..., alias='date'),
    appointment_type_id: int | None = Query(default=None),
    db: Session = Depends(get_db),
    engine: BookingEngine = Depends(get_booking_engine),
):
    ensure_database_ready()

    try:
        return [
            SlotResponse(start_time=slot.start, end_time=slot.end, available=slot.available)
            for slot in engine.list_available_slots(slug, slot_date, appointment_type_id)
        ]
    except BookingError as exc:
        raise to_http_exception(exc) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc
