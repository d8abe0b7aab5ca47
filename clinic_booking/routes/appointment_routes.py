from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, field_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from clinic_booking.auth.dependencies import get_current_staff
from clinic_booking.booking.repository import PatientInfo, from_storage
from clinic_booking.booking.service import BookingEngine, BookingResult
from clinic_booking.booking.state_machine import BookingStatus, BookingTrigger
from clinic_booking.core import config
from clinic_booking.core.errors import BookingError
from clinic_booking.database import get_db
from clinic_booking.models.user import User
from clinic_booking.routes.availability_routes import ensure_database_ready
from clinic_booking.routes.dependencies import database_unavailable, get_booking_engine, to_http_exception

router = APIRouter(tags=['appointments'])
staff_router = APIRouter(tags=['staff'])

MAX_NAME_LENGTH = 100


class CreateAppointmentRequest(BaseModel):
    start_time: datetime
    end_time: datetime
    appointment_type_id: int
    first_name: str
    last_name: str
    email: str
    phone_number: str | None = None
    notes: str | None = None

    @field_validator('first_name', 'last_name')
    @classmethod
    def validate_name(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError('First and last name are required.')
        if len(normalized) > MAX_NAME_LENGTH:
            raise ValueError(f'Names must be {MAX_NAME_LENGTH} characters or fewer.')
        return normalized

    @field_validator('email')
    @classmethod
    def validate_email(cls, value: str) -> str:
        normalized = value.strip().lower()
        if not normalized or '@' not in normalized:
            raise ValueError('A valid email is required.')
        return normalized

    @field_validator('phone_number')
    @classmethod
    def validate_phone_number(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return value.strip() or None

    @field_validator('notes')
    @classmethod
    def validate_notes(cls, value: str | None) -> str | None:
        if value is None:
            return None

        normalized = value.strip()
        if not normalized:
            return None

        if len(normalized) > config.MAX_APPOINTMENT_NOTES_LENGTH:
            raise ValueError(f'Notes must be {config.MAX_APPOINTMENT_NOTES_LENGTH} characters or fewer.')

        return normalized


class BookingResponse(BaseModel):
    appointment_id: int
    status: str
    payment_status: str
    checkout_url: str | None = None
    meeting_link: str | None = None
    message: str


class AbandonCheckoutResponse(BaseModel):
    appointment_id: int
    status: str
    payment_status: str
    retry_url: str


class RetryAppointmentResponse(BaseModel):
    appointment_id: int
    organization_name: str
    organization_slug: str
    appointment_type_name: str | None = None
    start_time: datetime
    end_time: datetime
    status: str
    payment_status: str
    can_retry: bool


class AppointmentResponse(BaseModel):
    id: int
    organization_id: int
    patient_id: int
    appointment_type_id: int | None = None
    title: str
    notes: str | None = None
    start_time: datetime
    end_time: datetime
    status: str
    payment_status: str
    meeting_link: str | None = None

    class Config:
        from_attributes = True

    @field_validator('start_time', 'end_time')
    @classmethod
    def mark_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class StatusUpdateRequest(BaseModel):
    action: BookingTrigger


def booking_response(result: BookingResult) -> BookingResponse:
    appointment = result.appointment
    if result.checkout_url:
        message = 'Redirecting to payment to complete your booking.'
    else:
        message = 'Appointment booked successfully.'
    return BookingResponse(
        appointment_id=appointment.id,
        status=appointment.status,
        payment_status=appointment.payment_status,
        checkout_url=result.checkout_url,
        meeting_link=result.meeting_link,
        message=message,
    )


@router.post('/{slug}/appointments', response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
def book_appointment(
    slug: str,
    data: CreateAppointmentRequest,
    db: Session = Depends(get_db),
    engine: BookingEngine = Depends(get_booking_engine),
):
    ensure_database_ready()

    try:
        result = engine.book_appointment(
            slug,
            data.start_time,
            data.end_time,
            data.appointment_type_id,
            PatientInfo(
                first_name=data.first_name,
                last_name=data.last_name,
                email=data.email,
                phone_number=data.phone_number,
            ),
            data.notes,
        )
        return booking_response(result)
    except BookingError as exc:
        raise to_http_exception(exc) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.post('/{slug}/appointments/{appointment_id}/abandon', response_model=AbandonCheckoutResponse)
def abandon_checkout(
    slug: str,
    appointment_id: int,
    db: Session = Depends(get_db),
    engine: BookingEngine = Depends(get_booking_engine),
):
    ensure_database_ready()

    try:
        appointment = engine.abandon_checkout(slug, appointment_id)
        return AbandonCheckoutResponse(
            appointment_id=appointment.id,
            status=appointment.status,
            payment_status=appointment.payment_status,
            retry_url=config.build_retry_payment_url(appointment.id),
        )
    except BookingError as exc:
        raise to_http_exception(exc) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.get('/appointments/{appointment_id}/retry', response_model=RetryAppointmentResponse)
def get_retry_details(
    appointment_id: int,
    db: Session = Depends(get_db),
    engine: BookingEngine = Depends(get_booking_engine),
):
    ensure_database_ready()

    try:
        details = engine.get_appointment_for_retry(appointment_id)
        appointment = details.appointment
        return RetryAppointmentResponse(
            appointment_id=appointment.id,
            organization_name=details.organization.name,
            organization_slug=details.organization.slug,
            appointment_type_name=details.appointment_type.name if details.appointment_type else None,
            start_time=from_storage(appointment.start_time),
            end_time=from_storage(appointment.end_time),
            status=appointment.status,
            payment_status=appointment.payment_status,
            can_retry=details.can_retry,
        )
    except BookingError as exc:
        raise to_http_exception(exc) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.post('/appointments/{appointment_id}/retry', response_model=BookingResponse)
def retry_payment(
    appointment_id: int,
    db: Session = Depends(get_db),
    engine: BookingEngine = Depends(get_booking_engine),
):
    ensure_database_ready()

    try:
        return booking_response(engine.retry_payment(appointment_id))
    except BookingError as exc:
        raise to_http_exception(exc) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@staff_router.get('', response_model=list[AppointmentResponse])
def list_appointments(
    start: datetime | None = Query(default=None),
    end: datetime | None = Query(default=None),
    appointment_status: BookingStatus | None = Query(default=None, alias='status'),
    user: User = Depends(get_current_staff),
    db: Session = Depends(get_db),
    engine: BookingEngine = Depends(get_booking_engine),
):
    ensure_database_ready()

    if start is not None and start.tzinfo is None:
        start = start.replace(tzinfo=timezone.utc)
    if end is not None and end.tzinfo is None:
        end = end.replace(tzinfo=timezone.utc)

    try:
        return engine.list_appointments(
            user.organization_id,
            start,
            end,
            appointment_status.value if appointment_status else None,
        )
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@staff_router.patch('/{appointment_id}/status', response_model=AppointmentResponse)
def update_appointment_status(
    appointment_id: int,
    data: StatusUpdateRequest,
    user: User = Depends(get_current_staff),
    db: Session = Depends(get_db),
    engine: BookingEngine = Depends(get_booking_engine),
):
    ensure_database_ready()

    try:
        return engine.apply_staff_action(user.organization_id, appointment_id, data.action)
    except BookingError as exc:
        raise to_http_exception(exc) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc
