"""
Persistence for the booking engine.

All reads and writes the engine needs go through BookingRepository, which
wraps one SQLAlchemy session. ``create_booking_atomic`` and
``reacquire_slot_atomic`` are the only places a slot is claimed: both take
a per-organization lock, re-check overlap inside the same transaction and
commit, so two concurrent requests for the same slot cannot both win.
"""

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date, datetime, timezone

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from clinic_booking.booking.state_machine import (
    TAKEN_STATUSES,
    BookingState,
    BookingTrigger,
    apply_transition,
)
from clinic_booking.core.errors import ConflictError, NotFoundError
from clinic_booking.integrations.base import TokenRefreshed
from clinic_booking.models.appointment import Appointment, AppointmentType
from clinic_booking.models.availability import ScheduleOverride, WeeklyAvailability
from clinic_booking.models.organization import AppointmentConfig, Organization
from clinic_booking.models.patient import Patient, PatientOrganization

logger = logging.getLogger(__name__)

SLOT_TAKEN_MESSAGE = "This time slot is no longer available. Please choose another time."


def to_storage(value: datetime) -> datetime:
    """Aware datetime -> naive UTC, the form stored in the database."""
    if value.tzinfo is None:
        raise ValueError("Expected a timezone-aware datetime.")
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def from_storage(value: datetime) -> datetime:
    return value.replace(tzinfo=timezone.utc)


def _status_values(statuses: Iterable) -> list[str]:
    return [getattr(status, "value", status) for status in statuses]


@dataclass(frozen=True)
class PatientInfo:
    first_name: str
    last_name: str
    email: str
    phone_number: str | None = None

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class BookingRepository:
    def __init__(self, session: Session):
        self.session = session

    # --- Organization and configuration ---

    def get_organization_by_slug(self, slug: str) -> Organization | None:
        return self.session.query(Organization).filter(Organization.slug == slug).first()

    def get_organization(self, organization_id: int) -> Organization | None:
        return self.session.get(Organization, organization_id)

    def get_appointment_config(self, organization_id: int) -> AppointmentConfig | None:
        return self.session.query(AppointmentConfig).filter(
            AppointmentConfig.organization_id == organization_id
        ).first()

    def get_weekly_availability(self, organization_id: int) -> list[WeeklyAvailability]:
        return self.session.query(WeeklyAvailability).filter(
            WeeklyAvailability.organization_id == organization_id
        ).order_by(WeeklyAvailability.day_of_week.asc()).all()

    def get_overrides(self, organization_id: int, start_date: date, end_date: date) -> list[ScheduleOverride]:
        """Overrides whose inclusive date range touches [start_date, end_date]."""
        return self.session.query(ScheduleOverride).filter(
            ScheduleOverride.organization_id == organization_id,
            ScheduleOverride.start_date <= end_date,
            ScheduleOverride.end_date >= start_date,
        ).all()

    def get_appointment_type(self, appointment_type_id: int) -> AppointmentType | None:
        return self.session.get(AppointmentType, appointment_type_id)

    def list_active_appointment_types(self, organization_id: int) -> list[AppointmentType]:
        return self.session.query(AppointmentType).filter(
            AppointmentType.organization_id == organization_id,
            AppointmentType.is_active.is_(True),
        ).order_by(AppointmentType.name.asc()).all()

    def save_calendar_token(self, organization: Organization, token: TokenRefreshed) -> None:
        organization.google_access_token = token.access_token
        organization.google_token_expires_at = to_storage(token.expires_at)
        self.session.commit()

    # --- Appointments ---

    def get_appointment(self, appointment_id: int) -> Appointment | None:
        return self.session.get(Appointment, appointment_id)

    def get_patient(self, patient_id: int) -> Patient | None:
        return self.session.get(Patient, patient_id)

    def find_bookings_overlapping(
        self,
        organization_id: int,
        start: datetime,
        end: datetime,
        statuses: Iterable = TAKEN_STATUSES,
        exclude_appointment_id: int | None = None,
    ) -> list[Appointment]:
        query = self.session.query(Appointment).filter(
            Appointment.organization_id == organization_id,
            Appointment.status.in_(_status_values(statuses)),
            Appointment.start_time < to_storage(end),
            Appointment.end_time > to_storage(start),
        )
        if exclude_appointment_id is not None:
            query = query.filter(Appointment.id != exclude_appointment_id)
        return query.order_by(Appointment.start_time.asc()).all()

    def list_appointments(
        self,
        organization_id: int,
        start: datetime | None = None,
        end: datetime | None = None,
        status: str | None = None,
    ) -> list[Appointment]:
        query = self.session.query(Appointment).filter(Appointment.organization_id == organization_id)
        if start is not None:
            query = query.filter(Appointment.end_time > to_storage(start))
        if end is not None:
            query = query.filter(Appointment.start_time < to_storage(end))
        if status is not None:
            query = query.filter(Appointment.status == status)
        return query.order_by(Appointment.start_time.asc()).all()

    def rollback(self) -> None:
        self.session.rollback()

    def update_appointment(self, appointment: Appointment, **fields) -> Appointment:
        for name, value in fields.items():
            setattr(appointment, name, value)
        self.session.commit()
        self.session.refresh(appointment)
        return appointment

    # --- Patients ---

    def find_or_create_patient(
        self,
        organization_id: int,
        email: str,
        first_name: str,
        last_name: str,
        phone_number: str | None = None,
    ) -> Patient:
        """Look a patient up by lower-cased email, refreshing name and phone on a
        match, and link them to the organization. Flushes but does not commit."""
        normalized_email = email.strip().lower()
        patient = self.session.query(Patient).filter(Patient.email == normalized_email).first()

        if patient is None:
            patient = Patient(
                email=normalized_email,
                first_name=first_name,
                last_name=last_name,
                phone_number=phone_number,
            )
            try:
                with self.session.begin_nested():
                    self.session.add(patient)
            except IntegrityError:
                # Another organization's booking created the same patient first.
                patient = self.session.query(Patient).filter(Patient.email == normalized_email).one()

        patient.first_name = first_name
        patient.last_name = last_name
        if phone_number:
            patient.phone_number = phone_number

        link = self.session.query(PatientOrganization).filter(
            PatientOrganization.patient_id == patient.id,
            PatientOrganization.organization_id == organization_id,
        ).first()
        if link is None:
            self.session.add(PatientOrganization(patient_id=patient.id, organization_id=organization_id))

        self.session.flush()
        return patient

    # --- Atomic units ---

    def _lock_organization(self, organization_id: int) -> None:
        """Serialize slot claims for one organization until commit or rollback."""
        # Close any read transaction left open by earlier lookups.
        self.session.commit()

        if self.session.get_bind().dialect.name == "sqlite":
            # SQLite has no row locks; take the database write lock up front instead.
            self.session.execute(text("BEGIN IMMEDIATE"))
            return

        locked = self.session.query(Organization.id).filter(
            Organization.id == organization_id
        ).with_for_update().first()
        if locked is None:
            raise NotFoundError("Organization not found.")

    def _count_taken_between(self, organization_id: int, start: datetime, end: datetime) -> int:
        return len(self.find_bookings_overlapping(organization_id, start, end))

    def create_booking_atomic(
        self,
        organization_id: int,
        appointment_type_id: int,
        start: datetime,
        end: datetime,
        patient: PatientInfo,
        initial: BookingState,
        title: str,
        notes: str | None = None,
        max_appointments_per_day: int | None = None,
        day_bounds: tuple[datetime, datetime] | None = None,
    ) -> Appointment:
        """
        Claim [start, end) and insert the booking in one transaction.

        Raises:
            NotFoundError: unknown, inactive or foreign appointment type
            ConflictError: the slot (or the day, when capped) is already taken
        """
        try:
            self._lock_organization(organization_id)

            appointment_type = self.get_appointment_type(appointment_type_id)
            if (
                appointment_type is None
                or not appointment_type.is_active
                or appointment_type.organization_id != organization_id
            ):
                raise NotFoundError("Appointment type not found.")

            if self.find_bookings_overlapping(organization_id, start, end):
                raise ConflictError(SLOT_TAKEN_MESSAGE)

            if max_appointments_per_day is not None and day_bounds is not None:
                if self._count_taken_between(organization_id, *day_bounds) >= max_appointments_per_day:
                    raise ConflictError("No more appointments can be booked on this day.")

            patient_row = self.find_or_create_patient(
                organization_id,
                patient.email,
                patient.first_name,
                patient.last_name,
                patient.phone_number,
            )

            appointment = Appointment(
                organization_id=organization_id,
                patient_id=patient_row.id,
                appointment_type_id=appointment_type.id,
                title=title,
                notes=notes,
                start_time=to_storage(start),
                end_time=to_storage(end),
                status=initial.status.value,
                payment_status=initial.payment_status.value,
            )
            self.session.add(appointment)
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            logger.info("Booking for organization %s rejected by the database: %s", organization_id, exc.orig)
            raise ConflictError(SLOT_TAKEN_MESSAGE) from exc
        except Exception:
            self.session.rollback()
            raise

        self.session.refresh(appointment)
        return appointment

    def reacquire_slot_atomic(self, appointment_id: int) -> Appointment:
        """Move a booking back to pending_payment, provided nobody took its slot meanwhile."""
        try:
            appointment = self.get_appointment(appointment_id)
            if appointment is None:
                raise NotFoundError("Appointment not found.")
            organization_id = appointment.organization_id

            self._lock_organization(organization_id)
            self.session.refresh(appointment)

            state = apply_transition(
                BookingState(appointment.status, appointment.payment_status),
                BookingTrigger.RETRY_PAYMENT,
            )

            if self.find_bookings_overlapping(
                organization_id,
                from_storage(appointment.start_time),
                from_storage(appointment.end_time),
                exclude_appointment_id=appointment.id,
            ):
                raise ConflictError(SLOT_TAKEN_MESSAGE)

            appointment.status = state.status.value
            appointment.payment_status = state.payment_status.value
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise ConflictError(SLOT_TAKEN_MESSAGE) from exc
        except Exception:
            self.session.rollback()
            raise

        self.session.refresh(appointment)
        return appointment

    def apply_trigger(self, appointment_id: int, trigger: BookingTrigger) -> Appointment:
        """
        Run one state machine transition under the organization lock.

        Raises:
            NotFoundError: unknown appointment
            InvalidTransitionError: the transition table has no entry for it
        """
        try:
            appointment = self.get_appointment(appointment_id)
            if appointment is None:
                raise NotFoundError("Appointment not found.")

            self._lock_organization(appointment.organization_id)
            self.session.refresh(appointment)

            state = apply_transition(BookingState(appointment.status, appointment.payment_status), trigger)
            appointment.status = state.status.value
            appointment.payment_status = state.payment_status.value
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

        self.session.refresh(appointment)
        return appointment
