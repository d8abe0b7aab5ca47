"""
Availability and booking engine.

BookingEngine is the single entry point used by the HTTP routes: it answers
availability queries, books slots through the repository's atomic unit and
drives bookings through the state machine as payment events arrive.
Collaborators (repository, gateways, clock) are injected so the engine can
be exercised without a web server, Stripe, Google or Resend.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone

from clinic_booking.booking.repository import BookingRepository, PatientInfo, from_storage
from clinic_booking.booking.state_machine import (
    STAFF_TRIGGERS,
    BookingStatus,
    BookingTrigger,
    initial_state,
)
from clinic_booking.core import config
from clinic_booking.core.errors import (
    BookingValidationError,
    ConflictError,
    IntegrationFailure,
    InvalidTransitionError,
    NotFoundError,
    PaymentFailure,
)
from clinic_booking.integrations.base import (
    BookingNotice,
    CalendarGateway,
    Notifier,
    PaymentEvent,
    PaymentEventKind,
    PaymentGateway,
)
from clinic_booking.integrations.google_calendar import build_calendar_gateway
from clinic_booking.models.appointment import Appointment, AppointmentType
from clinic_booking.models.organization import Organization
from clinic_booking.scheduling.conflicts import filter_conflicts, overlaps
from clinic_booking.scheduling.policy import BookingPolicyConfig, resolve_policy
from clinic_booking.scheduling.resolver import get_zone, local_today, resolve_window
from clinic_booking.scheduling.slots import Slot, generate_slots

logger = logging.getLogger(__name__)

MAX_DATE_RANGE_DAYS = 92
RETRYABLE_STATUSES = frozenset({BookingStatus.PAYMENT_FAILED.value, BookingStatus.PENDING_PAYMENT.value})


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class PublicOrganization:
    organization: Organization
    appointment_types: list[AppointmentType]
    policy: BookingPolicyConfig


@dataclass(frozen=True)
class DateAvailability:
    date: date
    slot_count: int


@dataclass(frozen=True)
class BookingResult:
    appointment: Appointment
    checkout_url: str | None = None
    meeting_link: str | None = None


@dataclass(frozen=True)
class RetryDetails:
    appointment: Appointment
    organization: Organization
    appointment_type: AppointmentType | None
    can_retry: bool


class BookingEngine:
    def __init__(
        self,
        repository: BookingRepository,
        payment_gateway: PaymentGateway,
        notifier: Notifier,
        calendar_factory: Callable[[Organization], CalendarGateway | None] = build_calendar_gateway,
        now: Callable[[], datetime] = utc_now,
    ):
        self.repository = repository
        self.payment_gateway = payment_gateway
        self.notifier = notifier
        self.calendar_factory = calendar_factory
        self.now = now

    # --- Lookups ---

    def _public_organization(self, slug: str) -> Organization:
        organization = self.repository.get_organization_by_slug(slug)
        if organization is None or not organization.public_booking_enabled:
            raise NotFoundError("Organization not found or public booking is disabled.")
        return organization

    def _policy(self, organization: Organization) -> BookingPolicyConfig:
        return resolve_policy(self.repository.get_appointment_config(organization.id))

    def _active_type(self, organization: Organization, appointment_type_id: int) -> AppointmentType:
        appointment_type = self.repository.get_appointment_type(appointment_type_id)
        if (
            appointment_type is None
            or not appointment_type.is_active
            or appointment_type.organization_id != organization.id
        ):
            raise NotFoundError("Appointment type not found.")
        return appointment_type

    def _duration(self, organization: Organization, policy: BookingPolicyConfig,
                  appointment_type_id: int | None) -> int:
        if appointment_type_id is None:
            return policy.slot_duration_minutes
        return self._active_type(organization, appointment_type_id).duration_minutes

    def _appointment_in_organization(self, organization_id: int, appointment_id: int) -> Appointment:
        appointment = self.repository.get_appointment(appointment_id)
        if appointment is None or appointment.organization_id != organization_id:
            raise NotFoundError("Appointment not found.")
        return appointment

    def get_public_organization(self, slug: str) -> PublicOrganization:
        organization = self._public_organization(slug)
        return PublicOrganization(
            organization=organization,
            appointment_types=self.repository.list_active_appointment_types(organization.id),
            policy=self._policy(organization),
        )

    # --- Availability ---

    def _slots_for_date(self, policy, tz, weekly, overrides, taken, target_date, duration,
                        now) -> list[Slot]:
        window = resolve_window(weekly, overrides, target_date, tz, policy.reduced_hours_mode)
        candidates = generate_slots(window, target_date, policy, duration, now)
        if not candidates:
            return []

        day_start = datetime.combine(target_date, datetime.min.time(), tzinfo=tz)
        day_end = day_start + timedelta(days=1)
        taken_today = [
            (booked_start, booked_end)
            for booked_start, booked_end in taken
            if overlaps(booked_start, booked_end, day_start, day_end)
        ]
        return filter_conflicts(candidates, taken_today, window.reduced_window, policy.max_appointments_per_day)

    def _taken_intervals(self, organization_id: int, start: datetime, end: datetime):
        return [
            (from_storage(booking.start_time), from_storage(booking.end_time))
            for booking in self.repository.find_bookings_overlapping(organization_id, start, end)
        ]

    def list_available_dates(
        self,
        slug: str,
        start_date: date | None = None,
        end_date: date | None = None,
        appointment_type_id: int | None = None,
    ) -> list[DateAvailability]:
        """Dates between start_date and end_date (inclusive) with at least one free slot."""
        organization = self._public_organization(slug)
        policy = self._policy(organization)
        duration = self._duration(organization, policy, appointment_type_id)
        tz = get_zone(organization.timezone)
        now = self.now()
        today = local_today(tz, now)

        start_date = max(start_date or today, today)
        end_date = min(end_date or today + timedelta(days=policy.advance_booking_days),
                       today + timedelta(days=policy.advance_booking_days))
        if end_date < start_date:
            return []
        if (end_date - start_date).days > MAX_DATE_RANGE_DAYS:
            raise BookingValidationError(f"Date range cannot exceed {MAX_DATE_RANGE_DAYS} days.")

        weekly = self.repository.get_weekly_availability(organization.id)
        overrides = self.repository.get_overrides(organization.id, start_date, end_date)
        range_start = datetime.combine(start_date, datetime.min.time(), tzinfo=tz)
        range_end = datetime.combine(end_date + timedelta(days=1), datetime.min.time(), tzinfo=tz)
        taken = self._taken_intervals(organization.id, range_start, range_end)

        available: list[DateAvailability] = []
        current = start_date
        while current <= end_date:
            slots = self._slots_for_date(policy, tz, weekly, overrides, taken, current, duration, now)
            if slots:
                available.append(DateAvailability(date=current, slot_count=len(slots)))
            current += timedelta(days=1)

        return available

    def list_available_slots(self, slug: str, target_date: date,
                             appointment_type_id: int | None = None) -> list[Slot]:
        organization = self._public_organization(slug)
        policy = self._policy(organization)
        duration = self._duration(organization, policy, appointment_type_id)
        tz = get_zone(organization.timezone)

        weekly = self.repository.get_weekly_availability(organization.id)
        overrides = self.repository.get_overrides(organization.id, target_date, target_date)
        day_start = datetime.combine(target_date, datetime.min.time(), tzinfo=tz)
        taken = self._taken_intervals(organization.id, day_start, day_start + timedelta(days=1))

        return self._slots_for_date(policy, tz, weekly, overrides, taken, target_date, duration,
                                    self.now())

    # --- Booking ---

    def book_appointment(
        self,
        slug: str,
        start: datetime,
        end: datetime,
        appointment_type_id: int,
        patient: PatientInfo,
        notes: str | None = None,
    ) -> BookingResult:
        """
        Validate the chosen slot, claim it atomically and start the follow-up
        (calendar + emails for free types, checkout for paid ones).

        Raises:
            NotFoundError: unknown organization or appointment type
            BookingValidationError: malformed slot or patient details
            ConflictError: the slot was taken in the meantime
            PaymentFailure: the checkout session could not be created
        """
        organization = self._public_organization(slug)
        policy = self._policy(organization)
        tz = get_zone(organization.timezone)

        if not patient.first_name.strip() or not patient.last_name.strip() or not patient.email.strip():
            raise BookingValidationError("First name, last name and email are required.")

        if start.tzinfo is None:
            start = start.replace(tzinfo=tz)
        if end.tzinfo is None:
            end = end.replace(tzinfo=tz)
        if end <= start:
            raise BookingValidationError("Appointment end must be after its start.")
        if start <= self.now():
            raise BookingValidationError("Cannot book an appointment in the past.")

        appointment_type = self._active_type(organization, appointment_type_id)
        if end - start != timedelta(minutes=appointment_type.duration_minutes):
            raise BookingValidationError("Appointment length does not match the appointment type.")

        local_start = start.astimezone(tz)
        local_end = end.astimezone(tz)
        target_date = local_start.date()
        weekly = self.repository.get_weekly_availability(organization.id)
        overrides = self.repository.get_overrides(organization.id, target_date, target_date)
        window = resolve_window(weekly, overrides, target_date, tz, policy.reduced_hours_mode)
        offered = generate_slots(window, target_date, policy, appointment_type.duration_minutes, self.now())
        if not any(slot.start == local_start and slot.end == local_end for slot in offered):
            raise BookingValidationError("The selected time is outside the organization's booking hours.")

        day_start = datetime.combine(target_date, datetime.min.time(), tzinfo=tz)
        appointment = self.repository.create_booking_atomic(
            organization_id=organization.id,
            appointment_type_id=appointment_type.id,
            start=start,
            end=end,
            patient=patient,
            initial=initial_state(appointment_type.requires_payment),
            title=f"{appointment_type.name} - {patient.full_name}",
            notes=notes,
            max_appointments_per_day=policy.max_appointments_per_day,
            day_bounds=(day_start, day_start + timedelta(days=1)),
        )
        logger.info(
            "Booked appointment %s for organization %s (%s)", appointment.id, organization.id, appointment.status
        )

        if not appointment_type.requires_payment:
            meeting_link = self._create_calendar_event(organization, policy, appointment, appointment_type)
            notice = self._notice(organization, appointment, appointment_type)
            self._notify(self.notifier.send_booking_confirmation, notice)
            self._notify(self.notifier.send_owner_notification, notice)
            return BookingResult(appointment=appointment, meeting_link=meeting_link)

        checkout_url = self._start_checkout(organization, appointment, appointment_type, patient.email)
        return BookingResult(appointment=appointment, checkout_url=checkout_url)

    def _start_checkout(self, organization, appointment, appointment_type, customer_email: str) -> str:
        try:
            session = self.payment_gateway.create_checkout_session(
                organization,
                appointment,
                appointment_type,
                customer_email,
                success_url=config.build_checkout_success_url(organization.slug, appointment.id),
                cancel_url=config.build_checkout_cancel_url(organization.slug, appointment.id),
            )
        except PaymentFailure as exc:
            logger.warning("Checkout creation failed for appointment %s: %s", appointment.id, exc)
            self.repository.apply_trigger(appointment.id, BookingTrigger.PAYMENT_FAILED)
            retry_url = config.build_retry_payment_url(appointment.id)
            self._notify(
                self.notifier.send_payment_retry,
                self._notice(organization, appointment, appointment_type),
                retry_url,
            )
            raise PaymentFailure(str(exc), retry_url=retry_url) from exc

        self.repository.update_appointment(appointment, checkout_session_id=session.session_id)
        return session.checkout_url

    # --- Payment lifecycle ---

    def handle_payment_event(self, organization_id: int, event: PaymentEvent) -> Appointment | None:
        """Apply a verified payment webhook. Unknown, stale or duplicate events are logged and ignored."""
        if event.kind == PaymentEventKind.IGNORED:
            logger.info("Ignoring Stripe event %s for organization %s", event.event_type, organization_id)
            return None
        if event.appointment_id is None:
            logger.warning("Stripe event %s carries no appointment id", event.event_type)
            return None

        appointment = self.repository.get_appointment(event.appointment_id)
        if appointment is None or appointment.organization_id != organization_id:
            logger.warning(
                "Stripe event %s references unknown appointment %s for organization %s",
                event.event_type, event.appointment_id, organization_id,
            )
            return None

        organization = self.repository.get_organization(organization_id)
        appointment_type = self.repository.get_appointment_type(appointment.appointment_type_id)

        if event.kind == PaymentEventKind.SUCCEEDED:
            return self._confirm_payment(organization, appointment, appointment_type, event)

        if (
            event.session_id
            and appointment.checkout_session_id
            and event.session_id != appointment.checkout_session_id
        ):
            logger.info(
                "Ignoring %s for appointment %s from superseded checkout session %s",
                event.event_type, appointment.id, event.session_id,
            )
            return appointment

        trigger = (
            BookingTrigger.PAYMENT_FAILED
            if event.kind == PaymentEventKind.FAILED
            else BookingTrigger.CHECKOUT_ABANDONED
        )
        if appointment.status == BookingStatus.PAYMENT_FAILED:
            logger.info("Appointment %s already marked payment_failed, %s ignored", appointment.id, event.event_type)
            return appointment
        try:
            appointment = self.repository.apply_trigger(appointment.id, trigger)
        except InvalidTransitionError as exc:
            logger.warning("Payment failure for appointment %s not applied: %s", appointment.id, exc)
            return appointment

        self._send_retry(organization, appointment, appointment_type)
        return appointment

    def _confirm_payment(self, organization, appointment, appointment_type, event: PaymentEvent) -> Appointment:
        if appointment.status == BookingStatus.CONFIRMED:
            logger.info("Appointment %s already confirmed, duplicate %s ignored", appointment.id, event.event_type)
            return appointment

        if appointment.status == BookingStatus.PAYMENT_FAILED:
            # Paid after an earlier failure: the slot has to be claimed again first.
            try:
                appointment = self.repository.reacquire_slot_atomic(appointment.id)
            except ConflictError:
                logger.error(
                    "Appointment %s was paid (%s) but its slot is taken; refund required",
                    appointment.id, event.event_type,
                )
                return self.repository.get_appointment(appointment.id)

        try:
            appointment = self.repository.apply_trigger(appointment.id, BookingTrigger.PAYMENT_SUCCEEDED)
        except InvalidTransitionError as exc:
            logger.warning("Payment success for appointment %s not applied: %s", appointment.id, exc)
            return appointment

        if event.session_id:
            self.repository.update_appointment(appointment, checkout_session_id=event.session_id)
        policy = self._policy(organization)
        self._create_calendar_event(organization, policy, appointment, appointment_type)
        notice = self._notice(organization, appointment, appointment_type)
        self._notify(self.notifier.send_booking_confirmation, notice)
        self._notify(self.notifier.send_owner_notification, notice)
        return appointment

    def abandon_checkout(self, slug: str, appointment_id: int) -> Appointment:
        organization = self._public_organization(slug)
        appointment = self._appointment_in_organization(organization.id, appointment_id)
        if appointment.status == BookingStatus.PAYMENT_FAILED:
            return appointment

        appointment = self.repository.apply_trigger(appointment.id, BookingTrigger.CHECKOUT_ABANDONED)
        appointment_type = self.repository.get_appointment_type(appointment.appointment_type_id)
        self._send_retry(organization, appointment, appointment_type)
        return appointment

    def get_appointment_for_retry(self, appointment_id: int) -> RetryDetails:
        appointment = self.repository.get_appointment(appointment_id)
        if appointment is None:
            raise NotFoundError("Appointment not found.")
        organization = self.repository.get_organization(appointment.organization_id)
        appointment_type = self.repository.get_appointment_type(appointment.appointment_type_id)
        can_retry = (
            appointment.status in RETRYABLE_STATUSES
            and appointment_type is not None
            and appointment_type.requires_payment
            and from_storage(appointment.start_time) > self.now()
        )
        return RetryDetails(
            appointment=appointment,
            organization=organization,
            appointment_type=appointment_type,
            can_retry=can_retry,
        )

    def retry_payment(self, appointment_id: int) -> BookingResult:
        """
        Re-claim the slot of a failed (or still pending) paid booking and issue a new checkout.

        Raises:
            ConflictError: the slot was booked by someone else in the meantime
            PaymentFailure: the new checkout session could not be created
        """
        details = self.get_appointment_for_retry(appointment_id)
        if not details.can_retry:
            if from_storage(details.appointment.start_time) <= self.now():
                raise BookingValidationError("This appointment time has already passed.")
            raise InvalidTransitionError(
                f"Payment cannot be retried for a booking in '{details.appointment.status}'."
            )

        appointment = self.repository.reacquire_slot_atomic(appointment_id)
        patient = self.repository.get_patient(appointment.patient_id)
        checkout_url = self._start_checkout(details.organization, appointment, details.appointment_type, patient.email)
        logger.info("Reissued checkout for appointment %s", appointment.id)
        return BookingResult(appointment=appointment, checkout_url=checkout_url)

    # --- Staff ---

    def apply_staff_action(self, organization_id: int, appointment_id: int, trigger: BookingTrigger) -> Appointment:
        trigger = BookingTrigger(trigger)
        if trigger not in STAFF_TRIGGERS:
            raise InvalidTransitionError(f"'{trigger.value}' is not a staff action.")
        appointment = self._appointment_in_organization(organization_id, appointment_id)
        appointment = self.repository.apply_trigger(appointment.id, trigger)
        logger.info("Appointment %s moved to %s by staff", appointment.id, appointment.status)
        return appointment

    def list_appointments(self, organization_id: int, start: datetime | None = None, end: datetime | None = None,
                          status: str | None = None) -> list[Appointment]:
        return self.repository.list_appointments(organization_id, start, end, status)

    # --- Side effects ---

    def _create_calendar_event(self, organization, policy, appointment, appointment_type) -> str | None:
        """Best effort: the booking is already committed, so no failure here may propagate."""
        gateway = self.calendar_factory(organization)
        if gateway is None:
            return None

        try:
            return self._sync_calendar_event(gateway, organization, policy, appointment, appointment_type)
        except IntegrationFailure as exc:
            logger.warning("Calendar event for appointment %s not created: %s", appointment.id, exc)
        except Exception:
            logger.exception("Calendar sync for appointment %s failed", appointment.id)
            self.repository.rollback()
        return None

    def _sync_calendar_event(self, gateway, organization, policy, appointment, appointment_type) -> str | None:
        patient = self.repository.get_patient(appointment.patient_id)
        tz = get_zone(organization.timezone)
        start = from_storage(appointment.start_time).astimezone(tz)
        end = from_storage(appointment.end_time).astimezone(tz)
        attendees = [patient.email]
        if organization.contact_email:
            attendees.append(organization.contact_email)
        description = appointment.notes or ""

        if policy.is_online_type(appointment_type.id):
            result = gateway.create_meeting_event(appointment.title, description, start, end, attendees)
        else:
            result = gateway.create_in_person_event(appointment.title, description, start, end, attendees)

        if result.token_refreshed is not None:
            self.repository.save_calendar_token(organization, result.token_refreshed)
        self.repository.update_appointment(
            appointment,
            calendar_event_id=result.event_id,
            meeting_link=result.meeting_link,
        )
        return result.meeting_link

    def _notice(self, organization, appointment, appointment_type) -> BookingNotice:
        patient = self.repository.get_patient(appointment.patient_id)
        tz = get_zone(organization.timezone)
        return BookingNotice(
            appointment_id=appointment.id,
            organization_name=organization.name,
            patient_name=f"{patient.first_name} {patient.last_name}".strip(),
            patient_email=patient.email,
            appointment_type_name=appointment_type.name if appointment_type else appointment.title,
            start=from_storage(appointment.start_time).astimezone(tz),
            end=from_storage(appointment.end_time).astimezone(tz),
            owner_email=organization.contact_email,
            meeting_link=appointment.meeting_link,
            notes=appointment.notes,
            phone_number=patient.phone_number,
        )

    def _send_retry(self, organization, appointment, appointment_type) -> None:
        self._notify(
            self.notifier.send_payment_retry,
            self._notice(organization, appointment, appointment_type),
            config.build_retry_payment_url(appointment.id),
        )

    def _notify(self, send, *args) -> None:
        try:
            send(*args)
        except Exception:
            logger.exception("Notification %s failed", getattr(send, "__name__", send))
