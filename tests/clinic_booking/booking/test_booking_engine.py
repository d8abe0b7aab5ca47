from datetime import date, datetime, time, timedelta, timezone

import pytest
from sqlalchemy.exc import OperationalError

from clinic_booking.booking.repository import PatientInfo
from clinic_booking.booking.state_machine import BookingTrigger
from clinic_booking.core.errors import (
    BookingValidationError,
    ConflictError,
    IntegrationFailure,
    InvalidTransitionError,
    NotFoundError,
    PaymentFailure,
)
from clinic_booking.integrations.base import CalendarEventResult, PaymentEvent, PaymentEventKind, TokenRefreshed
from clinic_booking.models.appointment import AppointmentType
from clinic_booking.models.availability import ScheduleOverride
from clinic_booking.models.organization import AppointmentConfig, Organization
from clinic_booking.models.patient import Patient, PatientOrganization

MONDAY = date(2026, 3, 2)


def at(hour: int, minute: int = 0) -> datetime:
    return datetime(2026, 3, 2, hour, minute, tzinfo=timezone.utc)


def patient(email: str = 'ada@example.com', first_name: str = 'Ada', last_name: str = 'Lovelace') -> PatientInfo:
    return PatientInfo(first_name=first_name, last_name=last_name, email=email, phone_number='555-0100')


def book(engine, clinic, hour: int, minute: int = 0, paid: bool = False, info: PatientInfo | None = None):
    type_id = clinic['paid_type_id'] if paid else clinic['free_type_id']
    start = at(hour, minute)
    end = start + timedelta(minutes=30)
    return engine.book_appointment(clinic['slug'], start, end, type_id, info or patient())


def payment_event(kind: PaymentEventKind, appointment_id: int, event_type: str = 'test.event',
                  session_id: str | None = None) -> PaymentEvent:
    return PaymentEvent(kind=kind, event_type=event_type, appointment_id=appointment_id, session_id=session_id)


def start_times(slots) -> list[time]:
    return [slot.start.time() for slot in slots]


# --- Availability ---

def test_open_monday_offers_sixteen_slots(booking_engine, clinic) -> None:
    slots = booking_engine.list_available_slots(clinic['slug'], MONDAY)

    assert len(slots) == 16
    assert start_times(slots)[0] == time(9, 0)
    assert slots[-1].end.time() == time(17, 0)


def test_existing_booking_is_not_offered(booking_engine, clinic) -> None:
    book(booking_engine, clinic, 10)

    slots = booking_engine.list_available_slots(clinic['slug'], MONDAY)

    assert len(slots) == 15
    assert time(10, 0) not in start_times(slots)


def test_reduced_hours_override_limits_slots(booking_engine, clinic, db_session) -> None:
    db_session.add(ScheduleOverride(
        organization_id=clinic['organization_id'],
        title='Staff training',
        start_date=MONDAY,
        end_date=MONDAY,
        kind='reduced_hours',
        start_time=time(9, 0),
        end_time=time(12, 0),
    ))
    db_session.commit()

    slots = booking_engine.list_available_slots(clinic['slug'], MONDAY)

    assert start_times(slots) == [time(9, 0), time(9, 30), time(10, 0), time(10, 30), time(11, 0), time(11, 30)]


def test_organization_can_let_reduced_hours_replace_the_weekly_window(booking_engine, clinic, db_session) -> None:
    db_session.query(AppointmentConfig).filter(
        AppointmentConfig.organization_id == clinic['organization_id']
    ).update({'reduced_hours_mode': 'replace'})
    db_session.add(ScheduleOverride(
        organization_id=clinic['organization_id'],
        title='Evening clinic',
        start_date=MONDAY,
        end_date=MONDAY,
        kind='reduced_hours',
        start_time=time(17, 0),
        end_time=time(19, 0),
    ))
    db_session.commit()

    slots = booking_engine.list_available_slots(clinic['slug'], MONDAY)

    assert start_times(slots) == [time(17, 0), time(17, 30), time(18, 0), time(18, 30)]


def test_unavailable_override_empties_the_day(booking_engine, clinic, db_session) -> None:
    db_session.add(ScheduleOverride(
        organization_id=clinic['organization_id'],
        title='Closed',
        start_date=date(2026, 2, 27),
        end_date=MONDAY,
        kind='unavailable',
    ))
    db_session.commit()

    assert booking_engine.list_available_slots(clinic['slug'], MONDAY) == []
    assert MONDAY not in [entry.date for entry in booking_engine.list_available_dates(clinic['slug'])]


def test_same_day_slots_respect_minimum_notice(make_engine, db_session, clinic) -> None:
    engine = make_engine(db_session, now=at(14, 5))

    slots = engine.list_available_slots(clinic['slug'], MONDAY)

    assert start_times(slots)[0] == time(14, 30)


def test_available_dates_cover_advance_booking_horizon(booking_engine, clinic) -> None:
    dates = booking_engine.list_available_dates(clinic['slug'])

    assert [entry.date for entry in dates] == [
        date(2026, 3, 2), date(2026, 3, 9), date(2026, 3, 16), date(2026, 3, 23), date(2026, 3, 30),
    ]
    assert all(entry.slot_count == 16 for entry in dates)


def test_available_dates_count_remaining_slots(booking_engine, clinic) -> None:
    book(booking_engine, clinic, 9)

    dates = booking_engine.list_available_dates(clinic['slug'], MONDAY, MONDAY)

    assert [(entry.date, entry.slot_count) for entry in dates] == [(MONDAY, 15)]


def test_longer_appointment_type_changes_granularity(booking_engine, clinic, db_session) -> None:
    long_type = AppointmentType(organization_id=clinic['organization_id'], name='Assessment', duration_minutes=60)
    db_session.add(long_type)
    db_session.commit()

    slots = booking_engine.list_available_slots(clinic['slug'], MONDAY, long_type.id)

    assert len(slots) == 8


def test_unknown_or_private_organization_is_not_found(booking_engine, clinic, db_session) -> None:
    with pytest.raises(NotFoundError):
        booking_engine.list_available_slots('nowhere', MONDAY)

    organization = db_session.get(Organization, clinic['organization_id'])
    organization.public_booking_enabled = False
    db_session.commit()

    with pytest.raises(NotFoundError):
        booking_engine.get_public_organization(clinic['slug'])


def test_public_organization_lists_active_types(booking_engine, clinic, db_session) -> None:
    db_session.add(AppointmentType(
        organization_id=clinic['organization_id'], name='Retired', duration_minutes=30, is_active=False,
    ))
    db_session.commit()

    public = booking_engine.get_public_organization(clinic['slug'])

    assert {appointment_type.name for appointment_type in public.appointment_types} == {
        'Consultation', 'Paid consultation',
    }
    assert public.policy.minimum_notice_minutes == 15


# --- Booking ---

def test_free_booking_is_confirmed_with_side_effects(booking_engine, clinic, calendar, notifier) -> None:
    result = book(booking_engine, clinic, 9)

    assert result.appointment.status == 'confirmed'
    assert result.appointment.payment_status == 'not_required'
    assert result.checkout_url is None
    assert result.appointment.calendar_event_id == 'evt-1'
    assert calendar.events[0][0] == 'in_person'
    assert calendar.events[0][4] == ['ada@example.com', 'owner@sunrise.test']
    assert notifier.kinds() == ['confirmation', 'owner']


def test_online_conferencing_type_gets_meeting_link(booking_engine, clinic, calendar, db_session) -> None:
    config_row = db_session.query(AppointmentConfig).filter_by(organization_id=clinic['organization_id']).one()
    config_row.online_conferencing_enabled = True
    config_row.online_conferencing_appointment_type_id = clinic['free_type_id']
    db_session.commit()

    result = book(booking_engine, clinic, 9)

    assert result.meeting_link == 'https://meet.test/abc'
    assert result.appointment.meeting_link == 'https://meet.test/abc'
    assert calendar.events[0][0] == 'meeting'


def test_calendar_failure_does_not_undo_booking(make_engine, db_session, clinic, payment_gateway, notifier) -> None:
    class BrokenCalendar:
        def create_in_person_event(self, *args):
            raise IntegrationFailure('Google is down')

    engine = make_engine(db_session)
    engine.calendar_factory = lambda organization: BrokenCalendar()

    result = book(engine, clinic, 9)

    assert result.appointment.status == 'confirmed'
    assert result.appointment.calendar_event_id is None
    assert notifier.kinds() == ['confirmation', 'owner']


def test_unexpected_calendar_error_does_not_fail_committed_booking(booking_engine, clinic, notifier) -> None:
    class GarbledCalendar:
        def create_in_person_event(self, *args):
            raise KeyError('id')

    booking_engine.calendar_factory = lambda organization: GarbledCalendar()

    result = book(booking_engine, clinic, 9)

    assert result.appointment.status == 'confirmed'
    assert result.meeting_link is None
    assert notifier.kinds() == ['confirmation', 'owner']


def test_database_error_while_saving_calendar_event_is_contained(booking_engine, clinic, notifier,
                                                                 monkeypatch) -> None:
    def fail(*args, **kwargs):
        raise OperationalError('UPDATE appointments', {}, Exception('database is locked'))

    monkeypatch.setattr(booking_engine.repository, 'update_appointment', fail)

    result = book(booking_engine, clinic, 9)

    stored = booking_engine.repository.get_appointment(result.appointment.id)
    assert stored.status == 'confirmed'
    assert stored.calendar_event_id is None
    assert notifier.kinds() == ['confirmation', 'owner']


def test_refreshed_calendar_token_is_persisted(booking_engine, clinic, db_session) -> None:
    expires_at = datetime(2026, 3, 1, 13, 0, tzinfo=timezone.utc)

    class RotatingCalendar:
        def create_in_person_event(self, *args):
            return CalendarEventResult(
                event_id='evt-9',
                token_refreshed=TokenRefreshed(access_token='new-token', expires_at=expires_at),
            )

    booking_engine.calendar_factory = lambda organization: RotatingCalendar()

    book(booking_engine, clinic, 9)

    organization = db_session.get(Organization, clinic['organization_id'])
    assert organization.google_access_token == 'new-token'
    assert organization.google_token_expires_at == datetime(2026, 3, 1, 13, 0)


def test_failing_notifier_does_not_break_booking(booking_engine, clinic) -> None:
    class ExplodingNotifier:
        def send_booking_confirmation(self, notice):
            raise RuntimeError('smtp exploded')

        def send_owner_notification(self, notice):
            raise RuntimeError('smtp exploded')

    booking_engine.notifier = ExplodingNotifier()

    assert book(booking_engine, clinic, 9).appointment.status == 'confirmed'


def test_second_booking_for_same_slot_conflicts(booking_engine, clinic) -> None:
    book(booking_engine, clinic, 9)

    with pytest.raises(ConflictError):
        book(booking_engine, clinic, 9, info=patient('grace@example.com', 'Grace', 'Hopper'))


def test_returning_patient_is_updated_not_duplicated(booking_engine, clinic, db_session) -> None:
    book(booking_engine, clinic, 9)
    book(booking_engine, clinic, 10, info=patient(' ADA@Example.com ', 'Augusta', 'King'))

    patients = db_session.query(Patient).all()
    assert len(patients) == 1
    assert patients[0].email == 'ada@example.com'
    assert patients[0].first_name == 'Augusta'
    assert db_session.query(PatientOrganization).count() == 1


@pytest.mark.parametrize(
    ('start', 'end'),
    [
        (at(10), at(10)),
        (at(10), at(9, 30)),
        (at(10), at(11)),
        (at(17), at(17, 30)),
        (at(10, 15), at(10, 45)),
    ],
)
def test_malformed_slots_are_rejected(booking_engine, clinic, start, end) -> None:
    with pytest.raises(BookingValidationError):
        booking_engine.book_appointment(clinic['slug'], start, end, clinic['free_type_id'], patient())


def test_booking_in_the_past_is_rejected(make_engine, db_session, clinic) -> None:
    engine = make_engine(db_session, now=at(12))

    with pytest.raises(BookingValidationError):
        engine.book_appointment(clinic['slug'], at(9), at(9, 30), clinic['free_type_id'], patient())


def test_missing_patient_fields_are_rejected(booking_engine, clinic) -> None:
    with pytest.raises(BookingValidationError):
        book(booking_engine, clinic, 9, info=patient(first_name='  '))


def test_unknown_inactive_or_foreign_type_is_not_found(booking_engine, clinic, db_session) -> None:
    other = Organization(name='Other', slug='other', timezone='UTC', public_booking_enabled=True)
    db_session.add(other)
    db_session.flush()
    foreign = AppointmentType(organization_id=other.id, name='Foreign', duration_minutes=30)
    inactive = AppointmentType(
        organization_id=clinic['organization_id'], name='Old', duration_minutes=30, is_active=False,
    )
    db_session.add_all([foreign, inactive])
    db_session.commit()

    for type_id in (9999, foreign.id, inactive.id):
        with pytest.raises(NotFoundError):
            booking_engine.book_appointment(clinic['slug'], at(9), at(9, 30), type_id, patient())


def test_naive_times_are_read_in_organization_timezone(booking_engine, clinic) -> None:
    result = booking_engine.book_appointment(
        clinic['slug'], datetime(2026, 3, 2, 9, 0), datetime(2026, 3, 2, 9, 30), clinic['free_type_id'], patient(),
    )

    assert result.appointment.start_time == datetime(2026, 3, 2, 9, 0)


def test_daily_cap_blocks_further_bookings(booking_engine, clinic, db_session) -> None:
    config_row = db_session.query(AppointmentConfig).filter_by(organization_id=clinic['organization_id']).one()
    config_row.max_appointments_per_day = 1
    db_session.commit()

    book(booking_engine, clinic, 9)

    assert booking_engine.list_available_slots(clinic['slug'], MONDAY) == []
    with pytest.raises(ConflictError):
        book(booking_engine, clinic, 11)


# --- Payment flow ---

def test_paid_booking_waits_for_payment(booking_engine, clinic, calendar, notifier, payment_gateway) -> None:
    result = book(booking_engine, clinic, 9, paid=True)

    assert result.appointment.status == 'pending_payment'
    assert result.appointment.payment_status == 'pending'
    assert result.checkout_url == 'https://checkout.test/session-1'
    assert result.appointment.checkout_session_id == 'cs_test_1'
    assert calendar.events == []
    assert notifier.sent == []
    assert payment_gateway.sessions[0][1] == 'ada@example.com'
    assert time(9, 0) not in start_times(booking_engine.list_available_slots(clinic['slug'], MONDAY))


def test_payment_success_confirms_and_creates_event(booking_engine, clinic, calendar, notifier) -> None:
    appointment = book(booking_engine, clinic, 9, paid=True).appointment

    confirmed = booking_engine.handle_payment_event(
        clinic['organization_id'], payment_event(PaymentEventKind.SUCCEEDED, appointment.id),
    )

    assert (confirmed.status, confirmed.payment_status) == ('confirmed', 'paid')
    assert confirmed.calendar_event_id == 'evt-1'
    assert notifier.kinds() == ['confirmation', 'owner']


def test_duplicate_payment_success_is_ignored(booking_engine, clinic, calendar, notifier) -> None:
    appointment = book(booking_engine, clinic, 9, paid=True).appointment
    event = payment_event(PaymentEventKind.SUCCEEDED, appointment.id)

    booking_engine.handle_payment_event(clinic['organization_id'], event)
    booking_engine.handle_payment_event(clinic['organization_id'], event)

    assert len(calendar.events) == 1
    assert notifier.kinds() == ['confirmation', 'owner']


def test_failed_payment_then_retry_returns_to_pending(booking_engine, clinic, notifier, payment_gateway) -> None:
    appointment = book(booking_engine, clinic, 9, paid=True).appointment

    failed = booking_engine.handle_payment_event(
        clinic['organization_id'], payment_event(PaymentEventKind.FAILED, appointment.id),
    )
    assert (failed.status, failed.payment_status) == ('payment_failed', 'failed')
    assert notifier.kinds() == ['retry']
    assert notifier.sent[0][2] == f'http://localhost:3000/retry-payment/{appointment.id}'

    retried = booking_engine.retry_payment(appointment.id)

    assert (retried.appointment.status, retried.appointment.payment_status) == ('pending_payment', 'pending')
    assert retried.checkout_url == 'https://checkout.test/session-2'
    assert retried.appointment.checkout_session_id == 'cs_test_2'


def test_success_after_declined_card_reclaims_slot_and_confirms(booking_engine, clinic, notifier) -> None:
    appointment = book(booking_engine, clinic, 9, paid=True).appointment
    booking_engine.handle_payment_event(
        clinic['organization_id'],
        payment_event(PaymentEventKind.FAILED, appointment.id, 'payment_intent.payment_failed'),
    )

    late_success = booking_engine.handle_payment_event(
        clinic['organization_id'],
        payment_event(PaymentEventKind.SUCCEEDED, appointment.id, 'checkout.session.completed', 'cs_test_1'),
    )

    assert (late_success.status, late_success.payment_status) == ('confirmed', 'paid')
    assert notifier.kinds() == ['retry', 'confirmation', 'owner']


def test_success_after_failure_is_not_applied_when_slot_was_rebooked(booking_engine, clinic, caplog) -> None:
    appointment = book(booking_engine, clinic, 9, paid=True).appointment
    booking_engine.handle_payment_event(
        clinic['organization_id'], payment_event(PaymentEventKind.FAILED, appointment.id),
    )
    book(booking_engine, clinic, 9, info=patient('grace@example.com', 'Grace', 'Hopper'))

    late_success = booking_engine.handle_payment_event(
        clinic['organization_id'],
        payment_event(PaymentEventKind.SUCCEEDED, appointment.id, 'checkout.session.completed', 'cs_test_1'),
    )

    assert (late_success.status, late_success.payment_status) == ('payment_failed', 'failed')
    assert 'refund required' in caplog.text


def test_events_from_superseded_checkout_session_are_ignored(booking_engine, clinic, notifier) -> None:
    appointment = book(booking_engine, clinic, 9, paid=True).appointment
    booking_engine.abandon_checkout(clinic['slug'], appointment.id)
    assert booking_engine.retry_payment(appointment.id).appointment.checkout_session_id == 'cs_test_2'

    stale = booking_engine.handle_payment_event(
        clinic['organization_id'],
        payment_event(PaymentEventKind.ABANDONED, appointment.id, 'checkout.session.expired', 'cs_test_1'),
    )

    assert stale.status == 'pending_payment'
    assert notifier.kinds() == ['retry']

    paid = booking_engine.handle_payment_event(
        clinic['organization_id'],
        payment_event(PaymentEventKind.SUCCEEDED, appointment.id, 'checkout.session.completed', 'cs_test_2'),
    )

    assert (paid.status, paid.payment_status) == ('confirmed', 'paid')


def test_current_session_expiry_still_fails_the_booking(booking_engine, clinic) -> None:
    appointment = book(booking_engine, clinic, 9, paid=True).appointment

    expired = booking_engine.handle_payment_event(
        clinic['organization_id'],
        payment_event(PaymentEventKind.ABANDONED, appointment.id, 'checkout.session.expired', 'cs_test_1'),
    )

    assert expired.status == 'payment_failed'


def test_failed_payment_frees_the_slot_and_retry_conflicts(booking_engine, clinic) -> None:
    appointment = book(booking_engine, clinic, 9, paid=True).appointment
    booking_engine.handle_payment_event(
        clinic['organization_id'], payment_event(PaymentEventKind.FAILED, appointment.id),
    )

    book(booking_engine, clinic, 9, info=patient('grace@example.com', 'Grace', 'Hopper'))

    with pytest.raises(ConflictError):
        booking_engine.retry_payment(appointment.id)
    assert booking_engine.repository.get_appointment(appointment.id).status == 'payment_failed'


def test_checkout_failure_marks_payment_failed(booking_engine, clinic, payment_gateway, notifier) -> None:
    payment_gateway.fail_next = True

    with pytest.raises(PaymentFailure) as exception_info:
        book(booking_engine, clinic, 9, paid=True)

    appointment = booking_engine.repository.list_appointments(clinic['organization_id'])[0]
    assert exception_info.value.retry_url == f'http://localhost:3000/retry-payment/{appointment.id}'
    assert appointment.status == 'payment_failed'
    assert notifier.kinds() == ['retry']


def test_abandoned_checkout_sends_retry_email(booking_engine, clinic, notifier) -> None:
    appointment = book(booking_engine, clinic, 9, paid=True).appointment

    abandoned = booking_engine.abandon_checkout(clinic['slug'], appointment.id)
    again = booking_engine.abandon_checkout(clinic['slug'], appointment.id)

    assert abandoned.status == 'payment_failed'
    assert again.status == 'payment_failed'
    assert notifier.kinds() == ['retry']


def test_expired_checkout_event_is_treated_as_abandoned(booking_engine, clinic) -> None:
    appointment = book(booking_engine, clinic, 9, paid=True).appointment

    updated = booking_engine.handle_payment_event(
        clinic['organization_id'], payment_event(PaymentEventKind.ABANDONED, appointment.id),
    )

    assert updated.status == 'payment_failed'


def test_payment_events_for_other_organizations_are_ignored(booking_engine, clinic) -> None:
    appointment = book(booking_engine, clinic, 9, paid=True).appointment

    assert booking_engine.handle_payment_event(
        clinic['organization_id'] + 1, payment_event(PaymentEventKind.SUCCEEDED, appointment.id),
    ) is None
    assert booking_engine.handle_payment_event(
        clinic['organization_id'], payment_event(PaymentEventKind.IGNORED, appointment.id),
    ) is None
    assert booking_engine.repository.get_appointment(appointment.id).status == 'pending_payment'


def test_retry_details_report_whether_retry_is_possible(make_engine, db_session, clinic) -> None:
    engine = make_engine(db_session)
    appointment = book(engine, clinic, 9, paid=True).appointment

    assert engine.get_appointment_for_retry(appointment.id).can_retry is True

    later_engine = make_engine(db_session, now=at(10))
    assert later_engine.get_appointment_for_retry(appointment.id).can_retry is False
    with pytest.raises(BookingValidationError):
        later_engine.retry_payment(appointment.id)


def test_confirmed_free_booking_cannot_be_retried(booking_engine, clinic) -> None:
    appointment = book(booking_engine, clinic, 9).appointment

    with pytest.raises(InvalidTransitionError):
        booking_engine.retry_payment(appointment.id)


# --- Staff actions ---

def test_staff_cancel_frees_the_slot(booking_engine, clinic) -> None:
    appointment = book(booking_engine, clinic, 9).appointment

    cancelled = booking_engine.apply_staff_action(clinic['organization_id'], appointment.id, BookingTrigger.CANCEL)

    assert cancelled.status == 'cancelled'
    assert time(9, 0) in start_times(booking_engine.list_available_slots(clinic['slug'], MONDAY))
    assert len(booking_engine.list_appointments(clinic['organization_id'])) == 1


def test_staff_cannot_complete_unpaid_booking(booking_engine, clinic) -> None:
    appointment = book(booking_engine, clinic, 9, paid=True).appointment

    with pytest.raises(InvalidTransitionError):
        booking_engine.apply_staff_action(clinic['organization_id'], appointment.id, BookingTrigger.COMPLETE)


def test_payment_triggers_are_not_staff_actions(booking_engine, clinic) -> None:
    appointment = book(booking_engine, clinic, 9, paid=True).appointment

    with pytest.raises(InvalidTransitionError):
        booking_engine.apply_staff_action(
            clinic['organization_id'], appointment.id, BookingTrigger.PAYMENT_SUCCEEDED,
        )


def test_staff_of_other_organization_cannot_touch_booking(booking_engine, clinic) -> None:
    appointment = book(booking_engine, clinic, 9).appointment

    with pytest.raises(NotFoundError):
        booking_engine.apply_staff_action(clinic['organization_id'] + 1, appointment.id, BookingTrigger.COMPLETE)


def test_list_appointments_filters_by_status(booking_engine, clinic) -> None:
    book(booking_engine, clinic, 9)
    book(booking_engine, clinic, 10, paid=True)

    pending = booking_engine.list_appointments(clinic['organization_id'], status='pending_payment')

    assert [appointment.start_time for appointment in pending] == [datetime(2026, 3, 2, 10, 0)]
