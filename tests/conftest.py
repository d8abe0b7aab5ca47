import os
from datetime import datetime, time, timezone

import pytest
from sqlalchemy.orm import sessionmaker

os.environ.setdefault('DATABASE_URL', 'sqlite:///./test.db')

from clinic_booking.booking.repository import BookingRepository  # noqa: E402
from clinic_booking.booking.service import BookingEngine  # noqa: E402
from clinic_booking.core.errors import PaymentFailure  # noqa: E402
from clinic_booking.database import Base, build_engine  # noqa: E402
from clinic_booking.integrations.base import (  # noqa: E402
    CalendarEventResult,
    CalendarGateway,
    CheckoutSession,
    Notifier,
    PaymentEvent,
    PaymentGateway,
)
from clinic_booking.models.appointment import AppointmentType  # noqa: E402
from clinic_booking.models.availability import WeeklyAvailability  # noqa: E402
from clinic_booking.models.organization import AppointmentConfig, Organization  # noqa: E402
from clinic_booking.models.user import User  # noqa: E402,F401

# Sunday noon UTC; the seeded clinic opens the next day, Monday 2026-03-02.
FIXED_NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakePaymentGateway(PaymentGateway):
    def __init__(self):
        self.sessions = []
        self.fail_next = False
        self.event = None

    def create_checkout_session(self, organization, appointment, appointment_type, customer_email,
                                success_url, cancel_url):
        if self.fail_next:
            self.fail_next = False
            raise PaymentFailure('Card network unavailable.')
        session = CheckoutSession(
            checkout_url=f'https://checkout.test/session-{len(self.sessions) + 1}',
            session_id=f'cs_test_{len(self.sessions) + 1}',
        )
        self.sessions.append((appointment.id, customer_email, success_url, cancel_url))
        return session

    def parse_webhook(self, payload, signature_header, secret) -> PaymentEvent:
        return self.event


class FakeNotifier(Notifier):
    def __init__(self):
        self.sent = []

    def send_booking_confirmation(self, notice):
        self.sent.append(('confirmation', notice))

    def send_payment_retry(self, notice, retry_url):
        self.sent.append(('retry', notice, retry_url))

    def send_owner_notification(self, notice):
        self.sent.append(('owner', notice))

    def kinds(self):
        return [entry[0] for entry in self.sent]


class FakeCalendar(CalendarGateway):
    def __init__(self):
        self.events = []

    def create_meeting_event(self, summary, description, start, end, attendees):
        self.events.append(('meeting', summary, start, end, attendees))
        return CalendarEventResult(event_id=f'evt-{len(self.events)}', meeting_link='https://meet.test/abc')

    def create_in_person_event(self, summary, description, start, end, attendees):
        self.events.append(('in_person', summary, start, end, attendees))
        return CalendarEventResult(event_id=f'evt-{len(self.events)}')


@pytest.fixture
def db_engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'booking.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def clinic(db_session):
    """A public clinic open Monday 09:00-17:00 with one free and one paid 30-minute type."""
    organization = Organization(
        name='Sunrise Clinic',
        slug='sunrise',
        timezone='UTC',
        contact_email='owner@sunrise.test',
        public_booking_enabled=True,
        stripe_enabled=True,
        stripe_secret_key='sk_test_123',
        stripe_webhook_secret='whsec_test',
    )
    db_session.add(organization)
    db_session.flush()

    db_session.add(WeeklyAvailability(
        organization_id=organization.id,
        day_of_week=1,
        start_time=time(9, 0),
        end_time=time(17, 0),
        is_available=True,
    ))
    free_type = AppointmentType(organization_id=organization.id, name='Consultation', duration_minutes=30)
    paid_type = AppointmentType(
        organization_id=organization.id,
        name='Paid consultation',
        duration_minutes=30,
        requires_payment=True,
        payment_reference='price_123',
    )
    db_session.add_all([free_type, paid_type])
    db_session.add(AppointmentConfig(organization_id=organization.id))
    db_session.commit()

    return {
        'organization_id': organization.id,
        'slug': organization.slug,
        'free_type_id': free_type.id,
        'paid_type_id': paid_type.id,
    }


@pytest.fixture
def payment_gateway():
    return FakePaymentGateway()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def calendar():
    return FakeCalendar()


@pytest.fixture
def make_engine(payment_gateway, notifier, calendar):
    def factory(session, now=FIXED_NOW):
        return BookingEngine(
            BookingRepository(session),
            payment_gateway,
            notifier,
            calendar_factory=lambda organization: calendar,
            now=lambda: now,
        )

    return factory


@pytest.fixture
def booking_engine(make_engine, db_session):
    return make_engine(db_session)
