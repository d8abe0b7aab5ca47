"""
Integration gateway contracts.

The booking engine talks to the calendar, payment and email providers only
through these interfaces, so tests (and other providers) can swap them out.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from enum import Enum


@dataclass(frozen=True)
class TokenRefreshed:
    """New calendar credentials the caller must persist."""
    access_token: str
    expires_at: datetime


@dataclass(frozen=True)
class CalendarEventResult:
    event_id: str
    meeting_link: str | None = None
    html_link: str | None = None
    token_refreshed: TokenRefreshed | None = None


@dataclass(frozen=True)
class CheckoutSession:
    checkout_url: str
    session_id: str


class PaymentEventKind(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ABANDONED = "abandoned"
    IGNORED = "ignored"


@dataclass(frozen=True)
class PaymentEvent:
    kind: PaymentEventKind
    event_type: str
    appointment_id: int | None = None
    session_id: str | None = None


@dataclass(frozen=True)
class BookingNotice:
    """Everything an email about one booking needs."""
    appointment_id: int
    organization_name: str
    patient_name: str
    patient_email: str
    appointment_type_name: str
    start: datetime
    end: datetime
    owner_email: str | None = None
    meeting_link: str | None = None
    notes: str | None = None
    phone_number: str | None = None


class CalendarGateway(ABC):
    @abstractmethod
    def create_meeting_event(self, summary: str, description: str, start: datetime, end: datetime,
                             attendees: list[str]) -> CalendarEventResult:
        """
        Create an event with an online meeting attached.

        Raises:
            IntegrationFailure: if the provider rejects the request
        """

    @abstractmethod
    def create_in_person_event(self, summary: str, description: str, start: datetime, end: datetime,
                               attendees: list[str]) -> CalendarEventResult:
        """Create a plain event without a meeting link."""


class PaymentGateway(ABC):
    @abstractmethod
    def create_checkout_session(self, organization, appointment, appointment_type, customer_email: str,
                                success_url: str, cancel_url: str) -> CheckoutSession:
        """
        Start a hosted checkout for one appointment.

        Raises:
            PaymentFailure: if no session could be created
        """

    @abstractmethod
    def parse_webhook(self, payload: bytes, signature_header: str | None, secret: str) -> PaymentEvent:
        """Verify a webhook delivery and map it to a PaymentEvent."""


class Notifier(ABC):
    @abstractmethod
    def send_booking_confirmation(self, notice: BookingNotice) -> None:
        pass

    @abstractmethod
    def send_payment_retry(self, notice: BookingNotice, retry_url: str) -> None:
        pass

    @abstractmethod
    def send_owner_notification(self, notice: BookingNotice) -> None:
        pass
