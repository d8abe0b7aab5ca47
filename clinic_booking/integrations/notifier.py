"""Transactional email through Resend. Sending never raises to the caller."""

import logging

import resend

from clinic_booking.core import config
from clinic_booking.integrations.base import BookingNotice, Notifier

logger = logging.getLogger(__name__)

DATE_FORMAT = "%A %d %B %Y"
TIME_FORMAT = "%H:%M"


def _when(notice: BookingNotice) -> str:
    return (
        f"{notice.start.strftime(DATE_FORMAT)}, "
        f"{notice.start.strftime(TIME_FORMAT)} - {notice.end.strftime(TIME_FORMAT)}"
    )


def confirmation_html(notice: BookingNotice) -> str:
    meeting = ""
    if notice.meeting_link:
        meeting = f'<p>Join online: <a href="{notice.meeting_link}">{notice.meeting_link}</a></p>'
    return (
        f"<p>Hello {notice.patient_name},</p>"
        f"<p>Your {notice.appointment_type_name} appointment with {notice.organization_name} "
        f"is confirmed for {_when(notice)}.</p>"
        f"{meeting}"
    )


def payment_retry_html(notice: BookingNotice, retry_url: str) -> str:
    return (
        f"<p>Hello {notice.patient_name},</p>"
        f"<p>We could not complete the payment for your {notice.appointment_type_name} appointment "
        f"with {notice.organization_name} on {_when(notice)}.</p>"
        f'<p><a href="{retry_url}">Retry payment</a></p>'
    )


def owner_notification_html(notice: BookingNotice) -> str:
    lines = [
        f"<p>New {notice.appointment_type_name} appointment on {_when(notice)}.</p>",
        f"<p>Patient: {notice.patient_name} ({notice.patient_email})</p>",
    ]
    if notice.phone_number:
        lines.append(f"<p>Phone: {notice.phone_number}</p>")
    if notice.notes:
        lines.append(f"<p>Notes: {notice.notes}</p>")
    return "".join(lines)


class ResendNotifier(Notifier):
    def __init__(self, api_key: str | None = None, from_address: str | None = None):
        self.api_key = api_key if api_key is not None else config.RESEND_API_KEY
        self.from_address = from_address or config.EMAIL_FROM_ADDRESS

    def send_booking_confirmation(self, notice: BookingNotice) -> None:
        self._send(
            notice.patient_email,
            f"Appointment confirmed - {notice.organization_name}",
            confirmation_html(notice),
            notice.appointment_id,
        )

    def send_payment_retry(self, notice: BookingNotice, retry_url: str) -> None:
        self._send(
            notice.patient_email,
            f"Complete your payment - {notice.organization_name}",
            payment_retry_html(notice, retry_url),
            notice.appointment_id,
        )

    def send_owner_notification(self, notice: BookingNotice) -> None:
        if not notice.owner_email:
            logger.info("No contact email for %s, skipping owner notification", notice.organization_name)
            return
        self._send(
            notice.owner_email,
            f"New appointment - {notice.patient_name}",
            owner_notification_html(notice),
            notice.appointment_id,
        )

    def _send(self, to: str, subject: str, html: str, appointment_id: int) -> None:
        if not self.api_key:
            logger.warning("RESEND_API_KEY not set, email '%s' for appointment %s not sent", subject, appointment_id)
            return

        resend.api_key = self.api_key
        try:
            resend.Emails.send({
                "from": self.from_address,
                "to": [to],
                "subject": subject,
                "html": html,
            })
        except Exception:
            logger.exception("Failed to send email '%s' for appointment %s", subject, appointment_id)
