"""
Stripe payment gateway.

Checkout sessions are created with the organization's own secret key and
webhook deliveries are verified against the organization's webhook secret,
so every tenant keeps its own Stripe account.
"""

import json
import logging
from datetime import datetime, timedelta, timezone

import stripe

from clinic_booking.core import config
from clinic_booking.core.errors import BookingValidationError, PaymentFailure
from clinic_booking.integrations.base import CheckoutSession, PaymentEvent, PaymentEventKind, PaymentGateway

logger = logging.getLogger(__name__)

EVENT_KINDS = {
    "checkout.session.completed": PaymentEventKind.SUCCEEDED,
    "payment_intent.succeeded": PaymentEventKind.SUCCEEDED,
    "payment_intent.payment_failed": PaymentEventKind.FAILED,
    "checkout.session.async_payment_failed": PaymentEventKind.FAILED,
    "checkout.session.expired": PaymentEventKind.ABANDONED,
}


class WebhookSignatureError(BookingValidationError):
    """Raised when a webhook delivery cannot be authenticated."""


def verify_signature(
    payload: bytes,
    signature_header: str | None,
    secret: str,
    tolerance_seconds: int = config.STRIPE_WEBHOOK_TOLERANCE_SECONDS,
) -> None:
    """
    Check a ``Stripe-Signature`` header (``t=<unix>,v1=<hex hmac>``).

    Raises:
        WebhookSignatureError: missing header, stale timestamp, or no matching signature
    """
    if not signature_header:
        raise WebhookSignatureError("Missing Stripe signature header.")
    if not secret:
        raise WebhookSignatureError("Webhook secret is not configured.")

    try:
        stripe.WebhookSignature.verify_header(payload, signature_header, secret, tolerance=tolerance_seconds)
    except stripe.SignatureVerificationError as exc:
        logger.warning("Stripe webhook signature rejected: %s", exc)
        raise WebhookSignatureError(str(exc)) from exc


def _appointment_id_from(data_object: dict) -> int | None:
    metadata = data_object.get("metadata") or {}
    value = metadata.get("appointment_id")
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        logger.warning("Ignoring non-numeric appointment_id in Stripe metadata: %r", value)
        return None


class StripePaymentGateway(PaymentGateway):
    def create_checkout_session(self, organization, appointment, appointment_type, customer_email,
                                success_url, cancel_url) -> CheckoutSession:
        if not organization.stripe_enabled or not organization.stripe_secret_key:
            raise PaymentFailure("Online payment is not configured for this organization.")
        if not appointment_type.payment_reference:
            raise PaymentFailure("This appointment type has no price configured.")

        expires_at = datetime.now(timezone.utc) + timedelta(minutes=config.CHECKOUT_SESSION_TTL_MINUTES)

        try:
            session = stripe.checkout.Session.create(
                api_key=organization.stripe_secret_key,
                mode="payment",
                line_items=[{"price": appointment_type.payment_reference, "quantity": 1}],
                customer_email=customer_email,
                success_url=success_url,
                cancel_url=cancel_url,
                expires_at=int(expires_at.timestamp()),
                metadata={
                    "appointment_id": str(appointment.id),
                    "organization_id": str(organization.id),
                },
                payment_intent_data={"metadata": {"appointment_id": str(appointment.id)}},
            )
        except stripe.StripeError as exc:
            logger.error("Stripe checkout creation failed for appointment %s: %s", appointment.id, exc)
            raise PaymentFailure("The payment provider rejected the checkout request.") from exc

        checkout_url = getattr(session, "url", None)
        session_id = getattr(session, "id", None)
        if not checkout_url or not session_id:
            logger.error("Stripe returned an incomplete checkout session for appointment %s", appointment.id)
            raise PaymentFailure("The payment provider returned an incomplete checkout session.")

        return CheckoutSession(checkout_url=checkout_url, session_id=session_id)

    def parse_webhook(self, payload: bytes, signature_header, secret) -> PaymentEvent:
        verify_signature(payload, signature_header, secret)

        try:
            event = json.loads(payload)
        except ValueError as exc:
            raise BookingValidationError("Webhook payload is not valid JSON.") from exc
        if not isinstance(event, dict):
            raise BookingValidationError("Webhook payload is not a Stripe event.")

        event_type = event.get("type") or ""
        data_object = (event.get("data") or {}).get("object") or {}
        kind = EVENT_KINDS.get(event_type, PaymentEventKind.IGNORED)
        session_id = data_object.get("id") if event_type.startswith("checkout.session.") else None

        return PaymentEvent(
            kind=kind,
            event_type=event_type,
            appointment_id=_appointment_id_from(data_object),
            session_id=session_id,
        )
