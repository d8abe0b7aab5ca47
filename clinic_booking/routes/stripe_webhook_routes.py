import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from clinic_booking.booking.service import BookingEngine
from clinic_booking.core.errors import BookingError, BookingValidationError
from clinic_booking.database import get_db
from clinic_booking.integrations.base import PaymentGateway
from clinic_booking.routes.availability_routes import ensure_database_ready
from clinic_booking.routes.dependencies import (
    database_unavailable,
    get_booking_engine,
    get_payment_gateway,
    to_http_exception,
)

router = APIRouter(tags=['stripe'])

logger = logging.getLogger(__name__)


async def read_raw_body(request: Request) -> bytes:
    return await request.body()


@router.post('/webhook/{organization_id}')
def stripe_webhook(
    organization_id: int,
    payload: bytes = Depends(read_raw_body),
    stripe_signature: str | None = Header(default=None, alias='Stripe-Signature'),
    db: Session = Depends(get_db),
    payment_gateway: PaymentGateway = Depends(get_payment_gateway),
    engine: BookingEngine = Depends(get_booking_engine),
):
    if not stripe_signature:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail='No Stripe signature found.',
        )

    ensure_database_ready()

    try:
        organization = engine.repository.get_organization(organization_id)
        if organization is None or not organization.stripe_enabled or not organization.stripe_webhook_secret:
            logger.error('Stripe not configured for organization %s', organization_id)
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail='Stripe not configured for this organization.',
            )

        try:
            event = payment_gateway.parse_webhook(payload, stripe_signature, organization.stripe_webhook_secret)
        except BookingValidationError as exc:
            logger.warning('Stripe webhook rejected for organization %s: %s', organization_id, exc)
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail='Webhook signature verification failed.',
            ) from exc

        logger.info('Processing Stripe event %s for organization %s', event.event_type, organization_id)
        engine.handle_payment_event(organization_id, event)
        return {'received': True}
    except BookingError as exc:
        raise to_http_exception(exc) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc
