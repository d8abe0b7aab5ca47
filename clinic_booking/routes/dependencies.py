import logging

from fastapi import Depends, HTTPException, status
from sqlalchemy.orm import Session

from clinic_booking.booking.repository import BookingRepository
from clinic_booking.booking.service import BookingEngine
from clinic_booking.core.errors import (
    BookingError,
    BookingValidationError,
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    PaymentFailure,
)
from clinic_booking.database import get_db
from clinic_booking.integrations.base import Notifier, PaymentGateway
from clinic_booking.integrations.notifier import ResendNotifier
from clinic_booking.integrations.payments import StripePaymentGateway

logger = logging.getLogger(__name__)

DATABASE_UNAVAILABLE_DETAIL = 'Database unavailable. Verify DATABASE_URL and database credentials.'
GENERIC_FAILURE_DETAIL = 'Something went wrong. Please try again later.'


def get_payment_gateway() -> PaymentGateway:
    return StripePaymentGateway()


def get_notifier() -> Notifier:
    return ResendNotifier()


def get_booking_engine(
    db: Session = Depends(get_db),
    payment_gateway: PaymentGateway = Depends(get_payment_gateway),
    notifier: Notifier = Depends(get_notifier),
) -> BookingEngine:
    return BookingEngine(BookingRepository(db), payment_gateway, notifier)


def database_unavailable() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail=DATABASE_UNAVAILABLE_DETAIL,
    )


def to_http_exception(exc: BookingError) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, ConflictError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    if isinstance(exc, PaymentFailure):
        return HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail={'message': str(exc), 'retry_url': exc.retry_url},
        )
    if isinstance(exc, (BookingValidationError, InvalidTransitionError)):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))

    logger.error('Unhandled booking error: %s', exc)
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=GENERIC_FAILURE_DETAIL)
