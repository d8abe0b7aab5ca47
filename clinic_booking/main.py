import logging
import uuid

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from clinic_booking.core import config
from clinic_booking.core.logging_context import configure_logging, get_request_id, set_request_id
from clinic_booking.database import Base, engine, ensure_booking_schema
from clinic_booking.models import appointment, availability, organization, patient, user  # noqa: F401
from clinic_booking.routes import appointment_routes, availability_routes, stripe_webhook_routes
from clinic_booking.routes.dependencies import GENERIC_FAILURE_DETAIL

configure_logging()
config.validate_runtime_config()

app = FastAPI()

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ALLOW_ORIGINS,
    allow_credentials=True,
    allow_methods=['*'],
    allow_headers=['*'],
)

logger = logging.getLogger(__name__)


@app.middleware('http')
async def attach_request_id(request: Request, call_next):
    request_id = request.headers.get('X-Request-ID') or uuid.uuid4().hex[:12]
    set_request_id(request_id)
    response = await call_next(request)
    response.headers['X-Request-ID'] = request_id
    return response


@app.exception_handler(Exception)
async def unhandled_exception(request: Request, exc: Exception):
    logger.exception('Unhandled error on %s %s', request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content={'detail': GENERIC_FAILURE_DETAIL},
        headers={'X-Request-ID': get_request_id()},
    )


@app.on_event('startup')
def initialize_database() -> None:
    try:
        Base.metadata.create_all(bind=engine)
        ensure_booking_schema()
    except SQLAlchemyError:
        logger.exception('Database initialization failed. Check DATABASE_URL and database credentials.')


@app.get('/')
def root():
    return {'status': 'Clinic Booking API Running'}


app.include_router(availability_routes.router, prefix='/public')
app.include_router(appointment_routes.router, prefix='/public')
app.include_router(appointment_routes.staff_router, prefix='/appointments')
app.include_router(stripe_webhook_routes.router, prefix='/stripe')
