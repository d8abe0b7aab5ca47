import pytest
from fastapi import Depends
from fastapi.testclient import TestClient

from clinic_booking.database import get_db
from clinic_booking.main import app
from clinic_booking.routes import appointment_routes, availability_routes, stripe_webhook_routes
from clinic_booking.routes.dependencies import get_booking_engine, get_notifier, get_payment_gateway


@pytest.fixture
def client(monkeypatch, session_factory, make_engine, payment_gateway, notifier):
    for module in (availability_routes, appointment_routes, stripe_webhook_routes):
        monkeypatch.setattr(module, 'ensure_database_ready', lambda: None)

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    def override_get_booking_engine(db=Depends(get_db)):
        return make_engine(db)

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_payment_gateway] = lambda: payment_gateway
    app.dependency_overrides[get_notifier] = lambda: notifier
    app.dependency_overrides[get_booking_engine] = override_get_booking_engine
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
