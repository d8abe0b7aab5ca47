from threading import Lock

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

from clinic_booking.booking.state_machine import TAKEN_STATUSES
from clinic_booking.core import config


def build_engine(database_url: str) -> Engine:
    if database_url.startswith("sqlite"):
        return create_engine(database_url, connect_args={"check_same_thread": False})
    return create_engine(database_url, pool_pre_ping=True)


engine = build_engine(config.DATABASE_URL)

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
)

Base = declarative_base()

_schema_lock = Lock()
_booking_schema_checked: set[str] = set()

TAKEN_STATUS_SQL = "(" + ", ".join(sorted(f"'{status.value}'" for status in TAKEN_STATUSES)) + ")"


def ensure_booking_schema(bind: Engine | None = None) -> None:
    """Install the indexes (and on PostgreSQL the overlap exclusion constraint)
    that back the booking invariants. Safe to call on every startup."""
    bind = bind or engine
    key = str(bind.url)

    if key in _booking_schema_checked:
        return

    with _schema_lock:
        if key in _booking_schema_checked:
            return

        inspector = inspect(bind)

        if 'appointments' not in inspector.get_table_names():
            _booking_schema_checked.add(key)
            return

        with bind.begin() as connection:
            connection.execute(
                text('CREATE INDEX IF NOT EXISTS idx_appointments_org_time_range '
                     'ON appointments(organization_id, start_time, end_time)')
            )
            connection.execute(
                text('CREATE INDEX IF NOT EXISTS idx_appointments_org_status '
                     'ON appointments(organization_id, status)')
            )
            connection.execute(
                text('CREATE INDEX IF NOT EXISTS idx_schedule_override_org_range '
                     'ON organization_schedule_override(organization_id, start_date, end_date)')
            )

            if bind.dialect.name == 'postgresql':
                existing = connection.execute(
                    text("SELECT 1 FROM pg_constraint WHERE conname = 'appointments_no_overlap'")
                ).first()
                if existing is None:
                    connection.execute(text('CREATE EXTENSION IF NOT EXISTS btree_gist'))
                    connection.execute(
                        text(
                            'ALTER TABLE appointments ADD CONSTRAINT appointments_no_overlap '
                            'EXCLUDE USING gist (organization_id WITH =, '
                            "tsrange(start_time, end_time, '[)') WITH &&) "
                            f'WHERE (status IN {TAKEN_STATUS_SQL})'
                        )
                    )

        _booking_schema_checked.add(key)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
