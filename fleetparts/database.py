"""Database connection and session factory.

Datetime columns use models.base.UTCDateTime, so values loaded from the
database are always UTC-aware. PostgreSQL sessions run in UTC.
"""

from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker

from .config import settings

_is_postgres = settings.database_url.startswith(("postgresql", "postgres://"))

if _is_postgres:
    engine = create_engine(
        settings.database_url,
        pool_size=10,
        max_overflow=20,
        pool_pre_ping=True,
        pool_recycle=3600,
        connect_args={"connect_timeout": 10},
    )
else:
    engine = create_engine(settings.database_url, connect_args={"check_same_thread": False})

SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)


@event.listens_for(engine, "connect")
def _on_connect(dbapi_conn, connection_record):
    cursor = dbapi_conn.cursor()
    if _is_postgres:
        cursor.execute("SET timezone = 'UTC'")
    else:
        cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
