from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from propchat.core.config import settings
import os
import logging

logger = logging.getLogger(__name__)

if os.getenv("PYTEST_RUN") == "1":
    SQLALCHEMY_DATABASE_URL = "sqlite:///:memory:"
else:
    SQLALCHEMY_DATABASE_URL = settings.SQLALCHEMY_DATABASE_URL


def _set_sqlite_pragma(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    try:
        # WAL lets readers proceed while a send transaction holds the write lock;
        # busy_timeout makes concurrent writers queue instead of failing.
        cursor.execute("PRAGMA journal_mode=WAL;")
        cursor.execute("PRAGMA synchronous=NORMAL;")
        cursor.execute("PRAGMA busy_timeout=60000;")
    finally:
        cursor.close()


def build_engine(url: str, **kwargs) -> Engine:
    """Create an engine with the pool/pragma setup used across the service."""
    is_sqlite = url.startswith("sqlite")
    engine_kwargs = {
        # Avoid stale idle connections causing first-hit failures after inactivity
        "pool_pre_ping": True,
    }
    if is_sqlite:
        connect_args = {"check_same_thread": False, "timeout": 15}
    else:
        connect_args = {}
        engine_kwargs.update(
            {
                "pool_size": int(os.getenv("DB_POOL_SIZE") or 6),
                "max_overflow": int(os.getenv("DB_MAX_OVERFLOW") or 6),
                "pool_recycle": int(os.getenv("DB_POOL_RECYCLE") or 300),
                "pool_timeout": float(os.getenv("DB_POOL_TIMEOUT") or 5.0),
            }
        )
    engine_kwargs.update(kwargs)
    engine = create_engine(url, connect_args=connect_args, **engine_kwargs)
    if is_sqlite and ":memory:" not in url:
        event.listen(engine, "connect", _set_sqlite_pragma)
    return engine


engine = build_engine(SQLALCHEMY_DATABASE_URL)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


# Dependency
def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

