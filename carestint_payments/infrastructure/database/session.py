"""Engine and session factory for the settlement store"""

from sqlalchemy import create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.orm import sessionmaker, Session
from carestint_payments.config import Settings, settings


def engine_options(database_url: str, config: Settings = settings) -> dict:
    """
    Keyword arguments for create_engine.

    Postgres gets a pre-pinged, recycled pool sized for the API workers plus
    the settlement runner. SQLite (local runs, tests) is shared across the
    runner's worker threads, so the same-thread check is turned off.
    """
    if make_url(database_url).get_backend_name() == "sqlite":
        return {"connect_args": {"check_same_thread": False}}
    return {
        "pool_pre_ping": True,
        "pool_size": config.db_pool_size,
        "max_overflow": config.db_max_overflow,
        "pool_recycle": config.db_pool_recycle_seconds,
    }


engine = create_engine(settings.database_url, **engine_options(settings.database_url))

# Services flush explicitly so ledger appends and status changes land together
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db() -> Session:
    """One session per request; services commit through unit_of_work"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
