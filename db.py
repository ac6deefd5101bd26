from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
import logging

from config import load_settings
from models import Base

logger = logging.getLogger(__name__)

# Profile store is optional; without DATABASE_URL every store write is skipped.
DATABASE_URL = load_settings().database_url


def build_engine(url):
    """
    Create an engine for the given database URL
    """
    connect_args = {}
    if url.startswith("sqlite"):
        connect_args["check_same_thread"] = False  # Needed for SQLite
    return create_engine(url, echo=False, pool_pre_ping=True, connect_args=connect_args)


def build_session_factory(bind):
    return sessionmaker(autocommit=False, autoflush=False, bind=bind)


if DATABASE_URL:
    engine = build_engine(DATABASE_URL)
    SessionLocal = build_session_factory(engine)
else:
    engine = None
    SessionLocal = None


# Initialize database tables
def create_tables(bind=None):
    """
    Create all database tables
    """
    target = bind if bind is not None else engine
    if target is None:
        logger.warning("DATABASE_URL not configured; skipping table creation")
        return
    Base.metadata.create_all(bind=target)
