"""Database connection and session management."""

import os
from collections.abc import Generator

import logfire
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from .config import DATABASE_URL

engine = create_engine(DATABASE_URL, echo=False)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()

if os.getenv("LOGFIRE_TOKEN"):
    logfire.configure()
    logfire.instrument_sqlalchemy(engine=engine)


def get_db() -> Generator[Session, None, None]:
    """Dependency for getting database sessions."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db() -> None:
    """Create all tables."""
    # Import for side effect: registers every mapped class on Base.metadata
    from . import models  # noqa: F401

    Base.metadata.create_all(bind=engine)
