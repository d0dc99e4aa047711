"""Database bootstrap helpers for the ledger service."""

from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from vouchpay.common.config import settings


class Base(DeclarativeBase):
    """Declarative base for SQLAlchemy models."""

    pass


def make_session_factory(dsn: str, **engine_kwargs) -> sessionmaker:
    """Build an engine + session factory for one DSN (used by tests too)."""

    engine = create_engine(dsn, pool_pre_ping=True, **engine_kwargs)
    # `expire_on_commit=False` keeps ORM objects readable after commit in handlers.
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


def session_factory_from_settings() -> sessionmaker:
    """Single SQLAlchemy engine per process, built from `DATABASE_DSN`."""

    return make_session_factory(settings.database_dsn)
