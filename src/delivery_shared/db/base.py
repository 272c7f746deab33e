"""Declarative base plus engine and session factories for the delivery store."""

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker


class Base(DeclarativeBase):
    """Base class for the delivery store's ORM models."""


def create_db_engine(dsn: str, **kwargs: object) -> Engine:
    """Build an engine for *dsn*.

    Worker processes pass ``pool_pre_ping=True`` so a PostgreSQL restart
    surfaces as a reconnect rather than a failed status write.
    """
    return create_engine(dsn, **kwargs)


def create_session_factory(engine: Engine) -> sessionmaker[Session]:
    """Return a sessionmaker whose objects stay usable after commit.

    Store calls open a session, commit and hand the record back to the
    worker, so instances must not expire on commit.
    """
    return sessionmaker(bind=engine, expire_on_commit=False)
