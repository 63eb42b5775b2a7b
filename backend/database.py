"""SQLAlchemy engine, session factory and request-scoped session dependency."""

from fastapi import Request
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base

Base = declarative_base()


def create_session_factory(database_url: str, **engine_kwargs) -> sessionmaker:
    """Create an engine for ``database_url`` and return a bound session factory."""
    if database_url.startswith("sqlite"):
        engine_kwargs.setdefault("connect_args", {"check_same_thread": False})
    engine = create_engine(database_url, **engine_kwargs)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(session_factory: sessionmaker) -> None:
    """Create all tables on the factory's engine."""
    import models  # noqa: F401  registers mappers on Base

    Base.metadata.create_all(bind=session_factory.kw["bind"])


def get_db(request: Request):
    """Dependency for getting database sessions."""
    db = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()
