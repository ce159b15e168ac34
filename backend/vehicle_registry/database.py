# vehicle_registry/database.py
from sqlalchemy.engine import Engine
from sqlmodel import SQLModel, create_engine

from . import models  # noqa: F401  registers the tables on SQLModel.metadata
from .settings import settings


def make_engine(url: str, **kwargs) -> Engine:
    """Create an engine; SQLite connections are shared across worker threads."""
    if url.startswith("sqlite"):
        kwargs.setdefault("connect_args", {"check_same_thread": False})
    return create_engine(url, echo=False, **kwargs)


engine = make_engine(settings.DATABASE_URL)


def init_db(bind: Engine = engine):
    """Initialize all SQLModel tables."""
    SQLModel.metadata.create_all(bind)
