from sqlalchemy.engine import Engine
from sqlmodel import SQLModel, create_engine

import models  # noqa: F401  registers the tables on SQLModel.metadata
from settings import get_settings


def make_engine(url: str) -> Engine:
    """Create the engine; SQLite connections are shared with the request threadpool."""
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, echo=False, connect_args=connect_args)


engine = make_engine(get_settings().database_url)


def init_db(bind: Engine | None = None) -> None:
    SQLModel.metadata.create_all(bind or engine)


def get_engine() -> Engine:
    """FastAPI dependency; tests override it with an in-memory engine."""
    return engine
