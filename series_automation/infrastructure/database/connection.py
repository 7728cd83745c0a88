"""
Database Engine Setup.

Builds the SQLModel engine the Postgres* repositories share. Production
points DATABASE_URL at PostgreSQL; the default is a local SQLite file so
the service runs without a database server.

SQLite needs two adjustments: connections are used from worker threads
(FastAPI runs sync endpoints in a thread pool), and an in-memory database
only lives as long as its single connection, so it is pinned to one.
"""

from typing import Any, Dict

from sqlalchemy.engine import Engine, make_url
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine

from ...config import settings

# Registers the table models on SQLModel.metadata before create_all runs
from . import tables  # noqa: F401


def engine_options(database_url: str) -> Dict[str, Any]:
    url = make_url(database_url)
    if url.get_backend_name() != "sqlite":
        # Drop connections the server closed while idle
        return {"pool_pre_ping": True}

    options: Dict[str, Any] = {"connect_args": {"check_same_thread": False}}
    if url.database in (None, "", ":memory:"):
        options["poolclass"] = StaticPool
    return options


def make_engine(database_url: str) -> Engine:
    # echo stays off; statements carry visitor data
    return create_engine(database_url, echo=False, **engine_options(database_url))


engine = make_engine(settings.DATABASE_URL)


def init_db(db_engine: Engine = None):
    """Creates any missing tables. Safe to call on every start."""
    SQLModel.metadata.create_all(db_engine or engine)
