import os

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker


def _require_env(name: str) -> str:
    value = os.environ.get(name)
    if not value:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value


def build_engine(db_url: str) -> Engine:
    connect_args = {}
    if db_url.startswith("sqlite"):
        # Worker threads (scheduler, thread pool) share the engine.
        connect_args = {"check_same_thread": False, "timeout": 30}
    return create_engine(
        db_url,
        pool_pre_ping=True,
        future=True,
        connect_args=connect_args,
    )


def build_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
        future=True,
    )


RESOURCE_OFFICE_DB_URL = _require_env("RESOURCE_OFFICE_DB_URL")

engine_office = build_engine(RESOURCE_OFFICE_DB_URL)

SessionLocalOffice = build_session_factory(engine_office)
