from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path
from typing import Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session as SessionBase, declarative_base, sessionmaker

from .config import settings

DATABASE_URL = settings.database_url

connect_args: dict[str, object] = {}
engine_url = DATABASE_URL

if engine_url.startswith("sqlite"):
    connect_args = {"check_same_thread": False}
    # Ensure directory exists for SQLite db
    db_path = engine_url.replace("sqlite:///", "")
    if db_path and db_path != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
elif engine_url.startswith("postgres://"):
    engine_url = engine_url.replace("postgres://", "postgresql+psycopg://", 1)
elif engine_url.startswith("postgresql://"):
    engine_url = engine_url.replace("postgresql://", "postgresql+psycopg://", 1)

engine = create_engine(engine_url, connect_args=connect_args, future=True)


def enable_sqlite_savepoints(target: Engine) -> None:
    """Let SQLAlchemy own BEGIN on pysqlite so SAVEPOINT scopes roll back correctly."""

    @event.listens_for(target, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):  # type: ignore[unused-variable]
        dbapi_connection.isolation_level = None

    @event.listens_for(target, "begin")
    def _emit_begin(connection):  # type: ignore[unused-variable]
        connection.exec_driver_sql("BEGIN")


if engine.dialect.name == "sqlite":
    enable_sqlite_savepoints(engine)


class TenantSession(SessionBase):
    """Session carrying the tenant scope in ``info["tenant_id"]``."""


SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
    future=True,
    class_=TenantSession,
)

Base = declarative_base()


@contextmanager
def session_scope() -> Generator[TenantSession, None, None]:
    session: TenantSession = SessionLocal()  # type: ignore[assignment]
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def get_session() -> Generator[TenantSession, None, None]:
    with session_scope() as session:
        yield session


def init_db() -> None:
    from . import orm_models  # noqa: F401
    from .tenant_scoping import setup_tenant_events

    setup_tenant_events(TenantSession)

    Base.metadata.create_all(bind=engine)
