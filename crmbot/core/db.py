from __future__ import annotations

from pathlib import Path

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from .config import get_settings
from .errors import StorageError


Base = declarative_base()


def _ensure_parent_directory(db_url: str) -> None:
    if db_url.startswith("sqlite:///") and ":memory:" not in db_url:
        # sqlite:////abs/path.db or sqlite:///relative/path.db
        file_path = db_url.split("sqlite:///")[-1]
        parent = Path(file_path).parent
        parent.mkdir(parents=True, exist_ok=True)


def _set_sqlite_pragmas(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.execute("PRAGMA synchronous=NORMAL;")
    cursor.close()


def get_engine(db_url: str | None = None) -> Engine:
    db_url = db_url or get_settings().database_url
    if not db_url.startswith("sqlite"):
        # Postgres: pool_pre_ping drops connections closed by the pooler
        return create_engine(db_url, pool_pre_ping=True)

    _ensure_parent_directory(db_url)
    if db_url in ("sqlite://", "sqlite:///:memory:"):
        # one shared connection, otherwise every checkout sees an empty database
        return create_engine(db_url, connect_args={"check_same_thread": False}, poolclass=StaticPool)
    sqlite_engine = create_engine(db_url, connect_args={"check_same_thread": False})
    event.listen(sqlite_engine, "connect", _set_sqlite_pragmas)
    return sqlite_engine


engine = get_engine()

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(bind: Engine | None = None) -> None:
    # models must be imported so their tables are registered on Base.metadata
    from crmbot.models import conversation, token  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)


_UPSERT_DIALECTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def upsert_insert(db: Session):
    """Dialect ``insert`` construct that supports ``on_conflict_do_update``."""
    dialect = db.get_bind().dialect.name
    insert = _UPSERT_DIALECTS.get(dialect)
    if insert is None:
        raise StorageError(f"upsert not supported on dialect {dialect}")
    return insert
