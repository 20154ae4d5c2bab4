"""Object store backed by a shared SQLite file (SQLModel + SQLAlchemy)."""

from __future__ import annotations

import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from uuid import uuid4

from sqlalchemy import delete as sa_delete
from sqlalchemy import event
from sqlalchemy import update as sa_update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.pool import NullPool
from sqlmodel import Session, col, create_engine, select

from burstpool.clock import utc_now
from burstpool.errors import StoreUnavailableError
from burstpool.store.alembic_runner import upgrade_head
from burstpool.store.base import PutResult, StoredObject
from burstpool.store.sqlmodel_models import StoreObjectRow


class SqliteObjectStore:
    """Versioned key/value objects in one SQLite table.

    Conditional writes are single ``UPDATE ... WHERE version = ?`` statements,
    so many processes sharing the file get the same exclusivity a conditional
    HTTP PUT gives.
    """

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def close(self) -> None:
        self.engine.dispose()

    def get(self, key: str) -> StoredObject | None:
        with self._translate_errors("get"), Session(self.engine) as session:
            row = session.exec(
                select(StoreObjectRow).where(StoreObjectRow.key == key),
            ).one_or_none()
            if row is None:
                return None
            return StoredObject(body=bytes(row.body), version=row.version)

    def put_if_match(self, key: str, body: bytes, version: str | None) -> PutResult:
        now = utc_now()
        new_version = uuid4().hex
        with self._translate_errors("put"), Session(self.engine) as session:
            if version is None:
                session.add(
                    StoreObjectRow(key=key, body=body, version=new_version, updated_at=now),
                )
                try:
                    session.commit()
                except IntegrityError:
                    session.rollback()
                    return PutResult(ok=False)
                return PutResult(ok=True, version=new_version)

            result = session.exec(
                sa_update(StoreObjectRow)
                .where(
                    col(StoreObjectRow.key) == key,
                    col(StoreObjectRow.version) == version,
                )
                .values(body=body, version=new_version, updated_at=now),
            )
            if result.rowcount != 1:
                session.rollback()
                return PutResult(ok=False)
            session.commit()
            return PutResult(ok=True, version=new_version)

    def list_keys(self, prefix: str, limit: int | None = None) -> list[str]:
        with self._translate_errors("list"), Session(self.engine) as session:
            statement = (
                select(StoreObjectRow.key)
                .where(col(StoreObjectRow.key).startswith(prefix, autoescape=True))
                .order_by(col(StoreObjectRow.key).asc())
            )
            if limit is not None:
                statement = statement.limit(limit)
            return list(session.exec(statement).all())

    def delete(self, key: str) -> bool:
        with self._translate_errors("delete"), Session(self.engine) as session:
            result = session.exec(
                sa_delete(StoreObjectRow).where(col(StoreObjectRow.key) == key),
            )
            session.commit()
            return result.rowcount == 1

    @contextmanager
    def _translate_errors(self, operation: str) -> Iterator[None]:
        try:
            yield
        except OperationalError as error:
            raise StoreUnavailableError(
                f"SQLite store {operation} failed: {error.orig}",
                operation=operation,
            ) from error


def build_sqlite_engine(*, db_path: Path, busy_timeout_ms: int) -> Engine:
    """Build SQLAlchemy engine with consistent SQLite policy."""

    db_url = f"sqlite:///{db_path}"
    engine = create_engine(
        db_url,
        connect_args={
            "check_same_thread": False,
            "timeout": max(1.0, busy_timeout_ms / 1000.0),
        },
        poolclass=NullPool,
    )
    event.listen(
        engine,
        "connect",
        lambda dbapi_connection, _: _apply_sqlite_pragmas(
            dbapi_connection,
            busy_timeout_ms=busy_timeout_ms,
        ),
    )
    return engine


def _apply_sqlite_pragmas(dbapi_connection: sqlite3.Connection, *, busy_timeout_ms: int) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode = WAL")
    cursor.execute(f"PRAGMA busy_timeout = {max(1, busy_timeout_ms)}")
    cursor.close()
