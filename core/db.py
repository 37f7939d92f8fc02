"""
core/db.py -- SQLAlchemy engine factory and dialect-aware write helpers.

Every store in LedgerGuard (principals, settings, rate windows, CSRF tokens,
error log) builds its engine through make_engine() so SQLite connections get
the same pragmas and thread settings everywhere.

Two write primitives cover all the atomic paths in the core:

  insert_if_absent() -- INSERT that silently does nothing when the key row
      already exists. Used for first-time secret generation and for creating
      rate window anchor rows.

  upsert() -- INSERT that replaces selected columns when the key row exists.
      Used for secret rotation.

Both compile to a single native statement on SQLite, PostgreSQL and MySQL.
Other dialects fall back to a SAVEPOINT-guarded insert.

Layer rule: core/ is the kernel. No imports from api/, auth/, or security/.
"""

from __future__ import annotations

from typing import Any

from sqlalchemy import Table, create_engine, event
from sqlalchemy.dialects import mysql, postgresql, sqlite
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    WAL (Write-Ahead Logging) allows readers to proceed without blocking
    during writes. Set per-connection because SQLite PRAGMAs are not
    inherited by new connections from the pool. In-memory databases ignore
    the journal mode and keep "memory".
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def make_engine(db_url: str) -> Engine:
    """Create an Engine for db_url with LedgerGuard's connection settings.

    SQLite: check_same_thread=False because FastAPI runs sync handlers in a
    thread pool, and a generous lock timeout so concurrent writers queue on
    the database lock instead of failing fast with "database is locked".
    """
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = 30
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_sqlite_pragmas)
    return engine


def insert_if_absent(conn: Connection, table: Table, values: dict[str, Any], key_columns: list[str]) -> None:
    """Insert values into table unless a row with the same key already exists."""
    dialect = conn.dialect.name
    if dialect == "sqlite":
        conn.execute(sqlite.insert(table).values(**values).on_conflict_do_nothing(index_elements=key_columns))
    elif dialect == "postgresql":
        conn.execute(postgresql.insert(table).values(**values).on_conflict_do_nothing(index_elements=key_columns))
    elif dialect in ("mysql", "mariadb"):
        conn.execute(table.insert().values(**values).prefix_with("IGNORE"))
    else:
        try:
            with conn.begin_nested():
                conn.execute(table.insert().values(**values))
        except IntegrityError:
            pass  # key exists -- the contract is "insert only if absent"


def upsert(
    conn: Connection,
    table: Table,
    values: dict[str, Any],
    key_columns: list[str],
    update_values: dict[str, Any],
) -> None:
    """Insert values, or apply update_values to the existing row with the same key.

    update_values may contain SQL expressions (e.g. table.c.version + 1) so
    the new state is computed by the database inside the same statement.
    """
    dialect = conn.dialect.name
    if dialect == "sqlite":
        stmt = sqlite.insert(table).values(**values)
        conn.execute(stmt.on_conflict_do_update(index_elements=key_columns, set_=update_values))
    elif dialect == "postgresql":
        stmt = postgresql.insert(table).values(**values)
        conn.execute(stmt.on_conflict_do_update(index_elements=key_columns, set_=update_values))
    elif dialect in ("mysql", "mariadb"):
        stmt = mysql.insert(table).values(**values)
        conn.execute(stmt.on_duplicate_key_update(**update_values))
    else:
        where = [table.c[col] == values[col] for col in key_columns]
        result = conn.execute(table.update().where(*where).values(**update_values))
        if result.rowcount == 0:
            insert_if_absent(conn, table, values, key_columns)
