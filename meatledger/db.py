from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterable, Iterator

import streamlit as st

from meatledger.errors import Conflict, LedgerError, LedgerTimeout, NotFound, ValidationError
from meatledger.schema import SCHEMA_SQL

logger = logging.getLogger(__name__)


class LedgerConnection(sqlite3.Connection):
    """
    sqlite3 connection shared by every Streamlit session thread.

    `lock` serializes callers: a unit of work holds it from BEGIN to
    COMMIT/ROLLBACK, so a statement from another thread can never land
    inside someone else's transaction.
    """

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.lock = threading.RLock()
        self.lock_timeout_s = 5.0
        self.tx_depth = 0


def connect(db_path: Path | str, *, timeout_s: float = 5.0) -> LedgerConnection:
    conn = sqlite3.connect(
        str(db_path),
        check_same_thread=False,
        timeout=float(timeout_s),
        factory=LedgerConnection,
    )
    conn.lock_timeout_s = float(timeout_s)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


@st.cache_resource
def get_conn(db_path: Path, timeout_s: float = 5.0) -> LedgerConnection:
    return connect(db_path, timeout_s=timeout_s)


def _column_exists(conn: sqlite3.Connection, table: str, column: str) -> bool:
    rows = conn.execute(f"PRAGMA table_info({table});").fetchall()
    cols = [r["name"] for r in rows]
    return column in cols


def ensure_schema(conn: sqlite3.Connection) -> None:
    # executescript commits whatever is open, so wait out any unit of work first
    with _guard(conn):
        # Create base schema (for new installs)
        conn.executescript(SCHEMA_SQL)

        # ---- migrations for existing installs ----
        # Revenue attribution on lots was added after the first release
        if not _column_exists(conn, "stock", "carcass_id"):
            conn.execute("ALTER TABLE stock ADD COLUMN carcass_id INTEGER;")

        # Optimistic concurrency counters
        for table in ("held_sales", "stock_count_items", "cash_counts"):
            if not _column_exists(conn, table, "version"):
                conn.execute(f"ALTER TABLE {table} ADD COLUMN version INTEGER NOT NULL DEFAULT 1;")

        # Unit counts travel with sold kilograms so a void can put them back
        if not _column_exists(conn, "sale_item_allocations", "quantity_units"):
            conn.execute("ALTER TABLE sale_item_allocations ADD COLUMN quantity_units INTEGER NOT NULL DEFAULT 0;")

        for column in ("expected_cash_base", "actual_cash_base", "cash_variance_base"):
            if not _column_exists(conn, "daily_closings", column):
                conn.execute(f"ALTER TABLE daily_closings ADD COLUMN {column} REAL NOT NULL DEFAULT 0;")

        conn.commit()


def _in_unit_of_work(conn: sqlite3.Connection) -> bool:
    return getattr(conn, "tx_depth", 0) > 0


@contextmanager
def _guard(conn: sqlite3.Connection) -> Iterator[None]:
    """Hold the connection lock; re-entrant for the thread that owns the unit of work."""
    lock = getattr(conn, "lock", None)
    if lock is None:
        yield
        return
    if not lock.acquire(timeout=conn.lock_timeout_s):
        raise LedgerTimeout("The ledger is busy with another user's change. Nothing was saved; try again.")
    try:
        yield
    finally:
        lock.release()


def _translate(exc: sqlite3.Error) -> LedgerError | sqlite3.Error:
    msg = str(exc)
    if isinstance(exc, sqlite3.IntegrityError):
        if "UNIQUE" in msg:
            return Conflict(f"Duplicate record: {msg}")
        if "FOREIGN KEY" in msg:
            return NotFound("Referenced record not found.")
        return ValidationError(msg)
    if isinstance(exc, sqlite3.OperationalError) and ("locked" in msg or "busy" in msg):
        return LedgerTimeout("The ledger is busy. Nothing was saved; try again.")
    return exc


def _execute(conn: sqlite3.Connection, sql: str, params: Iterable[Any]) -> sqlite3.Cursor:
    try:
        return conn.execute(sql, tuple(params))
    except sqlite3.Error as e:
        if not _in_unit_of_work(conn) and conn.in_transaction:
            conn.rollback()
        err = _translate(e)
        if err is e:
            raise
        raise err from e


def q(conn: sqlite3.Connection, sql: str, params: Iterable[Any] = ()) -> list[sqlite3.Row]:
    with _guard(conn):
        cur = _execute(conn, sql, params)
        rows = cur.fetchall()
        cur.close()
    return rows


def q1(conn: sqlite3.Connection, sql: str, params: Iterable[Any] = ()) -> sqlite3.Row | None:
    rows = q(conn, sql, params)
    return rows[0] if rows else None


def x(conn: sqlite3.Connection, sql: str, params: Iterable[Any] = ()) -> int:
    with _guard(conn):
        cur = _execute(conn, sql, params)
        if not _in_unit_of_work(conn):
            conn.commit()
        last = cur.lastrowid
        cur.close()
    return int(last or 0)


def u(conn: sqlite3.Connection, sql: str, params: Iterable[Any] = ()) -> int:
    """Like x() but returns the number of rows touched (for version checks)."""
    with _guard(conn):
        cur = _execute(conn, sql, params)
        if not _in_unit_of_work(conn):
            conn.commit()
        n = cur.rowcount
        cur.close()
    return int(n)


@contextmanager
def transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """
    One unit of work: everything written inside commits together or not at all.

    Takes the write lock up front (BEGIN IMMEDIATE) so reads inside see a stable
    snapshot. Nested calls join the outer unit of work. Other threads sharing
    the connection wait on its lock until the unit of work ends.
    """
    with _guard(conn):
        if _in_unit_of_work(conn):
            conn.tx_depth += 1
            try:
                yield conn
            finally:
                conn.tx_depth -= 1
            return

        if conn.in_transaction:
            conn.commit()
        try:
            conn.execute("BEGIN IMMEDIATE")
        except sqlite3.OperationalError as e:
            err = _translate(e)
            if err is e:
                raise
            raise err from e

        conn.tx_depth = 1
        try:
            yield conn
        except LedgerError as e:
            conn.tx_depth = 0
            conn.rollback()
            logger.info("Unit of work rolled back: %s", e)
            raise
        except BaseException:
            conn.tx_depth = 0
            conn.rollback()
            logger.exception("Unit of work rolled back after unexpected error")
            raise
        else:
            conn.tx_depth = 0
            try:
                conn.commit()
            except sqlite3.OperationalError as e:
                conn.rollback()
                err = _translate(e)
                if err is e:
                    raise
                raise err from e
