from __future__ import annotations

import itertools
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterable, Iterator, NamedTuple, Optional

import streamlit as st

from pharmacy.schema import SCHEMA_SQL

_savepoint_ids = itertools.count(1)


class ExecResult(NamedTuple):
    inserted_id: int
    rows_affected: int


def _connect(db_path: Path | str) -> sqlite3.Connection:
    # isolation_level=None: no implicit transactions, atomic() owns BEGIN/COMMIT.
    conn = sqlite3.connect(str(db_path), check_same_thread=False, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


@st.cache_resource
def get_conn(db_path: Path) -> sqlite3.Connection:
    return _connect(db_path)


def ensure_schema(conn: sqlite3.Connection) -> None:
    conn.executescript(SCHEMA_SQL)


def q(conn: sqlite3.Connection, sql: str, params: Iterable[Any] = ()) -> list[sqlite3.Row]:
    cur = conn.execute(sql, tuple(params))
    rows = cur.fetchall()
    cur.close()
    return rows


def q1(conn: sqlite3.Connection, sql: str, params: Iterable[Any] = ()) -> Optional[sqlite3.Row]:
    cur = conn.execute(sql, tuple(params))
    row = cur.fetchone()
    cur.close()
    return row


def x(conn: sqlite3.Connection, sql: str, params: Iterable[Any] = ()) -> ExecResult:
    cur = conn.execute(sql, tuple(params))
    result = ExecResult(inserted_id=int(cur.lastrowid or 0), rows_affected=int(cur.rowcount))
    cur.close()
    return result


@contextmanager
def atomic(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """
    All-or-nothing unit of work.

    The outermost block takes the write lock up front (BEGIN IMMEDIATE) so the
    stock checks done inside it cannot race another writer. Nested blocks run
    as savepoints and only roll back their own statements.
    """
    if conn.in_transaction:
        name = f"sp_{next(_savepoint_ids)}"
        conn.execute(f"SAVEPOINT {name}")
        try:
            yield conn
        except BaseException:
            conn.execute(f"ROLLBACK TO SAVEPOINT {name}")
            conn.execute(f"RELEASE SAVEPOINT {name}")
            raise
        else:
            conn.execute(f"RELEASE SAVEPOINT {name}")
    else:
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        else:
            conn.execute("COMMIT")
