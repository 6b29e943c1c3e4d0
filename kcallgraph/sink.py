#!/usr/bin/env python3
"""
sink.py

Database side of the pipeline: executes the finished INSERT statements.

The Sink is synchronous. execute() commits before it returns, so a later
execute_returning_id() on the same session observes every earlier row.

There is no retry. A failing statement is logged verbatim and surfaces as
SinkExecutionFailure, which ends the run; the output database is expected
to be dropped and rebuilt on the next run.
"""

from __future__ import annotations

import logging
import sqlite3
from pathlib import Path
from typing import Any

LOG = logging.getLogger("sink")

RULER = "#" * 50

# Reads the id allocated by the last instances INSERT in the same session.
POSTGRES_ID_QUERY = "SELECT currval('instances_instance_id_seq');"
SQLITE_ID_QUERY = "SELECT last_insert_rowid();"


SCHEMA = """
CREATE TABLE IF NOT EXISTS instances (
    instance_id  INTEGER PRIMARY KEY AUTOINCREMENT,
    version      INTEGER,
    patchlevel   INTEGER,
    sublevel     INTEGER,
    extraversion TEXT,
    note         TEXT
);
CREATE TABLE IF NOT EXISTS configs (
    config_id   INTEGER PRIMARY KEY AUTOINCREMENT,
    config_key  TEXT,
    config_val  TEXT,
    instance_id INTEGER REFERENCES instances(instance_id)
);
CREATE TABLE IF NOT EXISTS files (
    file_id INTEGER PRIMARY KEY AUTOINCREMENT,
    id      INTEGER REFERENCES instances(instance_id)
);
CREATE TABLE IF NOT EXISTS symbols (
    symbol_id INTEGER PRIMARY KEY AUTOINCREMENT,
    id        INTEGER REFERENCES instances(instance_id)
);
CREATE TABLE IF NOT EXISTS tags (
    tag_id           INTEGER PRIMARY KEY AUTOINCREMENT,
    id               INTEGER REFERENCES instances(instance_id),
    addr2line_prefix TEXT
);
CREATE TABLE IF NOT EXISTS symbols_files (
    symbol_file_id INTEGER PRIMARY KEY AUTOINCREMENT,
    id             INTEGER REFERENCES instances(instance_id),
    symbol_name    TEXT,
    symbol_offset  TEXT,
    symbol_type    TEXT
);
CREATE TABLE IF NOT EXISTS xrefs (
    xref_id        INTEGER PRIMARY KEY AUTOINCREMENT,
    id             INTEGER REFERENCES instances(instance_id),
    caller_offset  TEXT,
    calling_offset TEXT,
    callee_offset  TEXT,
    source_line    TEXT
);
"""


class SinkExecutionFailure(Exception):
    """A statement could not be executed; fatal to the run."""

    def __init__(self, statement: str, cause: BaseException):
        super().__init__(f"failed to execute statement: {cause}")
        self.statement = statement
        self.cause = cause


class Sink:
    """
    Executes INSERT statements on a DB-API 2 connection.

    id_query is the statement that reads back the id of the last inserted
    instance row; it must run in the same session as the INSERT.
    """

    def __init__(self, connection: Any, id_query: str = POSTGRES_ID_QUERY):
        self.connection = connection
        self.id_query = id_query

    def _fail(self, statement: str, e: Exception) -> SinkExecutionFailure:
        LOG.error(RULER)
        LOG.error("%s", statement)
        LOG.error(RULER)
        try:
            self.connection.rollback()
        except Exception as rb:
            LOG.debug("Rollback after failure also failed: %s", rb)
        return SinkExecutionFailure(statement, e)

    def execute(self, statement: str) -> None:
        cur = self.connection.cursor()
        try:
            cur.execute(statement)
            self.connection.commit()
        except Exception as e:
            raise self._fail(statement, e) from e
        finally:
            cur.close()

    def execute_returning_id(self, statement: str) -> int:
        cur = self.connection.cursor()
        try:
            cur.execute(statement)
            self.connection.commit()
        except Exception as e:
            cur.close()
            raise self._fail(statement, e) from e

        try:
            cur.execute(self.id_query)
            row = cur.fetchone()
        except Exception as e:
            raise self._fail(self.id_query, e) from e
        finally:
            cur.close()

        if row is None:
            raise SinkExecutionFailure(self.id_query, LookupError("no id returned"))
        return int(row[0])

    def close(self) -> None:
        self.connection.close()


def create_schema(conn: sqlite3.Connection) -> None:
    conn.executescript(SCHEMA)
    conn.commit()


def open_sqlite(db_path: str) -> Sink:
    """
    Open (or create) a SQLite call-graph store and return a Sink on it.

    check_same_thread is off because statements are issued from the worker
    thread while the instance row is inserted from the main thread; the
    pipeline never issues two statements at once on this connection.
    """
    if db_path != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path, check_same_thread=False)
    create_schema(conn)
    LOG.info("Opened call-graph store: %s", db_path)
    return Sink(conn, id_query=SQLITE_ID_QUERY)


__all__ = [
    "POSTGRES_ID_QUERY",
    "SCHEMA",
    "SQLITE_ID_QUERY",
    "Sink",
    "SinkExecutionFailure",
    "create_schema",
    "open_sqlite",
]
