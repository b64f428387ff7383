"""Database connection and the keyed record store used by the sync engine."""

import json
import logging
from contextlib import contextmanager

import psycopg2
import psycopg2.extras
from psycopg2 import sql

from config import DATABASE_URL
from errors import ConfigurationError, PersistenceError

logger = logging.getLogger(__name__)

CREDENTIALS_TABLE = "garmin_credentials"
ACTIVITIES_TABLE = "activities"
HEALTH_TABLE = "health_data"

TABLES = {CREDENTIALS_TABLE, ACTIVITIES_TABLE, HEALTH_TABLE}


@contextmanager
def get_connection():
    """Yield a database connection, closing it on exit."""
    if not DATABASE_URL:
        raise ConfigurationError("DATABASE_URL is not set.")
    conn = psycopg2.connect(DATABASE_URL)
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def _adapt(value):
    """Wrap dict/list values for jsonb columns."""
    if isinstance(value, (dict, list)):
        return psycopg2.extras.Json(value, dumps=lambda v: json.dumps(v, default=str))
    return value


def _where(filters: dict) -> sql.Composed:
    return sql.SQL(" AND ").join(
        sql.SQL("{} = %s").format(sql.Identifier(col)) for col in filters
    )


class PostgresStore:
    """find_one / insert / update / delete over a single psycopg2 connection.

    Every statement runs in its own transaction so one failed write does not
    poison the writes that follow it.
    """

    def __init__(self, conn):
        self.conn = conn

    def _check_table(self, table: str):
        if table not in TABLES:
            raise ValueError(f"Unknown table: {table}")

    def _execute(self, query, params, fetch=False):
        try:
            with self.conn:
                with self.conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
                    cur.execute(query, params)
                    if fetch:
                        row = cur.fetchone()
                        return dict(row) if row else None
                    return cur.rowcount
        except psycopg2.Error as e:
            logger.warning("Store error: %s", e)
            raise PersistenceError(str(e)) from e

    def find_one(self, table: str, filters: dict) -> dict | None:
        self._check_table(table)
        query = sql.SQL("SELECT * FROM {} WHERE {} LIMIT 1").format(
            sql.Identifier(table), _where(filters)
        )
        return self._execute(query, list(filters.values()), fetch=True)

    def insert(self, table: str, record: dict) -> None:
        self._check_table(table)
        query = sql.SQL("INSERT INTO {} ({}) VALUES ({})").format(
            sql.Identifier(table),
            sql.SQL(", ").join(sql.Identifier(col) for col in record),
            sql.SQL(", ").join(sql.Placeholder() * len(record)),
        )
        self._execute(query, [_adapt(v) for v in record.values()])

    def update(self, table: str, filters: dict, patch: dict) -> int:
        """Update rows matching filters. Returns the number of rows touched."""
        self._check_table(table)
        if not patch:
            return 0
        query = sql.SQL("UPDATE {} SET {}, updated_at = NOW() WHERE {}").format(
            sql.Identifier(table),
            sql.SQL(", ").join(
                sql.SQL("{} = %s").format(sql.Identifier(col)) for col in patch
            ),
            _where(filters),
        )
        params = [_adapt(v) for v in patch.values()] + list(filters.values())
        return self._execute(query, params)

    def delete(self, table: str, filters: dict) -> int:
        self._check_table(table)
        query = sql.SQL("DELETE FROM {} WHERE {}").format(
            sql.Identifier(table), _where(filters)
        )
        return self._execute(query, list(filters.values()))
