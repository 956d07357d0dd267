"""
PostgreSQL query driver.

Wraps a bounded psycopg2 connection pool with parametrized queries,
transactions (with savepoints), bulk upserts, JSONB helpers, health
checks and query statistics.
"""

import json
import logging
import re
import threading
import time
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Any, List, Optional, Sequence, Callable, Iterator, TypeVar

import psycopg2
import psycopg2.pool
from psycopg2.extras import RealDictCursor

from botstore.config import DatabaseConfig
from botstore.error_handling import (
    DatabaseConnectionError,
    IntegrityError,
    OperationCancelled,
    QueryError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

# SQLSTATE codes reported by the server
_INVALID_PASSWORD = "28P01"
_INVALID_AUTHORIZATION = "28000"
_INVALID_CATALOG = "3D000"
_UNIQUE_VIOLATION = "23505"
_FOREIGN_KEY_VIOLATION = "23503"
_UNDEFINED_TABLE = "42P01"


def _safe_identifier(name: str) -> str:
    if not isinstance(name, str) or not _IDENTIFIER.match(name):
        raise QueryError(f"Invalid SQL identifier: {name!r}")
    return name


def _preview(sql: str, limit: int = 100) -> str:
    flat = " ".join(sql.split())
    return flat if len(flat) <= limit else flat[:limit] + "..."


def classify_connection_error(error: Exception) -> str:
    """Map a connection failure to one of the DatabaseConnectionError reasons."""
    code = getattr(error, "pgcode", None)
    if code in (_INVALID_PASSWORD, _INVALID_AUTHORIZATION):
        return DatabaseConnectionError.BAD_CREDENTIALS
    if code == _INVALID_CATALOG:
        return DatabaseConnectionError.UNKNOWN_DATABASE

    text = str(error).lower()
    if "password authentication failed" in text or "authentication failed" in text or "no password supplied" in text:
        return DatabaseConnectionError.BAD_CREDENTIALS
    if "database" in text and "does not exist" in text:
        return DatabaseConnectionError.UNKNOWN_DATABASE
    return DatabaseConnectionError.UNREACHABLE


_CONNECTION_HINTS = {
    DatabaseConnectionError.UNREACHABLE: "make sure PostgreSQL is running and reachable",
    DatabaseConnectionError.BAD_CREDENTIALS: "check the database user and password",
    DatabaseConnectionError.UNKNOWN_DATABASE: "the database does not exist, check the database name",
}


def translate_query_error(error: Exception, sql: str) -> QueryError:
    code = getattr(error, "pgcode", None)
    details = {"pgcode": code, "sql": _preview(sql, 200)}
    if code == _UNIQUE_VIOLATION:
        return IntegrityError("Duplicate key violation - record already exists", details=details, cause=error)
    if code == _FOREIGN_KEY_VIOLATION:
        return IntegrityError("Foreign key violation - referenced record does not exist", details=details, cause=error)
    if code == _UNDEFINED_TABLE:
        return QueryError("Table does not exist - check database schema", details=details, cause=error)
    return QueryError(f"Query failed: {_preview(sql)}", details=details, cause=error)


def is_transaction_fatal(error: BaseException) -> bool:
    """True when the connection itself is gone and the transaction cannot continue."""
    cause = getattr(error, "cause", None) or error
    return isinstance(cause, (psycopg2.OperationalError, psycopg2.InterfaceError))


def build_upsert(
    table: str,
    columns: Sequence[str],
    row_count: int,
    conflict_key: Optional[str] = None,
    update_columns: Optional[Sequence[str]] = None,
    touch_updated_at: bool = True,
) -> str:
    """
    Build one multi-row INSERT with optional ON CONFLICT handling.
    """
    table = _safe_identifier(table)
    column_list = ", ".join(_safe_identifier(c) for c in columns)
    placeholders = "(" + ", ".join(["%s"] * len(columns)) + ")"
    values = ", ".join([placeholders] * row_count)
    sql = f"INSERT INTO {table} ({column_list}) VALUES {values}"

    if conflict_key and update_columns:
        assignments = [f"{_safe_identifier(c)} = EXCLUDED.{c}" for c in update_columns]
        if touch_updated_at:
            assignments.append("updated_at = CURRENT_TIMESTAMP")
        sql += f" ON CONFLICT ({_safe_identifier(conflict_key)}) DO UPDATE SET {', '.join(assignments)}"
    elif conflict_key:
        sql += f" ON CONFLICT ({_safe_identifier(conflict_key)}) DO NOTHING"

    return sql + " RETURNING *"


def iter_batches(items: Sequence[T], size: int) -> Iterator[Sequence[T]]:
    """Yield consecutive slices of at most ``size`` items."""
    size = max(1, int(size))
    for start in range(0, len(items), size):
        yield items[start:start + size]


def _execute(connection, sql: str, params: Optional[Sequence[Any]]) -> List[Dict[str, Any]]:
    with connection.cursor(cursor_factory=RealDictCursor) as cursor:
        cursor.execute(sql, params)
        if cursor.description is None:
            return []
        return [dict(row) for row in cursor.fetchall()]


class CancellationToken:
    """
    Cooperative cancellation flag shared between a caller and a worker.
    """

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float) -> bool:
        """Sleep up to ``timeout`` seconds; returns True if cancelled meanwhile."""
        return self._event.wait(timeout)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelled()


class Transaction:
    """
    Statement executor bound to a single pooled connection.

    Instances are handed to ``QueryDriver.transaction`` callbacks.
    """

    def __init__(self, connection, driver: "QueryDriver"):
        self.connection = connection
        self.driver = driver
        self._savepoints = 0

    def query(self, sql: str, params: Optional[Sequence[Any]] = None) -> List[Dict[str, Any]]:
        logger.debug(f"[TX] Executing: {_preview(sql)}")
        start = time.monotonic()
        self.driver._count("total_queries")
        try:
            rows = _execute(self.connection, sql, params)
        except psycopg2.Error as e:
            self.driver._count("failed_queries")
            raise translate_query_error(e, sql) from e
        self.driver._record((time.monotonic() - start) * 1000, len(rows), sql)
        return rows

    def bulk_insert(
        self,
        table: str,
        columns: Sequence[str],
        rows: Sequence[Sequence[Any]],
        conflict_key: Optional[str] = None,
        update_columns: Optional[Sequence[str]] = None,
    ) -> List[Dict[str, Any]]:
        if not rows:
            return []
        sql = build_upsert(table, columns, len(rows), conflict_key, update_columns)
        params = [value for row in rows for value in row]
        return self.query(sql, params)

    @contextmanager
    def savepoint(self, name: Optional[str] = None) -> Iterator["Transaction"]:
        """
        Run a block under a savepoint, rolling back only the block on error.

        The error is re-raised so the caller decides whether to isolate it.
        """
        self._savepoints += 1
        name = _safe_identifier(name or f"sp_{self._savepoints}")
        self.query(f"SAVEPOINT {name}")
        try:
            yield self
        except Exception as e:
            if not is_transaction_fatal(e):
                self.query(f"ROLLBACK TO SAVEPOINT {name}")
            raise
        else:
            self.query(f"RELEASE SAVEPOINT {name}")


class QueryDriver:
    """
    Bounded connection pool to PostgreSQL.

    The pool never hands out more than ``pool_size`` connections; further
    requests wait until one is released.
    """

    def __init__(
        self,
        config: Optional[DatabaseConfig] = None,
        pool_factory: Optional[Callable[..., Any]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config or DatabaseConfig()
        self._pool_factory = pool_factory or psycopg2.pool.ThreadedConnectionPool
        self._sleep = sleep
        self.pool = None
        self.is_connected = False
        self.connection_attempts = 0
        self.server_version: Optional[str] = None

        self._slots = threading.BoundedSemaphore(self.config.pool_size)
        self._lock = threading.Lock()
        self._in_use = 0
        self._waiting = 0

        self.stats: Dict[str, Any] = {
            "total_queries": 0,
            "successful_queries": 0,
            "failed_queries": 0,
            "slow_queries": 0,
            "total_rows": 0,
            "total_duration_ms": 0.0,
            "last_duration_ms": None,
            "total_connections": 0,
        }

    # Connection management

    def connect(self, max_attempts: Optional[int] = None, cancel_token: Optional[CancellationToken] = None) -> bool:
        """
        Open the pool and check the server, retrying with exponential backoff.

        Raises:
            DatabaseConnectionError: when every attempt failed
            OperationCancelled: when ``cancel_token`` was cancelled meanwhile
        """
        attempts = max_attempts or self.config.connect_retries
        logger.info(f"Connecting to PostgreSQL at {self.config.describe()}")

        last_error: Optional[Exception] = None
        for attempt in range(1, attempts + 1):
            if cancel_token:
                cancel_token.raise_if_cancelled()
            try:
                self._open_pool()
                self.is_connected = True
                self.connection_attempts = 0
                logger.info(f"PostgreSQL connected ({self.server_version or 'unknown version'})")
                return True
            except psycopg2.Error as e:
                last_error = e
                self.connection_attempts += 1
                self._discard_pool()
                reason = classify_connection_error(e)
                logger.warning(
                    f"PostgreSQL connection attempt {attempt}/{attempts} failed ({reason}): {str(e).strip()}"
                )
                # Credentials and missing databases do not fix themselves
                if reason != DatabaseConnectionError.UNREACHABLE or attempt == attempts:
                    break
                delay = self.config.retry_backoff * (2 ** (attempt - 1))
                logger.info(f"Retrying connection in {delay:.1f}s")
                if cancel_token:
                    if cancel_token.wait(delay):
                        raise OperationCancelled()
                else:
                    self._sleep(delay)

        reason = classify_connection_error(last_error) if last_error else DatabaseConnectionError.UNREACHABLE
        raise DatabaseConnectionError(
            f"PostgreSQL connection failed: {_CONNECTION_HINTS[reason]}",
            reason=reason,
            details={"target": self.config.describe(), "attempts": self.connection_attempts},
            cause=last_error,
        )

    def _open_pool(self) -> None:
        self.pool = self._pool_factory(1, self.config.pool_size, **self.config.dsn_kwargs())
        connection = self.pool.getconn()
        try:
            rows = _execute(connection, "SELECT NOW() AS current_time, version() AS pg_version", None)
            connection.commit()
        finally:
            self.pool.putconn(connection)
        self._count("total_connections")
        if rows:
            version = str(rows[0].get("pg_version") or "")
            self.server_version = " ".join(version.split()[:2]) or None

    def _discard_pool(self) -> None:
        if self.pool is not None:
            try:
                self.pool.closeall()
            except psycopg2.Error as e:
                logger.debug(f"Error discarding pool: {e}")
        self.pool = None
        self.is_connected = False

    def _require_connection(self) -> None:
        if not self.is_connected or self.pool is None:
            raise DatabaseConnectionError("PostgreSQL not connected")

    @contextmanager
    def connection(self) -> Iterator[Any]:
        """Borrow a pooled connection, waiting while the pool is exhausted."""
        self._require_connection()
        with self._lock:
            self._waiting += 1
        self._slots.acquire()
        with self._lock:
            self._waiting -= 1
            self._in_use += 1
        connection = None
        try:
            connection = self.pool.getconn()
            yield connection
        finally:
            if connection is not None:
                broken = bool(getattr(connection, "closed", False))
                try:
                    self.pool.putconn(connection, close=broken)
                except psycopg2.pool.PoolError as e:
                    logger.debug(f"Could not return connection to pool: {e}")
            with self._lock:
                self._in_use -= 1
            self._slots.release()

    # Statements

    def query(self, sql: str, params: Optional[Sequence[Any]] = None) -> List[Dict[str, Any]]:
        """
        Execute a statement and return its rows as dictionaries.
        """
        self._require_connection()
        start = time.monotonic()
        self._count("total_queries")
        logger.debug(f"Executing query: {_preview(sql)}")
        if params:
            logger.debug(f"Parameters: {_preview(json.dumps(list(params), default=str), 200)}")

        try:
            with self.connection() as connection:
                try:
                    rows = _execute(connection, sql, params)
                    connection.commit()
                except psycopg2.Error:
                    connection.rollback()
                    raise
        except psycopg2.Error as e:
            duration = (time.monotonic() - start) * 1000
            self._count("failed_queries")
            error = translate_query_error(e, sql)
            logger.error(f"Query failed ({duration:.0f}ms): {error.message}")
            raise error from e

        duration = (time.monotonic() - start) * 1000
        self._record(duration, len(rows), sql)
        return rows

    def _count(self, key: str, amount: int = 1) -> None:
        with self._lock:
            self.stats[key] += amount

    def _record(self, duration_ms: float, row_count: int, sql: str) -> None:
        slow = duration_ms > self.config.slow_query_ms
        with self._lock:
            self.stats["successful_queries"] += 1
            self.stats["total_rows"] += row_count
            self.stats["total_duration_ms"] += duration_ms
            self.stats["last_duration_ms"] = duration_ms
            if slow:
                self.stats["slow_queries"] += 1
        logger.debug(f"Query executed successfully ({duration_ms:.0f}ms, {row_count} rows)")
        if slow:
            logger.warning(f"Slow query detected ({duration_ms:.0f}ms): {_preview(sql)}")

    def transaction(self, callback: Callable[[Transaction], T]) -> T:
        """
        Run ``callback(tx)`` inside BEGIN/COMMIT, rolling back on any error.
        """
        self._require_connection()
        with self.connection() as connection:
            logger.debug("Starting transaction")
            try:
                result = callback(Transaction(connection, self))
                connection.commit()
            except BaseException as e:
                try:
                    connection.rollback()
                except psycopg2.Error as rollback_error:
                    logger.error(f"Rollback failed: {rollback_error}")
                logger.error(f"Transaction rolled back: {e}")
                raise
            logger.debug("Transaction committed")
            return result

    def bulk_insert(
        self,
        table: str,
        columns: Sequence[str],
        rows: Sequence[Sequence[Any]],
        conflict_key: Optional[str] = None,
        update_columns: Optional[Sequence[str]] = None,
    ) -> List[Dict[str, Any]]:
        """
        Insert many rows in one statement, upserting on ``conflict_key``.
        """
        if not rows:
            return []
        sql = build_upsert(table, columns, len(rows), conflict_key, update_columns)
        params = [value for row in rows for value in row]
        return self.query(sql, params)

    # JSONB helpers

    def json_query(self, table: str, json_column: str, json_path: Sequence[str], value: Any) -> List[Dict[str, Any]]:
        """Rows whose nested JSONB field at ``json_path`` equals ``value`` (compared as text)."""
        sql = f"SELECT * FROM {_safe_identifier(table)} WHERE {_safe_identifier(json_column)} #>> %s = %s"
        text = value if isinstance(value, str) or value is None else json.dumps(value)
        return self.query(sql, [list(json_path), text])

    def get_json_field(
        self, table: str, key_column: str, key_value: Any, json_column: str, json_path: Sequence[str]
    ) -> Any:
        """Read a single nested JSONB value without fetching the whole document."""
        sql = (
            f"SELECT {_safe_identifier(json_column)} #> %s AS value "
            f"FROM {_safe_identifier(table)} WHERE {_safe_identifier(key_column)} = %s"
        )
        rows = self.query(sql, [list(json_path), key_value])
        return rows[0]["value"] if rows else None

    def update_json_field(
        self,
        table: str,
        key_column: str,
        key_value: Any,
        json_column: str,
        json_path: Sequence[str],
        new_value: Any,
    ) -> List[Dict[str, Any]]:
        """Set a single nested JSONB value in place via ``jsonb_set``."""
        column = _safe_identifier(json_column)
        sql = (
            f"UPDATE {_safe_identifier(table)} "
            f"SET {column} = jsonb_set(COALESCE({column}, '{{}}'::jsonb), %s, %s::jsonb, true), "
            f"updated_at = CURRENT_TIMESTAMP "
            f"WHERE {_safe_identifier(key_column)} = %s RETURNING *"
        )
        return self.query(sql, [list(json_path), json.dumps(new_value, allow_nan=False), key_value])

    def full_text_search(
        self, table: str, search_columns: Sequence[str], search_term: str, limit: int = 50, language: str = "spanish"
    ) -> List[Dict[str, Any]]:
        document = " || ' ' || ".join(f"COALESCE({_safe_identifier(c)}::text, '')" for c in search_columns)
        sql = (
            f"SELECT *, ts_rank(to_tsvector(%s, {document}), plainto_tsquery(%s, %s)) AS rank "
            f"FROM {_safe_identifier(table)} "
            f"WHERE to_tsvector(%s, {document}) @@ plainto_tsquery(%s, %s) "
            f"ORDER BY rank DESC LIMIT %s"
        )
        return self.query(sql, [language, language, search_term, language, language, search_term, limit])

    # Introspection

    def pool_snapshot(self) -> Dict[str, int]:
        with self._lock:
            in_use = self._in_use
            waiting = self._waiting
        return {
            "size": self.config.pool_size,
            "in_use": in_use,
            "idle": max(0, self.config.pool_size - in_use),
            "waiting": waiting,
        }

    def health_check(self) -> Dict[str, Any]:
        try:
            rows = self.query("SELECT 1 AS health_check, NOW() AS timestamp")
            timestamp = rows[0].get("timestamp") if rows else None
            if isinstance(timestamp, datetime):
                timestamp = timestamp.isoformat()
            return {"healthy": True, "timestamp": timestamp, "connection_pool": self.pool_snapshot()}
        except (QueryError, DatabaseConnectionError) as e:
            return {"healthy": False, "error": e.message, "connection_pool": None}

    def database_stats(self) -> Dict[str, Any]:
        connections = self.query(
            """
            SELECT count(*) AS total_connections,
                   count(*) FILTER (WHERE state = 'active') AS active_connections,
                   count(*) FILTER (WHERE state = 'idle') AS idle_connections
            FROM pg_stat_activity
            WHERE datname = current_database()
            """
        )
        size = self.query("SELECT pg_size_pretty(pg_database_size(current_database())) AS database_size")
        return {
            "connection_stats": connections[0] if connections else {},
            "database_size": size[0]["database_size"] if size else None,
            "driver_stats": self.query_stats(),
        }

    def query_stats(self) -> Dict[str, Any]:
        with self._lock:
            stats = dict(self.stats)
        successful = stats["successful_queries"]
        stats["average_duration_ms"] = stats["total_duration_ms"] / successful if successful else 0.0
        return stats

    def get_status(self) -> Dict[str, Any]:
        return {
            "is_connected": self.is_connected,
            "connection_attempts": self.connection_attempts,
            "server_version": self.server_version,
            "config": {
                "target": self.config.describe(),
                "max_connections": self.config.pool_size,
                "ssl": self.config.ssl,
            },
            "pool": self.pool_snapshot() if self.pool is not None else None,
            "stats": self.query_stats(),
        }

    def close(self) -> None:
        if self.pool is not None:
            try:
                self.pool.closeall()
                logger.info("PostgreSQL connection pool closed")
            except psycopg2.Error as e:
                logger.error(f"Error closing PostgreSQL pool: {e}")
                raise QueryError("Error closing PostgreSQL pool", cause=e) from e
            finally:
                self.pool = None
        self.is_connected = False
