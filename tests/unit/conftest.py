import copy
import json
import logging
import re
import threading
from contextlib import contextmanager

import psycopg2
import pytest

from botstore.config import DatabaseConfig, StoreConfig
from botstore.database.schema import JSON_COLUMNS, MIGRATION_STATUS_TABLE, PANEL_USERS_TABLE
from botstore.error_handling import DatabaseConnectionError, IntegrityError, OperationCancelled, QueryError


# Fake psycopg2 pool / connection / cursor for driver tests

class FakeCursor:
    def __init__(self, connection):
        self.connection = connection
        self.description = None
        self._rows = []

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, query, params=None):
        flat = " ".join(query.split())
        self.connection.executed.append((flat, params))
        rows = self.connection.handler(flat, params)
        self.description = None if rows is None else [("column",)]
        self._rows = rows or []

    def fetchall(self):
        return self._rows


def default_handler(sql, params):
    if sql.startswith("SELECT NOW() AS current_time"):
        return [{"current_time": "2024-01-01T00:00:00", "pg_version": "PostgreSQL 16.2 on x86_64-pc-linux-gnu"}]
    if sql.startswith("SELECT 1 AS health_check"):
        return [{"health_check": 1, "timestamp": "2024-01-01T00:00:00"}]
    if sql.startswith("SELECT") or "RETURNING" in sql:
        return []
    return None


class FakePGConnection:
    def __init__(self, handler=None):
        self.handler = handler or default_handler
        self.executed = []
        self.commits = 0
        self.rollbacks = 0
        self.closed = 0

    def cursor(self, cursor_factory=None):
        return FakeCursor(self)

    def commit(self):
        self.commits += 1

    def rollback(self):
        self.rollbacks += 1


class FakePool:
    def __init__(self, minconn, maxconn, handler=None, **kwargs):
        self.minconn = minconn
        self.maxconn = maxconn
        self.kwargs = kwargs
        self.connection = FakePGConnection(handler)
        self.returned = 0
        self.closed = False

    def getconn(self):
        return self.connection

    def putconn(self, conn, close=False):
        self.returned += 1

    def closeall(self):
        self.closed = True


class PoolFactory:
    """Creates FakePools, raising the queued errors first."""

    def __init__(self, handler=None, errors=()):
        self.handler = handler
        self.errors = list(errors)
        self.pools = []
        self.calls = []

    def __call__(self, minconn, maxconn, **kwargs):
        self.calls.append(kwargs)
        if self.errors:
            raise self.errors.pop(0)
        pool = FakePool(minconn, maxconn, handler=self.handler, **kwargs)
        self.pools.append(pool)
        return pool

    @property
    def pool(self):
        return self.pools[-1]


class UniqueViolation(psycopg2.IntegrityError):
    @property
    def pgcode(self):
        return "23505"


@pytest.fixture
def pool_factory():
    return PoolFactory()


# In-memory stand-in for QueryDriver used by backend, migration and controller tests

_CREATE_TABLE = re.compile(r"^CREATE TABLE IF NOT EXISTS (\w+)")
_SELECT_ALL = re.compile(r"^SELECT \* FROM (\w+)(?: WHERE id = 1)?$")


class FakeDriver:
    """
    Mimics QueryDriver on top of a dict of tables (table -> key -> row).

    Several drivers sharing one ``tables`` dict behave like connections to
    the same database.
    """

    def __init__(self, tables=None, connect_error=None, connect_delay=None, fail_on=None):
        self.tables = tables if tables is not None else {}
        self.connect_error = connect_error
        self.connect_delay = connect_delay
        self.fail_on = fail_on or {}
        self.is_connected = False
        self.connection_attempts = 0
        self.closed = threading.Event()
        self.executed = []
        self.transactions = 0

    def connect(self, max_attempts=None, cancel_token=None):
        if self.connect_delay:
            if cancel_token is not None:
                if cancel_token.wait(self.connect_delay):
                    raise OperationCancelled()
            else:
                threading.Event().wait(self.connect_delay)
        if self.connect_error is not None:
            self.connection_attempts += max_attempts or 1
            raise self.connect_error
        self.is_connected = True
        return True

    def _require_connection(self):
        if not self.is_connected:
            raise DatabaseConnectionError("PostgreSQL not connected")

    def query(self, sql, params=None):
        self._require_connection()
        flat = " ".join(sql.split())
        self.executed.append((flat, params))

        created = _CREATE_TABLE.match(flat)
        if created:
            self.tables.setdefault(created.group(1), {})
            return []
        if flat.startswith("CREATE INDEX") or flat.startswith(("SAVEPOINT", "RELEASE", "ROLLBACK TO")):
            return []
        selected = _SELECT_ALL.match(flat)
        if selected:
            table = selected.group(1)
            if table not in self.tables:
                raise QueryError("Table does not exist - check database schema")
            return [copy.deepcopy(row) for row in self.tables[table].values()]
        if flat.startswith(f"UPDATE {MIGRATION_STATUS_TABLE} SET completed = FALSE"):
            row = self.tables.get(MIGRATION_STATUS_TABLE, {}).get(1)
            if row:
                row["completed"] = False
            return []
        raise AssertionError(f"Unexpected SQL in FakeDriver: {flat}")

    def bulk_insert(self, table, columns, rows, conflict_key=None, update_columns=None):
        self._require_connection()
        failure = self.fail_on.get(table)
        if failure is not None:
            error = failure(rows) if callable(failure) else failure
            if error is not None:
                raise error
        if table not in self.tables:
            raise QueryError("Table does not exist - check database schema")

        store = self.tables[table]
        written = []
        for values in rows:
            row = dict(zip(columns, values))
            for column in JSON_COLUMNS.get(table, ()):
                if isinstance(row.get(column), str):
                    row[column] = json.loads(row[column])
            key = row[conflict_key]
            if table == PANEL_USERS_TABLE:
                for other_key, other in store.items():
                    if other_key != key and other.get("username") == row.get("username"):
                        raise IntegrityError("Duplicate key violation - record already exists")
            if key in store:
                if update_columns:
                    store[key].update({column: row[column] for column in update_columns})
            else:
                store[key] = row
            written.append(copy.deepcopy(store[key]))
        return written

    def transaction(self, callback):
        self._require_connection()
        self.transactions += 1
        snapshot = copy.deepcopy(self.tables)
        try:
            return callback(self)
        except BaseException:
            self.tables.clear()
            self.tables.update(snapshot)
            raise

    @contextmanager
    def savepoint(self, name=None):
        snapshot = copy.deepcopy(self.tables)
        try:
            yield self
        except Exception:
            self.tables.clear()
            self.tables.update(snapshot)
            raise

    def health_check(self):
        return {"healthy": self.is_connected, "timestamp": None, "connection_pool": {"size": 1}}

    def get_status(self):
        return {"is_connected": self.is_connected, "connection_attempts": self.connection_attempts}

    def close(self):
        self.is_connected = False
        self.closed.set()


@pytest.fixture
def database():
    """Tables shared by every FakeDriver created through ``driver_factory``."""
    return {}


@pytest.fixture
def driver_factory(database):
    """
    Stand-in for the QueryDriver class.

    ``options`` are passed to every new FakeDriver; ``overrides`` maps a
    creation index to a prepared driver.
    """
    def factory(config=None):
        index = len(factory.created)
        driver = factory.overrides.get(index) or FakeDriver(tables=database, **factory.options)
        factory.created.append(driver)
        return driver

    factory.created = []
    factory.overrides = {}
    factory.options = {}
    return factory


@pytest.fixture
def legacy_data():
    return {
        "users": {
            "5491111111111@s.whatsapp.net": {
                "name": "Ana",
                "exp": 120,
                "coin": 15,
                "level": 3,
                "premium": True,
                "banned": False,
                "warn": 1,
                "commands": 42,
                "afk": -1,
                "afkReason": "",
                "registered": True,
            },
            "5492222222222@s.whatsapp.net": {"exp": 0, "premium": False},
        },
        "chats": {
            "120363000000000000@g.us": {
                "isBanned": False,
                "antilink": True,
                "welcome": True,
                "sWelcome": "Bienvenido @user",
                "rules": "Sin spam",
            }
        },
        "usuarios": {
            "1": {
                "id": 1,
                "username": "admin",
                "password": "$2b$10$hash",
                "rol": "owner",
                "activo": True,
                "fecha_registro": "2024-01-01T00:00:00.000Z",
                "theme": "dark",
            }
        },
        "settings": {"botName": "Oguri", "limits": {"daily": 25}},
        "panel": {"broadcasts": [{"id": 1, "text": "hola"}]},
        "aportes": [{"id": 7, "titulo": "Manual"}],
    }


@pytest.fixture
def legacy_file(tmp_path, legacy_data):
    path = tmp_path / "database.json"
    path.write_text(json.dumps(legacy_data), encoding="utf-8")
    return path


@pytest.fixture
def store_config(tmp_path):
    return StoreConfig(
        database=DatabaseConfig(connect_retries=1, retry_backoff=0.0),
        legacy_path=tmp_path / "database.json",
        backup_dir=tmp_path / "backups",
        batch_size=2,
        fallback_timeout=1.0,
    )


@pytest.fixture(autouse=True)
def propagate_botstore_logs():
    """Let caplog see records from the package logger."""
    logger = logging.getLogger("botstore")
    original = logger.propagate
    logger.propagate = True
    yield
    logger.propagate = original
