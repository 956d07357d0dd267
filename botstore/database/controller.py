"""
Database controller for botstore.

Decides at startup whether the legacy snapshot still has to be migrated,
connects the relational backend under a time budget and falls back to the
flat-file store when PostgreSQL is unavailable. Callers only ever see the
accessor surface defined here, whichever backend answers.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Dict, Any, List, Optional, Sequence, Callable, Tuple

from botstore.config import StoreConfig, DatabaseConfig
from botstore.database.base import Store, T
from botstore.database.driver import QueryDriver, CancellationToken
from botstore.database.flatfile import FlatFileBackend
from botstore.database.migration import MigrationEngine, MigrationReport
from botstore.database.relational import RelationalBackend
from botstore.database.schema import ensure_schema, read_migration_status, reset_migration_status
from botstore.error_handling import (
    BotStoreError,
    DatabaseConnectionError,
    FallbackModeError,
    InitializationTimeoutError,
    QueryError,
    StartupError,
    handle_error,
)

logger = logging.getLogger(__name__)


class ControllerState(str, Enum):
    INITIALIZING = "initializing"
    MIGRATION_CHECK = "migration_check"
    MIGRATING = "migrating"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FALLBACK = "fallback"
    ERROR = "error"
    READY = "ready"
    CLOSED = "closed"


EVENTS = (
    "initialized",
    "database_connected",
    "fallback_initialized",
    "migration_completed",
    "migration_failed",
    "database_error",
    "closed",
)


def _close_quietly(driver: QueryDriver) -> None:
    try:
        driver.close()
    except QueryError as e:
        logger.debug(f"Ignoring error while closing driver: {e.message}")


class DatabaseController:
    """
    Single entry point to the bot's persistent data.

    Construct one per process and hand it to consumers explicitly (see
    ``botstore.di.build_container``).
    """

    def __init__(
        self,
        config: Optional[StoreConfig] = None,
        driver_factory: Callable[[DatabaseConfig], QueryDriver] = QueryDriver,
    ):
        self.config = (config or StoreConfig()).validate()
        self._driver_factory = driver_factory
        self._lock = threading.RLock()
        self._listeners: Dict[str, List[Callable[[Any], None]]] = {}

        self.backend: Optional[Store] = None
        self.state = ControllerState.INITIALIZING
        self.state_history: List[Tuple[ControllerState, str]] = []
        self.is_initialized = False
        self.using_fallback = False
        self.migration_completed = False
        self.last_migration: Optional[MigrationReport] = None
        self.retry_count = 0
        self.started_at = time.monotonic()
        self.status: Dict[str, Any] = {
            "database": "initializing",
            "migration": "pending",
            "last_error": None,
        }

    # Lifecycle events

    def add_listener(self, event: str, callback: Callable[[Any], None]) -> None:
        """
        Call ``callback(payload)`` every time ``event`` fires.

        Events and their payloads:
            initialized: status dict, once startup reaches READY
            database_connected: status dict, PostgreSQL backend is active
            fallback_initialized: status dict, flat-file backend is active
            migration_completed: MigrationReport
            migration_failed: the BotStoreError that aborted it
            database_error: the error that made PostgreSQL unavailable
            closed: None
        """
        if event not in EVENTS:
            raise ValueError(f"Unknown controller event {event!r}, expected one of {EVENTS}")
        self._listeners.setdefault(event, []).append(callback)

    def remove_listener(self, event: str, callback: Callable[[Any], None]) -> None:
        listeners = self._listeners.get(event, [])
        if callback in listeners:
            listeners.remove(callback)

    def _emit(self, event: str, payload: Any = None) -> None:
        for callback in list(self._listeners.get(event, [])):
            try:
                callback(payload)
            except Exception as e:
                logger.error(f"Error in {event} listener: {str(e)}", exc_info=e)

    # State machine

    def _transition(self, state: ControllerState) -> None:
        previous = self.state
        self.state = state
        self.state_history.append((state, datetime.now(timezone.utc).isoformat()))
        logger.info(f"Database controller: {previous.value} -> {state.value}")

    def _record_error(self, error: Exception) -> None:
        self.status["last_error"] = error.message if isinstance(error, BotStoreError) else str(error)
        handle_error(error)

    def initialize(self) -> Store:
        """
        Run the startup sequence and return the active backend.

        Raises:
            StartupError: if PostgreSQL is unavailable and fallback is disabled
        """
        with self._lock:
            if self.is_initialized and self.backend is not None:
                return self.backend

            self.state_history.clear()
            self._transition(ControllerState.INITIALIZING)
            logger.info(
                f"Initializing database controller (auto migrate: {self.config.auto_migrate}, "
                f"fallback: {self.config.fallback_enabled}, target: {self.config.database.describe()})"
            )

            try:
                self._transition(ControllerState.MIGRATION_CHECK)
                required, reachable = self.check_migration_status()
                if required and self.config.auto_migrate:
                    self._transition(ControllerState.MIGRATING)
                    self._run_migration(connect_attempts=None if reachable else 1, propagate=False)

                self._transition(ControllerState.CONNECTING)
                self.backend = self._connect_relational()
                self.using_fallback = False
                self.status["database"] = "connected"
                self._transition(ControllerState.CONNECTED)
                self._emit("database_connected", self.get_status())
            except Exception as e:
                self._transition(ControllerState.ERROR)
                self.status["database"] = "error"
                self._record_error(e)
                self._emit("database_error", e)
                if not self.config.fallback_enabled:
                    raise StartupError("PostgreSQL unavailable and fallback disabled", cause=e) from e
                self._start_fallback()

            self.is_initialized = True
            self._transition(ControllerState.READY)
            self._emit("initialized", self.get_status())
            return self.backend

    def check_migration_status(self) -> Tuple[bool, bool]:
        """
        Look up the completion marker.

        Returns:
            (required, reachable): whether migration must run and whether
            PostgreSQL answered at all
        """
        driver = self._driver_factory(self.config.database)
        try:
            driver.connect(max_attempts=1)
            status = read_migration_status(driver)
        except DatabaseConnectionError:
            logger.info("PostgreSQL not available - migration required")
            return True, False
        except QueryError:
            logger.info("No migration data found - migration required")
            return True, True
        finally:
            _close_quietly(driver)

        if status is None:
            logger.info("No migration status found - migration required")
            return True, True

        self.migration_completed = status.completed
        self.status["migration"] = "completed" if status.completed else "partial"
        logger.info(f"Migration status: {'completed' if status.completed else 'partial'}")
        return not status.completed, True

    def _run_migration(self, connect_attempts: Optional[int] = None, propagate: bool = True,
                       reset: bool = False) -> Optional[MigrationReport]:
        if not Path(self.config.legacy_path).exists():
            logger.warning(f"No legacy file at {self.config.legacy_path} - skipping migration")
            self.status["migration"] = "skipped"
            return None

        self.status["migration"] = "running"
        driver = self._driver_factory(self.config.database)
        engine = MigrationEngine(self.config, driver=driver)
        try:
            if reset:
                driver.connect(max_attempts=connect_attempts)
                ensure_schema(driver)
                reset_migration_status(driver)
            report = engine.migrate(connect_attempts=connect_attempts)
        except BotStoreError as e:
            self.status["migration"] = "failed"
            self._record_error(e)
            self._emit("migration_failed", e)
            if propagate:
                raise
            logger.error(f"Migration failed, continuing startup: {e.message}")
            return None
        finally:
            _close_quietly(driver)

        self.last_migration = report
        self.migration_completed = True
        self.status["migration"] = "completed"
        self._emit("migration_completed", report)
        return report

    def _connect_relational(self) -> RelationalBackend:
        """Race backend initialization against ``fallback_timeout``."""
        backend = RelationalBackend(
            driver=self._driver_factory(self.config.database),
            batch_size=self.config.batch_size,
        )
        token = CancellationToken()
        timeout = self.config.fallback_timeout
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="botstore-connect")
        future = executor.submit(backend.initialize, token)
        try:
            future.result(timeout=timeout)
        except FutureTimeoutError as e:
            token.cancel()
            future.add_done_callback(lambda f: self._discard_late_attempt(f, backend))
            raise InitializationTimeoutError(
                f"PostgreSQL initialization timeout after {timeout:.1f}s",
                details={"timeout": timeout},
            ) from e
        finally:
            self.retry_count = backend.driver.connection_attempts
            executor.shutdown(wait=False)
        return backend

    @staticmethod
    def _discard_late_attempt(future, backend: RelationalBackend) -> None:
        if future.cancelled() or future.exception() is not None:
            return
        logger.info("Discarding late relational initialization result")
        _close_quietly(backend.driver)

    def _start_fallback(self) -> None:
        self._transition(ControllerState.FALLBACK)
        logger.warning(f"Using flat-file fallback at {self.config.legacy_path}")
        backend = FlatFileBackend(self.config.legacy_path)
        try:
            backend.initialize()
        except (OSError, BotStoreError) as e:
            self._record_error(e)
            raise StartupError("Fallback store could not be initialized", cause=e) from e
        self.backend = backend
        self.using_fallback = True
        self.status["database"] = "fallback"
        self._emit("fallback_initialized", self.get_status())

    # Accessors

    def _require_backend(self) -> Store:
        if self.backend is None:
            raise BotStoreError("Database not initialized")
        return self.backend

    @property
    def data(self) -> Dict[str, Any]:
        return self.backend.data if self.backend is not None else {}

    def get_database(self) -> Store:
        if not self.is_initialized:
            raise BotStoreError("Database controller not initialized")
        return self.backend

    def read(self) -> Dict[str, Any]:
        with self._lock:
            return self._require_backend().read()

    def write(self) -> Dict[str, Any]:
        with self._lock:
            return self._require_backend().write()

    def query(self, sql: str, params: Optional[Sequence[Any]] = None) -> List[Dict[str, Any]]:
        if self.backend is None or self.using_fallback:
            raise FallbackModeError("Raw queries not available in fallback mode")
        return self.backend.query(sql, params)

    def transaction(self, callback: Callable[[Any], T]) -> T:
        if self.backend is None or self.using_fallback:
            raise FallbackModeError("Transactions not available in fallback mode")
        return self.backend.transaction(callback)

    def get_status(self) -> Dict[str, Any]:
        return {
            "database": self.status["database"],
            "migration": self.status["migration"],
            "state": self.state.value,
            "last_error": self.status["last_error"],
            "retry_count": self.retry_count,
            "uptime": time.monotonic() - self.started_at,
            "using_fallback": self.using_fallback,
            "migration_completed": self.migration_completed,
            "is_initialized": self.is_initialized,
            "adapter": self.backend.connection_status() if self.backend is not None else None,
        }

    def health_check(self) -> Dict[str, Any]:
        status = self.get_status()
        if self.backend is None:
            return {"healthy": False, "mode": None, "status": status}
        adapter = self.backend.health_check()
        return {
            "healthy": bool(adapter.get("healthy")),
            "mode": self.backend.mode,
            "status": status,
            "adapter": adapter,
        }

    def force_migration(self) -> Optional[MigrationReport]:
        """
        Clear the completion marker and migrate the legacy file again.

        Raises:
            BotStoreError: whatever the migration raised
        """
        logger.info("Force migration requested")
        with self._lock:
            self.migration_completed = False
            self.status["migration"] = "pending"
            report = self._run_migration(reset=True)
            if report is not None and isinstance(self.backend, RelationalBackend):
                self.backend.read()
            return report

    def close(self) -> None:
        with self._lock:
            if self.backend is not None:
                try:
                    self.backend.close()
                except BotStoreError as e:
                    self._record_error(e)
            self.is_initialized = False
            self.status["database"] = "closed"
            self._transition(ControllerState.CLOSED)
            logger.info("Database controller closed")
            self._emit("closed")
