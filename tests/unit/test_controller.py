import json
import threading
import time

import pytest

from botstore.config import StoreConfig
from botstore.database.controller import ControllerState, DatabaseController
from botstore.database.schema import MIGRATION_STATUS_TABLE, WHATSAPP_USERS_TABLE, read_migration_status
from botstore.error_handling import (
    ConfigurationError,
    DatabaseConnectionError,
    ExtractionError,
    FallbackModeError,
    QueryError,
    StartupError,
    register_error_handler,
    unregister_error_handler,
)

from conftest import FakeDriver

UNREACHABLE = DatabaseConnectionError("PostgreSQL connection failed: make sure PostgreSQL is running")

EXPECTED_STATUS_KEYS = {
    "database", "migration", "state", "last_error", "retry_count", "uptime",
    "using_fallback", "migration_completed", "is_initialized", "adapter",
}


def states(controller):
    return [state for state, _ in controller.state_history]


def seed_completed_migration(database):
    database[MIGRATION_STATUS_TABLE] = {
        1: {"id": 1, "completed": True, "migrated_at": "2024-01-01T00:00:00+00:00", "version": "1.0.0",
            "backup_file": None, "stats": {}},
    }


def test_fresh_store_migrates_then_connects(store_config, driver_factory, legacy_file, legacy_data):
    controller = DatabaseController(store_config, driver_factory=driver_factory)

    controller.initialize()

    assert states(controller) == [
        ControllerState.INITIALIZING,
        ControllerState.MIGRATION_CHECK,
        ControllerState.MIGRATING,
        ControllerState.CONNECTING,
        ControllerState.CONNECTED,
        ControllerState.READY,
    ]
    assert controller.data == legacy_data
    status = controller.get_status()
    assert set(status) == EXPECTED_STATUS_KEYS
    assert status["database"] == "connected"
    assert status["migration"] == "completed"
    assert status["migration_completed"] is True
    assert status["using_fallback"] is False
    assert controller.last_migration.success


def test_completed_marker_skips_migrating(store_config, driver_factory, database, legacy_file):
    seed_completed_migration(database)
    controller = DatabaseController(store_config, driver_factory=driver_factory)

    controller.initialize()

    assert ControllerState.MIGRATING not in states(controller)
    assert states(controller)[-2:] == [ControllerState.CONNECTED, ControllerState.READY]
    assert controller.migration_completed is True
    assert controller.data["users"] == {}
    assert not store_config.backup_dir.exists()


def test_unreachable_store_falls_back_to_legacy_file(store_config, driver_factory, legacy_file, legacy_data):
    driver_factory.options = {"connect_error": UNREACHABLE}
    controller = DatabaseController(store_config, driver_factory=driver_factory)

    controller.initialize()

    status = controller.get_status()
    assert status["using_fallback"] is True
    assert status["database"] == "fallback"
    assert status["migration"] == "failed"
    assert status["state"] == "ready"
    assert status["last_error"] == UNREACHABLE.message
    assert status["adapter"]["mode"] == "fallback"
    assert controller.data["users"]
    assert controller.data == legacy_data
    assert ControllerState.ERROR in states(controller)
    assert ControllerState.FALLBACK in states(controller)


def test_unreachable_store_only_tries_migration_once(store_config, driver_factory, legacy_file):
    driver_factory.options = {"connect_error": UNREACHABLE}

    DatabaseController(store_config, driver_factory=driver_factory).initialize()

    check, migration, backend = driver_factory.created
    assert migration.connection_attempts == 1


def test_connection_timeout_falls_back_within_budget(store_config, driver_factory, database, legacy_file):
    seed_completed_migration(database)
    hanging = FakeDriver(tables=database, connect_delay=30)
    driver_factory.overrides = {1: hanging}
    config = store_config.with_overrides(fallback_timeout=0.2)
    controller = DatabaseController(config, driver_factory=driver_factory)

    start = time.monotonic()
    controller.initialize()
    elapsed = time.monotonic() - start

    assert elapsed < 0.2 + 1.0
    assert controller.using_fallback
    assert "timeout" in controller.get_status()["last_error"]
    assert hanging.closed.wait(2)


def test_fallback_disabled_is_fatal(store_config, driver_factory, legacy_file):
    driver_factory.options = {"connect_error": UNREACHABLE}
    config = store_config.with_overrides(fallback_enabled=False)
    controller = DatabaseController(config, driver_factory=driver_factory)

    with pytest.raises(StartupError):
        controller.initialize()

    assert controller.state == ControllerState.ERROR
    assert not controller.is_initialized


def test_missing_legacy_file_skips_migration(store_config, driver_factory):
    controller = DatabaseController(store_config, driver_factory=driver_factory)

    controller.initialize()

    assert controller.get_status()["migration"] == "skipped"
    assert controller.data == {"users": {}, "chats": {}, "settings": {}, "usuarios": {}}


def test_fallback_without_legacy_file_creates_it(store_config, driver_factory):
    driver_factory.options = {"connect_error": UNREACHABLE}
    controller = DatabaseController(store_config, driver_factory=driver_factory)

    controller.initialize()

    assert controller.using_fallback
    assert json.loads(store_config.legacy_path.read_text(encoding="utf-8"))["users"] == {}


def test_migration_failure_does_not_block_startup(store_config, driver_factory, legacy_file):
    legacy_file.write_text("{broken", encoding="utf-8")
    controller = DatabaseController(store_config, driver_factory=driver_factory)

    controller.initialize()

    assert controller.get_status()["migration"] == "failed"
    assert controller.get_status()["database"] == "connected"


def test_raw_access_in_fallback_mode(store_config, driver_factory, legacy_file):
    driver_factory.options = {"connect_error": UNREACHABLE}
    controller = DatabaseController(store_config, driver_factory=driver_factory)
    controller.initialize()

    with pytest.raises(FallbackModeError):
        controller.query("SELECT 1")
    with pytest.raises(FallbackModeError):
        controller.transaction(lambda tx: None)


def test_fallback_write_read_round_trip(store_config, driver_factory, legacy_file):
    driver_factory.options = {"connect_error": UNREACHABLE}
    controller = DatabaseController(store_config, driver_factory=driver_factory)
    controller.initialize()

    controller.data["chats"]["9@g.us"] = {"antilink": False}
    written = json.loads(json.dumps(controller.write()))

    assert controller.read() == written
    assert json.loads(legacy_file.read_text(encoding="utf-8"))["chats"]["9@g.us"] == {"antilink": False}


def test_relational_write_read_round_trip(store_config, driver_factory, legacy_file):
    controller = DatabaseController(store_config, driver_factory=driver_factory)
    controller.initialize()

    controller.data["users"]["5493@s.whatsapp.net"] = {"name": "Sol", "exp": 3, "afkReason": "x"}
    controller.data["characters"] = {"c1": {"nombre": "Oguri"}}
    written = json.loads(json.dumps(controller.write()))

    assert controller.read() == written


def test_health_check_reports_mode(store_config, driver_factory, legacy_file):
    controller = DatabaseController(store_config, driver_factory=driver_factory)
    controller.initialize()

    health = controller.health_check()

    assert health["healthy"] is True
    assert health["mode"] == "postgresql"
    assert set(health["status"]) == EXPECTED_STATUS_KEYS


def test_force_migration_rewrites_marker(store_config, driver_factory, database, legacy_file):
    seed_completed_migration(database)
    controller = DatabaseController(store_config, driver_factory=driver_factory)
    controller.initialize()
    assert controller.data["users"] == {}

    report = controller.force_migration()

    assert report.success
    assert controller.migration_completed is True
    assert len(controller.data["users"]) == 2
    assert read_migration_status(controller.backend.driver).completed is True


def test_get_database_requires_initialization(store_config, driver_factory):
    controller = DatabaseController(store_config, driver_factory=driver_factory)

    with pytest.raises(Exception, match="not initialized"):
        controller.get_database()

    controller.initialize()
    assert controller.get_database() is controller.backend


def test_startup_errors_reach_registered_handlers(store_config, driver_factory, legacy_file):
    seen = []
    register_error_handler(DatabaseConnectionError, seen.append)
    try:
        driver_factory.options = {"connect_error": UNREACHABLE}
        DatabaseController(store_config, driver_factory=driver_factory).initialize()
    finally:
        unregister_error_handler(DatabaseConnectionError, seen.append)

    assert UNREACHABLE in seen


def test_close(store_config, driver_factory, legacy_file):
    controller = DatabaseController(store_config, driver_factory=driver_factory)
    controller.initialize()

    controller.close()

    assert controller.state == ControllerState.CLOSED
    assert controller.get_status()["is_initialized"] is False
    assert not controller.backend.driver.is_connected


class SchemaDeniedDriver(FakeDriver):
    def query(self, sql, params=None):
        if " ".join(sql.split()).startswith("CREATE TABLE"):
            self._require_connection()
            raise QueryError("Query failed: permission denied for schema public")
        return super().query(sql, params)


class BlockingReadDriver(FakeDriver):
    """Holds the users SELECT of a reload until ``release`` is set."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.blocking = False
        self.entered = threading.Event()
        self.release = threading.Event()
        self.events = []

    def query(self, sql, params=None):
        if self.blocking and sql == f"SELECT * FROM {WHATSAPP_USERS_TABLE}":
            self.events.append("read started")
            self.entered.set()
            self.release.wait(5)
            self.events.append("read finished")
        return super().query(sql, params)

    def transaction(self, callback):
        self.events.append("write")
        return super().transaction(callback)


def test_corrupted_legacy_file_is_never_overwritten(store_config, driver_factory, legacy_file):
    legacy_file.write_text('{"users": {"1@s.whatsapp.net": {"exp": 3}', encoding="utf-8")
    original = legacy_file.read_bytes()
    driver_factory.options = {"connect_error": UNREACHABLE}
    controller = DatabaseController(store_config, driver_factory=driver_factory)

    with pytest.raises(StartupError) as exc:
        controller.initialize()

    assert isinstance(exc.value.cause, ExtractionError)
    assert exc.value.cause.reason == ExtractionError.MALFORMED
    assert controller.backend is None
    assert legacy_file.read_bytes() == original


def test_failed_relational_startup_releases_its_pool(store_config, driver_factory, database, legacy_file):
    seed_completed_migration(database)
    denied = SchemaDeniedDriver(tables=database)
    driver_factory.overrides = {1: denied}
    controller = DatabaseController(store_config, driver_factory=driver_factory)

    controller.initialize()

    assert controller.using_fallback
    assert "permission denied" in controller.get_status()["last_error"]
    assert denied.closed.is_set()
    assert not denied.is_connected


def test_lifecycle_events_on_postgres(store_config, driver_factory, legacy_file):
    controller = DatabaseController(store_config, driver_factory=driver_factory)
    events = []
    for event in ("initialized", "database_connected", "migration_completed", "fallback_initialized", "closed"):
        controller.add_listener(event, lambda payload, event=event: events.append((event, payload)))

    controller.initialize()
    controller.close()

    assert [name for name, _ in events] == ["migration_completed", "database_connected", "initialized", "closed"]
    assert events[0][1] is controller.last_migration
    assert events[2][1]["database"] == "connected"
    assert events[3][1] is None


def test_lifecycle_events_on_fallback(store_config, driver_factory, legacy_file):
    driver_factory.options = {"connect_error": UNREACHABLE}
    controller = DatabaseController(store_config, driver_factory=driver_factory)
    events = []
    for event in ("migration_failed", "database_error", "fallback_initialized", "initialized"):
        controller.add_listener(event, lambda payload, event=event: events.append((event, payload)))

    controller.initialize()

    assert [name for name, _ in events] == ["migration_failed", "database_error", "fallback_initialized", "initialized"]
    assert events[0][1] is UNREACHABLE
    assert events[2][1]["using_fallback"] is True


def test_failing_listener_does_not_break_startup(store_config, driver_factory, legacy_file, caplog):
    controller = DatabaseController(store_config, driver_factory=driver_factory)
    seen = []

    def broken(payload):
        raise RuntimeError("listener bug")

    controller.add_listener("initialized", broken)
    controller.add_listener("initialized", seen.append)
    controller.initialize()

    assert controller.state == ControllerState.READY
    assert len(seen) == 1
    assert "Error in initialized listener: listener bug" in caplog.text


def test_remove_listener_and_unknown_events(store_config, driver_factory):
    controller = DatabaseController(store_config, driver_factory=driver_factory)
    seen = []
    controller.add_listener("closed", seen.append)
    controller.remove_listener("closed", seen.append)
    controller.remove_listener("initialized", seen.append)

    controller.close()

    assert seen == []
    with pytest.raises(ValueError):
        controller.add_listener("connected", seen.append)


def test_write_waits_for_a_reload_in_progress(store_config, driver_factory, database, legacy_file):
    seed_completed_migration(database)
    driver = BlockingReadDriver(tables=database)
    driver_factory.overrides = {1: driver}
    controller = DatabaseController(store_config, driver_factory=driver_factory)
    controller.initialize()
    driver.blocking = True

    reader = threading.Thread(target=controller.read)
    reader.start()
    assert driver.entered.wait(2)
    writer = threading.Thread(target=controller.write)
    writer.start()
    writer.join(0.2)

    assert writer.is_alive()
    assert "write" not in driver.events

    driver.release.set()
    reader.join(2)
    writer.join(2)
    assert driver.events == ["read started", "read finished", "write"]


def test_invalid_configuration_is_rejected(driver_factory):
    with pytest.raises(ConfigurationError) as exc:
        DatabaseController(StoreConfig(batch_size=0), driver_factory=driver_factory)

    assert "batch_size" in exc.value.message
