import logging
import sys
from unittest.mock import patch

import pytest

from botstore import logging_config
from botstore.logging_config import (
    ROOT_LOGGER_NAME,
    configure_logging,
    get_log_config,
    get_logger,
    set_log_level,
)


@pytest.fixture(autouse=True)
def reset_logging():
    """Restore the package logger and module config after each test."""
    root = logging.getLogger(ROOT_LOGGER_NAME)
    original_handlers = root.handlers.copy()
    original_level = root.level
    original_propagate = root.propagate
    original_config = logging_config._config.copy()

    for handler in root.handlers[:]:
        root.removeHandler(handler)

    yield

    for handler in root.handlers[:]:
        handler.close()
        root.removeHandler(handler)
    for handler in original_handlers:
        root.addHandler(handler)
    root.setLevel(original_level)
    root.propagate = original_propagate
    logging_config._config.clear()
    logging_config._config.update(original_config)


def split_handlers(logger):
    console = [h for h in logger.handlers if isinstance(h, logging.StreamHandler) and not hasattr(h, "baseFilename")]
    files = [h for h in logger.handlers if hasattr(h, "baseFilename")]
    return console, files


def test_configure_logging_creates_handlers(tmp_path):
    configure_logging(config={"console_level": "INFO", "file_level": "DEBUG", "log_file": "test.log"}, log_dir=tmp_path)

    root = logging.getLogger(ROOT_LOGGER_NAME)
    console, files = split_handlers(root)
    assert len(root.handlers) == 2
    assert len(console) == 1
    assert len(files) == 1
    assert console[0].level == logging.INFO
    assert files[0].baseFilename == str(tmp_path / "test.log")


def test_configure_logging_creates_log_dir(tmp_path):
    log_dir = tmp_path / "nested" / "logs"

    configure_logging(log_dir=log_dir)

    assert log_dir.is_dir()


def test_configure_logging_clears_existing_handlers(tmp_path):
    root = logging.getLogger(ROOT_LOGGER_NAME)
    dummy = logging.StreamHandler()
    root.addHandler(dummy)

    configure_logging(log_dir=tmp_path)

    assert len(root.handlers) == 2
    assert dummy not in root.handlers


def test_configure_logging_survives_file_handler_error(tmp_path):
    with patch("botstore.logging_config.RotatingFileHandler", side_effect=OSError("read-only")) as handler:
        configure_logging(config={"log_file": "test.log"}, log_dir=tmp_path)

    handler.assert_called_once()
    root = logging.getLogger(ROOT_LOGGER_NAME)
    assert len(root.handlers) == 1
    assert isinstance(root.handlers[0], logging.StreamHandler)


def test_file_handler_parameters(tmp_path):
    with patch("botstore.logging_config.RotatingFileHandler") as handler:
        configure_logging(config={"max_file_size": 1000000, "backup_count": 3, "log_file": "test.log"}, log_dir=tmp_path)

    args, kwargs = handler.call_args
    assert args[0] == tmp_path / "test.log"
    assert kwargs["maxBytes"] == 1000000
    assert kwargs["backupCount"] == 3
    assert kwargs["encoding"] == "utf-8"


def test_get_logger_prefixes_names():
    assert get_logger("migration").name == "botstore.migration"
    assert get_logger("botstore.database.driver").name == "botstore.database.driver"
    assert get_logger(ROOT_LOGGER_NAME).name == ROOT_LOGGER_NAME


def test_set_log_level_per_handler_type(tmp_path):
    configure_logging(log_dir=tmp_path)
    root = logging.getLogger(ROOT_LOGGER_NAME)
    console, files = split_handlers(root)

    set_log_level("debug", handler_type="console")
    assert console[0].level == logging.DEBUG
    assert get_log_config()["console_level"] == "DEBUG"

    set_log_level("ERROR", handler_type="file")
    assert files[0].level == logging.ERROR
    assert console[0].level == logging.DEBUG

    set_log_level("WARNING")
    assert all(h.level == logging.WARNING for h in root.handlers)
    assert get_log_config()["file_level"] == "WARNING"


def test_get_log_config_returns_a_copy(tmp_path):
    configure_logging(config={"console_level": "DEBUG", "file_level": "ERROR", "propagate": True}, log_dir=tmp_path)

    current = get_log_config()
    current["console_level"] = "CRITICAL"

    assert get_log_config()["console_level"] == "DEBUG"
    assert get_log_config()["file_level"] == "ERROR"
    assert logging.getLogger(ROOT_LOGGER_NAME).propagate is True


def test_messages_respect_console_level(tmp_path, capsys):
    configure_logging(
        config={"console_level": "WARNING", "file_level": "DEBUG", "log_file": "levels.log"},
        log_dir=tmp_path,
    )
    logger = get_logger("levels")

    logger.debug("Debug message")
    logger.warning("Warning message")
    sys.stdout.flush()

    for handler in logging.getLogger(ROOT_LOGGER_NAME).handlers:
        handler.flush()
    captured = capsys.readouterr()
    assert "Warning message" in captured.out
    assert "Debug message" not in captured.out
    assert "Debug message" in (tmp_path / "levels.log").read_text(encoding="utf-8")


def test_credentials_are_masked(tmp_path, capsys):
    configure_logging(config={"log_file": "masked.log"}, log_dir=tmp_path)
    logger = get_logger("database.driver")

    logger.warning("Connecting to postgresql://bot:hunter2@db:5432/bot")
    logger.warning("dsn: host=db password=hunter2 dbname=bot")
    logger.warning("Retrying %s", "postgres://bot:hunter2@db/bot")

    output = capsys.readouterr().out
    assert "hunter2" not in output
    assert "postgresql://bot:***@db:5432/bot" in output
    assert "password=*** dbname=bot" in output
    assert "postgres://bot:***@db/bot" in output


def test_credential_filter_leaves_other_records_alone():
    record = logging.LogRecord("botstore", logging.INFO, __file__, 1, "Loaded %d users", (3,), None)

    assert logging_config.CredentialFilter().filter(record) is True
    assert record.args == (3,)
    assert record.getMessage() == "Loaded 3 users"


def test_logger_levels_override(tmp_path):
    driver_logger = get_logger("database.driver")
    original = driver_logger.level
    try:
        configure_logging(config={"logger_levels": {"database.driver": "warning"}}, log_dir=tmp_path)

        assert driver_logger.level == logging.WARNING
    finally:
        driver_logger.setLevel(original)
