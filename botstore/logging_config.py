"""
Logging setup for botstore.

Everything logs under the ``botstore`` logger. ``configure_logging`` attaches
a stdout handler and a rotating file handler to it; both pass records
through ``CredentialFilter`` so connection strings never reach the logs
with a password in them.
"""

import logging
import re
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Dict, Any, Optional, Union, List


ROOT_LOGGER_NAME = "botstore"

DEFAULT_CONFIG = {
    "console_level": "INFO",
    "file_level": "DEBUG",
    "log_file": "botstore.log",
    "log_format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    "date_format": "%Y-%m-%d %H:%M:%S",
    "max_file_size": 10 * 1024 * 1024,
    "backup_count": 5,
    "propagate": False,
    # Per-logger thresholds, e.g. {"database.driver": "INFO"} to silence SQL tracing
    "logger_levels": {},
}

_config: Dict[str, Any] = DEFAULT_CONFIG.copy()


class CredentialFilter(logging.Filter):
    """Masks passwords in DSNs (``scheme://user:pw@host``) and ``password=`` pairs."""

    _URL_PASSWORD = re.compile(r"(://[^:/@\s]+:)[^@\s]+(?=@)")
    _KEY_PASSWORD = re.compile(r"(password\s*=\s*)[^\s&]+", re.IGNORECASE)

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        masked = self._KEY_PASSWORD.sub(r"\1***", self._URL_PASSWORD.sub(r"\1***", message))
        if masked != message:
            record.msg = masked
            record.args = None
        return True


def _level(name: str) -> int:
    return logging._nameToLevel.get(str(name).upper(), logging.INFO)


def _is_file_handler(handler: logging.Handler) -> bool:
    return hasattr(handler, "baseFilename")


def _handlers_of_kind(logger: logging.Logger, handler_type: str) -> List[logging.Handler]:
    if handler_type == "all":
        return list(logger.handlers)
    if handler_type == "file":
        return [h for h in logger.handlers if _is_file_handler(h)]
    if handler_type == "console":
        return [h for h in logger.handlers if isinstance(h, logging.StreamHandler) and not _is_file_handler(h)]
    return []


def _console_handler(formatter: logging.Formatter) -> logging.Handler:
    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(_level(_config["console_level"]))
    handler.setFormatter(formatter)
    handler.addFilter(CredentialFilter())
    return handler


def _file_handler(path: Path, formatter: logging.Formatter) -> logging.Handler:
    handler = RotatingFileHandler(
        path, maxBytes=_config["max_file_size"], backupCount=_config["backup_count"], encoding='utf-8'
    )
    handler.setLevel(_level(_config["file_level"]))
    handler.setFormatter(formatter)
    handler.addFilter(CredentialFilter())
    return handler


def configure_logging(config: Optional[Dict[str, Any]] = None, log_dir: Optional[Union[str, Path]] = None) -> None:
    """
    (Re)build the handlers of the ``botstore`` logger.

    Args:
        config: Keys of ``DEFAULT_CONFIG`` to change; merged into the current config
        log_dir: Directory for the log file, created when missing
    """
    if config:
        _config.update(config)

    log_file_path = Path(log_dir) / _config["log_file"] if log_dir else Path(_config["log_file"])
    log_file_path.parent.mkdir(parents=True, exist_ok=True)

    root_logger = logging.getLogger(ROOT_LOGGER_NAME)
    for handler in root_logger.handlers[:]:
        handler.close()
        root_logger.removeHandler(handler)
    root_logger.setLevel(logging.DEBUG)
    root_logger.propagate = _config["propagate"]

    formatter = logging.Formatter(fmt=_config["log_format"], datefmt=_config["date_format"])
    root_logger.addHandler(_console_handler(formatter))
    try:
        root_logger.addHandler(_file_handler(log_file_path, formatter))
    except OSError as e:
        root_logger.error(f"Failed to set up file logging at {log_file_path}: {e}")

    for name, level in (_config.get("logger_levels") or {}).items():
        get_logger(name).setLevel(_level(level))


def get_logger(name: str) -> logging.Logger:
    """Return a logger below ``botstore``, prefixing ``name`` when needed."""
    if name != ROOT_LOGGER_NAME and not name.startswith(f"{ROOT_LOGGER_NAME}."):
        name = f"{ROOT_LOGGER_NAME}.{name}"
    return logging.getLogger(name)


def set_log_level(level: str, handler_type: str = "all") -> None:
    levelno = _level(level)
    for handler in _handlers_of_kind(logging.getLogger(ROOT_LOGGER_NAME), handler_type):
        handler.setLevel(levelno)
    if handler_type in ("all", "console"):
        _config["console_level"] = logging.getLevelName(levelno)
    if handler_type in ("all", "file"):
        _config["file_level"] = logging.getLevelName(levelno)


def get_log_config() -> Dict[str, Any]:
    return _config.copy()
