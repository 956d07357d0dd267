"""
Configuration for the storage layer.

Values come from the environment (optionally loaded from a ``.env`` file).
Connection settings accept either a single connection URL or the usual
libpq-style host/port/database/user/password variables.
"""

import math
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Dict, Any, Optional, Mapping

from dotenv import load_dotenv

from botstore.error_handling import ConfigurationError
from botstore.logging_config import configure_logging

load_dotenv()

DEFAULT_LOG_DIR = Path("logs")

_TRUE_VALUES = {"1", "true", "t", "yes", "y", "on", "require", "required"}
_FALSE_VALUES = {"0", "false", "f", "no", "n", "off"}
_SSL_DISABLED_MODES = {"disable", "disabled", "off", "false", "0"}
_URL_ENV_VARS = ("DATABASE_URL", "POSTGRES_URL", "POSTGRES_URI", "POSTGRES_CONNECTION_STRING")


def parse_boolean(value: Any, fallback: bool = False) -> bool:
    if value is None:
        return fallback
    normalized = str(value).strip().lower()
    if normalized in _TRUE_VALUES:
        return True
    if normalized in _FALSE_VALUES:
        return False
    return fallback


def parse_integer(value: Any, fallback: Optional[int]) -> Optional[int]:
    if value is None:
        return fallback
    try:
        return int(str(value).strip())
    except ValueError:
        return fallback


def parse_float(value: Any, fallback: Optional[float]) -> Optional[float]:
    if value is None:
        return fallback
    try:
        parsed = float(str(value).strip())
    except ValueError:
        return fallback
    return parsed if math.isfinite(parsed) else fallback


def infer_ssl_from_connection_string(connection_string: Optional[str]) -> bool:
    if not connection_string:
        return False
    text = connection_string.lower()
    return "sslmode=require" in text or "ssl=true" in text or "ssl=1" in text


def _first_env(env: Mapping[str, str], *names: str) -> Optional[str]:
    for name in names:
        value = (env.get(name) or "").strip()
        if value:
            return value
    return None


@dataclass
class DatabaseConfig:
    """Connection settings for the relational store."""

    connection_string: Optional[str] = None
    host: str = "localhost"
    port: int = 5432
    database: str = "botstore"
    user: str = "bot_user"
    password: str = ""
    ssl: bool = False
    ssl_reject_unauthorized: bool = True
    pool_size: int = 20
    connect_timeout: float = 2.0
    idle_timeout: float = 30.0
    statement_timeout: float = 30.0
    slow_query_ms: int = 1000
    connect_retries: int = 5
    retry_backoff: float = 1.0

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "DatabaseConfig":
        env = os.environ if env is None else env
        url = _first_env(env, *_URL_ENV_VARS)

        if env.get("POSTGRES_SSL") is not None:
            ssl = parse_boolean(env.get("POSTGRES_SSL"), False)
        elif env.get("PGSSLMODE") is not None:
            ssl = env["PGSSLMODE"].strip().lower() not in _SSL_DISABLED_MODES
        else:
            ssl = infer_ssl_from_connection_string(url)

        return cls(
            connection_string=url,
            host=_first_env(env, "PGHOST", "POSTGRES_HOST") or cls.host,
            port=parse_integer(_first_env(env, "PGPORT", "POSTGRES_PORT"), cls.port),
            database=_first_env(env, "PGDATABASE", "POSTGRES_DB") or cls.database,
            user=_first_env(env, "PGUSER", "POSTGRES_USER") or cls.user,
            password=_first_env(env, "PGPASSWORD", "POSTGRES_PASSWORD") or "",
            ssl=ssl,
            ssl_reject_unauthorized=parse_boolean(env.get("POSTGRES_SSL_REJECT_UNAUTHORIZED"), True),
            pool_size=max(1, parse_integer(env.get("POSTGRES_MAX_CONNECTIONS"), cls.pool_size)),
            connect_timeout=parse_integer(env.get("DB_CONNECTION_TIMEOUT"), 2000) / 1000,
            idle_timeout=parse_integer(env.get("DB_IDLE_TIMEOUT"), 30000) / 1000,
            statement_timeout=parse_integer(env.get("DB_STATEMENT_TIMEOUT"), 30000) / 1000,
            slow_query_ms=parse_integer(env.get("DB_SLOW_QUERY_MS"), cls.slow_query_ms),
            connect_retries=max(1, parse_integer(env.get("DB_CONNECT_RETRIES"), cls.connect_retries)),
            retry_backoff=max(0.0, parse_float(env.get("DB_RETRY_BACKOFF"), cls.retry_backoff)),
        )

    @property
    def sslmode(self) -> str:
        if not self.ssl:
            return "disable"
        return "verify-full" if self.ssl_reject_unauthorized else "require"

    def dsn_kwargs(self) -> Dict[str, Any]:
        """Keyword arguments for ``psycopg2.connect`` / the connection pool."""
        kwargs: Dict[str, Any] = {
            "connect_timeout": max(1, int(round(self.connect_timeout))),
            "keepalives_idle": max(1, int(round(self.idle_timeout))),
            "options": f"-c statement_timeout={int(self.statement_timeout * 1000)}",
        }
        if self.connection_string:
            kwargs["dsn"] = self.connection_string
            if self.ssl and "sslmode=" not in self.connection_string:
                kwargs["sslmode"] = self.sslmode
        else:
            kwargs.update(
                host=self.host,
                port=self.port,
                dbname=self.database,
                user=self.user,
                password=self.password,
                sslmode=self.sslmode,
            )
        return kwargs

    def describe(self) -> str:
        """Human readable target with the password masked."""
        if self.connection_string:
            target = self.connection_string
            if self.password:
                target = target.replace(self.password, "***")
            if "@" in target and "://" in target:
                scheme, rest = target.split("://", 1)
                credentials, host = rest.rsplit("@", 1)
                user = credentials.split(":", 1)[0]
                target = f"{scheme}://{user}:***@{host}"
            return target
        return f"{self.user}@{self.host}:{self.port}/{self.database}"


@dataclass
class StoreConfig:
    """Settings for the controller, migration engine and legacy store."""

    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    legacy_path: Path = Path("database.json")
    backup_dir: Path = Path("database") / "backups"
    batch_size: int = 100
    strict_validation: bool = False
    create_backup: bool = True
    auto_migrate: bool = True
    fallback_enabled: bool = True
    fallback_timeout: float = 3.0
    migration_version: str = "1.0.0"
    logging: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "StoreConfig":
        env = os.environ if env is None else env
        logging_settings: Dict[str, Any] = {}
        if env.get("BOTSTORE_LOG_LEVEL"):
            logging_settings["console_level"] = env["BOTSTORE_LOG_LEVEL"].upper()
        if env.get("BOTSTORE_LOG_DIR"):
            logging_settings["log_dir"] = env["BOTSTORE_LOG_DIR"]

        return cls(
            database=DatabaseConfig.from_env(env),
            legacy_path=Path(env.get("BOTSTORE_LEGACY_PATH") or cls.legacy_path),
            backup_dir=Path(env.get("BOTSTORE_BACKUP_DIR") or cls.backup_dir),
            batch_size=max(1, parse_integer(env.get("BOTSTORE_BATCH_SIZE"), cls.batch_size)),
            strict_validation=parse_boolean(env.get("BOTSTORE_STRICT_VALIDATION"), False),
            create_backup=parse_boolean(env.get("BOTSTORE_CREATE_BACKUP"), True),
            auto_migrate=parse_boolean(env.get("BOTSTORE_AUTO_MIGRATE"), True),
            fallback_enabled=parse_boolean(env.get("BOTSTORE_FALLBACK"), True),
            fallback_timeout=parse_integer(env.get("BOTSTORE_FALLBACK_TIMEOUT"), 3000) / 1000,
            logging=logging_settings,
        )

    def validate(self) -> "StoreConfig":
        """
        Raises:
            ConfigurationError: if a setting is out of range
        """
        problems = []
        if not isinstance(self.batch_size, int) or self.batch_size < 1:
            problems.append(f"batch_size must be a positive integer, got {self.batch_size!r}")
        if not self.fallback_timeout or self.fallback_timeout <= 0:
            problems.append(f"fallback_timeout must be positive, got {self.fallback_timeout!r}")
        if self.database.pool_size < 1:
            problems.append(f"pool_size must be at least 1, got {self.database.pool_size!r}")
        if problems:
            raise ConfigurationError("Invalid store configuration: " + "; ".join(problems),
                                     details={"problems": problems})
        return self

    def with_overrides(self, **changes: Any) -> "StoreConfig":
        """Copy with ``changes`` applied; the copy is validated."""
        return replace(self, **changes).validate()


def configure_logging_from_settings(settings: Dict[str, Any]) -> None:
    """
    Configure the logging system based on the application settings.

    Args:
        settings: Dictionary containing the logging settings
    """
    log_dir = settings.get("log_dir")
    log_dir = Path(log_dir) if log_dir else DEFAULT_LOG_DIR

    configure_logging(
        config={
            "console_level": settings.get("console_level", "INFO"),
            "file_level": settings.get("file_level", "DEBUG"),
            "log_file": settings.get("log_file", "botstore.log"),
            "log_format": settings.get("log_format", "%(asctime)s - %(name)s - %(levelname)s - %(message)s"),
            "date_format": settings.get("date_format", "%Y-%m-%d %H:%M:%S"),
            "max_file_size": settings.get("max_file_size", 10 * 1024 * 1024),  # 10 MB
            "backup_count": settings.get("backup_count", 5),
            "propagate": settings.get("propagate", False),
            "logger_levels": settings.get("logger_levels", {}),
        },
        log_dir=log_dir
    )


def load_config(env: Optional[Mapping[str, str]] = None, configure_log: bool = True) -> StoreConfig:
    """
    Build the store configuration from the environment and set up logging.
    """
    config = StoreConfig.from_env(env)
    if configure_log:
        configure_logging_from_settings(config.logging)
    return config
