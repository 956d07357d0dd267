"""
Fixed relational schema and MigrationStatus persistence.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Any, Optional, List

from botstore.database.field_mapping import to_json

logger = logging.getLogger(__name__)

WHATSAPP_USERS_TABLE = "whatsapp_users"
CHATS_TABLE = "chats"
PANEL_USERS_TABLE = "usuarios"
SETTINGS_TABLE = "settings"
MIGRATION_STATUS_TABLE = "migration_status"

JSON_COLUMNS: Dict[str, tuple] = {
    WHATSAPP_USERS_TABLE: ("stats", "settings", "activity"),
    CHATS_TABLE: ("settings", "messages", "message_settings"),
    PANEL_USERS_TABLE: ("metadata",),
    SETTINGS_TABLE: ("value",),
    MIGRATION_STATUS_TABLE: ("stats",),
}

SCHEMA_STATEMENTS: List[str] = [
    f'''
    CREATE TABLE IF NOT EXISTS {WHATSAPP_USERS_TABLE} (
        jid TEXT PRIMARY KEY,
        name TEXT,
        stats JSONB NOT NULL DEFAULT '{{}}'::jsonb,
        settings JSONB NOT NULL DEFAULT '{{}}'::jsonb,
        activity JSONB NOT NULL DEFAULT '{{}}'::jsonb,
        created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    ''',
    f'''
    CREATE TABLE IF NOT EXISTS {CHATS_TABLE} (
        jid TEXT PRIMARY KEY,
        settings JSONB NOT NULL DEFAULT '{{}}'::jsonb,
        messages JSONB NOT NULL DEFAULT '{{}}'::jsonb,
        message_settings JSONB NOT NULL DEFAULT '{{}}'::jsonb,
        created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    ''',
    f'''
    CREATE TABLE IF NOT EXISTS {PANEL_USERS_TABLE} (
        record_key TEXT PRIMARY KEY,
        username TEXT UNIQUE NOT NULL,
        password TEXT,
        rol TEXT,
        whatsapp_number TEXT,
        fecha_registro TEXT,
        activo BOOLEAN,
        temp_password TEXT,
        temp_password_expires TEXT,
        require_password_change BOOLEAN,
        last_login TEXT,
        login_ip TEXT,
        metadata JSONB NOT NULL DEFAULT '{{}}'::jsonb,
        created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    ''',
    f'''
    CREATE TABLE IF NOT EXISTS {SETTINGS_TABLE} (
        key_name TEXT PRIMARY KEY,
        value JSONB,
        description TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    ''',
    f'''
    CREATE TABLE IF NOT EXISTS {MIGRATION_STATUS_TABLE} (
        id SMALLINT PRIMARY KEY DEFAULT 1 CHECK (id = 1),
        completed BOOLEAN NOT NULL DEFAULT FALSE,
        migrated_at TEXT,
        version TEXT,
        backup_file TEXT,
        stats JSONB NOT NULL DEFAULT '{{}}'::jsonb,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    ''',
    f"CREATE INDEX IF NOT EXISTS idx_whatsapp_users_banned ON {WHATSAPP_USERS_TABLE} ((settings->>'banned'))",
    f"CREATE INDEX IF NOT EXISTS idx_chats_is_banned ON {CHATS_TABLE} ((settings->>'is_banned'))",
    f"CREATE INDEX IF NOT EXISTS idx_usuarios_rol ON {PANEL_USERS_TABLE} (rol)",
]


def ensure_schema(executor) -> bool:
    """
    Create every table and index the store needs.

    Args:
        executor: QueryDriver or Transaction

    Returns:
        bool: True once the statements ran
    """
    logger.debug("Ensuring database schema")
    for statement in SCHEMA_STATEMENTS:
        executor.query(statement)
    return True


@dataclass
class MigrationStatus:
    """Singleton record marking whether the legacy snapshot was transferred."""

    completed: bool = False
    timestamp: Optional[str] = None
    version: Optional[str] = None
    backup_file: Optional[str] = None
    stats: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "MigrationStatus":
        return cls(
            completed=bool(row.get("completed")),
            timestamp=row.get("migrated_at"),
            version=row.get("version"),
            backup_file=row.get("backup_file"),
            stats=row.get("stats") or {},
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "completed": self.completed,
            "timestamp": self.timestamp,
            "version": self.version,
            "backupFile": self.backup_file,
            "stats": self.stats,
        }


def read_migration_status(executor) -> Optional[MigrationStatus]:
    rows = executor.query(f"SELECT * FROM {MIGRATION_STATUS_TABLE} WHERE id = 1")
    if not rows:
        return None
    return MigrationStatus.from_row(rows[0])


def write_migration_status(executor, status: MigrationStatus) -> None:
    executor.bulk_insert(
        MIGRATION_STATUS_TABLE,
        ["id", "completed", "migrated_at", "version", "backup_file", "stats"],
        [[1, status.completed, status.timestamp, status.version, status.backup_file, to_json(status.stats)]],
        conflict_key="id",
        update_columns=["completed", "migrated_at", "version", "backup_file", "stats"],
    )


def reset_migration_status(executor) -> None:
    """Explicitly clear the completion marker; the only way ``completed`` goes back to False."""
    executor.query(
        f"UPDATE {MIGRATION_STATUS_TABLE} SET completed = FALSE, updated_at = CURRENT_TIMESTAMP WHERE id = 1"
    )
