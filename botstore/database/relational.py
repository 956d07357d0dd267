"""
PostgreSQL-backed snapshot store.

Keeps an in-memory mirror of the relational tables shaped exactly like the
legacy JSON document, so callers written against the flat-file store keep
working unchanged.
"""

import logging
from typing import Dict, Any, List, Optional, Sequence, Callable

from botstore.config import DatabaseConfig
from botstore.database.base import Store, RELATIONAL, T
from botstore.database.driver import QueryDriver, CancellationToken, Transaction, iter_batches
from botstore.database.field_mapping import (
    USERS,
    CHATS,
    PANEL_USERS,
    SETTINGS,
    USER_MAPPING,
    CHAT_MAPPING,
    PANEL_USER_MAPPING,
    PANEL_USER_BOOLEAN_FIELDS,
    USER_COLUMNS,
    CHAT_COLUMNS,
    PANEL_USER_COLUMNS,
    SETTING_COLUMNS,
    ExtensionMap,
    empty_snapshot,
    encode_user,
    encode_chat,
    encode_panel_user,
    encode_setting,
    sanitize_user,
    scrub_non_finite,
)
from botstore.database.schema import (
    WHATSAPP_USERS_TABLE,
    CHATS_TABLE,
    PANEL_USERS_TABLE,
    SETTINGS_TABLE,
    ensure_schema,
)
from botstore.error_handling import DatabaseConnectionError, QueryError, error_boundary

logger = logging.getLogger(__name__)


def _update_columns(columns: Sequence[str], key: str) -> List[str]:
    return [c for c in columns if c != key]


def load_relational_snapshot(executor) -> Dict[str, Any]:
    """
    Read every table into a snapshot shaped like the legacy document.

    Args:
        executor: QueryDriver or Transaction
    """
    snapshot = empty_snapshot()

    for row in executor.query(f"SELECT * FROM {WHATSAPP_USERS_TABLE}"):
        record = USER_MAPPING.decode(row)
        replaced = sanitize_user(record)
        if replaced:
            logger.warning(f"Sanitized non-finite fields for user {row['jid']}: {', '.join(replaced)}")
        snapshot[USERS][row["jid"]] = record

    for row in executor.query(f"SELECT * FROM {CHATS_TABLE}"):
        snapshot[CHATS][row["jid"]] = CHAT_MAPPING.decode(row)

    for row in executor.query(f"SELECT * FROM {PANEL_USERS_TABLE}"):
        snapshot[PANEL_USERS][row["record_key"]] = PANEL_USER_MAPPING.decode(row)

    extensions = ExtensionMap()
    for row in executor.query(f"SELECT * FROM {SETTINGS_TABLE}"):
        if row["key_name"] == ExtensionMap.SETTING_KEY:
            extensions = ExtensionMap.deserialize(row.get("value"))
        else:
            snapshot[SETTINGS][row["key_name"]] = row.get("value")

    extensions.apply_to(snapshot)
    return snapshot


def _coerce_panel_booleans(key: str, record: Dict[str, Any]) -> Dict[str, Any]:
    bad = [f for f in PANEL_USER_BOOLEAN_FIELDS if record.get(f) is not None and not isinstance(record[f], bool)]
    if not bad:
        return record
    logger.warning(f"Panel user {key}: coercing non-boolean fields {', '.join(bad)}")
    for name in bad:
        record[name] = bool(record[name])
    return record


class RelationalBackend(Store):
    """
    Snapshot store over the relational schema.

    ``write`` is a full resynchronization: every record is upserted by key
    inside one transaction. Records are never deleted.
    """

    mode = RELATIONAL

    def __init__(
        self,
        config: Optional[DatabaseConfig] = None,
        driver: Optional[QueryDriver] = None,
        batch_size: int = 100,
    ):
        super().__init__()
        self.driver = driver or QueryDriver(config)
        self.batch_size = batch_size
        self.last_write: Dict[str, int] = {}

    def initialize(self, cancel_token: Optional[CancellationToken] = None) -> Dict[str, Any]:
        """
        Connect, bootstrap the schema and load the snapshot.

        When ``cancel_token`` is cancelled the attempt stops at the next
        checkpoint and raises ``OperationCancelled``. On any failure the
        pool is released before the error propagates.
        """
        token = cancel_token or CancellationToken()
        try:
            self.driver.connect(cancel_token=token)
            token.raise_if_cancelled()
            ensure_schema(self.driver)
            token.raise_if_cancelled()
            data = load_relational_snapshot(self.driver)
            token.raise_if_cancelled()
        except BaseException as e:
            if token.cancelled:
                logger.info("Abandoned relational initialization, releasing its connections")
            else:
                logger.warning(f"Relational initialization failed, releasing its connections: {e}")
            self._release()
            raise

        self.data = data
        self.is_initialized = True
        logger.info(
            f"Relational snapshot loaded: {len(data[USERS])} users, {len(data[CHATS])} chats, "
            f"{len(data[PANEL_USERS])} panel users, {len(data[SETTINGS])} settings"
        )
        return self.data

    def _release(self) -> None:
        try:
            self.driver.close()
        except QueryError as e:
            logger.debug(f"Error releasing pool: {e.message}")

    def read(self) -> Dict[str, Any]:
        self.data = load_relational_snapshot(self.driver)
        return self.data

    def write(self) -> Dict[str, Any]:
        data = self.data
        self.last_write = self.driver.transaction(lambda tx: self._sync(tx, data))
        logger.debug(f"Relational snapshot written: {self.last_write}")
        return self.data

    def _sync(self, tx: Transaction, data: Dict[str, Any]) -> Dict[str, int]:
        counts = {USERS: 0, CHATS: 0, PANEL_USERS: 0, SETTINGS: 0}

        user_rows = []
        for jid, record in (data.get(USERS) or {}).items():
            if not isinstance(record, dict):
                continue
            replaced = sanitize_user(record)
            if replaced:
                logger.warning(f"Sanitized non-finite fields for user {jid}: {', '.join(replaced)}")
            user_rows.append(encode_user(jid, record))
        replaced = scrub_non_finite(data, keys=[name for name in data if name != USERS])
        if replaced:
            logger.warning(f"Sanitized non-finite values: {', '.join(replaced)}")
        for batch in iter_batches(user_rows, self.batch_size):
            tx.bulk_insert(WHATSAPP_USERS_TABLE, USER_COLUMNS, batch, "jid", _update_columns(USER_COLUMNS, "jid"))
            counts[USERS] += len(batch)

        chat_rows = [
            encode_chat(jid, record) for jid, record in (data.get(CHATS) or {}).items() if isinstance(record, dict)
        ]
        for batch in iter_batches(chat_rows, self.batch_size):
            tx.bulk_insert(CHATS_TABLE, CHAT_COLUMNS, batch, "jid", _update_columns(CHAT_COLUMNS, "jid"))
            counts[CHATS] += len(batch)

        panel_rows = []
        for key, record in (data.get(PANEL_USERS) or {}).items():
            if not isinstance(record, dict):
                continue
            if not record.get("username"):
                logger.warning(f"Skipping panel user {key}: missing username")
                continue
            panel_rows.append(encode_panel_user(key, _coerce_panel_booleans(key, record)))
        for batch in iter_batches(panel_rows, self.batch_size):
            tx.bulk_insert(
                PANEL_USERS_TABLE,
                PANEL_USER_COLUMNS,
                batch,
                "record_key",
                _update_columns(PANEL_USER_COLUMNS, "record_key"),
            )
            counts[PANEL_USERS] += len(batch)

        setting_rows = [encode_setting(key, value) for key, value in (data.get(SETTINGS) or {}).items()]
        extensions = ExtensionMap.from_snapshot(data)
        setting_rows.append(extensions.to_row())
        for batch in iter_batches(setting_rows, self.batch_size):
            tx.bulk_insert(SETTINGS_TABLE, SETTING_COLUMNS, batch, "key_name", ["value", "description"])
            counts[SETTINGS] += len(batch)

        counts["extensions"] = len(extensions)
        return counts

    def query(self, sql: str, params: Optional[Sequence[Any]] = None) -> List[Dict[str, Any]]:
        return self.driver.query(sql, params)

    def transaction(self, callback: Callable[[Transaction], T]) -> T:
        return self.driver.transaction(callback)

    @error_boundary(fallback_value=lambda e: {"healthy": False, "mode": RELATIONAL, "error": e.message})
    def health_check(self) -> Dict[str, Any]:
        if not self.driver.is_connected:
            raise DatabaseConnectionError("PostgreSQL not connected")
        result = self.driver.health_check()
        result["mode"] = RELATIONAL
        return result

    def connection_status(self) -> Dict[str, Any]:
        status = self.driver.get_status()
        status["mode"] = RELATIONAL
        return status

    def close(self) -> None:
        self.driver.close()
        self.is_initialized = False
