"""
One-shot migration of the legacy JSON snapshot into PostgreSQL.

The migration runs in five observable steps: extract, validate, backup,
transfer and finalize. Transfer and finalize share one transaction; each
batch (users) or record (everything else) runs under its own savepoint so
a failing unit is recorded and skipped without losing its siblings.
Every write is an upsert by key, so running the migration again leaves
the store unchanged.
"""

import copy
import logging
import os
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Any, List, Optional, Tuple

from botstore.config import StoreConfig
from botstore.database.driver import QueryDriver, Transaction, is_transaction_fatal, iter_batches
from botstore.database.field_mapping import (
    USERS,
    CHATS,
    PANEL_USERS,
    SETTINGS,
    USER_NUMERIC_FIELDS,
    USER_BOOLEAN_FIELDS,
    CHAT_BOOLEAN_FIELDS,
    PANEL_USER_BOOLEAN_FIELDS,
    USER_COLUMNS,
    CHAT_COLUMNS,
    PANEL_USER_COLUMNS,
    SETTING_COLUMNS,
    ExtensionMap,
    encode_user,
    encode_chat,
    encode_panel_user,
    encode_setting,
    is_finite_number,
    scrub_non_finite,
)
from botstore.database.flatfile import load_snapshot
from botstore.database.schema import (
    WHATSAPP_USERS_TABLE,
    CHATS_TABLE,
    PANEL_USERS_TABLE,
    SETTINGS_TABLE,
    MigrationStatus,
    ensure_schema,
    write_migration_status,
)
from botstore.error_handling import BotStoreError, BackupError, TransferError, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_PANEL_ROLE = "usuario"


@dataclass
class ValidationReport:
    """Outcome of validating a legacy snapshot."""

    data: Dict[str, Any]
    warnings: List[Dict[str, Any]] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    total_records: int = 0
    coercions: int = 0

    @property
    def valid(self) -> bool:
        return not self.errors


@dataclass
class MigrationReport:
    """Outcome of a complete migration run."""

    status: MigrationStatus
    tables: Dict[str, Dict[str, int]]
    warnings: List[Dict[str, Any]] = field(default_factory=list)
    errors: List[TransferError] = field(default_factory=list)
    validation_errors: List[str] = field(default_factory=list)
    backup_file: Optional[str] = None
    duration_ms: float = 0.0

    @property
    def success(self) -> bool:
        return not self.errors

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "backup_file": self.backup_file,
            "duration_ms": self.duration_ms,
            "tables": self.tables,
            "warnings": self.warnings,
            "errors": [describe_transfer_error(e) for e in self.errors],
            "validation_errors": self.validation_errors,
            "status": self.status.to_dict(),
        }


def describe_transfer_error(error: TransferError) -> Dict[str, Any]:
    entry = dict(error.details)
    entry["message"] = error.message
    return entry


def _backup_timestamp() -> str:
    now = datetime.now(timezone.utc)
    return now.strftime("%Y-%m-%dT%H-%M-%S-") + f"{now.microsecond // 1000:03d}Z"


def _is_valid_jid(jid: Any) -> bool:
    return isinstance(jid, str) and bool(jid.strip())


class MigrationEngine:
    """
    Transfers the legacy snapshot into the relational schema.

    The engine owns its QueryDriver unless one is passed in.
    """

    def __init__(self, config: Optional[StoreConfig] = None, driver: Optional[QueryDriver] = None):
        self.config = config or StoreConfig()
        self._owns_driver = driver is None
        self.driver = driver or QueryDriver(self.config.database)

    # Step 1

    def extract(self) -> Dict[str, Any]:
        """
        Parse the legacy snapshot.

        Raises:
            ExtractionError: if the file is missing or is not a JSON object
        """
        path = self.config.legacy_path
        logger.info(f"Extracting legacy data from {path}")
        data = load_snapshot(path)
        logger.info(f"Found sections: {', '.join(data) or 'none'}")
        for name in (USERS, CHATS, SETTINGS, PANEL_USERS):
            section = data.get(name)
            if isinstance(section, dict):
                logger.info(f"  {name}: {len(section)} records")
        return data

    # Step 2

    def validate(self, data: Dict[str, Any]) -> ValidationReport:
        """
        Validate and coerce a deep copy of ``data``.

        Invalid numeric user fields become 0 and invalid booleans become
        False. Records with structural problems are dropped and reported as
        errors. In strict mode any coercion or structural error raises.

        Raises:
            ValidationError: in strict mode, when anything had to be fixed
        """
        logger.info("Validating legacy data")
        clean = copy.deepcopy(data)
        report = ValidationReport(data=clean)

        users = clean.get(USERS)
        if isinstance(users, dict):
            for jid in list(users):
                report.total_records += 1
                record = users[jid]
                if not _is_valid_jid(jid) or not isinstance(record, dict):
                    report.errors.append(f"Invalid user record: {jid!r}")
                    del users[jid]
                    continue
                if not record.get("name"):
                    logger.debug(f"User {jid} has no name")
                fixed = self._coerce_numbers(USERS, jid, record, USER_NUMERIC_FIELDS)
                fixed += self._coerce_booleans(USERS, jid, record, USER_BOOLEAN_FIELDS)
                fixed += self._scrub(USERS, jid, record)
                self._note(report, USERS, jid, fixed)

        chats = clean.get(CHATS)
        if isinstance(chats, dict):
            for jid in list(chats):
                report.total_records += 1
                record = chats[jid]
                if not _is_valid_jid(jid) or not isinstance(record, dict):
                    report.errors.append(f"Invalid chat record: {jid!r}")
                    del chats[jid]
                    continue
                fixed = self._coerce_booleans(CHATS, jid, record, CHAT_BOOLEAN_FIELDS)
                fixed += self._scrub(CHATS, jid, record)
                self._note(report, CHATS, jid, fixed)

        panel_users = clean.get(PANEL_USERS)
        if isinstance(panel_users, dict):
            for key in list(panel_users):
                report.total_records += 1
                record = panel_users[key]
                if not isinstance(record, dict):
                    report.errors.append(f"Invalid panel user record: {key!r}")
                    del panel_users[key]
                    continue
                if not record.get("username"):
                    report.errors.append(f"Panel user {key} missing username")
                    del panel_users[key]
                    continue
                if not record.get("password"):
                    report.errors.append(f"Panel user {record['username']} missing password")
                    del panel_users[key]
                    continue
                fixed = []
                if not record.get("rol"):
                    logger.warning(f"Panel user {record['username']} missing role, setting to '{DEFAULT_PANEL_ROLE}'")
                    record["rol"] = DEFAULT_PANEL_ROLE
                    fixed.append("rol")
                fixed += self._coerce_booleans(PANEL_USERS, key, record, PANEL_USER_BOOLEAN_FIELDS)
                fixed += self._scrub(PANEL_USERS, key, record)
                self._note(report, PANEL_USERS, key, fixed)

        settings = clean.get(SETTINGS)
        if isinstance(settings, dict):
            report.total_records += len(settings)
            for key in list(settings):
                self._note(report, SETTINGS, key, self._scrub(SETTINGS, key, settings, only=key))

        for name in ExtensionMap.from_snapshot(clean).names():
            self._note(report, "extensions", name, self._scrub("extensions", name, clean, only=name))

        for name in (USERS, CHATS, PANEL_USERS, SETTINGS):
            if name in clean and not isinstance(clean[name], dict):
                report.errors.append(f"Collection {name} is not an object")
                clean[name] = {}

        for error in report.errors:
            logger.error(f"Validation error: {error}")

        if self.config.strict_validation and (report.errors or report.coercions):
            raise ValidationError(
                f"Data validation failed with {len(report.errors)} errors and {report.coercions} coercions",
                details={"errors": report.errors, "warnings": report.warnings},
            )

        if report.valid and not report.warnings:
            logger.info("Data validation passed")
        else:
            logger.info(
                f"Data validation finished with {len(report.warnings)} warnings and {len(report.errors)} errors"
            )
        return report

    @staticmethod
    def _coerce_numbers(collection: str, key: str, record: Dict[str, Any], fields) -> List[str]:
        fixed = []
        for name in fields:
            if name in record and not is_finite_number(record[name]):
                logger.warning(f"{collection} {key} has invalid {name}: {record[name]!r}, setting to 0")
                record[name] = 0
                fixed.append(name)
        return fixed

    @staticmethod
    def _coerce_booleans(collection: str, key: str, record: Dict[str, Any], fields) -> List[str]:
        fixed = []
        for name in fields:
            if name in record and not isinstance(record[name], bool):
                logger.warning(f"{collection} {key} has invalid {name}: {record[name]!r}, setting to false")
                record[name] = False
                fixed.append(name)
        return fixed

    @staticmethod
    def _scrub(collection: str, key: str, container: Any, only: Optional[str] = None) -> List[str]:
        fixed = scrub_non_finite(container, keys=None if only is None else [only])
        if fixed:
            logger.warning(f"{collection} {key} has non-finite values in {', '.join(fixed)}, setting to 0")
        return fixed

    @staticmethod
    def _note(report: ValidationReport, collection: str, key: str, fixed: List[str]) -> None:
        if not fixed:
            return
        report.coercions += len(fixed)
        report.warnings.append({"collection": collection, "key": key, "fields": fixed})

    # Step 3

    def create_backup(self) -> Optional[str]:
        """
        Copy the legacy file verbatim into the backup directory.

        Returns:
            Optional[str]: path of the backup, or None when backups are disabled

        Raises:
            BackupError: if the copy could not be written
        """
        if not self.config.create_backup:
            logger.info("Backup creation disabled")
            return None

        source = Path(self.config.legacy_path)
        backup_dir = Path(self.config.backup_dir)
        try:
            backup_dir.mkdir(parents=True, exist_ok=True)
            target = backup_dir / f"database-backup-{_backup_timestamp()}.json"
            counter = 1
            while target.exists():
                target = backup_dir / f"database-backup-{_backup_timestamp()}-{counter}.json"
                counter += 1
            content = source.read_bytes()
            with open(target, "wb") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
        except OSError as e:
            raise BackupError(f"Failed to create backup of {source}", details={"backup_dir": str(backup_dir)},
                              cause=e) from e

        logger.info(f"Backup created: {target}")
        return str(target)

    # Step 4

    def transfer(self, tx: Transaction, data: Dict[str, Any]) -> Tuple[Dict[str, Dict[str, int]], List[TransferError]]:
        """
        Upsert every collection inside the caller's transaction.

        Returns:
            (tables, errors): per-collection counts and the isolated failures
        """
        tables: Dict[str, Dict[str, int]] = {}
        errors: List[TransferError] = []

        tables[USERS] = self._transfer_users(tx, data.get(USERS) or {}, errors)
        tables[CHATS] = self._transfer_records(
            tx, CHATS, data.get(CHATS) or {}, errors,
            lambda key, record: tx.bulk_insert(
                CHATS_TABLE, CHAT_COLUMNS, [encode_chat(key, record)], "jid", CHAT_COLUMNS[1:]
            ),
        )
        tables[PANEL_USERS] = self._transfer_records(
            tx, PANEL_USERS, data.get(PANEL_USERS) or {}, errors,
            lambda key, record: tx.bulk_insert(
                PANEL_USERS_TABLE, PANEL_USER_COLUMNS, [encode_panel_user(key, record)], "record_key",
                PANEL_USER_COLUMNS[1:],
            ),
        )
        tables[SETTINGS] = self._transfer_records(
            tx, SETTINGS, data.get(SETTINGS) or {}, errors,
            lambda key, value: tx.bulk_insert(
                SETTINGS_TABLE, SETTING_COLUMNS, [encode_setting(key, value)], "key_name", ["value", "description"]
            ),
        )

        extensions = ExtensionMap.from_snapshot(data)
        if extensions:
            tables["extensions"] = self._transfer_records(
                tx, "extensions", {ExtensionMap.SETTING_KEY: extensions}, errors,
                lambda key, value: tx.bulk_insert(
                    SETTINGS_TABLE, SETTING_COLUMNS,
                    [value.to_row()],
                    "key_name", ["value", "description"],
                ),
            )
            logger.info(f"Carried over extension collections: {', '.join(extensions.names())}")

        return tables, errors

    def _transfer_users(self, tx: Transaction, users: Dict[str, Any], errors: List[TransferError]) -> Dict[str, int]:
        entries = list(users.items())
        if not entries:
            logger.info("No WhatsApp users to migrate")
            return {"total": 0, "migrated": 0, "failed": 0}

        batch_size = self.config.batch_size
        batch_count = (len(entries) + batch_size - 1) // batch_size
        logger.info(f"Migrating {len(entries)} WhatsApp users in {batch_count} batches")

        migrated = 0
        for index, batch in enumerate(iter_batches(entries, batch_size), start=1):
            try:
                with tx.savepoint(f"users_batch_{index}"):
                    rows = [encode_user(jid, record) for jid, record in batch]
                    tx.bulk_insert(WHATSAPP_USERS_TABLE, USER_COLUMNS, rows, "jid", USER_COLUMNS[1:])
            except BotStoreError as e:
                if is_transaction_fatal(e):
                    raise
                logger.error(f"WhatsApp users batch {index}/{batch_count} failed: {e.message}")
                errors.append(TransferError(
                    f"WhatsApp users batch {index} failed: {e.message}",
                    details={"collection": USERS, "batch": index, "keys": [jid for jid, _ in batch]},
                    cause=e,
                ))
                continue
            migrated += len(batch)
            logger.debug(f"Batch {index}/{batch_count} completed ({migrated}/{len(entries)})")

        logger.info(f"WhatsApp users migration completed: {migrated}/{len(entries)}")
        return {"total": len(entries), "migrated": migrated, "failed": len(entries) - migrated}

    @staticmethod
    def _transfer_records(tx: Transaction, collection: str, records: Dict[str, Any],
                          errors: List[TransferError], upsert) -> Dict[str, int]:
        if not records:
            logger.info(f"No {collection} to migrate")
            return {"total": 0, "migrated": 0, "failed": 0}

        logger.info(f"Migrating {len(records)} {collection}")
        migrated = 0
        for index, (key, record) in enumerate(records.items(), start=1):
            try:
                with tx.savepoint(f"{collection}_{index}"):
                    upsert(key, record)
            except BotStoreError as e:
                if is_transaction_fatal(e):
                    raise
                logger.error(f"Failed to migrate {collection} {key}: {e.message}")
                errors.append(TransferError(
                    f"{collection} {key}: {e.message}",
                    details={"collection": collection, "key": key},
                    cause=e,
                ))
                continue
            migrated += 1

        logger.info(f"{collection} migration completed: {migrated}/{len(records)}")
        return {"total": len(records), "migrated": migrated, "failed": len(records) - migrated}

    # Step 5

    def finalize(
        self,
        tx: Transaction,
        tables: Dict[str, Dict[str, int]],
        backup_file: Optional[str],
        duration_ms: float,
        warnings: List[Dict[str, Any]],
        errors: List[TransferError],
        validation_errors: Optional[List[str]] = None,
    ) -> MigrationStatus:
        """Persist the completion marker with aggregate counts."""
        stats = {
            "tables": tables,
            "total_records": sum(t["total"] for t in tables.values()),
            "migrated_records": sum(t["migrated"] for t in tables.values()),
            "failed_records": sum(t["failed"] for t in tables.values()),
            "duration_ms": round(duration_ms, 2),
            "warnings": warnings,
            "errors": [describe_transfer_error(e) for e in errors],
            "validation_errors": list(validation_errors or []),
        }
        status = MigrationStatus(
            completed=True,
            timestamp=datetime.now(timezone.utc).isoformat(),
            version=self.config.migration_version,
            backup_file=backup_file,
            stats=stats,
        )
        write_migration_status(tx, status)
        return status

    # All steps

    def migrate(self, connect_attempts: Optional[int] = None) -> MigrationReport:
        """
        Run extract, validate, backup, transfer and finalize.

        Raises:
            ExtractionError, ValidationError, BackupError: before any write
            DatabaseConnectionError: if the store cannot be reached
        """
        start = time.monotonic()
        logger.info("Starting legacy data migration")

        data = self.extract()
        validation = self.validate(data)
        backup_file = self.create_backup()

        try:
            if not self.driver.is_connected:
                self.driver.connect(max_attempts=connect_attempts)
            ensure_schema(self.driver)

            def run(tx: Transaction):
                tables, errors = self.transfer(tx, validation.data)
                duration_ms = (time.monotonic() - start) * 1000
                status = self.finalize(
                    tx, tables, backup_file, duration_ms, validation.warnings, errors, validation.errors
                )
                return tables, errors, status

            tables, errors, status = self.driver.transaction(run)
        finally:
            if self._owns_driver:
                self.driver.close()

        report = MigrationReport(
            status=status,
            tables=tables,
            warnings=validation.warnings,
            errors=errors,
            validation_errors=validation.errors,
            backup_file=backup_file,
            duration_ms=status.stats["duration_ms"],
        )
        logger.info(
            f"Migration completed in {report.duration_ms:.0f}ms: "
            f"{status.stats['migrated_records']}/{status.stats['total_records']} records, "
            f"{len(report.errors)} errors, {len(report.warnings)} warnings"
        )
        return report
