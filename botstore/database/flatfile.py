"""
Flat-file JSON store used as the legacy source and as the fallback backend.
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Dict, Any, List, Optional, Sequence, Callable, Union

from botstore.database.base import Store, FALLBACK, T
from botstore.database.field_mapping import USERS, empty_snapshot, sanitize_user, scrub_non_finite
from botstore.error_handling import ExtractionError, FallbackModeError, ValidationError, error_boundary

logger = logging.getLogger(__name__)


def load_snapshot(path: Union[str, Path]) -> Dict[str, Any]:
    """
    Parse a legacy snapshot file.

    Raises:
        ExtractionError: if the file is missing, unreadable or not a JSON object
    """
    path = Path(path)
    if not path.exists():
        raise ExtractionError(f"Legacy database not found: {path}", reason=ExtractionError.NOT_FOUND,
                              details={"path": str(path)})
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ExtractionError(f"Legacy database is not valid JSON: {path}", reason=ExtractionError.MALFORMED,
                              details={"path": str(path)}, cause=e) from e
    if not isinstance(data, dict):
        raise ExtractionError(f"Legacy database must contain a JSON object: {path}",
                              reason=ExtractionError.MALFORMED, details={"path": str(path)})
    return data


def dump_snapshot(path: Union[str, Path], data: Dict[str, Any]) -> None:
    """
    Atomically replace ``path`` with the JSON encoding of ``data``.

    Raises:
        ValidationError: if ``data`` is not representable as JSON; the
            file is left untouched
    """
    path = Path(path)
    try:
        content = json.dumps(data, ensure_ascii=False, indent=2, allow_nan=False)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Snapshot for {path} is not representable as JSON", cause=e) from e

    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


def sanitize_snapshot(data: Dict[str, Any]) -> int:
    """Replace non-finite numbers anywhere in the snapshot; returns the number of values fixed."""
    fixed = 0
    users = data.get(USERS)
    if isinstance(users, dict):
        for jid, record in users.items():
            if isinstance(record, dict):
                replaced = sanitize_user(record)
                if replaced:
                    logger.warning(f"Sanitized non-finite fields for user {jid}: {', '.join(replaced)}")
                fixed += len(replaced)
    replaced = scrub_non_finite(data)
    if replaced:
        logger.warning(f"Sanitized non-finite values: {', '.join(replaced)}")
    return fixed + len(replaced)


class FlatFileBackend(Store):
    """
    Snapshot store over a single JSON document.

    Raw relational access is not available on this backend.
    """

    mode = FALLBACK

    def __init__(self, path: Union[str, Path]):
        super().__init__()
        self.path = Path(path)

    def initialize(self, cancel_token=None) -> Dict[str, Any]:
        logger.info(f"Initializing flat-file store at {self.path}")
        if not self.path.exists():
            logger.warning(f"{self.path} not found, creating it with empty collections")
            self.data = empty_snapshot()
            dump_snapshot(self.path, self.data)
        else:
            self.read()
        self.is_initialized = True
        return self.data

    def read(self) -> Dict[str, Any]:
        """
        Reload the snapshot from disk.

        Raises:
            ExtractionError: if the file exists but cannot be parsed; the
                in-memory snapshot and the file are left as they were
        """
        if not self.path.exists():
            self.data = empty_snapshot()
            return self.data
        data = load_snapshot(self.path)
        sanitize_snapshot(data)
        self.data = data
        return self.data

    def write(self) -> Dict[str, Any]:
        sanitize_snapshot(self.data)
        dump_snapshot(self.path, self.data)
        logger.debug(f"Flat-file snapshot written to {self.path}")
        return self.data

    def query(self, sql: str, params: Optional[Sequence[Any]] = None) -> List[Dict[str, Any]]:
        raise FallbackModeError("Direct SQL queries not available in fallback mode")

    def transaction(self, callback: Callable[[Any], T]) -> T:
        raise FallbackModeError("Transactions not available in fallback mode")

    @error_boundary(fallback_value=lambda e: {"healthy": False, "mode": FALLBACK, "error": str(e)})
    def health_check(self) -> Dict[str, Any]:
        return {
            "healthy": self.is_initialized and self.path.exists(),
            "mode": FALLBACK,
            "path": str(self.path),
            "collections": sorted(self.data),
        }

    def connection_status(self) -> Dict[str, Any]:
        return {"mode": FALLBACK, "path": str(self.path), "is_initialized": self.is_initialized}

    def close(self) -> None:
        self.is_initialized = False
