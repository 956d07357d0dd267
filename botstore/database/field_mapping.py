"""
Field mapping between snapshot records and relational rows.

Snapshot records are flat dictionaries shaped like the legacy JSON file.
Each record type has one ``RecordMapping`` describing which keys live in
scalar columns, which live in which JSONB column and under which stored
name. Key aliases (legacy spellings) are resolved only here.
"""

import copy
import json
import math
from dataclasses import dataclass
from typing import Dict, Any, List, Optional, Tuple, Iterable, Mapping

from botstore.error_handling import ValidationError

USERS = "users"
CHATS = "chats"
PANEL_USERS = "usuarios"
SETTINGS = "settings"

FIXED_COLLECTIONS: Tuple[str, ...] = (USERS, CHATS, SETTINGS, PANEL_USERS)

USER_NUMERIC_FIELDS: Tuple[str, ...] = ("exp", "coin", "bank", "level", "health", "commands", "warn")
USER_BOOLEAN_FIELDS: Tuple[str, ...] = ("premium", "banned")
CHAT_BOOLEAN_FIELDS: Tuple[str, ...] = ("isBanned", "antilink", "welcome", "bye", "promote", "demote")
PANEL_USER_BOOLEAN_FIELDS: Tuple[str, ...] = ("activo", "require_password_change")


def empty_snapshot() -> Dict[str, Any]:
    return {name: {} for name in FIXED_COLLECTIONS}


def is_finite_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def sanitize_numbers(record: Dict[str, Any], fields: Iterable[str] = USER_NUMERIC_FIELDS, default: Any = 0) -> List[str]:
    """
    Replace present numeric fields that are not finite numbers with ``default``.

    Returns:
        List[str]: names of the fields that were replaced
    """
    replaced = []
    for name in fields:
        if name in record and not is_finite_number(record[name]):
            record[name] = default
            replaced.append(name)
    return replaced


def scrub_non_finite(container: Any, default: Any = 0, prefix: str = "",
                     keys: Optional[Iterable[Any]] = None) -> List[str]:
    """
    Replace NaN and infinite floats nested anywhere in a dict or list.

    Args:
        container: dict or list, modified in place
        default: replacement value
        prefix: dotted path of ``container`` itself
        keys: restrict the top level to these keys

    Returns:
        List[str]: dotted paths of the replaced values
    """
    if isinstance(container, dict):
        items = [(k, container[k]) for k in (container if keys is None else keys) if k in container]
    elif isinstance(container, list):
        items = list(enumerate(container))
    else:
        return []

    replaced = []
    for key, value in items:
        path = f"{prefix}.{key}" if prefix else str(key)
        if isinstance(value, float) and not math.isfinite(value):
            container[key] = default
            replaced.append(path)
        elif isinstance(value, (dict, list)):
            replaced += scrub_non_finite(value, default, path)
    return replaced


def sanitize_user(record: Dict[str, Any]) -> List[str]:
    """Zero the numeric user fields that are not finite numbers and any other non-finite float."""
    return sanitize_numbers(record, USER_NUMERIC_FIELDS) + scrub_non_finite(record)


def to_json(value: Any) -> str:
    """Serialize a value for a JSONB parameter; non-finite floats are rejected."""
    try:
        return json.dumps(value, allow_nan=False, default=str)
    except ValueError as e:
        raise ValidationError("Value is not representable as JSON", cause=e) from e


def from_json(value: Any, fallback: Any = None) -> Any:
    """Decode a JSONB column that may arrive as text."""
    if value is None:
        return fallback
    if isinstance(value, (dict, list, int, float, bool)):
        return value
    try:
        return json.loads(value)
    except (TypeError, ValueError):
        return fallback


@dataclass(frozen=True)
class FieldAlias:
    """One snapshot key stored in a JSONB column under a (possibly different) name."""

    key: str
    column: str
    stored: str
    legacy: Tuple[str, ...] = ()


class RecordMapping:
    """
    Bidirectional mapping for one record type.

    Keys listed in ``scalar_columns`` map to plain columns of the same name.
    Keys covered by an alias go to the alias column under the stored name.
    Everything else lands in ``default_column``. Scalar keys explicitly set
    to None are listed under ``NULL_KEYS`` in the default column, so that a
    NULL column read back tells an absent key from a null one.
    """

    NULL_KEYS = "__null_keys"

    def __init__(
        self,
        name: str,
        json_columns: Tuple[str, ...],
        default_column: str,
        aliases: Tuple[FieldAlias, ...] = (),
        scalar_columns: Tuple[str, ...] = (),
    ):
        self.name = name
        self.json_columns = json_columns
        self.default_column = default_column
        self.aliases = aliases
        self.scalar_columns = scalar_columns
        self._by_key: Dict[str, FieldAlias] = {}
        for alias in aliases:
            self._by_key[alias.key] = alias
            for legacy in alias.legacy:
                self._by_key.setdefault(legacy, alias)
        self._claimed = {(alias.column, alias.stored) for alias in aliases}

    @property
    def columns(self) -> Tuple[str, ...]:
        return self.scalar_columns + self.json_columns

    def canonical_key(self, key: str) -> str:
        alias = self._by_key.get(key)
        return alias.key if alias else key

    def normalize(self, record: Mapping[str, Any]) -> Dict[str, Any]:
        """Rewrite legacy spellings to canonical keys; canonical values win."""
        result: Dict[str, Any] = {}
        for key, value in record.items():
            canonical = self.canonical_key(key)
            if canonical != key and canonical in record:
                continue
            result[canonical] = value
        return result

    def encode(self, record: Mapping[str, Any]) -> Dict[str, Any]:
        """
        Split a snapshot record into column values.

        Returns:
            Dict[str, Any]: scalar column values and one dict per JSONB column
        """
        values: Dict[str, Any] = {column: None for column in self.scalar_columns}
        for column in self.json_columns:
            values[column] = {}

        nulls = []
        for key, value in self.normalize(record).items():
            if key in self.scalar_columns:
                values[key] = value
                if value is None:
                    nulls.append(key)
                continue
            alias = self._by_key.get(key)
            if alias:
                values[alias.column][alias.stored] = copy.deepcopy(value)
            else:
                values[self.default_column][key] = copy.deepcopy(value)
        if nulls:
            values[self.default_column][self.NULL_KEYS] = nulls
        return values

    def decode(self, row: Mapping[str, Any]) -> Dict[str, Any]:
        """Rebuild a snapshot record from a table row."""
        record: Dict[str, Any] = {}
        for column in self.scalar_columns:
            value = row.get(column)
            if value is not None:
                record[column] = value

        # Unclaimed keys in secondary columns never override the default column.
        ordered = [self.default_column] + [c for c in self.json_columns if c != self.default_column]
        for column in ordered:
            payload = from_json(row.get(column), {})
            if not isinstance(payload, dict):
                continue
            for stored, value in payload.items():
                if stored == self.NULL_KEYS and column == self.default_column:
                    continue
                if (column, stored) not in self._claimed and stored not in record:
                    record[stored] = value

        for alias in self.aliases:
            payload = from_json(row.get(alias.column), {})
            if isinstance(payload, dict) and alias.stored in payload:
                record[alias.key] = payload[alias.stored]

        defaults = from_json(row.get(self.default_column), {})
        if isinstance(defaults, dict) and isinstance(defaults.get(self.NULL_KEYS), list):
            for key in defaults[self.NULL_KEYS]:
                if key in self.scalar_columns and row.get(key) is None:
                    record.setdefault(key, None)
        return record


USER_MAPPING = RecordMapping(
    name=USERS,
    scalar_columns=("name",),
    json_columns=("stats", "settings", "activity"),
    default_column="settings",
    aliases=(
        FieldAlias("exp", "stats", "exp"),
        FieldAlias("coin", "stats", "coin"),
        FieldAlias("bank", "stats", "bank"),
        FieldAlias("level", "stats", "level"),
        FieldAlias("health", "stats", "health"),
        FieldAlias("commands", "activity", "commands"),
        FieldAlias("afk", "activity", "afk"),
        FieldAlias("afkReason", "activity", "afk_reason", legacy=("afk_reason",)),
        FieldAlias("lastSeen", "activity", "lastSeen"),
        FieldAlias("messageCount", "activity", "messageCount"),
        FieldAlias("commandCount", "activity", "commandCount"),
    ),
)

CHAT_MAPPING = RecordMapping(
    name=CHATS,
    json_columns=("settings", "messages", "message_settings"),
    default_column="settings",
    aliases=(
        FieldAlias("isBanned", "settings", "is_banned", legacy=("is_banned",)),
        FieldAlias("sWelcome", "messages", "welcome"),
        FieldAlias("sBye", "messages", "bye"),
        FieldAlias("sPromote", "messages", "promote"),
        FieldAlias("sDemote", "messages", "demote"),
        FieldAlias("welcome", "message_settings", "s_welcome"),
        FieldAlias("bye", "message_settings", "s_bye"),
        FieldAlias("promote", "message_settings", "s_promote"),
        FieldAlias("demote", "message_settings", "s_demote"),
    ),
)

PANEL_USER_MAPPING = RecordMapping(
    name=PANEL_USERS,
    scalar_columns=(
        "username",
        "password",
        "rol",
        "whatsapp_number",
        "fecha_registro",
        "activo",
        "temp_password",
        "temp_password_expires",
        "require_password_change",
        "last_login",
        "login_ip",
    ),
    json_columns=("metadata",),
    default_column="metadata",
)


def encode_user(jid: str, record: Mapping[str, Any]) -> List[Any]:
    """Row for ``whatsapp_users``: jid, name, stats, settings, activity."""
    values = USER_MAPPING.encode(record)
    return [jid, values["name"], to_json(values["stats"]), to_json(values["settings"]), to_json(values["activity"])]


def encode_chat(jid: str, record: Mapping[str, Any]) -> List[Any]:
    """Row for ``chats``: jid, settings, messages, message_settings."""
    values = CHAT_MAPPING.encode(record)
    return [jid, to_json(values["settings"]), to_json(values["messages"]), to_json(values["message_settings"])]


def encode_panel_user(key: str, record: Mapping[str, Any]) -> List[Any]:
    """Row for ``usuarios``: record_key, the fixed columns, metadata."""
    values = PANEL_USER_MAPPING.encode(record)
    scalars = [values[column] for column in PANEL_USER_MAPPING.scalar_columns]
    return [str(key)] + scalars + [to_json(values["metadata"])]


def encode_setting(key: str, value: Any, description: Optional[str] = None) -> List[Any]:
    """Row for ``settings``: key_name, value, description."""
    return [key, to_json(value), description or f"Bot setting: {key}"]


USER_COLUMNS = ["jid", "name", "stats", "settings", "activity"]
CHAT_COLUMNS = ["jid", "settings", "messages", "message_settings"]
PANEL_USER_COLUMNS = ["record_key"] + list(PANEL_USER_MAPPING.scalar_columns) + ["metadata"]
SETTING_COLUMNS = ["key_name", "value", "description"]


class ExtensionMap:
    """
    Top-level collections outside the fixed schema, keyed by collection name.

    They travel as one JSON object stored under ``SETTING_KEY`` in the
    settings table so the schema stays fixed.
    """

    SETTING_KEY = "__extensions"
    DESCRIPTION = "Extension collections (panel, characters, config, ...)"

    def __init__(self, collections: Optional[Dict[str, Any]] = None):
        self.collections: Dict[str, Any] = {}
        for name, value in (collections or {}).items():
            if name in FIXED_COLLECTIONS or value is None:
                continue
            self.collections[name] = value

    @classmethod
    def from_snapshot(cls, snapshot: Mapping[str, Any]) -> "ExtensionMap":
        return cls({name: value for name, value in snapshot.items() if name not in FIXED_COLLECTIONS})

    def serialize(self) -> str:
        return to_json(self.collections)

    @classmethod
    def deserialize(cls, value: Any) -> "ExtensionMap":
        payload = from_json(value, None)
        if not isinstance(payload, dict):
            return cls()
        return cls(payload)

    def apply_to(self, snapshot: Dict[str, Any]) -> Dict[str, Any]:
        for name, value in self.collections.items():
            snapshot[name] = value
        return snapshot

    def to_row(self) -> List[Any]:
        """Settings row carrying every extension collection."""
        return [self.SETTING_KEY, self.serialize(), self.DESCRIPTION]

    def names(self) -> List[str]:
        return sorted(self.collections)

    def __len__(self) -> int:
        return len(self.collections)

    def __eq__(self, other: object) -> bool:
        return isinstance(other, ExtensionMap) and other.collections == self.collections
