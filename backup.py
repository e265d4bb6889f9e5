"""Encrypted full-state backups.

A backup is the JSON dump of every ledger table, gzip-compressed and
sealed with AES-256-GCM. The file layout is ``IV (16) || TAG (16) ||
CIPHERTEXT``; the key is the SHA-256 digest of the configured backup
secret.
"""

from __future__ import annotations

import gzip
import hashlib
import json
import logging
import os
import zlib
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from sqlalchemy import Date, DateTime, Enum as SAEnum, delete, select
from sqlalchemy.orm import Session

from config import get_settings
from models import (
    Category,
    PlannedItem,
    RecurringItem,
    SavingsGoal,
    Setting,
    Transaction,
)
from services import LAST_BACKUP_KEY, SettingService

logger = logging.getLogger(__name__)

BACKUP_VERSION = 1
IV_LENGTH = 16
TAG_LENGTH = 16

# insertion order; deletes run in reverse
TABLES = {
    "categories": Category,
    "recurring_items": RecurringItem,
    "transactions": Transaction,
    "planned_items": PlannedItem,
    "savings_goals": SavingsGoal,
    "settings": Setting,
}


class BackupError(ValueError):
    pass


def derive_key(secret: str) -> bytes:
    return hashlib.sha256(secret.encode("utf-8")).digest()


def encode_backup(dump: dict[str, Any], secret: str) -> bytes:
    compressed = gzip.compress(json.dumps(dump).encode("utf-8"))
    iv = os.urandom(IV_LENGTH)
    sealed = AESGCM(derive_key(secret)).encrypt(iv, compressed, None)
    ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
    return iv + tag + ciphertext


def decode_backup(blob: bytes, secret: str) -> dict[str, Any]:
    if len(blob) <= IV_LENGTH + TAG_LENGTH:
        raise BackupError("Backup file is truncated")
    iv = blob[:IV_LENGTH]
    tag = blob[IV_LENGTH : IV_LENGTH + TAG_LENGTH]
    ciphertext = blob[IV_LENGTH + TAG_LENGTH :]
    try:
        compressed = AESGCM(derive_key(secret)).decrypt(iv, ciphertext + tag, None)
    except InvalidTag as exc:
        raise BackupError("Backup could not be decrypted") from exc
    try:
        raw = gzip.decompress(compressed)
    except (OSError, EOFError, zlib.error) as exc:
        raise BackupError("Backup payload is not valid gzip data") from exc
    try:
        dump = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise BackupError("Backup payload is not valid JSON") from exc

    if not isinstance(dump, dict) or not isinstance(dump.get("data"), dict):
        raise BackupError("Backup payload has no data section")
    if dump.get("version") != BACKUP_VERSION:
        raise BackupError(f"Unsupported backup version: {dump.get('version')!r}")
    return dump


def _dump_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return value


def _load_value(column, value: Any) -> Any:
    if value is None:
        return None
    if isinstance(column.type, DateTime):
        return datetime.fromisoformat(value)
    if isinstance(column.type, Date):
        return date.fromisoformat(value)
    if isinstance(column.type, SAEnum) and column.type.enum_class is not None:
        return column.type.enum_class(value)
    return value


def _row_to_dict(record: Any) -> dict[str, Any]:
    return {
        column.key: _dump_value(getattr(record, column.key))
        for column in type(record).__table__.columns
    }


def _row_from_dict(table: str, model: type, row: Any) -> dict[str, Any]:
    if not isinstance(row, dict):
        raise BackupError(f"Invalid row in {table}: {row!r}")
    fields: dict[str, Any] = {}
    for column in model.__table__.columns:
        if column.key not in row:
            if column.nullable or column.default is not None:
                continue
            raise BackupError(f"Row in {table} is missing '{column.key}'")
        try:
            fields[column.key] = _load_value(column, row[column.key])
        except (TypeError, ValueError) as exc:
            raise BackupError(
                f"Invalid value for {table}.{column.key}: {row[column.key]!r}"
            ) from exc
    return fields


class BackupService:
    def __init__(self, session: Session, secret: Optional[str] = None) -> None:
        self.session = session
        self.secret = secret or get_settings().backup_secret

    def snapshot(self) -> dict[str, Any]:
        data = {
            name: [_row_to_dict(row) for row in self.session.scalars(select(model))]
            for name, model in TABLES.items()
        }
        return {
            "version": BACKUP_VERSION,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "data": data,
        }

    def export(self) -> bytes:
        dump = self.snapshot()
        blob = encode_backup(dump, self.secret)
        SettingService(self.session).set(LAST_BACKUP_KEY, dump["timestamp"])
        counts = {name: len(rows) for name, rows in dump["data"].items()}
        logger.info(f"backup_exported: bytes={len(blob)} rows={counts}")
        return blob

    def restore(self, blob: bytes) -> dict[str, int]:
        return self.restore_dump(decode_backup(blob, self.secret))

    def restore_dump(self, dump: dict[str, Any]) -> dict[str, int]:
        """Replace every table with the dump's rows in a single transaction."""
        data = dump["data"]
        missing = [name for name in TABLES if name not in data]
        if missing:
            raise BackupError(f"Backup is missing sections: {', '.join(missing)}")
        rows: dict[str, list[dict[str, Any]]] = {}
        for name, model in TABLES.items():
            raw_rows = data[name]
            if not isinstance(raw_rows, list):
                raise BackupError(f"Backup section '{name}' is not a list")
            rows[name] = [_row_from_dict(name, model, row) for row in raw_rows]

        self.session.expunge_all()
        try:
            for model in reversed(list(TABLES.values())):
                self.session.execute(delete(model))
            for name, model in TABLES.items():
                self.session.add_all([model(**fields) for fields in rows[name]])
                self.session.flush()
            self.session.commit()
        except Exception as exc:
            self.session.rollback()
            logger.exception("restore_failed: rolled back")
            raise BackupError(f"Restore failed: {exc}") from exc

        counts = {name: len(table_rows) for name, table_rows in rows.items()}
        logger.info(f"backup_restored: rows={counts}")
        return counts
