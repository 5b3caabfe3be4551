"""Document store: a versioned key/value table with prefix scans.

Every write bumps the record's version. Callers that pass ``expected_version``
get optimistic concurrency; callers that do not keep last-write-wins.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator

from grantforge.config import settings

logger = logging.getLogger("grantforge.store")

PROPOSAL_PREFIX = "proposal:"
PARTNER_PREFIX = "partner:"
KNOWLEDGE_PREFIX = "knowledge:"
TEMPLATE_PREFIX = "template:"


class PersistenceError(RuntimeError):
    """Raised when the document store is unreachable or rejects a write."""


class VersionConflictError(PersistenceError):
    def __init__(self, key: str, *, expected_version: int, current_version: int | None) -> None:
        super().__init__(
            f"Stale write for '{key}': expected version {expected_version}, "
            f"store has {current_version if current_version is not None else 'no record'}."
        )
        self.key = key
        self.expected_version = expected_version
        self.current_version = current_version


@dataclass(frozen=True)
class StoredRecord:
    key: str
    value: dict[str, Any]
    version: int
    updated_at: str


def _database_path() -> Path:
    prefix = "sqlite:///"
    if not settings.database_url.startswith(prefix):
        raise PersistenceError("Only sqlite:/// DATABASE_URL is supported by the document store.")
    return Path(settings.database_url[len(prefix) :])


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def init_db() -> None:
    db_path = _database_path()
    db_path.parent.mkdir(parents=True, exist_ok=True)
    with get_conn() as conn:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS kv_store (
                key TEXT PRIMARY KEY,
                value_json TEXT NOT NULL,
                version INTEGER NOT NULL,
                updated_at TEXT NOT NULL
            );
            """
        )


@contextmanager
def get_conn() -> Iterator[sqlite3.Connection]:
    try:
        conn = sqlite3.connect(_database_path())
    except sqlite3.Error as exc:
        raise PersistenceError(f"Document store is unreachable: {exc}") from exc
    conn.row_factory = sqlite3.Row
    try:
        yield conn
        conn.commit()
    except sqlite3.Error as exc:
        conn.rollback()
        raise PersistenceError(f"Document store operation failed: {exc}") from exc
    finally:
        conn.close()


def _row_to_record(row: sqlite3.Row) -> StoredRecord:
    return StoredRecord(
        key=str(row["key"]),
        value=json.loads(row["value_json"]),
        version=int(row["version"]),
        updated_at=str(row["updated_at"]),
    )


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def get_value(key: str) -> StoredRecord | None:
    with get_conn() as conn:
        row = conn.execute(
            "SELECT key, value_json, version, updated_at FROM kv_store WHERE key = ?",
            (key,),
        ).fetchone()
    if row is None:
        return None
    return _row_to_record(row)


def set_value(key: str, value: dict[str, Any], *, expected_version: int | None = None) -> StoredRecord:
    payload = json.dumps(value, ensure_ascii=False)
    updated_at = _utc_now_iso()
    with get_conn() as conn:
        row = conn.execute("SELECT version FROM kv_store WHERE key = ?", (key,)).fetchone()
        current_version = int(row["version"]) if row is not None else None

        if expected_version is not None and expected_version != (current_version or 0):
            logger.warning(
                "document_version_conflict",
                extra={
                    "event": "document_version_conflict",
                    "key": key,
                    "expected_version": expected_version,
                    "current_version": current_version,
                },
            )
            raise VersionConflictError(key, expected_version=expected_version, current_version=current_version)

        if current_version is None:
            next_version = 1
            conn.execute(
                "INSERT INTO kv_store (key, value_json, version, updated_at) VALUES (?, ?, ?, ?)",
                (key, payload, next_version, updated_at),
            )
        else:
            next_version = current_version + 1
            cursor = conn.execute(
                "UPDATE kv_store SET value_json = ?, version = ?, updated_at = ? WHERE key = ? AND version = ?",
                (payload, next_version, updated_at, key, current_version),
            )
            if cursor.rowcount != 1:
                raise VersionConflictError(key, expected_version=current_version, current_version=None)

    return StoredRecord(key=key, value=value, version=next_version, updated_at=updated_at)


def delete_value(key: str) -> bool:
    with get_conn() as conn:
        cursor = conn.execute("DELETE FROM kv_store WHERE key = ?", (key,))
        deleted = cursor.rowcount > 0
    return deleted


def scan_prefix(prefix: str) -> list[StoredRecord]:
    with get_conn() as conn:
        rows = conn.execute(
            "SELECT key, value_json, version, updated_at FROM kv_store WHERE key LIKE ? ESCAPE '\\' ORDER BY key",
            (f"{_escape_like(prefix)}%",),
        ).fetchall()
    return [_row_to_record(row) for row in rows]
