import json
import os
import sqlite3
from datetime import datetime, timezone
from typing import Any, Optional, Protocol, runtime_checkable

from ..errors import ServiceError

CLUSTER = "cluster"
MOD_CONFIG = "mod-config"
GLOBAL_CONFIG = "global-config"
AUTO_SHUTDOWN = "auto-shutdown"
SINGLETON = "default"


@runtime_checkable
class ConfigStore(Protocol):
    """Structured records addressed by (kind, name); storage format is the implementation's."""

    def get(self, kind: str, name: str) -> Optional[dict[str, Any]]: ...

    def put(self, kind: str, name: str, record: dict[str, Any]) -> None: ...

    def delete(self, kind: str, name: str) -> bool: ...

    def list(self, kind: str) -> list[dict[str, Any]]: ...


class SqliteConfigStore:
    def __init__(self, db_path: str) -> None:
        self.db_path = db_path

    def init_db(self) -> None:
        os.makedirs(os.path.dirname(os.path.abspath(self.db_path)), exist_ok=True)
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS records (
                    kind TEXT NOT NULL,
                    name TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (kind, name)
                )
                """
            )

    def get(self, kind: str, name: str) -> Optional[dict[str, Any]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT payload FROM records WHERE kind = ? AND name = ?", (kind, name)
            ).fetchone()
        if not row:
            return None
        return self._decode(kind, name, row["payload"])

    def put(self, kind: str, name: str, record: dict[str, Any]) -> None:
        payload = json.dumps(record, sort_keys=True)
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO records (kind, name, payload, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(kind, name) DO UPDATE SET
                    payload = excluded.payload,
                    updated_at = excluded.updated_at
                """,
                (kind, name, payload, datetime.now(timezone.utc).isoformat()),
            )

    def delete(self, kind: str, name: str) -> bool:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM records WHERE kind = ? AND name = ?", (kind, name))
            return cursor.rowcount > 0

    def list(self, kind: str) -> list[dict[str, Any]]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT name, payload FROM records WHERE kind = ? ORDER BY name ASC", (kind,)
            ).fetchall()
        return [self._decode(kind, row["name"], row["payload"]) for row in rows]

    def _decode(self, kind: str, name: str, payload: str) -> dict[str, Any]:
        try:
            data = json.loads(payload)
        except json.JSONDecodeError as exc:
            raise ServiceError(500, f"Stored {kind} record {name} is corrupt: {exc}") from exc
        if not isinstance(data, dict):
            raise ServiceError(500, f"Stored {kind} record {name} is not an object")
        return data

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn
