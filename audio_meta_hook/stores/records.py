from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from pathlib import Path
from threading import Lock
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional, Sequence

from ..models import ProcessingError, ServiceContext

if TYPE_CHECKING:
    from ..hooks import HookRegistry

logger = logging.getLogger(__name__)


class RecordNotFound(ProcessingError):
    """The record key does not exist in the collection."""


class PermissionDenied(ProcessingError):
    """The calling context may not write to the collection."""


class SQLiteRecordStore:
    """
    Small SQLite-backed record collection with host-style item events.

    Writes emit `<collection>.items.create` / `.items.update` on the attached
    registry after the transaction commits, unless the caller suppresses them.
    """

    def __init__(self, path: Path, collection: str, *, events: Optional["HookRegistry"] = None) -> None:
        self.path = path
        self.collection = collection
        self.events = events
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = Lock()
        self._conn = sqlite3.connect(self.path, check_same_thread=False)
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS records (
                collection TEXT NOT NULL,
                key TEXT NOT NULL,
                data TEXT NOT NULL,
                updated_by TEXT,
                updated_at TEXT NOT NULL,
                PRIMARY KEY(collection, key)
            )
            """
        )
        self._conn.commit()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def create_one(
        self,
        fields: Mapping[str, Any],
        *,
        key: Optional[str] = None,
        suppress_events: bool = False,
        context: ServiceContext,
    ) -> str:
        _require_write(context, self.collection)
        key = key or uuid.uuid4().hex
        payload = dict(fields)
        with self._lock:
            try:
                self._conn.execute(
                    """
                    INSERT INTO records(collection, key, data, updated_by, updated_at)
                    VALUES(?, ?, ?, ?, CURRENT_TIMESTAMP)
                    """,
                    (self.collection, key, json.dumps(payload), context.actor),
                )
            except sqlite3.IntegrityError as exc:
                raise ProcessingError(f"record {key} already exists in {self.collection}") from exc
            self._conn.commit()
        if not suppress_events:
            self._emit("create", {"key": key, "payload": payload})
        return key

    def read_one(self, key: Any, fields: Sequence[str] = (), *, context: ServiceContext) -> Optional[Dict[str, Any]]:
        data = self._load(key)
        if data is None:
            return None
        if not fields:
            return data
        return {name: data.get(name) for name in fields}

    def update_one(
        self,
        key: Any,
        fields: Mapping[str, Any],
        *,
        suppress_events: bool = False,
        context: ServiceContext,
    ) -> None:
        _require_write(context, self.collection)
        payload = dict(fields)
        with self._lock:
            row = self._conn.execute(
                "SELECT data FROM records WHERE collection = ? AND key = ?",
                (self.collection, str(key)),
            ).fetchone()
            if not row:
                raise RecordNotFound(f"record {key} not found in {self.collection}")
            data = json.loads(row[0])
            data.update(payload)
            self._conn.execute(
                """
                UPDATE records SET data = ?, updated_by = ?, updated_at = CURRENT_TIMESTAMP
                WHERE collection = ? AND key = ?
                """,
                (json.dumps(data), context.actor, self.collection, str(key)),
            )
            self._conn.commit()
        if not suppress_events:
            self._emit("update", {"keys": [str(key)], "payload": payload})

    def find_keys(self, field: str, value: Any, *, context: ServiceContext) -> List[str]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT key, data FROM records WHERE collection = ? ORDER BY updated_at, key",
                (self.collection,),
            ).fetchall()
        keys: List[str] = []
        for key, raw in rows:
            try:
                data = json.loads(raw)
            except json.JSONDecodeError:
                logger.warning("Skipping record %s with unreadable data", key)
                continue
            if data.get(field) == value:
                keys.append(key)
        return keys

    def updated_by(self, key: Any) -> Optional[str]:
        with self._lock:
            row = self._conn.execute(
                "SELECT updated_by FROM records WHERE collection = ? AND key = ?",
                (self.collection, str(key)),
            ).fetchone()
        return row[0] if row else None

    def _load(self, key: Any) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self._conn.execute(
                "SELECT data FROM records WHERE collection = ? AND key = ?",
                (self.collection, str(key)),
            ).fetchone()
        if not row:
            return None
        return json.loads(row[0])

    def _emit(self, action: str, meta: Dict[str, Any]) -> None:
        if self.events is None:
            return
        event = f"{self.collection}.items.{action}"
        meta = {"event": event, "collection": self.collection, **meta}
        self.events.emit(event, meta)


def _require_write(context: ServiceContext, collection: str) -> None:
    if not context.admin:
        raise PermissionDenied(f"{context.actor} may not write to {collection}")
