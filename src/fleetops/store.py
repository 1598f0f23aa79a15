from __future__ import annotations

import json
import os
import sqlite3
import threading
from pathlib import Path
from typing import Protocol

from fleetops.models import FleetOperation

DEFAULT_DB_PATH = "~/.fleetops/operations.db"
DB_PATH_ENV = "FLEETOPS_DB"

SCHEMA = """
CREATE TABLE IF NOT EXISTS fleet_operations (
  seq INTEGER PRIMARY KEY AUTOINCREMENT,
  operation_id TEXT NOT NULL UNIQUE,
  operation_type TEXT NOT NULL,
  initiated_by TEXT NOT NULL,
  status TEXT NOT NULL,
  started_at TEXT NOT NULL,
  completed_at TEXT NOT NULL,
  payload_json TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_fleet_operations_type ON fleet_operations(operation_type);
CREATE INDEX IF NOT EXISTS idx_fleet_operations_status ON fleet_operations(status);
"""


class OperationStore(Protocol):
    def record_operation(self, operation: FleetOperation) -> None:
        ...

    def get_operation(self, operation_id: str) -> FleetOperation | None:
        ...

    def list_operations(self, limit: int | None = None) -> list[FleetOperation]:
        ...

    def close(self) -> None:
        ...


class InMemoryOperationStore:
    """Process-local operation history, most recent first on listing.

    Nothing is evicted; callers that run for a long time own the lifecycle
    (`clear()` or drop the store).
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._by_id: dict[str, FleetOperation] = {}
        self._order: list[str] = []

    def __enter__(self) -> InMemoryOperationStore:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def __len__(self) -> int:
        with self._lock:
            return len(self._order)

    def record_operation(self, operation: FleetOperation) -> None:
        with self._lock:
            if operation.id in self._by_id:
                raise ValueError(f"Operation already recorded: {operation.id}")
            self._by_id[operation.id] = operation
            self._order.append(operation.id)

    def get_operation(self, operation_id: str) -> FleetOperation | None:
        with self._lock:
            return self._by_id.get(operation_id)

    def list_operations(self, limit: int | None = None) -> list[FleetOperation]:
        with self._lock:
            ids = list(reversed(self._order))
            if limit is not None:
                ids = ids[: max(0, limit)]
            return [self._by_id[operation_id] for operation_id in ids]

    def clear(self) -> None:
        with self._lock:
            self._by_id.clear()
            self._order.clear()

    def close(self) -> None:
        self.clear()


def resolve_db_path(path: str | None) -> Path:
    target = path or os.getenv(DB_PATH_ENV) or DEFAULT_DB_PATH
    expanded = os.path.expanduser(target)
    return Path(expanded)


def connect(db_path: Path) -> sqlite3.Connection:
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    return conn


def init_db(db_path: Path) -> None:
    conn = connect(db_path)
    try:
        with conn:
            conn.executescript(SCHEMA)
    finally:
        conn.close()


class SqliteOperationStore:
    """Operation history persisted in SQLite so it survives CLI invocations."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        init_db(db_path)
        self._lock = threading.Lock()
        self._conn = connect(db_path)

    def __enter__(self) -> SqliteOperationStore:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def record_operation(self, operation: FleetOperation) -> None:
        payload = json.dumps(operation.to_dict())
        with self._lock, self._conn:
            try:
                self._conn.execute(
                    """
                    INSERT INTO fleet_operations (
                      operation_id, operation_type, initiated_by, status,
                      started_at, completed_at, payload_json
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        operation.id,
                        operation.type,
                        operation.initiated_by,
                        operation.status,
                        operation.started_at.isoformat(),
                        operation.completed_at.isoformat(),
                        payload,
                    ),
                )
            except sqlite3.IntegrityError as exc:
                raise ValueError(f"Operation already recorded: {operation.id}") from exc

    def get_operation(self, operation_id: str) -> FleetOperation | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT payload_json FROM fleet_operations WHERE operation_id = ?",
                (operation_id,),
            ).fetchone()
        if not row:
            return None
        return FleetOperation.from_dict(json.loads(str(row["payload_json"])))

    def list_operations(self, limit: int | None = None) -> list[FleetOperation]:
        with self._lock:
            if limit is None:
                rows = self._conn.execute(
                    "SELECT payload_json FROM fleet_operations ORDER BY seq DESC"
                ).fetchall()
            else:
                rows = self._conn.execute(
                    "SELECT payload_json FROM fleet_operations ORDER BY seq DESC LIMIT ?",
                    (max(0, limit),),
                ).fetchall()
        return [FleetOperation.from_dict(json.loads(str(row["payload_json"]))) for row in rows]

    def close(self) -> None:
        with self._lock:
            self._conn.close()
