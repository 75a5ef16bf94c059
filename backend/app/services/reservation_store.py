"""SQLite-backed reservation/driver store for farm-out dispatch."""
from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock, RLock
from typing import Any, Dict, List, Optional, Protocol

from app.core.config import get_settings
from app.core.logging import logger
from app.models.farmout import DriverRecord, DriverStatus


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _json_dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=True, default=str)


class ReservationStore(Protocol):
    """Storage collaborator used by the farm-out engine.

    Any method may raise; callers catch and log, they never retry.
    """

    def get_reservation(self, tenant_id: str, reservation_ref: str) -> Optional[Dict[str, Any]]: ...

    def generate_reservation_id(self, tenant_id: str) -> str: ...

    def save_reservation(self, tenant_id: str, record: Dict[str, Any]) -> Dict[str, Any]: ...

    def list_reservations(self, tenant_id: str) -> List[Dict[str, Any]]: ...

    def get_driver(self, tenant_id: str, driver_id: str) -> Optional[Dict[str, Any]]: ...

    def list_drivers(self, tenant_id: str) -> List[Dict[str, Any]]: ...

    def save_driver(self, tenant_id: str, driver: DriverRecord) -> Dict[str, Any]: ...

    def update_driver_status(
        self,
        tenant_id: str,
        driver_id: str,
        status: str,
        assigned_reservation_id: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]: ...

    def persist_snapshot(self, tenant_id: str, assignments: List[Dict[str, Any]]) -> None: ...

    def get_snapshot(self, tenant_id: str) -> List[Dict[str, Any]]: ...

    def record_activity(
        self,
        tenant_id: str,
        reservation_id: str,
        message: str,
        actor: str = "system",
        details: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]: ...

    def list_activity(self, tenant_id: str, reservation_id: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]: ...


class SQLiteReservationStore:
    """Durable tenant-scoped store for reservations, drivers, and snapshots."""

    _lock_registry: dict[str, RLock] = {}
    _lock_registry_guard = Lock()

    def __init__(self, db_path: str | Path | None = None) -> None:
        if db_path is None:
            db_path = (get_settings().dispatch_db_path or "").strip() or "./data/dispatch.db"

        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = self._get_shared_lock(str(self._db_path.resolve()))
        self._conn = sqlite3.connect(
            str(self._db_path),
            check_same_thread=False,
            timeout=30.0,
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode = WAL")
        self._conn.execute("PRAGMA synchronous = NORMAL")
        self._conn.execute("PRAGMA busy_timeout = 30000")
        self._initialize_schema()

    @classmethod
    def _get_shared_lock(cls, key: str) -> RLock:
        with cls._lock_registry_guard:
            lock = cls._lock_registry.get(key)
            if lock is None:
                lock = RLock()
                cls._lock_registry[key] = lock
            return lock

    def _initialize_schema(self) -> None:
        with self._lock:
            self._conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS sequences (
                    tenant_id TEXT NOT NULL,
                    key_name TEXT NOT NULL,
                    next_value INTEGER NOT NULL,
                    PRIMARY KEY (tenant_id, key_name)
                );

                CREATE TABLE IF NOT EXISTS reservations (
                    tenant_id TEXT NOT NULL,
                    reservation_id TEXT NOT NULL,
                    confirmation_number TEXT,
                    data_json TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (tenant_id, reservation_id)
                );

                CREATE INDEX IF NOT EXISTS idx_reservations_tenant_confirmation
                    ON reservations (tenant_id, confirmation_number);

                CREATE TABLE IF NOT EXISTS drivers (
                    tenant_id TEXT NOT NULL,
                    driver_id TEXT NOT NULL,
                    data_json TEXT NOT NULL,
                    PRIMARY KEY (tenant_id, driver_id)
                );

                CREATE TABLE IF NOT EXISTS farmout_snapshots (
                    tenant_id TEXT NOT NULL PRIMARY KEY,
                    updated_at TEXT NOT NULL,
                    data_json TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS activity (
                    tenant_id TEXT NOT NULL,
                    event_id TEXT NOT NULL,
                    reservation_id TEXT NOT NULL,
                    message TEXT NOT NULL,
                    actor TEXT NOT NULL,
                    timestamp TEXT NOT NULL,
                    details_json TEXT NOT NULL,
                    PRIMARY KEY (tenant_id, event_id)
                );

                CREATE INDEX IF NOT EXISTS idx_activity_tenant_reservation
                    ON activity (tenant_id, reservation_id, timestamp DESC);
                """
            )
            self._conn.commit()

    def next_sequence(self, tenant_id: str, key: str) -> int:
        with self._lock:
            row = self._conn.execute(
                "SELECT next_value FROM sequences WHERE tenant_id = ? AND key_name = ?",
                (tenant_id, key),
            ).fetchone()
            if row is None:
                current = 1
                self._conn.execute(
                    "INSERT INTO sequences (tenant_id, key_name, next_value) VALUES (?, ?, ?)",
                    (tenant_id, key, current + 1),
                )
            else:
                current = int(row["next_value"])
                self._conn.execute(
                    "UPDATE sequences SET next_value = ? WHERE tenant_id = ? AND key_name = ?",
                    (current + 1, tenant_id, key),
                )
            self._conn.commit()
            return current

    def generate_reservation_id(self, tenant_id: str) -> str:
        return f"RES-{self.next_sequence(tenant_id, 'reservation'):06d}"

    # Reservations

    def save_reservation(self, tenant_id: str, record: Dict[str, Any]) -> Dict[str, Any]:
        """Insert or replace a reservation document; assigns an id when missing."""
        row = dict(record)
        if row.get("id") in (None, ""):
            row["id"] = self.generate_reservation_id(tenant_id)
        row["id"] = str(row["id"])
        row["updated_at"] = _utc_now_iso()
        row.setdefault("created_at", row["updated_at"])
        confirmation = row.get("confirmation_number")
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO reservations (tenant_id, reservation_id, confirmation_number, data_json, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(tenant_id, reservation_id)
                DO UPDATE SET confirmation_number = excluded.confirmation_number,
                              data_json = excluded.data_json,
                              updated_at = excluded.updated_at
                """,
                (
                    tenant_id,
                    row["id"],
                    str(confirmation) if confirmation not in (None, "") else None,
                    _json_dumps(row),
                    row["updated_at"],
                ),
            )
            self._conn.commit()
        return row

    def get_reservation(self, tenant_id: str, reservation_ref: str) -> Optional[Dict[str, Any]]:
        """Look a reservation up by internal id, then by confirmation number."""
        ref = str(reservation_ref or "").strip()
        if not ref:
            return None
        with self._lock:
            row = self._conn.execute(
                "SELECT data_json FROM reservations WHERE tenant_id = ? AND reservation_id = ?",
                (tenant_id, ref),
            ).fetchone()
            if row is None:
                row = self._conn.execute(
                    """
                    SELECT data_json FROM reservations
                    WHERE tenant_id = ? AND confirmation_number = ?
                    ORDER BY updated_at DESC
                    LIMIT 1
                    """,
                    (tenant_id, ref),
                ).fetchone()
        if not row:
            return None
        return json.loads(row["data_json"])

    def list_reservations(self, tenant_id: str) -> List[Dict[str, Any]]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT data_json FROM reservations WHERE tenant_id = ? ORDER BY updated_at DESC",
                (tenant_id,),
            ).fetchall()
        return [json.loads(row["data_json"]) for row in rows]

    # Drivers

    def save_driver(self, tenant_id: str, driver: DriverRecord) -> Dict[str, Any]:
        row = driver.model_dump(mode="json")
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO drivers (tenant_id, driver_id, data_json)
                VALUES (?, ?, ?)
                ON CONFLICT(tenant_id, driver_id)
                DO UPDATE SET data_json = excluded.data_json
                """,
                (tenant_id, driver.driver_id, _json_dumps(row)),
            )
            self._conn.commit()
        return row

    def create_driver(
        self,
        tenant_id: str,
        *,
        name: str,
        driver_id: Optional[str] = None,
        affiliate: str = "",
        phone: str = "",
        vehicle_type: str = "",
    ) -> Dict[str, Any]:
        cleaned_name = " ".join(str(name or "").split()).strip()
        if len(cleaned_name) < 2:
            raise ValueError("Driver name must be at least 2 characters.")

        with self._lock:
            resolved_id = (driver_id or "").strip()
            if resolved_id and self.get_driver(tenant_id, resolved_id):
                raise ValueError(f"Driver {resolved_id} already exists.")
            while not resolved_id:
                candidate = f"DRV-{self.next_sequence(tenant_id, 'driver'):04d}"
                if not self.get_driver(tenant_id, candidate):
                    resolved_id = candidate

            driver = DriverRecord(
                driver_id=resolved_id,
                name=cleaned_name,
                affiliate=affiliate,
                phone=phone,
                vehicle_type=vehicle_type,
            )
            return self.save_driver(tenant_id, driver)

    def get_driver(self, tenant_id: str, driver_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self._conn.execute(
                "SELECT data_json FROM drivers WHERE tenant_id = ? AND driver_id = ?",
                (tenant_id, str(driver_id)),
            ).fetchone()
        if not row:
            return None
        return json.loads(row["data_json"])

    def list_drivers(self, tenant_id: str) -> List[Dict[str, Any]]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT data_json FROM drivers WHERE tenant_id = ? ORDER BY driver_id",
                (tenant_id,),
            ).fetchall()
        return [json.loads(row["data_json"]) for row in rows]

    def update_driver_status(
        self,
        tenant_id: str,
        driver_id: str,
        status: str,
        assigned_reservation_id: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        """Set a driver's availability; ``available`` drops the assignment link.

        Returns the updated driver, or None when the driver is unknown.
        """
        driver_status = DriverStatus(status)
        with self._lock:
            existing = self.get_driver(tenant_id, driver_id)
            if existing is None:
                return None
            driver = DriverRecord(**existing)
            driver.status = driver_status
            if driver_status == DriverStatus.AVAILABLE:
                driver.assigned_reservation_id = None
            elif assigned_reservation_id is not None:
                driver.assigned_reservation_id = assigned_reservation_id
            driver.updated_at = datetime.now(timezone.utc)
            return self.save_driver(tenant_id, driver)

    # Snapshot

    def persist_snapshot(self, tenant_id: str, assignments: List[Dict[str, Any]]) -> None:
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO farmout_snapshots (tenant_id, updated_at, data_json)
                VALUES (?, ?, ?)
                ON CONFLICT(tenant_id)
                DO UPDATE SET updated_at = excluded.updated_at, data_json = excluded.data_json
                """,
                (tenant_id, _utc_now_iso(), _json_dumps(assignments)),
            )
            self._conn.commit()
        logger.debug("Farm-out snapshot persisted", tenant_id=tenant_id, assignments=len(assignments))

    def get_snapshot(self, tenant_id: str) -> List[Dict[str, Any]]:
        with self._lock:
            row = self._conn.execute(
                "SELECT data_json FROM farmout_snapshots WHERE tenant_id = ?",
                (tenant_id,),
            ).fetchone()
        if not row:
            return []
        return json.loads(row["data_json"])

    # Activity

    def record_activity(
        self,
        tenant_id: str,
        reservation_id: str,
        message: str,
        actor: str = "system",
        details: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        event = {
            "event_id": f"ACT-{self.next_sequence(tenant_id, 'activity'):07d}",
            "reservation_id": str(reservation_id),
            "message": message,
            "actor": actor,
            "timestamp": _utc_now_iso(),
            "details": details or {},
        }
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO activity (tenant_id, event_id, reservation_id, message, actor, timestamp, details_json)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    tenant_id,
                    event["event_id"],
                    event["reservation_id"],
                    message,
                    actor,
                    event["timestamp"],
                    _json_dumps(event["details"]),
                ),
            )
            self._conn.commit()
        return event

    def list_activity(self, tenant_id: str, reservation_id: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        query = "SELECT * FROM activity WHERE tenant_id = ?"
        params: list[Any] = [tenant_id]
        if reservation_id:
            query += " AND reservation_id = ?"
            params.append(str(reservation_id))
        query += " ORDER BY timestamp DESC, event_id DESC LIMIT ?"
        params.append(max(1, int(limit)))
        with self._lock:
            rows = self._conn.execute(query, tuple(params)).fetchall()
        return [
            {
                "event_id": row["event_id"],
                "reservation_id": row["reservation_id"],
                "message": row["message"],
                "actor": row["actor"],
                "timestamp": row["timestamp"],
                "details": json.loads(row["details_json"]),
            }
            for row in rows
        ]

    def reset_tenant(self, tenant_id: str) -> None:
        """Clear every row for ``tenant_id``."""
        with self._lock:
            for table in ("reservations", "drivers", "farmout_snapshots", "activity", "sequences"):
                self._conn.execute(f"DELETE FROM {table} WHERE tenant_id = ?", (tenant_id,))
            self._conn.commit()


reservation_store = SQLiteReservationStore()
