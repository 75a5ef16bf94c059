"""Farm-out dispatch orchestration: status propagation, assignments, snapshots."""
from __future__ import annotations

import copy
from collections import Counter
from contextlib import contextmanager
from datetime import datetime, timezone
from threading import Lock, RLock
from typing import Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple

import httpx

from app.core.config import Settings, get_settings
from app.core.logging import logger
from app.models.farmout import (
    ActivityEntry,
    DashboardCategory,
    DriverAssignmentRequest,
    FarmoutAssignment,
    FarmoutBoardResponse,
    PropagationError,
    ReservationDetailResponse,
    StatusUpdateResult,
    TripStatusPollResult,
)
from app.services.farmout_status import (
    canonicalize_mode,
    canonicalize_status,
    driver_status_for,
    format_farmout_status,
)
from app.services.notifier import ActivityNotifier, UINotifier
from app.services.reservation_classifier import (
    FARMOUT_MODE_FIELDS,
    build_driver_summary,
    classify,
    first_match,
    reservation_identifier,
    split_views,
)
from app.services.reservation_store import ReservationStore, reservation_store

# Candidates deciding whether a reservation is an active assignment.
SNAPSHOT_FILTER_FIELDS = (
    ("farmoutStatus",),
    ("farmout_status",),
    ("statusDetailCode",),
    ("status_detail_code",),
    ("efarm_status",),
    ("form_snapshot", "details", "efarmStatus"),
    ("form_snapshot", "details", "efarm_status"),
)

# Candidates for the status shown on an assignment row.
SNAPSHOT_STATUS_FIELDS = (
    ("farmoutStatus",),
    ("farmout_status",),
    ("efarm_status",),
    ("form_snapshot", "details", "efarmStatus"),
)

_DRIVER_KEYS = (
    "driver_id",
    "driverId",
    "driver_snapshot",
    "driverSnapshot",
    "driver_name",
    "driverName",
    "assigned_driver",
)


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def apply_farmout_metadata(
    record: Mapping[str, Any],
    farmout_status: Any,
    farmout_mode: Any = None,
) -> Dict[str, Any]:
    """Return a copy of ``record`` with every farm-out status/mode field mirrored.

    Legacy readers look at different field names, so the canonical status,
    its label, and the mode are written to all of them. ``farmout_mode=None``
    keeps the record's current mode.
    """
    row = copy.deepcopy(dict(record))
    canonical = canonicalize_status(farmout_status) or "unassigned"
    label = format_farmout_status(canonical)
    mode = canonicalize_mode(farmout_mode if farmout_mode is not None else first_match(row, FARMOUT_MODE_FIELDS))

    row["farmout_status"] = canonical
    row["farmoutStatus"] = canonical
    row["efarm_status"] = label
    row["efarmStatus"] = label
    row["farmout_mode"] = mode
    row["farmoutMode"] = mode
    row["efarm_out_selection"] = mode
    row["eFarmOut"] = mode

    snapshot = row.get("form_snapshot")
    if not isinstance(snapshot, dict):
        snapshot = {}
    details = snapshot.get("details")
    if not isinstance(details, dict):
        details = {}
    details.update(
        efarmStatus=label,
        eFarmStatus=label,
        farmoutStatusCanonical=canonical,
        farmoutMode=mode,
        eFarmOut=mode,
    )
    snapshot["details"] = details
    row["form_snapshot"] = snapshot
    return row


def build_assignment_snapshot(reservations: Iterable[Mapping[str, Any]]) -> List[FarmoutAssignment]:
    """Active farm-out assignments: a driver is known and the trip is not unassigned."""
    assignments: List[FarmoutAssignment] = []
    for record in reservations:
        if not isinstance(record, Mapping):
            continue
        reservation_id = reservation_identifier(record)
        if reservation_id is None:
            continue

        driver = build_driver_summary(record)
        if driver is None or not driver.has_identity():
            continue
        status = first_match(record, SNAPSHOT_FILTER_FIELDS, canonicalize_status)
        if not status or status in ("unassigned", "in_house"):
            continue

        classified = classify(record)
        assignments.append(
            FarmoutAssignment(
                reservation_id=reservation_id,
                confirmation_number=classified.confirmation_number,
                passenger_name=classified.passenger_name,
                pickup_date=classified.pickup_date,
                pickup_time=classified.pickup_time,
                farmout_status=first_match(record, SNAPSHOT_STATUS_FIELDS, canonicalize_status) or "assigned",
                farmout_mode=classified.farmout_mode,
                driver=driver,
            )
        )
    return assignments


class FarmoutEngine:
    """Applies farm-out state changes to the store and fans out notifications."""

    def __init__(
        self,
        store: Optional[ReservationStore] = None,
        notifier: Optional[UINotifier] = None,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.store = store if store is not None else reservation_store
        self.notifier = notifier if notifier is not None else ActivityNotifier(self.store)
        self._transport = transport
        # key -> [lock, holders]; an entry is dropped when its last holder leaves.
        self._locks: Dict[Tuple[str, str], List[Any]] = {}
        self._locks_guard = Lock()

    @contextmanager
    def _reservation_lock(self, tenant_id: str, reservation_id: str) -> Iterator[None]:
        """Serialize mutations of one reservation across threads."""
        key = (tenant_id, reservation_id)
        with self._locks_guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = [RLock(), 0]
                self._locks[key] = entry
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]

    def _require_reservation(self, tenant_id: str, reservation_ref: str) -> Dict[str, Any]:
        record = self.store.get_reservation(tenant_id, reservation_ref)
        if not record:
            raise KeyError(reservation_ref)
        return record

    def _notify(self, tenant_id: str, reservation_id: str, message: str, actor: str, details: Optional[Dict[str, Any]] = None) -> None:
        calls = (
            ("log_activity", lambda: self.notifier.log_activity(tenant_id, reservation_id, message, actor=actor, details=details)),
            ("refresh_farmout_panel", lambda: self.notifier.refresh_farmout_panel(tenant_id, reservation_id)),
            ("refresh_driver_directory", lambda: self.notifier.refresh_driver_directory(tenant_id)),
            ("refresh_map_markers", lambda: self.notifier.refresh_map_markers(tenant_id)),
        )
        for name, call in calls:
            try:
                call()
            except Exception as exc:
                logger.warning(
                    "Notifier call failed",
                    hook=name,
                    tenant_id=tenant_id,
                    reservation_id=reservation_id,
                    error=str(exc),
                )

    # Status propagation

    def apply_status_update(
        self,
        tenant_id: str,
        reservation_id: str,
        new_status: Any,
        driver_id: Optional[str] = None,
        actor: str = "driver-app",
    ) -> StatusUpdateResult:
        """Propagate a driver-reported trip status to the reservation and driver.

        Never raises; failures come back on ``StatusUpdateResult.error``.
        """
        ref = str(reservation_id or "").strip()
        try:
            existing = self.store.get_reservation(tenant_id, ref) if ref else None
        except Exception as exc:
            logger.error("Reservation lookup failed", tenant_id=tenant_id, reservation_id=ref, error=str(exc))
            return StatusUpdateResult(reservation_id=ref, error=PropagationError.STORE_FAILURE, detail=str(exc))

        if not existing:
            logger.error("Reservation not found for status update", tenant_id=tenant_id, reservation_id=ref)
            return StatusUpdateResult(
                reservation_id=ref,
                error=PropagationError.NOT_FOUND,
                detail=f"Reservation {ref or '<empty>'} not found",
            )

        canonical = canonicalize_status(new_status)
        if not canonical:
            logger.error("Empty status in trip status update", tenant_id=tenant_id, reservation_id=ref, status=new_status)
            return StatusUpdateResult(
                reservation_id=ref,
                error=PropagationError.INVALID_STATUS,
                detail="Status is empty after normalization",
            )

        record_id = str(existing.get("id") or ref)
        with self._reservation_lock(tenant_id, record_id):
            applied_driver_status: Optional[str] = None
            try:
                current = self.store.get_reservation(tenant_id, record_id) or existing
                updated = apply_farmout_metadata(current, canonical)
                if canonical == "completed":
                    updated["status"] = "completed"
                    updated["completed_at"] = _utc_now_iso()
                else:
                    updated["status"] = "accepted"
                self.store.save_reservation(tenant_id, updated)

                derived = driver_status_for(canonical)
                if driver_id and derived:
                    driver = self.store.update_driver_status(
                        tenant_id,
                        str(driver_id),
                        derived,
                        assigned_reservation_id=record_id,
                    )
                    if driver is None:
                        logger.warning(
                            "Driver not found for trip status update",
                            tenant_id=tenant_id,
                            reservation_id=record_id,
                            driver_id=driver_id,
                        )
                    else:
                        applied_driver_status = derived
            except Exception as exc:
                logger.error(
                    "Trip status update failed",
                    tenant_id=tenant_id,
                    reservation_id=record_id,
                    status=canonical,
                    driver_id=driver_id,
                    error=str(exc),
                )
                return StatusUpdateResult(
                    reservation_id=record_id,
                    farmout_status=canonical,
                    error=PropagationError.STORE_FAILURE,
                    detail=str(exc),
                )

            self._notify(
                tenant_id,
                record_id,
                f"Driver updated status to {canonical.upper()}",
                actor,
                details={"farmout_status": canonical, "driver_id": driver_id, "driver_status": applied_driver_status},
            )
            self.rebuild_assignment_snapshot(tenant_id)

        return StatusUpdateResult(
            reservation_id=record_id,
            applied=True,
            farmout_status=canonical,
            driver_status=applied_driver_status,
        )

    # Dispatcher mutations

    def save_reservation(self, tenant_id: str, record: Mapping[str, Any], actor: str = "dispatcher") -> ReservationDetailResponse:
        """Persist a reservation with canonical farm-out metadata applied."""
        if not isinstance(record, Mapping):
            raise ValueError("Reservation must be a JSON object")

        status = classify(record).farmout_status
        prepared = apply_farmout_metadata(record, status)
        prepared.setdefault("status", "pending")

        ref = reservation_identifier(prepared)
        existing = self.store.get_reservation(tenant_id, ref) if ref else None
        if existing and existing.get("id"):
            prepared["id"] = existing["id"]
        elif not prepared.get("id"):
            prepared["id"] = self.store.generate_reservation_id(tenant_id)
        reservation_id = str(prepared["id"])

        with self._reservation_lock(tenant_id, reservation_id):
            saved = self.store.save_reservation(tenant_id, prepared)
            self._notify(
                tenant_id,
                reservation_id,
                f"Reservation saved ({format_farmout_status(saved['farmout_status'])})",
                actor,
            )
            self.rebuild_assignment_snapshot(tenant_id)
        return ReservationDetailResponse(record=saved, classification=classify(saved))

    def _mutate(
        self,
        tenant_id: str,
        reservation_ref: str,
        actor: str,
        message: str,
        mutate: Callable[[Dict[str, Any]], Dict[str, Any]],
    ) -> ReservationDetailResponse:
        existing = self._require_reservation(tenant_id, reservation_ref)
        record_id = str(existing["id"])
        with self._reservation_lock(tenant_id, record_id):
            current = self._require_reservation(tenant_id, record_id)
            saved = self.store.save_reservation(tenant_id, mutate(current))
            self._notify(tenant_id, record_id, message, actor)
            self.rebuild_assignment_snapshot(tenant_id)
        return ReservationDetailResponse(record=saved, classification=classify(saved))

    def update_farmout_status(self, tenant_id: str, reservation_ref: str, status: Any, actor: str = "dispatcher") -> ReservationDetailResponse:
        """Set the farm-out status only; the generic reservation status is untouched."""
        canonical = canonicalize_status(status) or "unassigned"
        return self._mutate(
            tenant_id,
            reservation_ref,
            actor,
            f"Farm-out status set to {format_farmout_status(canonical)}",
            lambda current: apply_farmout_metadata(current, canonical),
        )

    def set_farmout_mode(self, tenant_id: str, reservation_ref: str, mode: Any, actor: str = "dispatcher") -> ReservationDetailResponse:
        canonical_mode = canonicalize_mode(mode)

        def mutate(current: Dict[str, Any]) -> Dict[str, Any]:
            return apply_farmout_metadata(current, classify(current).farmout_status, canonical_mode)

        return self._mutate(tenant_id, reservation_ref, actor, f"Farm-out mode set to {canonical_mode}", mutate)

    def assign_farmout_driver(
        self,
        tenant_id: str,
        reservation_ref: str,
        request: DriverAssignmentRequest,
        actor: str = "dispatcher",
    ) -> ReservationDetailResponse:
        """Attach a driver, mark the trip assigned, and link the driver record.

        Drivers missing from the directory (affiliate drivers) need a name.
        """
        driver_id = request.driver_id.strip()
        if not driver_id:
            raise ValueError("driver_id is required")
        directory_entry = self.store.get_driver(tenant_id, driver_id) or {}
        name = (request.name or directory_entry.get("name") or "").strip()
        if not name:
            raise ValueError(f"Driver {driver_id} is not in the directory; provide a name.")

        driver_snapshot = {
            "id": driver_id,
            "name": name,
            "affiliate": request.affiliate if request.affiliate is not None else directory_entry.get("affiliate", ""),
            "phone": request.phone if request.phone is not None else directory_entry.get("phone", ""),
            "vehicleType": request.vehicle_type if request.vehicle_type is not None else directory_entry.get("vehicle_type", ""),
        }
        released: Optional[str] = None

        def mutate(current: Dict[str, Any]) -> Dict[str, Any]:
            nonlocal released
            previous = build_driver_summary(current)
            released = previous.id if previous else None
            for key in _DRIVER_KEYS:
                current.pop(key, None)
            current["driver_id"] = driver_id
            current["driver_snapshot"] = driver_snapshot
            current["driver_name"] = name
            current["status"] = "accepted"
            return apply_farmout_metadata(current, "assigned")

        detail = self._mutate(tenant_id, reservation_ref, actor, f"Driver {name} assigned", mutate)
        reservation_id = detail.classification.id

        if released and released != driver_id:
            self.store.update_driver_status(tenant_id, released, "available")
        if directory_entry:
            self.store.update_driver_status(tenant_id, driver_id, "busy", assigned_reservation_id=reservation_id)
        else:
            logger.info("Assigned driver is not in the directory", tenant_id=tenant_id, driver_id=driver_id)
        return detail

    def clear_farmout_assignment(self, tenant_id: str, reservation_ref: str, actor: str = "dispatcher") -> ReservationDetailResponse:
        released: Optional[str] = None

        def mutate(current: Dict[str, Any]) -> Dict[str, Any]:
            nonlocal released
            previous = build_driver_summary(current)
            released = previous.id if previous else None
            for key in _DRIVER_KEYS:
                current.pop(key, None)
            return apply_farmout_metadata(current, "unassigned")

        detail = self._mutate(tenant_id, reservation_ref, actor, "Driver assignment cleared", mutate)
        if released and self.store.get_driver(tenant_id, released):
            self.store.update_driver_status(tenant_id, released, "available")
        return detail

    # Read models

    def board(self, tenant_id: str) -> FarmoutBoardResponse:
        reservations, farmout = split_views(self.store.list_reservations(tenant_id))
        counts = Counter(item.status.value for item in reservations)
        return FarmoutBoardResponse(
            counts_by_status={category.value: counts.get(category.value, 0) for category in DashboardCategory},
            reservations=reservations,
            farmout=farmout,
            drivers=self.store.list_drivers(tenant_id),
        )

    def get_reservation_detail(self, tenant_id: str, reservation_ref: str) -> ReservationDetailResponse:
        record = self._require_reservation(tenant_id, reservation_ref)
        return ReservationDetailResponse(record=record, classification=classify(record))

    def list_activity(self, tenant_id: str, reservation_ref: str, limit: int = 100) -> List[ActivityEntry]:
        record = self._require_reservation(tenant_id, reservation_ref)
        rows = self.store.list_activity(tenant_id, reservation_id=str(record["id"]), limit=limit)
        return [ActivityEntry(**row) for row in rows]

    # Snapshot

    def rebuild_assignment_snapshot(
        self,
        tenant_id: str,
        reservations: Optional[List[Mapping[str, Any]]] = None,
    ) -> Optional[List[FarmoutAssignment]]:
        """Recompute the whole assignment snapshot and replace the stored one.

        Returns None when the rebuild fails; the failure is logged.
        """
        try:
            rows = reservations if reservations is not None else self.store.list_reservations(tenant_id)
            assignments = build_assignment_snapshot(rows)
            self.store.persist_snapshot(tenant_id, [item.model_dump(mode="json") for item in assignments])
        except Exception as exc:
            logger.error("Farm-out snapshot rebuild failed", tenant_id=tenant_id, error=str(exc))
            return None
        return assignments

    # Driver-app feed

    def _fetch_trip_status_updates(self, tenant_id: str) -> List[Dict[str, Any]]:
        feed_url = (self.settings.trip_status_feed_url or "").strip()
        token = (self.settings.trip_status_feed_token or "").strip()
        if not feed_url:
            raise RuntimeError("Trip status polling requires TRIP_STATUS_FEED_URL.")

        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        try:
            with httpx.Client(timeout=self.settings.trip_status_feed_timeout_seconds, transport=self._transport) as client:
                response = client.get(feed_url, params={"tenant_id": tenant_id}, headers=headers)
                response.raise_for_status()
                body = response.json()
        except Exception as exc:
            raise RuntimeError(f"Trip status feed request failed: {exc}") from exc

        updates = body.get("updates") if isinstance(body, dict) else None
        if not isinstance(updates, list):
            raise RuntimeError("Invalid trip status feed response: expected JSON field 'updates' as an array.")
        return updates

    def poll_trip_status_feed(self, tenant_id: str, actor: str = "trip-status-poller") -> TripStatusPollResult:
        """Fetch pending driver-app updates and apply them in feed order."""
        updates = self._fetch_trip_status_updates(tenant_id)
        summary = TripStatusPollResult(fetched=len(updates))
        for update in updates:
            if not isinstance(update, dict) or not update.get("reservation_id"):
                summary.skipped += 1
                continue
            result = self.apply_status_update(
                tenant_id,
                str(update["reservation_id"]),
                update.get("status"),
                driver_id=update.get("driver_id"),
                actor=actor,
            )
            summary.results.append(result)
            if result.ok:
                summary.applied += 1
            else:
                summary.failed += 1

        logger.info(
            "Trip status feed polled",
            tenant_id=tenant_id,
            fetched=summary.fetched,
            applied=summary.applied,
            failed=summary.failed,
            skipped=summary.skipped,
        )
        return summary


farmout_engine = FarmoutEngine()
