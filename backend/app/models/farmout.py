"""Domain models for farm-out dispatch, driver status, and assignment snapshots."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DriverStatus(str, Enum):
    """Driver availability as shown in the driver directory."""

    AVAILABLE = "available"
    ENROUTE = "enroute"
    ARRIVED = "arrived"
    PASSENGER_ONBOARD = "passenger_onboard"
    BUSY = "busy"
    OFFLINE = "offline"


class DashboardCategory(str, Enum):
    """Coarse bucket used by the general (in-house) reservation list."""

    PENDING = "pending"
    ACCEPTED = "accepted"
    COMPLETED = "completed"


class PropagationError(str, Enum):
    """Failure kinds reported by status propagation instead of raising."""

    NOT_FOUND = "not_found"
    INVALID_STATUS = "invalid_status"
    STORE_FAILURE = "store_failure"


class DriverSummary(BaseModel):
    """Driver identity as resolved from a reservation's legacy driver fields."""

    model_config = ConfigDict(frozen=True)

    id: Optional[str] = None
    name: str = ""
    affiliate: str = ""
    phone: str = ""
    vehicle_type: str = ""

    def has_identity(self) -> bool:
        return bool(self.id or self.name)


class ClassifiedReservation(BaseModel):
    """Canonical view of one raw reservation record."""

    model_config = ConfigDict(frozen=True)

    id: str
    confirmation_number: str
    passenger_name: str = "N/A"
    phone: str = ""
    email: str = ""
    pickup_location: str = ""
    dropoff_location: str = ""
    pickup_date: str = ""
    pickup_time: str = ""
    status: DashboardCategory = DashboardCategory.PENDING
    status_label: str = ""
    status_detail_code: str = "pending"
    farm_option: str = "in-house"
    farm_option_normalized: str = "in_house"
    is_farm_out: bool = False
    farmout_status: str = "in_house"
    farmout_status_label: str = ""
    farmout_mode: str = "manual"
    driver_name: str = ""
    driver: Optional[DriverSummary] = None
    affiliate_name: str = ""
    grand_total: float = 0.0


class FarmoutAssignment(BaseModel):
    """One row of the active farm-out assignment snapshot."""

    reservation_id: str
    confirmation_number: str
    passenger_name: str = ""
    pickup_date: str = ""
    pickup_time: str = ""
    farmout_status: str
    farmout_mode: str = "manual"
    driver: DriverSummary
    updated_at: datetime = Field(default_factory=_utcnow)


class DriverRecord(BaseModel):
    """Persisted driver record."""

    driver_id: str
    name: str
    status: DriverStatus = DriverStatus.AVAILABLE
    assigned_reservation_id: Optional[str] = None
    affiliate: str = ""
    phone: str = ""
    vehicle_type: str = ""
    updated_at: datetime = Field(default_factory=_utcnow)


class DriverCreateRequest(BaseModel):
    """Register a driver (in-house or affiliate) in the directory."""

    driver_id: Optional[str] = None
    name: str = Field(min_length=2)
    affiliate: str = ""
    phone: str = ""
    vehicle_type: str = ""


class DriverAssignmentRequest(BaseModel):
    """Attach a driver to a farmed-out reservation."""

    driver_id: str
    name: Optional[str] = None
    affiliate: Optional[str] = None
    phone: Optional[str] = None
    vehicle_type: Optional[str] = None


class FarmoutStatusRequest(BaseModel):
    """Dispatcher-set farm-out status (does not touch the generic status)."""

    status: str


class FarmoutModeRequest(BaseModel):
    """Manual vs automatic farm-out dispatch mode."""

    mode: str


class TripStatusUpdateRequest(BaseModel):
    """Status reported by the driver app for a trip."""

    reservation_id: str
    status: str
    driver_id: Optional[str] = None


class StatusUpdateResult(BaseModel):
    """Outcome of one status propagation; failures are values, not exceptions."""

    reservation_id: str
    applied: bool = False
    farmout_status: str = ""
    driver_status: Optional[str] = None
    error: Optional[PropagationError] = None
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.error is None


class TripStatusPollResult(BaseModel):
    """Summary of one pass over the driver-app trip status feed."""

    fetched: int = 0
    applied: int = 0
    failed: int = 0
    skipped: int = 0
    results: List[StatusUpdateResult] = Field(default_factory=list)


class FarmoutBoardResponse(BaseModel):
    """Reservation dashboards: every reservation plus the farm-out subset."""

    counts_by_status: Dict[str, int]
    reservations: List[ClassifiedReservation]
    farmout: List[ClassifiedReservation]
    drivers: List[Dict[str, Any]] = Field(default_factory=list)


class ReservationDetailResponse(BaseModel):
    """Stored record together with its classification."""

    record: Dict[str, Any]
    classification: ClassifiedReservation


class ActivityEntry(BaseModel):
    """Activity line shown in the farm-out detail panel."""

    event_id: str
    reservation_id: str
    message: str
    actor: str = "system"
    timestamp: datetime = Field(default_factory=_utcnow)
    details: Dict[str, Any] = Field(default_factory=dict)
