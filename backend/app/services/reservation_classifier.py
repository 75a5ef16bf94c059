"""Classify raw reservation records into canonical farm-out/dashboard state.

Reservation documents accumulate fields from every version of the booking
form, the affiliate portal, and the driver app, so the same logical value can
live under a dozen names. Each logical value is resolved through an ordered
tuple of field paths; the first non-empty hit wins. The tuples below define
that priority order and must not be reordered casually.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Iterable, List, Mapping, Optional, Sequence, Tuple

from app.models.farmout import ClassifiedReservation, DashboardCategory, DriverSummary
from app.services.farmout_status import (
    canonicalize_mode,
    canonicalize_status,
    format_farmout_status,
    is_farm_out_option,
    is_recognized_farmout_status,
    normalize_key,
)

FieldPath = Tuple[str, ...]

FARM_OPTION_FIELDS: Sequence[FieldPath] = (
    ("farm_option",),
    ("farmOption",),
    ("form_snapshot", "details", "farmOption"),
)

FARMOUT_STATUS_FIELDS: Sequence[FieldPath] = (
    ("farmout_status",),
    ("farmoutStatus",),
    ("efarm_status",),
    ("efarmStatus",),
    ("form_snapshot", "details", "farmoutStatusCanonical"),
    ("form_snapshot", "details", "efarmStatus"),
    ("form_snapshot", "details", "efarm_status"),
)

FARMOUT_MODE_FIELDS: Sequence[FieldPath] = (
    ("farmoutMode",),
    ("farmout_mode",),
    ("efarm_out_selection",),
    ("form_snapshot", "details", "farmoutMode"),
)

STATUS_DETAIL_FIELDS: Sequence[FieldPath] = (
    ("status_detail_code",),
    ("statusDetailCode",),
    ("status_detail",),
    ("status",),
)

STATUS_LABEL_FIELDS: Sequence[FieldPath] = (
    ("status_detail_label",),
    ("status",),
)

DRIVER_SOURCE_FIELDS: Sequence[FieldPath] = (
    ("driver_snapshot",),
    ("driverSnapshot",),
    ("driver",),
    ("assigned_driver",),
    ("form_snapshot", "driver"),
    ("form_snapshot", "details", "driver"),
)

DRIVER_ID_FIELDS: Sequence[FieldPath] = (("driver_id",), ("driverId",))
DRIVER_NAME_FIELDS: Sequence[FieldPath] = (("driver_name",), ("driverName",))
DRIVER_PHONE_FIELDS: Sequence[FieldPath] = (("driver_phone",), ("driverPhone",))
DRIVER_VEHICLE_FIELDS: Sequence[FieldPath] = (
    ("driver_vehicle",),
    ("vehicle_type",),
    ("vehicleType",),
    ("form_snapshot", "vehicle", "type"),
    ("form_snapshot", "details", "vehicleType"),
)

AFFILIATE_FIELDS: Sequence[FieldPath] = (
    ("affiliate_name",),
    ("affiliateName",),
    ("affiliate_reference",),
    ("form_snapshot", "details", "affiliate", "name"),
)

PASSENGER_PHONE_FIELDS: Sequence[FieldPath] = (
    ("passenger_phone",),
    ("form_snapshot", "billing", "passenger", "phone"),
)
PASSENGER_EMAIL_FIELDS: Sequence[FieldPath] = (
    ("passenger_email",),
    ("form_snapshot", "billing", "passenger", "email"),
)

PICKUP_DATE_FIELDS: Sequence[FieldPath] = (
    ("pickup_date",),
    ("pickupDate",),
    ("form_snapshot", "details", "puDate"),
)
PICKUP_TIME_FIELDS: Sequence[FieldPath] = (
    ("pickup_time",),
    ("pickupTime",),
    ("form_snapshot", "details", "puTime"),
)

STOP_ADDRESS_FIELDS: Sequence[FieldPath] = (
    ("fullAddress",),
    ("address",),
    ("address1",),
    ("locationName",),
    ("location",),
)

ACCEPTED_DETAIL_CODES = frozenset({
    "affiliate_assigned",
    "driver_assigned",
    "driver_en_route",
    "driver_waiting_at_pickup",
    "driver_circling",
})
COMPLETED_DETAIL_CODES = frozenset({"completed", "completing", "done"})

# Ordered keyword fallback for farmed-out trips with no structured status.
_STATUS_KEYWORDS: Sequence[Tuple[Tuple[str, ...], str]] = (
    (("complete", "done"), "completed"),
    (("assign",), "assigned"),
    (("decline",), "declined"),
    (("arrive",), "arrived"),
)


def dig(record: Any, path: FieldPath) -> Any:
    value = record
    for key in path:
        if not isinstance(value, Mapping):
            return None
        value = value.get(key)
    return value


def text_value(value: Any) -> str:
    if value is None or isinstance(value, (Mapping, bool)):
        return ""
    if isinstance(value, (list, tuple)):
        return " ".join(str(item) for item in value if item is not None).strip()
    return str(value).strip()


def first_match(
    record: Mapping[str, Any],
    paths: Iterable[FieldPath],
    transform: Optional[Callable[[Any], Any]] = None,
) -> Any:
    """Return the first value along ``paths`` that is non-empty after ``transform``."""
    for path in paths:
        value = dig(record, path)
        if value is None:
            continue
        if isinstance(value, str):
            value = value.strip()
        if transform is not None:
            value = transform(value)
        if value is None or value == "":
            continue
        return value
    return None


def first_text(record: Mapping[str, Any], paths: Iterable[FieldPath], default: str = "") -> str:
    return first_match(record, paths, text_value) or default


def resolve_farm_option(record: Mapping[str, Any]) -> str:
    return first_text(record, FARM_OPTION_FIELDS, default="in-house")


def resolve_status_detail_code(record: Mapping[str, Any]) -> str:
    return first_text(record, STATUS_DETAIL_FIELDS, default="pending")


def dashboard_category(code: str, label: str) -> DashboardCategory:
    normalized_code = (code or "").strip().lower()
    normalized_label = (label or "").strip().lower()

    if normalized_code in ACCEPTED_DETAIL_CODES or "assigned" in normalized_label:
        return DashboardCategory.ACCEPTED
    if (
        normalized_code in COMPLETED_DETAIL_CODES
        or "completed" in normalized_label
        or "done" in normalized_label
    ):
        return DashboardCategory.COMPLETED
    return DashboardCategory.PENDING


def resolve_farmout_status(record: Mapping[str, Any], is_farm_out: bool, status_detail_code: str) -> str:
    """Canonical farm-out status, falling back through detail code and keywords.

    Dedicated farm-out fields are trusted whatever the farm option says. The
    generic detail code only stands in for them on farmed-out trips; an
    in-house trip with no farm-out fields is ``in_house``.
    """
    status = first_match(record, FARMOUT_STATUS_FIELDS, canonicalize_status)
    if status:
        return status

    if not is_farm_out:
        return "in_house"

    detail_canonical = canonicalize_status(status_detail_code)
    if is_recognized_farmout_status(detail_canonical):
        return detail_canonical

    detail_lower = status_detail_code.lower()
    derived = "unassigned"
    for keywords, candidate in _STATUS_KEYWORDS:
        if any(keyword in detail_lower for keyword in keywords):
            derived = candidate
            break
    return canonicalize_status(derived) or "in_house"


def resolve_farmout_mode(record: Mapping[str, Any]) -> str:
    return canonicalize_mode(first_match(record, FARMOUT_MODE_FIELDS))


def _driver_source(record: Mapping[str, Any]) -> Mapping[str, Any]:
    for path in DRIVER_SOURCE_FIELDS:
        value = dig(record, path)
        if isinstance(value, Mapping):
            return value
    return {}


def build_driver_summary(record: Mapping[str, Any]) -> Optional[DriverSummary]:
    """Resolve the assigned driver from whichever driver fields the record carries."""
    source = _driver_source(record)

    driver_id = first_match(source, (("id",),), text_value) or first_match(record, DRIVER_ID_FIELDS, text_value)
    name = first_text(source, (("name",),)) or first_text(record, DRIVER_NAME_FIELDS)
    affiliate = first_text(source, (("affiliate",),)) or first_text(record, AFFILIATE_FIELDS)
    phone = first_text(source, (("phone",),)) or first_text(record, DRIVER_PHONE_FIELDS)
    vehicle = first_text(source, (("vehicleType",), ("vehicle_type",))) or first_text(record, DRIVER_VEHICLE_FIELDS)

    if not (driver_id or name or affiliate or phone or vehicle):
        return None
    return DriverSummary(
        id=driver_id,
        name=name,
        affiliate=affiliate,
        phone=phone,
        vehicle_type=vehicle,
    )


def _passenger_name(record: Mapping[str, Any]) -> str:
    direct = text_value(record.get("passenger_name"))
    if direct:
        return direct
    lead = " ".join(
        part for part in (
            text_value(record.get("lead_passenger_first_name")),
            text_value(record.get("lead_passenger_last_name")),
        ) if part
    )
    if lead:
        return lead
    snapshot = dig(record, ("form_snapshot", "passenger")) or {}
    computed = " ".join(
        part for part in (
            text_value(dig(snapshot, ("firstName",))),
            text_value(dig(snapshot, ("lastName",))),
        ) if part
    )
    return computed or "N/A"


def _stop_type(stop: Mapping[str, Any]) -> str:
    return text_value(stop.get("stopType") or stop.get("type")).lower()


def reservation_stops(record: Mapping[str, Any]) -> Tuple[Optional[Mapping[str, Any]], Optional[Mapping[str, Any]]]:
    """Pickup and dropoff stops from the record, or its form snapshot routing."""
    stops = record.get("stops")
    if not isinstance(stops, list) or not stops:
        stops = dig(record, ("form_snapshot", "routing", "stops"))
    if not isinstance(stops, list):
        return None, None
    stops = [stop for stop in stops if isinstance(stop, Mapping)]
    if not stops:
        return None, None

    pickup = next((stop for stop in stops if _stop_type(stop) == "pickup"), stops[0])
    dropoff = next((stop for stop in stops if _stop_type(stop) == "dropoff"), stops[-1])
    return pickup, dropoff


def _stop_address(stop: Optional[Mapping[str, Any]]) -> str:
    if not stop:
        return ""
    return first_text(stop, STOP_ADDRESS_FIELDS)


def _pickup_schedule(record: Mapping[str, Any]) -> Tuple[str, str]:
    pickup_at = text_value(record.get("pickup_at"))
    if pickup_at:
        text = f"{pickup_at[:-1]}+00:00" if pickup_at.endswith("Z") else pickup_at
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            parsed = None
        if parsed is not None:
            return f"{parsed.month}/{parsed.day}/{parsed.year}", parsed.strftime("%I:%M %p")
    return first_text(record, PICKUP_DATE_FIELDS), first_text(record, PICKUP_TIME_FIELDS)


def _grand_total(record: Mapping[str, Any]) -> float:
    raw = record.get("grand_total") or record.get("total") or 0
    try:
        return round(float(raw), 2)
    except (TypeError, ValueError):
        return 0.0


def reservation_identifier(record: Mapping[str, Any]) -> Optional[str]:
    return first_match(record, (("id",), ("confirmation_number",)), text_value)


def classify(record: Mapping[str, Any]) -> ClassifiedReservation:
    """Classify one raw reservation record. The record is never mutated."""
    identifier = reservation_identifier(record) or ""
    confirmation = first_text(record, (("confirmation_number",),), default=identifier)

    farm_option = resolve_farm_option(record)
    farm_option_normalized = normalize_key(farm_option)
    is_farm_out = is_farm_out_option(farm_option)

    status_detail_code = resolve_status_detail_code(record)
    status_label = first_text(record, STATUS_LABEL_FIELDS)
    category = dashboard_category(status_detail_code, status_label)

    farmout_status = resolve_farmout_status(record, is_farm_out, status_detail_code)
    farmout_mode = resolve_farmout_mode(record)

    driver = build_driver_summary(record)
    driver_name = first_text(
        record,
        (("driver_name",), ("driverName",), ("form_snapshot", "driver", "name")),
    ) or (driver.name if driver else "")

    pickup_stop, dropoff_stop = reservation_stops(record)
    pickup_date, pickup_time = _pickup_schedule(record)

    return ClassifiedReservation(
        id=identifier,
        confirmation_number=confirmation,
        passenger_name=_passenger_name(record),
        phone=first_text(record, PASSENGER_PHONE_FIELDS),
        email=first_text(record, PASSENGER_EMAIL_FIELDS),
        pickup_location=_stop_address(pickup_stop) or text_value(record.get("pickup_address")) or "Unknown Pickup",
        dropoff_location=_stop_address(dropoff_stop) or text_value(record.get("dropoff_address")) or "Unknown Dropoff",
        pickup_date=pickup_date,
        pickup_time=pickup_time,
        status=category,
        status_label=status_label or category.value,
        status_detail_code=status_detail_code,
        farm_option=farm_option,
        farm_option_normalized=farm_option_normalized,
        is_farm_out=is_farm_out,
        farmout_status=farmout_status,
        farmout_status_label=format_farmout_status(farmout_status),
        farmout_mode=farmout_mode,
        driver_name=driver_name,
        driver=driver,
        affiliate_name=first_text(record, AFFILIATE_FIELDS),
        grand_total=_grand_total(record),
    )


def is_farmout_view_member(classified: ClassifiedReservation) -> bool:
    """Only an explicit farm-out option puts a reservation in the farm-out view.

    Farm-out status and dashboard category never cause inclusion on their own.
    """
    return classified.is_farm_out


def split_views(records: Iterable[Mapping[str, Any]]) -> Tuple[List[ClassifiedReservation], List[ClassifiedReservation]]:
    """Classify ``records`` into the full dashboard list and the farm-out subset."""
    classified: List[ClassifiedReservation] = []
    for record in records:
        if not isinstance(record, Mapping) or reservation_identifier(record) is None:
            continue
        classified.append(classify(record))
    return classified, [item for item in classified if is_farmout_view_member(item)]
