"""Canonical farm-out status and dispatch-mode vocabulary.

Reservation records carry status text written by several generations of the
booking form and the affiliate portal ("Farm-out Assigned", "farmout_assigned",
"created_farm_out_assigned", ...). Everything here reduces that text to one
canonical key. All functions are pure and total.
"""
from __future__ import annotations

import re
from types import MappingProxyType
from typing import Any, Mapping

_NON_ALNUM = re.compile(r"[^a-z0-9]+")
_LABEL_SPLIT = re.compile(r"[_\-\s]+")

FARMOUT_STATUS_ALIASES: Mapping[str, str] = MappingProxyType({
    "farm_out_unassigned": "unassigned",
    "farmout_unassigned": "unassigned",
    "created_farm_out_unassigned": "unassigned",
    "created_farmout_unassigned": "unassigned",
    "farm_out_assigned": "assigned",
    "farmout_assigned": "assigned",
    "created_farm_out_assigned": "assigned",
    "created_farmout_assigned": "assigned",
    "farm_out_offered": "offered",
    "farmout_offered": "offered",
    "farm_out_declined": "declined",
    "farmout_declined": "declined",
    "farm_out_completed": "completed",
    "farmout_completed": "completed",
    "done": "completed",
    "trip_done": "completed",
    "en_route": "enroute",
    "enroute": "enroute",
    "farm_out_en_route": "enroute",
    "farmout_en_route": "enroute",
    "farm_out_arrived": "arrived",
    "farmout_arrived": "arrived",
    "farm_out_cancelled": "cancelled",
    "farmout_cancelled": "cancelled",
    "driver_on_the_way": "on_the_way",
    "covid_19_cancellation": "covid19_cancellation",
    "passenger_on_board": "passenger_onboard",
    "passenger_on_boarded": "passenger_onboard",
    "passenger_on_boarding": "passenger_onboard",
    "inhouse": "in_house",
    "in_house_dispatch": "in_house",
})

FARMOUT_RECOGNIZED_STATUSES = frozenset({
    "unassigned",
    "offered",
    "offered_to_affiliate",
    "assigned",
    "affiliate_assigned",
    "affiliate_driver_assigned",
    "declined",
    "enroute",
    "driver_en_route",
    "on_the_way",
    "arrived",
    "passenger_onboard",
    "driver_waiting_at_pickup",
    "waiting_at_pickup",
    "driver_circling",
    "customer_in_car",
    "driving_passenger",
    "completed",
    "cancelled",
    "cancelled_by_affiliate",
    "late_cancel",
    "late_cancelled",
    "no_show",
    "covid19_cancellation",
})

FARMOUT_STATUS_LABELS: Mapping[str, str] = MappingProxyType({
    "unassigned": "Farm-out Unassigned",
    "offered": "Farm-out Offered",
    "assigned": "Farm-out Assigned",
    "declined": "Farm-out Declined",
    "enroute": "Farm-out En Route",
    "arrived": "Farm-out Arrived",
    "passenger_onboard": "Passenger On Board",
    "completed": "Farm-out Completed",
    "cancelled": "Farm-out Cancelled",
    "in_house": "In-house Dispatch",
    "offered_to_affiliate": "Offered to Affiliate",
    "affiliate_assigned": "Affiliate Assigned",
    "affiliate_driver_assigned": "Affiliate Driver Assigned",
    "driver_en_route": "Driver En Route",
    "on_the_way": "Driver On The Way",
    "driver_waiting_at_pickup": "Driver Waiting at Pickup",
    "waiting_at_pickup": "Waiting at Pickup",
    "driver_circling": "Driver Circling",
    "customer_in_car": "Customer In Car",
    "driving_passenger": "Driving Passenger",
    "cancelled_by_affiliate": "Cancelled by Affiliate",
    "late_cancel": "Late Cancel",
    "late_cancelled": "Late Cancelled",
    "no_show": "No Show",
    "covid19_cancellation": "COVID-19 Cancellation",
})

AUTOMATIC_MODE_KEYS = frozenset({"auto", "auto_dispatch", "automatic_dispatch"})
FARM_OUT_OPTION_KEYS = frozenset({"farm_out", "farmout"})

# Driver availability that follows from a driver-reported trip status.
DRIVER_STATUS_BY_FARMOUT_STATUS: Mapping[str, str] = MappingProxyType({
    "enroute": "enroute",
    "arrived": "arrived",
    "passenger_onboard": "passenger_onboard",
    "completed": "available",
})


def normalize_key(value: Any) -> str:
    """Lowercase ``value`` and collapse non-alphanumeric runs into ``_``."""
    if value is None:
        return ""
    text = str(value).strip().lower()
    return _NON_ALNUM.sub("_", text).strip("_")


def canonicalize_status(status: Any) -> str:
    """Map any farm-out status spelling to its canonical key.

    Unknown keys pass through normalized; empty input yields ``""``.
    """
    if not status:
        return ""
    normalized = normalize_key(status)
    return FARMOUT_STATUS_ALIASES.get(normalized, normalized)


def canonicalize_mode(mode: Any) -> str:
    """Map a dispatch-mode spelling to ``manual``/``automatic``.

    Unrecognized non-empty modes pass through normalized rather than failing.
    """
    if not mode:
        return "manual"
    normalized = normalize_key(mode)
    if normalized in AUTOMATIC_MODE_KEYS:
        return "automatic"
    return normalized or "manual"


def is_recognized_farmout_status(status: Any) -> bool:
    return canonicalize_status(status) in FARMOUT_RECOGNIZED_STATUSES


def is_farm_out_option(option: Any) -> bool:
    return normalize_key(option) in FARM_OUT_OPTION_KEYS


def format_farmout_status(status: Any) -> str:
    """Human-readable label for a farm-out status."""
    canonical = canonicalize_status(status)
    if not canonical:
        return FARMOUT_STATUS_LABELS["unassigned"]
    label = FARMOUT_STATUS_LABELS.get(canonical)
    if label:
        return label
    return " ".join(
        segment[:1].upper() + segment[1:]
        for segment in _LABEL_SPLIT.split(canonical)
        if segment
    )


def driver_status_for(status: Any) -> str | None:
    return DRIVER_STATUS_BY_FARMOUT_STATUS.get(canonicalize_status(status))
