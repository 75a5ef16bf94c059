"""Unit tests for reservation classification and view membership."""
from __future__ import annotations

import copy

from app.models.farmout import DashboardCategory
from app.services.reservation_classifier import (
    build_driver_summary,
    classify,
    dashboard_category,
    first_match,
    split_views,
)


def test_farmed_out_record_resolves_canonical_status():
    classified = classify({"farm_option": "farm_out", "farmout_status": "farm_out_assigned"})
    assert classified.is_farm_out is True
    assert classified.farmout_status == "assigned"
    assert classified.farmout_status_label == "Farm-out Assigned"


def test_in_house_completed_record_stays_in_house():
    classified = classify({"farm_option": "in-house", "status": "completed"})
    assert classified.is_farm_out is False
    assert classified.status == DashboardCategory.COMPLETED
    assert classified.farmout_status == "in_house"


def test_in_house_record_never_joins_farmout_view():
    records = [
        {"id": "R1", "farm_option": "in-house", "farmout_status": "farm_out_assigned"},
        {"id": "R2", "farm_option": "In House", "efarmStatus": "Farm-out En Route", "status": "driver_assigned"},
        {"id": "R3", "farmoutStatus": "completed"},
        {"id": "R4", "farm_option": "Farm-Out", "farmout_status": "offered"},
    ]
    all_rows, farmout_rows = split_views(records)

    assert [row.id for row in all_rows] == ["R1", "R2", "R3", "R4"]
    assert [row.id for row in farmout_rows] == ["R4"]
    for row in all_rows[:3]:
        assert row.is_farm_out is False


def test_classify_is_pure_and_repeatable():
    record = {
        "id": "R9",
        "confirmation_number": "C-100",
        "farmOption": "farmout",
        "form_snapshot": {"details": {"efarmStatus": "Farm-out Arrived", "farmoutMode": "auto"}},
        "driver_snapshot": {"id": "D1", "name": "Ana Ruiz", "vehicleType": "SUV"},
    }
    original = copy.deepcopy(record)

    first = classify(record)
    second = classify(record)

    assert first == second
    assert record == original
    assert first.farmout_status == "arrived"
    assert first.farmout_mode == "automatic"
    assert first.confirmation_number == "C-100"


def test_farmout_status_field_priority_follows_declared_order():
    record = {
        "farm_option": "farm_out",
        "farmout_status": "  ",
        "farmoutStatus": "farmout_declined",
        "efarm_status": "Farm-out Assigned",
    }
    assert classify(record).farmout_status == "declined"


def test_farmed_out_trip_falls_back_to_detail_code_then_keywords():
    assert classify({"farm_option": "farm_out", "status_detail_code": "driver_en_route"}).farmout_status == "driver_en_route"
    assert classify({"farm_option": "farm_out", "status": "Trip Completed Late"}).farmout_status == "completed"
    assert classify({"farm_option": "farm_out", "status": "Reassigning"}).farmout_status == "assigned"
    assert classify({"farm_option": "farm_out", "status": "pending"}).farmout_status == "unassigned"
    assert classify({"farm_option": "farm_out"}).farmout_status == "unassigned"


def test_dashboard_category_buckets():
    assert dashboard_category("affiliate_assigned", "") == DashboardCategory.ACCEPTED
    assert dashboard_category("custom", "Driver Assigned") == DashboardCategory.ACCEPTED
    assert dashboard_category("done", "") == DashboardCategory.COMPLETED
    assert dashboard_category("pending", "Quote") == DashboardCategory.PENDING


def test_driver_summary_prefers_snapshot_then_flat_fields():
    summary = build_driver_summary(
        {
            "driver_snapshot": {"name": "Ana Ruiz"},
            "driver_id": "D-22",
            "driver_phone": "555-0101",
            "affiliate_name": "North Star Limo",
        }
    )
    assert summary is not None
    assert summary.id == "D-22"
    assert summary.name == "Ana Ruiz"
    assert summary.phone == "555-0101"
    assert summary.affiliate == "North Star Limo"
    assert summary.has_identity()

    assert build_driver_summary({"id": "R1"}) is None


def test_first_match_skips_empty_candidates():
    record = {"a": "", "b": None, "c": {"d": " value "}}
    assert first_match(record, (("a",), ("b",), ("c", "d"))) == "value"
    assert first_match(record, (("missing",),)) is None


def test_display_fields_from_form_snapshot():
    classified = classify(
        {
            "id": "R5",
            "pickup_at": "2024-03-09T14:30:00Z",
            "grand_total": "245.5",
            "form_snapshot": {
                "passenger": {"firstName": "Lee", "lastName": "Park"},
                "routing": {
                    "stops": [
                        {"stopType": "pickup", "address": "MSP Terminal 1"},
                        {"stopType": "dropoff", "fullAddress": "100 Main St"},
                    ]
                },
            },
        }
    )
    assert classified.passenger_name == "Lee Park"
    assert classified.pickup_location == "MSP Terminal 1"
    assert classified.dropoff_location == "100 Main St"
    assert classified.pickup_date == "3/9/2024"
    assert classified.pickup_time == "02:30 PM"
    assert classified.grand_total == 245.5
    assert classified.farm_option == "in-house"
    assert classified.farmout_status == "in_house"
