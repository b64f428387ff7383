"""Test CSV export parsing and idempotent import."""

from datetime import datetime, timezone

import pytest

from csv_import import (
    derive_activity_id,
    extract_location,
    feet_to_meters,
    import_activities,
    import_file,
    miles_to_meters,
    pace_to_speed,
    parse_csv,
    parse_csv_line,
    parse_duration,
    parse_number,
    parse_row,
)
from reconciler import Reconciler

HEADER = (
    "Activity Type,Date,Favorite,Title,Distance,Calories,Time,Avg HR,Max HR,"
    "Avg Speed,Max Speed,Total Ascent,Total Descent,Steps"
)

EXPORT = "\n".join([
    HEADER,
    'Running,2024-03-15 06:30:00,true,"Sydney Harbour Run, easy",3.10,"1,020",0:25:30,150,172,8:00,6:30,150,148,"4,512"',
    "Indoor Cycling,2024-03-16 18:00:00,false,Bondi Spin Class,12.5,400,45:10,135,160,--,--,--,--,--",
    "Strength Training,2024-03-17 07:15:00,false,Gym,--,250,1:02:03,110,140,--,--,--,--,--",
])


def test_parse_csv_line_handles_quoted_commas():
    assert parse_csv_line('a, "b, c" ,d') == ["a", "b, c", "d"]


def test_parse_csv_builds_rows_and_pads_short_ones():
    rows = parse_csv("A,B,C\n1,2,3\n\n4\n")
    assert rows == [{"A": "1", "B": "2", "C": "3"}, {"A": "4", "B": "", "C": ""}]


def test_parse_csv_header_only_is_empty():
    assert parse_csv(HEADER) == []
    assert parse_csv("") == []


def test_parse_duration():
    assert parse_duration("1:02:03") == 3723
    assert parse_duration("45:10") == 2710
    assert parse_duration("--") is None
    assert parse_duration("") is None
    assert parse_duration(None) is None
    assert parse_duration("abc") is None
    assert parse_duration("-8:00") is None
    assert parse_duration("1:-5:00") is None
    assert parse_duration("nan:00") is None


def test_parse_number():
    assert parse_number("1,234.5") == 1234.5
    assert parse_number("--") is None
    assert parse_number("fast") is None


def test_unit_conversions():
    assert miles_to_meters(1.0) == pytest.approx(1609.34)
    assert feet_to_meters(100.0) == pytest.approx(30.48)
    assert miles_to_meters(None) is None
    assert feet_to_meters(None) is None


def test_pace_to_speed():
    assert pace_to_speed("8:00") == pytest.approx(3.3528, abs=1e-3)
    assert pace_to_speed("0:00") is None
    assert pace_to_speed("--") is None
    assert pace_to_speed("-8:00") is None
    assert pace_to_speed("garbage") is None


def test_extract_location():
    assert extract_location("Morning run in Sydney") == "Sydney"
    assert extract_location("Bondi Beach Run") == "Bondi"
    assert extract_location("easy run") is None
    assert extract_location("Gym") is None
    assert extract_location("Run Perth", known=["Hobart"]) == "Run"
    assert extract_location(None) is None


def test_derive_activity_id_is_deterministic():
    start = datetime(2024, 3, 15, 6, 30, tzinfo=timezone.utc)
    assert derive_activity_id(start) == int(start.timestamp() * 1000)
    assert derive_activity_id(start) == derive_activity_id(start)
    assert derive_activity_id(None) is None


def test_parse_row_converts_units():
    row = parse_csv(EXPORT)[0]
    a = parse_row("user-1", row)
    assert a.type == "running"
    assert a.name == "Sydney Harbour Run, easy"
    assert a.location_name == "Sydney"
    assert a.favorite is True
    assert a.distance_meters == pytest.approx(3.10 * 1609.34)
    assert a.calories == 1020.0
    assert a.total_duration_seconds == 1530
    assert a.avg_speed_mps == pytest.approx(1609.34 / 480)
    assert a.elevation_gain_meters == pytest.approx(150 * 0.3048)
    assert a.steps == 4512
    assert a.external_activity_id == derive_activity_id(
        datetime(2024, 3, 15, 6, 30, tzinfo=timezone.utc)
    )


def test_parse_row_malformed_fields_become_none():
    row = {"Date": "2024-03-15 06:30:00", "Distance": "far", "Time": "soon", "Title": ""}
    a = parse_row("user-1", row)
    assert a.distance_meters is None
    assert a.total_duration_seconds is None
    assert a.name is None
    assert a.type == "other"


def test_parse_row_prefers_explicit_activity_id():
    a = parse_row("user-1", {"Activity ID": "98765", "Date": "2024-03-15 06:30:00"})
    assert a.external_activity_id == 98765


def test_parse_row_without_date_or_id_raises():
    with pytest.raises(ValueError):
        parse_row("user-1", {"Date": "sometime", "Title": "Run"})


def test_import_inserts_then_skips_on_reimport(store):
    reconciler = Reconciler(store)

    first = import_activities(reconciler, "user-1", EXPORT)
    assert (first.imported, first.skipped, first.total) == (3, 0, 3)
    assert first.errors == []

    second = import_activities(reconciler, "user-1", EXPORT)
    assert (second.imported, second.skipped, second.total) == (0, 3, 3)
    assert len(store.tables["activities"]) == 3


def test_import_does_not_overwrite_existing_activity(store):
    reconciler = Reconciler(store)
    import_activities(reconciler, "user-1", EXPORT)
    edited = EXPORT.replace("Bondi Spin Class", "Renamed Spin")
    import_activities(reconciler, "user-1", edited)
    names = {row["name"] for row in store.tables["activities"]}
    assert "Bondi Spin Class" in names
    assert "Renamed Spin" not in names


def test_import_records_row_errors_and_continues(store):
    text = "\n".join([
        "Activity Type,Date,Title",
        "Running,not-a-date,Broken",
        "Running,2024-03-18 06:00:00,Fine",
    ])
    result = import_activities(Reconciler(store), "user-1", text)
    assert result.imported == 1
    assert result.total == 2
    assert len(result.errors) == 1
    assert result.errors[0]["row"] == 1


def test_import_records_store_failures_per_row(store):
    store.fail_on.add(("insert", "activities"))
    result = import_activities(Reconciler(store), "user-1", EXPORT)
    assert result.imported == 0
    assert [e["row"] for e in result.errors] == [1, 2, 3]


def test_import_file_strips_bom(store, tmp_path):
    path = tmp_path / "Activities.csv"
    path.write_text(EXPORT, encoding="utf-8-sig")
    result = import_file(Reconciler(store), "user-1", path)
    assert result.imported == 3
    assert store.tables["activities"][0]["type"] == "running"
