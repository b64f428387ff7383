"""Import a Garmin Connect activities CSV export.

The export uses imperial units (miles, feet, min/mile pace) and has no
activity id column, so rows are keyed by a synthetic id derived from their
start time. Re-importing an unchanged file is a no-op. Two different
activities starting in the same millisecond collide on that id; this is
not disambiguated.

Quoted fields may contain commas but not newlines.

Usage:
    python pipeline.py import <owner_id> <export.csv>
"""

from __future__ import annotations

import csv
import logging
import math
import re
from pathlib import Path

from config import KNOWN_LOCATIONS
from errors import SyncError
from models import Activity, ImportResult, Outcome
from parsers import normalize_type, parse_timestamp, safe_int

logger = logging.getLogger(__name__)

METERS_PER_MILE = 1609.34
METERS_PER_FOOT = 0.3048

_MISSING = {"", "--"}


def parse_csv_line(line: str) -> list[str]:
    """Split one line into trimmed fields, honouring double quotes."""
    fields = next(csv.reader([line], skipinitialspace=True), [])
    return [f.strip() for f in fields]


def parse_csv(text: str) -> list[dict]:
    """Parse header + rows into dicts. Short rows are padded with ''."""
    lines = [line for line in text.strip().splitlines() if line.strip()]
    if len(lines) < 2:
        return []
    headers = parse_csv_line(lines[0])
    rows = []
    for line in lines[1:]:
        values = parse_csv_line(line)
        rows.append({h: (values[i] if i < len(values) else "") for i, h in enumerate(headers)})
    return rows


def parse_duration(value: str | None) -> int | None:
    """'1:02:03' -> 3723, '45:10' -> 2710, '--' -> None."""
    if value is None or value.strip() in _MISSING:
        return None
    parts = value.strip().split(":")
    try:
        numbers = [float(p) for p in parts]
    except ValueError:
        return None
    if any(n < 0 or not math.isfinite(n) for n in numbers):
        return None
    if len(numbers) == 3:
        hours, minutes, seconds = numbers
    elif len(numbers) == 2:
        hours, (minutes, seconds) = 0, numbers
    else:
        return None
    return int(round(hours * 3600 + minutes * 60 + seconds))


def parse_number(value: str | None) -> float | None:
    """'1,234.5' -> 1234.5; '--' and garbage -> None."""
    if value is None or value.strip() in _MISSING:
        return None
    try:
        return float(value.replace(",", "").strip())
    except ValueError:
        return None


def parse_bool(value: str | None) -> bool:
    return (value or "").strip().lower() == "true"


def miles_to_meters(miles: float | None) -> float | None:
    return None if miles is None else miles * METERS_PER_MILE


def feet_to_meters(feet: float | None) -> float | None:
    return None if feet is None else feet * METERS_PER_FOOT


def pace_to_speed(pace: str | None) -> float | None:
    """Min/mile pace ('8:00') to meters per second. Zero, negative or unparsable -> None."""
    seconds = parse_duration(pace)
    if not seconds or seconds <= 0:
        return None
    return METERS_PER_MILE / seconds


def extract_location(title: str | None, known: list[str] | None = None) -> str | None:
    """Pick a place name out of a human-entered activity title.

    Known places anywhere in the title win; otherwise a capitalised leading
    word followed by more text (e.g. 'Bondi Beach Run' -> 'Bondi').
    """
    if not title:
        return None
    for place in (KNOWN_LOCATIONS if known is None else known):
        if re.search(rf"\b{re.escape(place)}\b", title):
            return place
    match = re.match(r"^([A-Z][a-z]+)\s", title)
    return match.group(1) if match else None


def derive_activity_id(start_time) -> int | None:
    """Epoch milliseconds of the start time, used when the export has no id."""
    if start_time is None:
        return None
    return int(round(start_time.timestamp() * 1000))


def parse_row(owner_id: str, row: dict) -> Activity:
    """Map one CSV row to an Activity. Bad fields become None.

    Raises ValueError only when the row has neither an id nor a usable Date,
    since such a row cannot be keyed.
    """
    start_time = parse_timestamp(row.get("Date") or None)
    activity_id = safe_int(row.get("Activity ID") or None) or derive_activity_id(start_time)
    if activity_id is None:
        raise ValueError(f"Unparseable Date {row.get('Date')!r} and no Activity ID")

    title = row.get("Title") or ""
    return Activity(
        owner_id=owner_id,
        external_activity_id=activity_id,
        name=title or None,
        type=normalize_type(row.get("Activity Type") or "other"),
        start_time=start_time,
        total_duration_seconds=parse_duration(row.get("Time")),
        moving_duration_seconds=parse_duration(row.get("Moving Time")),
        elapsed_duration_seconds=parse_duration(row.get("Elapsed Time")),
        distance_meters=miles_to_meters(parse_number(row.get("Distance"))),
        calories=parse_number(row.get("Calories")),
        avg_heart_rate=parse_number(row.get("Avg HR")),
        max_heart_rate=parse_number(row.get("Max HR")),
        avg_speed_mps=pace_to_speed(row.get("Avg Speed")),
        max_speed_mps=pace_to_speed(row.get("Max Speed")),
        elevation_gain_meters=feet_to_meters(parse_number(row.get("Total Ascent"))),
        elevation_loss_meters=feet_to_meters(parse_number(row.get("Total Descent"))),
        steps=safe_int(parse_number(row.get("Steps"))),
        avg_cadence=parse_number(row.get("Avg Bike Cadence")),
        max_cadence=parse_number(row.get("Max Bike Cadence")),
        avg_power=parse_number(row.get("Avg Power")),
        max_power=parse_number(row.get("Max Power")),
        total_sets=safe_int(parse_number(row.get("Total Sets"))),
        total_reps=safe_int(parse_number(row.get("Total Reps"))),
        location_name=extract_location(title),
        favorite=parse_bool(row.get("Favorite")),
        source_raw=dict(row),
    )


def import_activities(reconciler, owner_id: str, text: str) -> ImportResult:
    """Import every row of a CSV export. Existing activities are skipped.

    A failing row is recorded in ``errors`` as ``{"row": n, "error": msg}``
    (n counts data rows from 1) and the import moves on.
    """
    rows = parse_csv(text)
    result = ImportResult(total=len(rows))

    for n, row in enumerate(rows, start=1):
        try:
            activity = parse_row(owner_id, row)
            outcome = reconciler.upsert_activity(activity, update_existing=False)
        except (ValueError, SyncError) as e:
            logger.warning("CSV row %d failed: %s", n, e)
            result.errors.append({"row": n, "error": str(e)})
            continue

        if outcome is Outcome.SKIPPED:
            result.skipped += 1
        else:
            result.imported += 1

    logger.info(
        "CSV import for owner %s: %d imported, %d skipped, %d errors (of %d rows)",
        owner_id, result.imported, result.skipped, len(result.errors), result.total,
    )
    return result


def import_file(reconciler, owner_id: str, path: str | Path) -> ImportResult:
    text = Path(path).read_text(encoding="utf-8-sig")
    return import_activities(reconciler, owner_id, text)
