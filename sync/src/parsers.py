"""Parse raw Garmin JSON into canonical Activity / HealthSample records.

Every field is read on its own and falls back to None when missing or
malformed, so one bad field never discards a record. Nothing here raises.
"""

import re
from datetime import date, datetime, timezone

from models import (
    Activity,
    HealthSample,
    HEART_RATE_FIELDS,
    SLEEP_FIELDS,
    STEPS_FIELDS,
)


def safe_int(value) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


def safe_float(value) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def normalize_type(value) -> str:
    """'Indoor Cycling!' -> 'indoor_cycling'."""
    if not isinstance(value, str):
        return "other"
    token = re.sub(r"\s+", "_", value.strip().lower())
    token = re.sub(r"[^a-z0-9_]", "", token)
    return token or "other"


def parse_timestamp(value) -> datetime | None:
    """Garmin timestamps: epoch milliseconds, 'YYYY-MM-DD HH:MM:SS' or ISO 8601.

    Naive values are taken as UTC.
    """
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        if isinstance(value, (int, float)):
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        dt = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
    except (TypeError, ValueError, OverflowError, OSError):
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _get(raw, *keys):
    """First non-None value among keys of a dict payload."""
    if not isinstance(raw, dict):
        return None
    for key in keys:
        value = raw.get(key)
        if value is not None:
            return value
    return None


def parse_activity(owner_id: str, raw: dict) -> Activity:
    """Map one entry of the Garmin activities list to an Activity."""
    raw = raw if isinstance(raw, dict) else {}
    activity_type = raw.get("activityType")
    type_key = activity_type.get("typeKey") if isinstance(activity_type, dict) else activity_type

    return Activity(
        owner_id=owner_id,
        external_activity_id=safe_int(raw.get("activityId")),
        name=raw.get("activityName") if isinstance(raw.get("activityName"), str) else None,
        type=normalize_type(type_key),
        start_time=parse_timestamp(_get(raw, "startTimeGMT", "startTimeLocal")),
        total_duration_seconds=safe_float(raw.get("duration")),
        moving_duration_seconds=safe_float(raw.get("movingDuration")),
        elapsed_duration_seconds=safe_float(raw.get("elapsedDuration")),
        distance_meters=safe_float(raw.get("distance")),
        calories=safe_float(raw.get("calories")),
        avg_heart_rate=safe_float(raw.get("averageHR")),
        max_heart_rate=safe_float(raw.get("maxHR")),
        avg_speed_mps=safe_float(raw.get("averageSpeed")),
        max_speed_mps=safe_float(raw.get("maxSpeed")),
        elevation_gain_meters=safe_float(raw.get("elevationGain")),
        elevation_loss_meters=safe_float(raw.get("elevationLoss")),
        steps=safe_int(raw.get("steps")),
        avg_cadence=safe_float(_get(
            raw,
            "averageRunningCadenceInStepsPerMinute",
            "averageBikingCadenceInRevPerMinute",
        )),
        max_cadence=safe_float(_get(
            raw,
            "maxRunningCadenceInStepsPerMinute",
            "maxBikingCadenceInRevPerMinute",
        )),
        avg_power=safe_float(raw.get("avgPower")),
        max_power=safe_float(raw.get("maxPower")),
        total_sets=safe_int(_get(raw, "totalSets", "activeSets")),
        total_reps=safe_int(raw.get("totalReps")),
        location_name=raw.get("locationName") if isinstance(raw.get("locationName"), str) else None,
        favorite=raw.get("favorite") is True,
        source_raw=raw,
    )


def parse_sleep(raw) -> dict:
    """Sleep columns from get_sleep_data. Stage durations are Garmin's seconds as-is."""
    dto = _get(raw, "dailySleepDTO")
    dto = dto if isinstance(dto, dict) else {}
    return {
        "sleep_duration_seconds": safe_int(dto.get("sleepTimeSeconds")),
        "deep_sleep_seconds": safe_int(dto.get("deepSleepSeconds")),
        "light_sleep_seconds": safe_int(dto.get("lightSleepSeconds")),
        "rem_sleep_seconds": safe_int(dto.get("remSleepSeconds")),
        "awake_seconds": safe_int(dto.get("awakeSleepSeconds")),
        "sleep_start": parse_timestamp(dto.get("sleepStartTimestampGMT")),
        "sleep_end": parse_timestamp(dto.get("sleepEndTimestampGMT")),
    }


def parse_steps(raw, day: date) -> dict:
    """Step columns from get_daily_steps (list of per-day entries) or a bare count."""
    entry = None
    if isinstance(raw, list):
        for item in raw:
            if isinstance(item, dict) and item.get("calendarDate") == day.isoformat():
                entry = item
                break
        if entry is None and len(raw) == 1 and isinstance(raw[0], dict):
            entry = raw[0]
    elif isinstance(raw, dict):
        entry = raw
    else:
        return {"steps": safe_int(raw), "total_calories": None}

    return {
        "steps": safe_int(_get(entry, "totalSteps", "steps")),
        "total_calories": safe_int(_get(entry, "totalKilocalories")),
    }


def parse_heart_rate(raw) -> dict:
    """Heart-rate columns from get_heart_rates.

    Average stays None unless Garmin reports one; it is never derived from
    min/max.
    """
    return {
        "resting_heart_rate": safe_int(_get(raw, "restingHeartRate")),
        "min_heart_rate": safe_int(_get(raw, "minHeartRate")),
        "max_heart_rate": safe_int(_get(raw, "maxHeartRate")),
        "avg_heart_rate": safe_int(_get(raw, "averageHeartRate")),
    }


_STREAM_PARSERS = {
    "sleep": (SLEEP_FIELDS, lambda raw, day: parse_sleep(raw)),
    "steps": (STEPS_FIELDS, parse_steps),
    "heart_rate": (HEART_RATE_FIELDS, lambda raw, day: parse_heart_rate(raw)),
}


def build_health_sample(owner_id: str, day: date, payloads: dict) -> tuple[HealthSample, list[str]]:
    """Combine the per-stream payloads fetched for one day.

    ``payloads`` maps stream name ('sleep', 'steps', 'heart_rate') to the raw
    response; absent streams are left out. Returns the sample and the list
    of columns the present streams own.
    """
    sample = HealthSample(owner_id=owner_id, date=day)
    fields = []
    for stream, (stream_fields, parse) in _STREAM_PARSERS.items():
        if stream not in payloads:
            continue
        for column, value in parse(payloads[stream], day).items():
            setattr(sample, column, value)
        fields.extend(stream_fields)

    sample.source_raw = dict(payloads)
    if fields:
        fields.append("source_raw")
    return sample, fields
