"""Canonical records shared by the live sync and CSV import paths.

Activity and HealthSample field names double as column names in the
``activities`` and ``health_data`` tables (see ``sync/schema.sql``).
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from enum import Enum


@dataclass
class TokenPair:
    """Garmin OAuth1 + OAuth2 token objects. Opaque to everything but the vault."""

    oauth1: dict
    oauth2: dict

    def __repr__(self) -> str:
        return "TokenPair(oauth1=<redacted>, oauth2=<redacted>)"


@dataclass
class Activity:
    owner_id: str
    external_activity_id: int
    name: str | None = None
    type: str = "other"
    start_time: datetime | None = None
    total_duration_seconds: float | None = None
    moving_duration_seconds: float | None = None
    elapsed_duration_seconds: float | None = None
    distance_meters: float | None = None
    calories: float | None = None
    avg_heart_rate: float | None = None
    max_heart_rate: float | None = None
    avg_speed_mps: float | None = None
    max_speed_mps: float | None = None
    elevation_gain_meters: float | None = None
    elevation_loss_meters: float | None = None
    steps: int | None = None
    avg_cadence: float | None = None
    max_cadence: float | None = None
    avg_power: float | None = None
    max_power: float | None = None
    total_sets: int | None = None
    total_reps: int | None = None
    location_name: str | None = None
    favorite: bool = False
    source_raw: dict = field(default_factory=dict)

    def key(self) -> dict:
        return {"owner_id": self.owner_id, "external_activity_id": self.external_activity_id}

    def to_row(self) -> dict:
        return asdict(self)


@dataclass
class HealthSample:
    owner_id: str
    date: date
    steps: int | None = None
    sleep_duration_seconds: int | None = None
    deep_sleep_seconds: int | None = None
    light_sleep_seconds: int | None = None
    rem_sleep_seconds: int | None = None
    awake_seconds: int | None = None
    sleep_start: datetime | None = None
    sleep_end: datetime | None = None
    resting_heart_rate: int | None = None
    min_heart_rate: int | None = None
    max_heart_rate: int | None = None
    avg_heart_rate: int | None = None
    total_calories: int | None = None
    source_raw: dict = field(default_factory=dict)

    def key(self) -> dict:
        return {"owner_id": self.owner_id, "date": self.date}

    def to_row(self) -> dict:
        return asdict(self)


# Columns of HealthSample filled by each live data stream
SLEEP_FIELDS = (
    "sleep_duration_seconds",
    "deep_sleep_seconds",
    "light_sleep_seconds",
    "rem_sleep_seconds",
    "awake_seconds",
    "sleep_start",
    "sleep_end",
)
STEPS_FIELDS = ("steps", "total_calories")
HEART_RATE_FIELDS = (
    "resting_heart_rate",
    "min_heart_rate",
    "max_heart_rate",
    "avg_heart_rate",
)


class Outcome(str, Enum):
    """Result of a single reconciliation call."""

    INSERTED = "inserted"
    UPDATED = "updated"
    SKIPPED = "skipped"


@dataclass
class ImportResult:
    imported: int = 0
    skipped: int = 0
    total: int = 0
    errors: list[dict] = field(default_factory=list)


class SyncState(str, Enum):
    IDLE = "idle"
    AUTHENTICATING = "authenticating"
    FETCHING = "fetching"
    NORMALIZING = "normalizing"
    RECONCILING = "reconciling"
    PERSISTING_CREDENTIALS = "persisting_credentials"
    DONE = "done"
    FAILED = "failed"


@dataclass
class SyncSummary:
    """Outcome of one sync cycle.

    Attributes:
        owner_id:        Owner the cycle ran for.
        date:            Calendar day synced for daily health data.
        state:           Final state of the cycle.
        activities:      Activity records reconciled.
        health_samples:  HealthSample records reconciled (0 or 1).
        tokens_rotated:  True if Garmin handed back a new token pair.
        errors:          Stream-level errors as ``{"stream", "error"}`` dicts.
    """

    owner_id: str
    date: date
    state: SyncState = SyncState.IDLE
    activities: int = 0
    health_samples: int = 0
    tokens_rotated: bool = False
    errors: list[dict] = field(default_factory=list)

    @property
    def status(self) -> str:
        return "partial" if self.errors else "synced"
