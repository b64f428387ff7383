"""Idempotent upserts of canonical records into the record store.

Activities are keyed by (owner_id, external_activity_id), health samples by
(owner_id, date). Each call does one lookup and at most one write, so
replaying the same records never creates duplicates.
"""

from __future__ import annotations

import logging

from db import ACTIVITIES_TABLE, HEALTH_TABLE
from models import Activity, HealthSample, Outcome

logger = logging.getLogger(__name__)


class Reconciler:
    """Update-or-insert on top of a store exposing find_one / insert / update.

    Store failures propagate as PersistenceError; callers decide whether a
    failed record aborts anything.
    """

    def __init__(self, store):
        self.store = store

    def _upsert(self, table: str, key: dict, row: dict, update_existing: bool) -> Outcome:
        existing = self.store.find_one(table, key)
        if existing is None:
            self.store.insert(table, row)
            return Outcome.INSERTED
        if not update_existing:
            return Outcome.SKIPPED
        patch = {col: val for col, val in row.items() if col not in key}
        self.store.update(table, key, patch)
        return Outcome.UPDATED

    def upsert_activity(self, activity: Activity, update_existing: bool = True) -> Outcome:
        """Insert a new activity or refresh the stored one.

        With ``update_existing=False`` an existing row is left untouched and
        SKIPPED is returned (CSV import semantics).
        """
        if activity.external_activity_id is None:
            raise ValueError("Activity has no external_activity_id")
        outcome = self._upsert(
            ACTIVITIES_TABLE, activity.key(), activity.to_row(), update_existing
        )
        logger.debug(
            "Activity %s for owner %s: %s",
            activity.external_activity_id, activity.owner_id, outcome.value,
        )
        return outcome

    def upsert_health_sample(self, sample: HealthSample, fields=None) -> Outcome:
        """Replace the day's row for this owner, or create it.

        ``fields`` limits the columns written on update (and is ignored on
        insert, which always writes the whole sample). A field-limited update
        merges ``source_raw`` per stream instead of replacing it.
        """
        row = sample.to_row()
        key = sample.key()
        existing = self.store.find_one(HEALTH_TABLE, key)
        if existing is None:
            self.store.insert(HEALTH_TABLE, row)
            outcome = Outcome.INSERTED
        else:
            columns = fields if fields is not None else [c for c in row if c not in key]
            patch = {c: row[c] for c in columns}
            if fields is not None and "source_raw" in patch:
                # Keep the raw payloads of streams this update does not own
                previous = existing.get("source_raw")
                if isinstance(previous, dict):
                    patch["source_raw"] = {**previous, **(patch["source_raw"] or {})}
            self.store.update(HEALTH_TABLE, key, patch)
            outcome = Outcome.UPDATED
        logger.debug("Health sample %s for owner %s: %s", sample.date, sample.owner_id, outcome.value)
        return outcome
