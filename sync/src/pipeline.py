"""Sync pipeline: stored credentials -> Garmin -> canonical records -> store.

One cycle runs for one owner:

    idle -> authenticating -> fetching -> normalizing -> reconciling
         -> persisting_credentials -> done

Only authentication can fail the cycle. Fetch, parse and write errors are
collected per stream in the returned SyncSummary, and rotated Garmin tokens
are written back even when some streams failed.

Callers must not run overlapping cycles for the same owner: the credential
row is read, used and rewritten without locking.

Usage:
    python pipeline.py connect <owner_id> [--email EMAIL]
    python pipeline.py sync <owner_id> [--date YYYY-MM-DD] [--limit N]
    python pipeline.py import <owner_id> <export.csv>
    python pipeline.py status <owner_id>
    python pipeline.py disconnect <owner_id>
"""

from __future__ import annotations

import argparse
import getpass
import logging
import sys
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import date

import requests
from garminconnect import GarminConnectConnectionError, GarminConnectTooManyRequestsError

import garmin_client
from config import (
    ACTIVITY_PAGE_SIZE,
    GARMIN_EMAIL,
    GARMIN_PASSWORD,
    SYNC_MAX_RETRIES,
    SYNC_RETRY_BACKOFF,
    get_encryption_key,
)
from csv_import import import_file
from errors import (
    AuthenticationError,
    DecryptionError,
    NotConnectedError,
    PersistenceError,
    SyncError,
)
from models import ImportResult, SyncState, SyncSummary
from parsers import build_health_sample, parse_activity
from reconciler import Reconciler
from vault import CredentialVault

logger = logging.getLogger(__name__)

RETRYABLE_ERRORS = (
    GarminConnectTooManyRequestsError,
    GarminConnectConnectionError,
    requests.exceptions.ConnectionError,
    requests.exceptions.Timeout,
)

# Daily health streams -> garmin_client fetch function name
HEALTH_STREAMS = {
    "sleep": "fetch_sleep",
    "steps": "fetch_steps",
    "heart_rate": "fetch_heart_rate",
}


def call_with_retries(func, *args, max_retries=SYNC_MAX_RETRIES, backoff=SYNC_RETRY_BACKOFF, **kwargs):
    """Call a Garmin function, retrying rate limits and connection drops."""
    for attempt in range(max_retries + 1):
        try:
            return func(*args, **kwargs)
        except RETRYABLE_ERRORS as e:
            if attempt == max_retries:
                raise
            wait = (attempt + 1) * backoff
            logger.warning("Transient Garmin error (%s). Waiting %.0fs before retry...", e, wait)
            time.sleep(wait)


class SyncCycle:
    """A single sync run for one owner. Not reusable."""

    def __init__(self, owner_id: str, vault: CredentialVault, reconciler: Reconciler,
                 client=garmin_client, day: date | None = None, activity_offset: int = 0,
                 activity_limit: int = ACTIVITY_PAGE_SIZE, max_retries: int = SYNC_MAX_RETRIES,
                 retry_backoff: float = SYNC_RETRY_BACKOFF):
        self.owner_id = owner_id
        self.vault = vault
        self.reconciler = reconciler
        self.client = client
        self.day = day or date.today()
        self.activity_offset = activity_offset
        self.activity_limit = activity_limit
        self.max_retries = max_retries
        self.retry_backoff = retry_backoff
        self.state = SyncState.IDLE
        self.summary = SyncSummary(owner_id=owner_id, date=self.day)

    def _enter(self, state: SyncState):
        self.state = state
        self.summary.state = state
        logger.debug("Sync %s: %s", self.owner_id, state.value)

    def _record_error(self, stream: str, error):
        logger.warning("Sync %s: %s failed: %s", self.owner_id, stream, error)
        self.summary.errors.append({"stream": stream, "error": str(error)})

    def _call(self, func, *args):
        return call_with_retries(
            func, *args, max_retries=self.max_retries, backoff=self.retry_backoff,
        )

    def run(self) -> SyncSummary:
        self._enter(SyncState.AUTHENTICATING)
        tokens, session = self._authenticate()

        self._enter(SyncState.FETCHING)
        payloads = self._fetch_health(session)
        raw_activities = self._fetch_activities(session)

        self._enter(SyncState.NORMALIZING)
        sample, fields = self._normalize_health(payloads)
        activities = self._normalize_activities(raw_activities)

        self._enter(SyncState.RECONCILING)
        self._reconcile(sample, fields, activities)

        self._enter(SyncState.PERSISTING_CREDENTIALS)
        self._persist_credentials(session, tokens)

        self._enter(SyncState.DONE)
        logger.info(
            "Sync %s for %s: %d activities, %d health samples, %d errors",
            self.owner_id, self.day, self.summary.activities,
            self.summary.health_samples, len(self.summary.errors),
        )
        return self.summary

    def _authenticate(self):
        """Load tokens and resume the Garmin session. Any failure ends the cycle."""
        try:
            tokens = self.vault.load(self.owner_id)
            if tokens is None:
                raise NotConnectedError("Garmin not connected.")
            session = self._call(self.client.resume, tokens)
            self._call(self.client.refresh_tokens, session)
        except NotConnectedError:
            self._enter(SyncState.FAILED)
            raise
        except DecryptionError as e:
            self._enter(SyncState.FAILED)
            raise DecryptionError("Stored Garmin credentials are unreadable; reconnect required.") from e
        except AuthenticationError as e:
            self._enter(SyncState.FAILED)
            raise AuthenticationError("Invalid Garmin credentials; reconnect required.") from e
        except Exception:
            self._enter(SyncState.FAILED)
            raise
        return tokens, session

    def _fetch_health(self, session) -> dict:
        """Fetch sleep, steps and heart rate concurrently; failed streams are left out.

        The fetches share the session and its OAuth2 token, which
        _authenticate has already refreshed if it was expired.
        """
        payloads = {}
        with ThreadPoolExecutor(max_workers=len(HEALTH_STREAMS)) as pool:
            futures = {
                stream: pool.submit(self._call, getattr(self.client, fn_name), session, self.day)
                for stream, fn_name in HEALTH_STREAMS.items()
            }
            for stream, future in futures.items():
                try:
                    payloads[stream] = future.result()
                except Exception as e:
                    self._record_error(stream, e)
        return payloads

    def _fetch_activities(self, session) -> list:
        try:
            return self._call(
                self.client.fetch_activities, session, self.activity_offset, self.activity_limit,
            ) or []
        except Exception as e:
            self._record_error("activities", e)
            return []

    def _normalize_health(self, payloads: dict):
        if not payloads:
            return None, []
        try:
            return build_health_sample(self.owner_id, self.day, payloads)
        except Exception as e:
            self._record_error("health", e)
            return None, []

    def _normalize_activities(self, raw_activities: list) -> list:
        activities = []
        for raw in raw_activities:
            activity = parse_activity(self.owner_id, raw)
            if activity.external_activity_id is None:
                self._record_error("activities", "activity without activityId skipped")
                continue
            activities.append(activity)
        return activities

    def _reconcile(self, sample, fields, activities):
        if sample is not None and fields:
            try:
                self.reconciler.upsert_health_sample(sample, fields)
                self.summary.health_samples += 1
            except PersistenceError as e:
                self._record_error("health", e)

        for activity in activities:
            try:
                self.reconciler.upsert_activity(activity)
                self.summary.activities += 1
            except PersistenceError as e:
                self._record_error(f"activity {activity.external_activity_id}", e)

    def _persist_credentials(self, session, tokens):
        """Write back rotated tokens and the sync time."""
        try:
            current = self.client.current_tokens(session)
            if current != tokens:
                self.vault.store_tokens(self.owner_id, current)
                self.summary.tokens_rotated = True
                logger.info("Sync %s: Garmin tokens rotated", self.owner_id)
            self.vault.mark_synced(self.owner_id)
        except PersistenceError as e:
            self._record_error("credentials", e)


class SyncOrchestrator:
    """Entry points for connecting, syncing and importing for an owner."""

    def __init__(self, store, key: str | bytes | None = None, client=garmin_client,
                 max_retries: int = SYNC_MAX_RETRIES, retry_backoff: float = SYNC_RETRY_BACKOFF):
        self.vault = CredentialVault(store, key)
        self.reconciler = Reconciler(store)
        self.client = client
        self.max_retries = max_retries
        self.retry_backoff = retry_backoff

    def connect(self, owner_id: str, username: str, password: str) -> dict:
        """Log in to Garmin and store the resulting tokens."""
        _, tokens = self.client.login(username, password)
        self.vault.store_tokens(owner_id, tokens)
        return self.vault.status(owner_id)

    def disconnect(self, owner_id: str) -> None:
        self.vault.delete(owner_id)

    def status(self, owner_id: str) -> dict:
        return self.vault.status(owner_id)

    def sync(self, owner_id: str, day: date | None = None, activity_offset: int = 0,
             activity_limit: int = ACTIVITY_PAGE_SIZE) -> SyncSummary:
        cycle = SyncCycle(
            owner_id, self.vault, self.reconciler, client=self.client, day=day,
            activity_offset=activity_offset, activity_limit=activity_limit,
            max_retries=self.max_retries, retry_backoff=self.retry_backoff,
        )
        return cycle.run()

    def import_csv(self, owner_id: str, path) -> ImportResult:
        return import_file(self.reconciler, owner_id, path)


def _print_summary(summary: SyncSummary):
    print(f"\n=== Sync {summary.status.upper()} ({summary.date.isoformat()}) ===")
    print(f"Activities: {summary.activities}")
    print(f"Health samples: {summary.health_samples}")
    print(f"Tokens rotated: {'yes' if summary.tokens_rotated else 'no'}")
    for err in summary.errors:
        print(f"  {err['stream']}: {err['error']}")


def main(argv=None):
    from db import PostgresStore, get_connection

    parser = argparse.ArgumentParser(description="Garmin sync for the wellness dashboard")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("connect", help="Log in to Garmin and store encrypted tokens")
    p.add_argument("owner_id")
    p.add_argument("--email", default=GARMIN_EMAIL)

    p = sub.add_parser("sync", help="Run one sync cycle")
    p.add_argument("owner_id")
    p.add_argument("--date", type=date.fromisoformat, default=None)
    p.add_argument("--offset", type=int, default=0)
    p.add_argument("--limit", type=int, default=ACTIVITY_PAGE_SIZE)

    p = sub.add_parser("import", help="Import a Garmin activities CSV export")
    p.add_argument("owner_id")
    p.add_argument("csv_path")

    for name in ("status", "disconnect"):
        p = sub.add_parser(name)
        p.add_argument("owner_id")

    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(message)s")

    try:
        key = get_encryption_key()
        with get_connection() as conn:
            orchestrator = SyncOrchestrator(PostgresStore(conn), key)

            if args.command == "connect":
                password = GARMIN_PASSWORD or getpass.getpass("Garmin password: ")
                status = orchestrator.connect(args.owner_id, args.email, password)
                print(f"Connected. Since: {status['connected_at']}")
            elif args.command == "sync":
                summary = orchestrator.sync(
                    args.owner_id, day=args.date,
                    activity_offset=args.offset, activity_limit=args.limit,
                )
                _print_summary(summary)
            elif args.command == "import":
                result = orchestrator.import_csv(args.owner_id, args.csv_path)
                print(f"Imported: {result.imported}")
                print(f"Skipped (already present): {result.skipped}")
                print(f"Rows: {result.total}")
                for err in result.errors:
                    print(f"  Row {err['row']}: {err['error']}")
            elif args.command == "status":
                status = orchestrator.status(args.owner_id)
                if status["connected"]:
                    print(f"Connected since {status['connected_at']}, last sync {status['last_sync_at']}")
                else:
                    print("Not connected.")
            elif args.command == "disconnect":
                orchestrator.disconnect(args.owner_id)
                print("Disconnected.")
    except SyncError as e:
        print(f"Error: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
