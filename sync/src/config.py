"""Configuration loaded from environment variables."""

import os
from pathlib import Path

from dotenv import load_dotenv

from errors import ConfigurationError

# Load .env from project root
load_dotenv(Path(__file__).resolve().parents[2] / ".env")

DATABASE_URL = os.environ.get("DATABASE_URL", "")
GARMIN_EMAIL = os.environ.get("GARMIN_EMAIL", "")
GARMIN_PASSWORD = os.environ.get("GARMIN_PASSWORD", "")

# 32-byte AES-256-GCM key for the credential vault
ENCRYPTION_KEY = os.environ.get("ENCRYPTION_KEY", "")
ENCRYPTION_KEY_BYTES = 32

# Retry policy for transient Garmin errors (owned by the sync pipeline)
SYNC_MAX_RETRIES = int(os.environ.get("SYNC_MAX_RETRIES", "3"))
SYNC_RETRY_BACKOFF = float(os.environ.get("SYNC_RETRY_BACKOFF", "30"))

ACTIVITY_PAGE_SIZE = int(os.environ.get("ACTIVITY_PAGE_SIZE", "20"))

# Place names recognised in activity titles during CSV import
KNOWN_LOCATIONS = [
    name.strip()
    for name in os.environ.get(
        "KNOWN_LOCATIONS", "Sydney,Melbourne,Brisbane,Perth,Adelaide"
    ).split(",")
    if name.strip()
]


def get_encryption_key(raw: str | bytes | None = None) -> bytes:
    """Return the vault key as 32 bytes. Raises ConfigurationError if unusable."""
    if raw is None:
        raw = ENCRYPTION_KEY
    key = raw.encode("utf-8") if isinstance(raw, str) else bytes(raw)
    if len(key) < ENCRYPTION_KEY_BYTES:
        raise ConfigurationError(
            f"ENCRYPTION_KEY must be at least {ENCRYPTION_KEY_BYTES} bytes."
        )
    return key[:ENCRYPTION_KEY_BYTES]
