"""Encrypted storage of the Garmin token pair.

Each token object is JSON-serialized and sealed with AES-256-GCM under a
fresh random nonce. Blobs are stored as ``nonceHex:authTagHex:cipherHex``.
"""

import json
import logging
import os
import re
from datetime import datetime, timezone

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from config import get_encryption_key
from db import CREDENTIALS_TABLE
from errors import DecryptionError
from models import TokenPair

logger = logging.getLogger(__name__)

NONCE_BYTES = 12
TAG_BYTES = 16
BLOB_RE = re.compile(r"([0-9a-f]+):([0-9a-f]+):([0-9a-f]+)")


def encrypt_token(value, key: bytes) -> str:
    """Encrypt one JSON-serializable token object."""
    nonce = os.urandom(NONCE_BYTES)
    sealed = AESGCM(key).encrypt(nonce, json.dumps(value).encode("utf-8"), None)
    # AESGCM appends the tag to the ciphertext
    ciphertext, tag = sealed[:-TAG_BYTES], sealed[-TAG_BYTES:]
    return f"{nonce.hex()}:{tag.hex()}:{ciphertext.hex()}"


def decrypt_token(blob: str, key: bytes):
    """Decrypt a blob produced by encrypt_token. Raises DecryptionError."""
    # encrypt_token only writes lowercase hex; any other spelling is tampering
    match = BLOB_RE.fullmatch(blob) if isinstance(blob, str) else None
    if match is None:
        raise DecryptionError("Malformed credential blob.")
    try:
        nonce, tag, ciphertext = (bytes.fromhex(part) for part in match.groups())
    except ValueError as e:
        raise DecryptionError("Malformed credential blob.") from e

    if len(nonce) != NONCE_BYTES or len(tag) != TAG_BYTES:
        raise DecryptionError("Malformed credential blob.")

    try:
        plaintext = AESGCM(key).decrypt(nonce, ciphertext + tag, None)
    except InvalidTag as e:
        raise DecryptionError("Credential blob failed authentication.") from e

    try:
        return json.loads(plaintext.decode("utf-8"))
    except ValueError as e:
        raise DecryptionError("Credential blob is not valid JSON.") from e


class CredentialVault:
    """Per-owner encrypted token pair on top of a keyed record store."""

    def __init__(self, store, key: str | bytes | None = None):
        # Raises ConfigurationError on a missing or short key
        self._key = get_encryption_key(key)
        self.records = store

    def _filter(self, owner_id: str) -> dict:
        return {"owner_id": owner_id}

    def store_tokens(self, owner_id: str, tokens: TokenPair) -> None:
        """Encrypt and save the token pair, creating the credential on first use."""
        now = datetime.now(timezone.utc)
        row = {
            "oauth1_token": encrypt_token(tokens.oauth1, self._key),
            "oauth2_token": encrypt_token(tokens.oauth2, self._key),
        }
        if self.records.find_one(CREDENTIALS_TABLE, self._filter(owner_id)):
            self.records.update(CREDENTIALS_TABLE, self._filter(owner_id), row)
            logger.info("Updated Garmin credentials for owner %s", owner_id)
        else:
            self.records.insert(
                CREDENTIALS_TABLE,
                {"owner_id": owner_id, **row, "last_sync_at": None, "created_at": now},
            )
            logger.info("Stored new Garmin credentials for owner %s", owner_id)

    def load(self, owner_id: str) -> TokenPair | None:
        """Return the decrypted token pair, or None if the owner never connected."""
        row = self.records.find_one(CREDENTIALS_TABLE, self._filter(owner_id))
        if not row:
            return None
        if not row.get("oauth1_token") or not row.get("oauth2_token"):
            raise DecryptionError("Stored Garmin tokens are incomplete.")
        return TokenPair(
            oauth1=decrypt_token(row["oauth1_token"], self._key),
            oauth2=decrypt_token(row["oauth2_token"], self._key),
        )

    def mark_synced(self, owner_id: str, when: datetime | None = None) -> None:
        self.records.update(
            CREDENTIALS_TABLE,
            self._filter(owner_id),
            {"last_sync_at": when or datetime.now(timezone.utc)},
        )

    def status(self, owner_id: str) -> dict:
        """Connection status without decrypting anything."""
        row = self.records.find_one(CREDENTIALS_TABLE, self._filter(owner_id))
        if not row:
            return {"connected": False, "last_sync_at": None, "connected_at": None}
        return {
            "connected": True,
            "last_sync_at": row.get("last_sync_at"),
            "connected_at": row.get("created_at"),
        }

    def delete(self, owner_id: str) -> None:
        self.records.delete(CREDENTIALS_TABLE, self._filter(owner_id))
        logger.info("Removed Garmin credentials for owner %s", owner_id)
