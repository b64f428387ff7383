"""Test token encryption and the credential vault."""

import pytest

from config import get_encryption_key
from errors import ConfigurationError, DecryptionError
from models import TokenPair
from vault import CredentialVault, decrypt_token, encrypt_token

KEY = b"0123456789abcdef0123456789abcdef"

OAUTH1 = {"oauth_token": "tok1", "oauth_token_secret": "sec1", "mfa_token": None, "domain": None}
OAUTH2 = {"access_token": "acc", "refresh_token": "ref", "expires_at": 1700000000, "scope": "x"}


def _flip(blob: str, index: int) -> str:
    """Flip one byte of the hex-decoded blob at a position within the given section."""
    nonce, tag, cipher = blob.split(":")
    raw = bytearray.fromhex(cipher)
    raw[index] ^= 0x01
    return f"{nonce}:{tag}:{raw.hex()}"


def test_encrypt_decrypt_round_trip():
    for value in (OAUTH1, OAUTH2, {"nested": {"a": [1, 2, 3]}}, "plain-string"):
        assert decrypt_token(encrypt_token(value, KEY), KEY) == value


def test_blob_format_is_nonce_tag_cipher_hex():
    blob = encrypt_token(OAUTH1, KEY)
    nonce, tag, cipher = blob.split(":")
    assert len(bytes.fromhex(nonce)) == 12
    assert len(bytes.fromhex(tag)) == 16
    assert len(bytes.fromhex(cipher)) > 0


def test_fresh_nonce_per_call():
    assert encrypt_token(OAUTH1, KEY) != encrypt_token(OAUTH1, KEY)


def test_flipping_any_ciphertext_byte_fails():
    blob = encrypt_token(OAUTH1, KEY)
    length = len(bytes.fromhex(blob.split(":")[2]))
    for i in range(length):
        with pytest.raises(DecryptionError):
            decrypt_token(_flip(blob, i), KEY)


def test_tampered_tag_or_nonce_fails():
    nonce, tag, cipher = encrypt_token(OAUTH1, KEY).split(":")
    bad_tag = bytearray.fromhex(tag)
    bad_tag[0] ^= 0xFF
    bad_nonce = bytearray.fromhex(nonce)
    bad_nonce[-1] ^= 0xFF
    with pytest.raises(DecryptionError):
        decrypt_token(f"{nonce}:{bad_tag.hex()}:{cipher}", KEY)
    with pytest.raises(DecryptionError):
        decrypt_token(f"{bad_nonce.hex()}:{tag}:{cipher}", KEY)


def test_uppercased_hex_character_fails():
    blob = encrypt_token(OAUTH1, KEY)
    # lowercase hex letters are near-certain in a blob this long
    index = next(i for i, ch in enumerate(blob) if ch in "abcdef")
    tampered = blob[:index] + blob[index].upper() + blob[index + 1:]
    with pytest.raises(DecryptionError):
        decrypt_token(tampered, KEY)


def test_flipping_any_stored_character_fails():
    blob = encrypt_token("x", KEY)
    for i, ch in enumerate(blob):
        if ch == ":":
            continue
        replacement = "0" if ch != "0" else "1"
        with pytest.raises(DecryptionError):
            decrypt_token(blob[:i] + replacement + blob[i + 1:], KEY)


def test_wrong_key_fails():
    blob = encrypt_token(OAUTH1, KEY)
    with pytest.raises(DecryptionError):
        decrypt_token(blob, b"f" * 32)


def test_malformed_blob_fails():
    for blob in ("", "abc", "zz:zz:zz", "00:00", "000:00:00", " 00:00:00", None):
        with pytest.raises(DecryptionError):
            decrypt_token(blob, KEY)


def test_short_key_is_fatal_at_construction(store):
    with pytest.raises(ConfigurationError):
        CredentialVault(store, "too-short")
    with pytest.raises(ConfigurationError):
        CredentialVault(store, "")


def test_get_encryption_key_truncates_to_32_bytes():
    assert get_encryption_key("x" * 40) == b"x" * 32


def test_store_and_load_round_trip(vault):
    vault.store_tokens("user-1", TokenPair(OAUTH1, OAUTH2))
    loaded = vault.load("user-1")
    assert loaded == TokenPair(OAUTH1, OAUTH2)


def test_stored_row_has_no_cleartext_tokens(vault, store):
    vault.store_tokens("user-1", TokenPair(OAUTH1, OAUTH2))
    row = store.tables["garmin_credentials"][0]
    assert "tok1" not in row["oauth1_token"]
    assert "access_token" not in row["oauth2_token"]
    assert row["oauth1_token"].count(":") == 2


def test_store_updates_existing_credential(vault, store):
    vault.store_tokens("user-1", TokenPair(OAUTH1, OAUTH2))
    rotated = TokenPair(OAUTH1, {**OAUTH2, "access_token": "acc2"})
    vault.store_tokens("user-1", rotated)
    assert len(store.tables["garmin_credentials"]) == 1
    assert vault.load("user-1").oauth2["access_token"] == "acc2"


def test_load_unknown_owner_returns_none(vault):
    assert vault.load("nobody") is None


def test_load_tampered_row_raises(vault, store):
    vault.store_tokens("user-1", TokenPair(OAUTH1, OAUTH2))
    row = store.tables["garmin_credentials"][0]
    row["oauth2_token"] = _flip(row["oauth2_token"], 0)
    with pytest.raises(DecryptionError):
        vault.load("user-1")


def test_load_with_other_key_raises(vault, store):
    vault.store_tokens("user-1", TokenPair(OAUTH1, OAUTH2))
    other = CredentialVault(store, "z" * 32)
    with pytest.raises(DecryptionError):
        other.load("user-1")


def test_status_and_delete(vault):
    assert vault.status("user-1")["connected"] is False
    vault.store_tokens("user-1", TokenPair(OAUTH1, OAUTH2))
    status = vault.status("user-1")
    assert status["connected"] is True
    assert status["last_sync_at"] is None
    assert status["connected_at"] is not None

    vault.mark_synced("user-1")
    assert vault.status("user-1")["last_sync_at"] is not None

    vault.delete("user-1")
    assert vault.status("user-1")["connected"] is False
    assert vault.load("user-1") is None


def test_token_pair_repr_hides_values():
    assert "tok1" not in repr(TokenPair(OAUTH1, OAUTH2))
