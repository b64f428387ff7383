"""Exceptions raised by the sync engine.

Field-level parse failures have no exception type: parsers degrade the
field to None instead.
"""


class SyncError(Exception):
    """Base class for sync engine errors."""


class ConfigurationError(SyncError):
    """Missing or invalid process configuration (e.g. ENCRYPTION_KEY)."""


class AuthenticationError(SyncError):
    """Garmin rejected the credentials or the stored session."""


class NotConnectedError(SyncError):
    """No stored Garmin credentials for this owner."""


class DecryptionError(SyncError):
    """A vault blob failed authentication or could not be decoded."""


class PersistenceError(SyncError):
    """The record store failed a read or write."""
