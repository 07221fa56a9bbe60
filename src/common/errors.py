from __future__ import annotations


class WingmanError(RuntimeError):
    """Base error for the session and storage layer."""


class ConfigError(WingmanError):
    """Startup configuration is missing or inconsistent. Fatal."""


class LockedError(WingmanError):
    """An operation needed the encryption key while the system was locked."""


class DecryptionError(WingmanError):
    """Payload could not be decrypted (wrong password, corrupted or malformed data).

    The message is intentionally generic so callers cannot tell the cases apart.
    """

    GENERIC_MESSAGE = "Decryption failed. Wrong password or corrupted data."

    def __init__(self, message: str = GENERIC_MESSAGE) -> None:
        super().__init__(message)


class StorageError(WingmanError):
    """Filesystem failure while reading or writing persisted data."""


class InvalidStateError(WingmanError):
    """Flow-state lookup for an identity with no active (or an expired) state."""
