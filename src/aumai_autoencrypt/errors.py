"""Exception hierarchy for aumai-autoencrypt."""

from __future__ import annotations

__all__ = [
    "AutoEncryptError",
    "ConfigurationError",
    "ConflictError",
    "ResolutionError",
    "ProviderError",
    "StorageError",
    "InvalidQueryError",
    "InvalidUpdateError",
    "DuplicateKeyError",
]


class AutoEncryptError(Exception):
    """Base class for every error raised by this package."""


class ConfigurationError(AutoEncryptError):
    """An encryption configuration is invalid or incomplete."""


class ConflictError(ConfigurationError):
    """Two schema paths are in a prefix relationship (``a`` and ``a.b``)."""

    def __init__(self, existing: str, added: str) -> None:
        super().__init__(f"You can't encrypt both {existing} and {added}")
        self.existing = existing
        self.added = added


class ResolutionError(AutoEncryptError):
    """A dynamic resolver raised while computing encryption options."""

    def __init__(self, operation: str, path: str | None = None) -> None:
        where = f" for {path!r}" if path else ""
        super().__init__(f"Encryption resolver failed during {operation!r}{where}")
        self.operation = operation
        self.path = path


class ProviderError(AutoEncryptError):
    """The encryption provider failed to encrypt, decrypt or create a key."""


class StorageError(AutoEncryptError):
    """Base class for host storage failures."""


class InvalidQueryError(StorageError):
    pass


class InvalidUpdateError(StorageError):
    pass


class DuplicateKeyError(StorageError):
    pass
