from __future__ import annotations


class PersistenceError(RuntimeError):
    """Base error for the persistence layer."""


class QuotaExceeded(PersistenceError):
    """Durable backend usage is above the configured threshold."""


class SerializationError(PersistenceError):
    """Value cannot be wrapped into a JSON envelope (cycles, NaN, unsupported types)."""


class DeserializationError(PersistenceError):
    """Stored record is corrupt or cannot be decoded."""


class WriteVerificationError(PersistenceError):
    """Read-back after a write returned nothing."""


class ImportValidationError(PersistenceError):
    """Export bundle does not have the expected shape."""


__all__ = [
    "PersistenceError",
    "QuotaExceeded",
    "SerializationError",
    "DeserializationError",
    "WriteVerificationError",
    "ImportValidationError",
]
