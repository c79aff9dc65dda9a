"""
Durable, recoverable key-value persistence.

Values are wrapped in JSON envelopes, written to a pluggable durable backend
(memory, JSON file, or Fernet-encrypted S3), with retry/backoff on save,
backup snapshots, and recovery on load.
"""

from .backends import DurableBackend, JsonFileBackend, MemoryBackend
from .codec import MISSING
from .errors import (
    DeserializationError,
    ImportValidationError,
    PersistenceError,
    QuotaExceeded,
    SerializationError,
    WriteVerificationError,
)
from .manager import DEFAULT_SAVE_POLICY, SCHEMA_VERSION, PersistenceManager, SavePolicy
from .models import BackupEntry, Envelope, ExportBundle, Metadata

__all__ = [
    "DurableBackend",
    "JsonFileBackend",
    "MemoryBackend",
    "MISSING",
    "PersistenceError",
    "QuotaExceeded",
    "SerializationError",
    "DeserializationError",
    "WriteVerificationError",
    "ImportValidationError",
    "PersistenceManager",
    "SavePolicy",
    "DEFAULT_SAVE_POLICY",
    "SCHEMA_VERSION",
    "BackupEntry",
    "Envelope",
    "ExportBundle",
    "Metadata",
]
