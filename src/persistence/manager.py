from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from pydantic import ValidationError

from common.backoff import RetryPolicy
from common.clock import now_ms
from common.config import DEFAULT_CAPACITY_BYTES, DEFAULT_PREFIX

from .backends import DurableBackend
from .codec import MISSING, deserialize, is_serializable, serialize
from .errors import (
    DeserializationError,
    ImportValidationError,
    QuotaExceeded,
    SerializationError,
    WriteVerificationError,
)
from .models import BackupEntry, ExportBundle, Metadata


logger = logging.getLogger(__name__)

SCHEMA_VERSION = "1.0.0"

Confirmer = Callable[[str], bool]
Sleep = Callable[[float], Awaitable[Any]]


@dataclass(frozen=True)
class SavePolicy:
    """
    Per-call write policy for `PersistenceManager.save`.

    - retries: attempts before giving up (None uses the manager's RetryPolicy).
    - backup: snapshot the previous record before writing and keep the verified
      record as the key's backup afterwards.
    - validate: check quota before writing and read the record back after.
    """

    retries: Optional[int] = None
    backup: bool = True
    validate: bool = True


DEFAULT_SAVE_POLICY = SavePolicy()


class PersistenceManager:
    """
    Validated, recoverable key-value storage over a `DurableBackend`.

    Notes
    - Values are stored as JSON envelopes under `prefix + key`.
    - `save` retries transient failures with capped exponential backoff and
      raises only once attempts are exhausted; serialization failures raise
      immediately.
    - `load` never raises. Missing or corrupt records are recovered from the
      backup snapshot when possible, else the caller's default is returned.
    - Metadata and backup records are read-modify-write; those cycles are
      serialized with one asyncio lock.
    """

    def __init__(
        self,
        backend: DurableBackend,
        *,
        prefix: str = DEFAULT_PREFIX,
        schema_version: str = SCHEMA_VERSION,
        capacity_bytes: int = DEFAULT_CAPACITY_BYTES,
        quota_threshold: float = 0.9,
        retry: Optional[RetryPolicy] = None,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], int] = now_ms,
        confirmer: Optional[Confirmer] = None,
    ) -> None:
        if not prefix:
            raise ValueError("prefix is required")
        if capacity_bytes <= 0:
            raise ValueError("capacity_bytes must be > 0")
        if not 0 < quota_threshold <= 1:
            raise ValueError("quota_threshold must be in (0, 1]")
        self._backend = backend
        self._prefix = prefix
        self._schema_version = schema_version
        self._capacity = capacity_bytes
        self._threshold = quota_threshold
        self._retry = retry or RetryPolicy()
        self._sleep = sleep
        self._clock = clock
        self._confirmer = confirmer
        self._lock = asyncio.Lock()
        self.backup_key = f"{prefix}backup"
        self.metadata_key = f"{prefix}metadata"

    @property
    def backend(self) -> DurableBackend:
        return self._backend

    @property
    def prefix(self) -> str:
        return self._prefix

    @property
    def schema_version(self) -> str:
        return self._schema_version

    def full_key(self, key: str) -> str:
        if not key or not isinstance(key, str):
            raise ValueError("Invalid key: must be a non-empty string")
        return key if key.startswith(self._prefix) else f"{self._prefix}{key}"

    async def _io(self, fn: Callable[..., Any], *args: Any) -> Any:
        return await asyncio.to_thread(fn, *args)

    def _confirm(self, message: str) -> bool:
        # No confirmer configured: non-interactive callers proceed
        if self._confirmer is None:
            return True
        return bool(self._confirmer(message))

    # --------------- Metadata ---------------
    def _read_metadata_sync(self) -> Optional[Metadata]:
        raw = self._backend.get(self.metadata_key)
        if not raw:
            return None
        try:
            return Metadata.model_validate_json(raw)
        except ValidationError as ex:
            logger.error("Ignoring corrupt metadata record: %s", ex)
            return None

    def _write_metadata_sync(self, meta: Metadata) -> None:
        self._backend.set(self.metadata_key, json.dumps(meta.to_json_dict(), separators=(",", ":")))

    def _ensure_metadata_sync(self) -> Metadata:
        meta = self._read_metadata_sync()
        if meta is None:
            meta = Metadata(schema_version=self._schema_version, created_at=self._clock())
            self._write_metadata_sync(meta)
        return meta

    def _track_sync(self, full: str) -> None:
        meta = self._ensure_metadata_sync()
        if meta.track(full):
            self._write_metadata_sync(meta)

    def _untrack_sync(self, full: str) -> None:
        meta = self._read_metadata_sync()
        if meta is not None and meta.untrack(full):
            self._write_metadata_sync(meta)

    async def initialize(self) -> Metadata:
        """Create the metadata record on first run; return the current one."""
        async with self._lock:
            return await self._io(self._ensure_metadata_sync)

    async def get_metadata(self) -> Optional[Metadata]:
        return await self._io(self._read_metadata_sync)

    # --------------- Backup snapshot ---------------
    def _read_backup_sync(self) -> Dict[str, BackupEntry]:
        raw = self._backend.get(self.backup_key)
        if not raw:
            return {}
        try:
            parsed = json.loads(raw)
        except ValueError as ex:
            logger.error("Ignoring corrupt backup record: %s", ex)
            return {}
        if not isinstance(parsed, dict):
            return {}
        out: Dict[str, BackupEntry] = {}
        for key, entry in parsed.items():
            try:
                out[key] = BackupEntry.model_validate(entry)
            except ValidationError:
                logger.warning("Dropping malformed backup entry for %s", key)
        return out

    def _write_backup_sync(self, backup: Mapping[str, BackupEntry]) -> None:
        payload = {k: v.to_json_dict() for k, v in backup.items()}
        self._backend.set(self.backup_key, json.dumps(payload, separators=(",", ":")))

    def _stamp_backup_sync(self) -> None:
        meta = self._ensure_metadata_sync()
        meta.last_backup_at = self._clock()
        self._write_metadata_sync(meta)

    def _put_backup_entry_sync(self, full: str, data: str) -> None:
        backup = self._read_backup_sync()
        backup[full] = BackupEntry(data=data, timestamp=self._clock())
        self._write_backup_sync(backup)
        self._stamp_backup_sync()

    def _backup_key_sync(self, full: str) -> bool:
        data = self._backend.get(full)
        if not data:
            return False
        self._put_backup_entry_sync(full, data)
        return True

    def _drop_backup_entry_sync(self, full: str) -> None:
        backup = self._read_backup_sync()
        if backup.pop(full, None) is not None:
            self._write_backup_sync(backup)

    def _full_backup_sync(self) -> int:
        meta = self._ensure_metadata_sync()
        backup: Dict[str, BackupEntry] = {}
        for key in meta.tracked_keys:
            try:
                data = self._backend.get(key)
            except Exception as ex:
                logger.warning("Failed to back up key %s: %s", key, ex)
                continue
            if data:
                backup[key] = BackupEntry(data=data, timestamp=self._clock())
        self._write_backup_sync(backup)
        meta.last_backup_at = self._clock()
        self._write_metadata_sync(meta)
        return len(backup)

    async def create_backup(self, key: str) -> bool:
        """Snapshot the current durable record of `key`; False when there is none or on failure."""
        try:
            full = self.full_key(key)
            async with self._lock:
                return await self._io(self._backup_key_sync, full)
        except Exception as ex:
            logger.error("Failed to create backup for key %s: %s", key, ex)
            return False

    async def create_full_backup(self) -> bool:
        """Replace the backup snapshot with every tracked key's current record."""
        try:
            async with self._lock:
                count = await self._io(self._full_backup_sync)
        except Exception as ex:
            logger.error("Failed to create full backup: %s", ex)
            return False
        logger.info("Full backup captured %d key(s)", count)
        return True

    async def get_backup_data(self) -> Dict[str, BackupEntry]:
        try:
            return await self._io(self._read_backup_sync)
        except Exception as ex:
            logger.error("Failed to read backup data: %s", ex)
            return {}

    def _recover_sync(self, full: str) -> Any:
        entry = self._read_backup_sync().get(full)
        if entry is None:
            return MISSING
        value = deserialize(entry.data, schema_version=self._schema_version)
        self._backend.set(full, entry.data)
        self._track_sync(full)
        return value

    async def _recover(self, full: str) -> Any:
        try:
            async with self._lock:
                return await self._io(self._recover_sync, full)
        except Exception as ex:
            logger.error("Failed to recover %s from backup: %s", full, ex)
            return MISSING

    async def recover_from_backup(self, key: str) -> Any:
        """Restore `key` from the backup snapshot into its primary slot.

        Returns the recovered value, or None when no usable backup exists.
        """
        try:
            full = self.full_key(key)
        except ValueError as ex:
            logger.error("Cannot recover invalid key %r: %s", key, ex)
            return None
        value = await self._recover(full)
        return None if value is MISSING else value

    # --------------- Quota ---------------
    def _usage_sync(self) -> int:
        total = 0
        for key in self._backend.keys():
            val = self._backend.get(key)
            if val:
                total += len(val.encode("utf-8"))
        return total

    async def storage_usage(self) -> int:
        """Sum of the byte length of every record in the backend."""
        return await self._io(self._usage_sync)

    async def check_quota(self) -> bool:
        """False once usage exceeds `quota_threshold` of the assumed capacity."""
        try:
            usage = await self.storage_usage()
        except Exception as ex:
            # Backend cannot be enumerated; let the write decide
            logger.error("Failed to check storage quota: %s", ex)
            return True
        pct = usage / self._capacity * 100
        if usage > self._capacity * self._threshold:
            logger.warning("Storage usage is at %.1f%%", pct)
            return False
        return True

    # --------------- Core operations ---------------
    async def save(self, key: str, value: Any, policy: Optional[SavePolicy] = None) -> bool:
        """Envelope-encode and write `value` under `key`.

        Raises:
        - ValueError for an empty or non-string key, or `retries` < 1.
        - SerializationError immediately for values JSON cannot represent.
        - The last QuotaExceeded / backend / verification error after all
          attempts failed.
        """
        policy = policy or DEFAULT_SAVE_POLICY
        full = self.full_key(key)
        retry = self._retry if policy.retries is None else replace(self._retry, attempts=policy.retries)

        attempt = 0
        while True:
            try:
                if policy.validate and not await self.check_quota():
                    raise QuotaExceeded("Storage quota exceeded")

                if policy.backup and attempt == 0:
                    await self.create_backup(full)

                payload = serialize(value, schema_version=self._schema_version, timestamp=self._clock())
                await self._io(self._backend.set, full, payload)

                if policy.validate:
                    saved = await self._io(self._backend.get, full)
                    if not saved:
                        raise WriteVerificationError(f"Data was not saved successfully for {full}")

                async with self._lock:
                    await self._io(self._track_sync, full)
                    if policy.backup:
                        try:
                            await self._io(self._put_backup_entry_sync, full, payload)
                        except Exception as ex:
                            logger.warning("Failed to refresh backup for %s: %s", full, ex)
                return True
            except SerializationError as ex:
                logger.error("Refusing to save %s: %s", full, ex)
                raise
            except Exception as ex:
                logger.warning(
                    "Save attempt %d/%d for %s failed: %s", attempt + 1, retry.attempts, full, ex
                )
                if not retry.should_retry(attempt):
                    logger.error("Failed to save %s after %d attempt(s): %s", full, retry.attempts, ex)
                    raise
                await self._sleep(retry.delay_for(attempt))
            attempt += 1

    def save_sync(self, key: str, value: Any) -> bool:
        """Single synchronous write for process teardown; no retry, no backup."""
        try:
            full = self.full_key(key)
            payload = serialize(value, schema_version=self._schema_version, timestamp=self._clock())
            self._backend.set(full, payload)
            self._track_sync(full)
        except Exception as ex:
            logger.error("Synchronous save of %s failed: %s", key, ex)
            return False
        return True

    async def load(
        self,
        key: str,
        *,
        default: Any = None,
        validate: bool = True,
        use_backup: bool = True,
    ) -> Any:
        """Read and decode `key`; never raises."""
        try:
            full = self.full_key(key)
        except ValueError as ex:
            logger.error("Cannot load invalid key %r: %s", key, ex)
            return default

        try:
            raw = await self._io(self._backend.get, full)
            if raw:
                value = deserialize(raw, schema_version=self._schema_version)
                if validate and not is_serializable(value):
                    raise DeserializationError("Data validation failed")
                return value
            logger.debug("No durable record for %s", full)
        except Exception as ex:
            logger.error("Failed to load data for key %s: %s", full, ex)

        if use_backup:
            value = await self._recover(full)
            if value is not MISSING:
                logger.info("Recovered data from backup for key: %s", full)
                return value
        return default

    async def remove(self, key: str, *, backup: bool = True) -> bool:
        """Delete `key`.

        With `backup` the record is snapshotted first and stays recoverable by
        `load`; without it any stale backup entry for the key is dropped too.
        """
        try:
            full = self.full_key(key)
            async with self._lock:
                if backup:
                    await self._io(self._backup_key_sync, full)
                else:
                    await self._io(self._drop_backup_entry_sync, full)
                await self._io(self._backend.remove, full)
                await self._io(self._untrack_sync, full)
        except Exception as ex:
            logger.error("Failed to remove data for key %s: %s", key, ex)
            return False
        return True

    def _clear_sync(self) -> List[str]:
        meta = self._read_metadata_sync()
        keys = list(meta.tracked_keys) if meta else []
        for key in keys:
            try:
                self._backend.remove(key)
            except Exception as ex:
                logger.warning("Failed to remove key %s: %s", key, ex)
        self._backend.remove(self.metadata_key)
        self._ensure_metadata_sync()
        return keys

    async def clear_all(self, *, backup: bool = True, confirm: bool = True) -> bool:
        """Delete every tracked key and start fresh metadata.

        Returns False without touching storage when confirmation is declined.
        """
        if confirm and not self._confirm("Are you sure you want to clear all data? This action cannot be undone."):
            return False
        try:
            if backup:
                async with self._lock:
                    await self._io(self._full_backup_sync)
            else:
                await self._io(self._backend.remove, self.backup_key)
            async with self._lock:
                removed = await self._io(self._clear_sync)
        except Exception as ex:
            logger.error("Failed to clear all data: %s", ex)
            return False
        logger.info("Cleared %d tracked key(s)", len(removed))
        return True

    # --------------- Export / import ---------------
    def _export_sync(self) -> ExportBundle:
        meta = self._ensure_metadata_sync()
        data: Dict[str, str] = {}
        for key in meta.tracked_keys:
            try:
                raw = self._backend.get(key)
            except Exception as ex:
                logger.warning("Failed to export key %s: %s", key, ex)
                continue
            if raw:
                data[key] = raw
        return ExportBundle(metadata=meta, data=data, exported_at=self._clock())

    async def export_data(self) -> str:
        """Serialize metadata plus every tracked record into a JSON bundle."""
        async with self._lock:
            bundle = await self._io(self._export_sync)
        return json.dumps(bundle.to_json_dict(), indent=2)

    @staticmethod
    def _parse_bundle(bundle: str | bytes | Mapping[str, Any], *, validate: bool) -> Dict[str, Any]:
        if isinstance(bundle, (str, bytes)):
            try:
                parsed = json.loads(bundle)
            except ValueError as ex:
                raise ImportValidationError("Import data is not valid JSON") from ex
        elif isinstance(bundle, Mapping):
            parsed = dict(bundle)
        else:
            raise ImportValidationError(f"Unsupported import data type: {type(bundle).__name__}")

        if not isinstance(parsed, dict):
            raise ImportValidationError("Invalid import data format")
        if not isinstance(parsed.get("data"), dict) or not isinstance(parsed.get("metadata"), dict):
            raise ImportValidationError("Invalid import data format")
        if validate:
            if not parsed.get("exportedAt"):
                raise ImportValidationError("Import data validation failed: exportedAt missing")
            for key, data in parsed["data"].items():
                if not isinstance(key, str) or not isinstance(data, str):
                    raise ImportValidationError(f"Import data validation failed at entry {key!r}")
        return parsed

    def _import_sync(self, entries: Mapping[str, Any], imported_version: Optional[str], overwrite: bool) -> int:
        written = 0
        for key, data in entries.items():
            if not isinstance(data, str):
                logger.warning("Skipping non-string entry: %s", key)
                continue
            if not overwrite and self._backend.get(key):
                logger.warning("Skipping existing key: %s", key)
                continue
            self._backend.set(key, data)
            self._track_sync(key)
            written += 1
        meta = self._ensure_metadata_sync()
        meta.last_import_at = self._clock()
        meta.imported_version = imported_version
        self._write_metadata_sync(meta)
        return written

    async def import_data(
        self,
        bundle: str | bytes | Mapping[str, Any],
        *,
        overwrite: bool = False,
        validate: bool = True,
    ) -> bool:
        """Load an export bundle; existing keys are kept unless `overwrite`.

        Raises ImportValidationError for a malformed bundle. The current
        records are snapshotted before anything is written.
        """
        parsed = self._parse_bundle(bundle, validate=validate)
        meta = parsed["metadata"]
        imported_version = meta.get("schemaVersion") or meta.get("version")

        async with self._lock:
            await self._io(self._full_backup_sync)
            written = await self._io(
                self._import_sync, parsed["data"], imported_version, overwrite
            )
        logger.info("Imported %d key(s) from bundle", written)
        return True

    # --------------- Stats ---------------
    def _stats_sync(self) -> Dict[str, Any]:
        total = 0
        count = 0
        for key in self._backend.keys():
            if not key.startswith(self._prefix):
                continue
            val = self._backend.get(key)
            total += len(val.encode("utf-8")) if val else 0
            count += 1
        meta = self._read_metadata_sync()
        return {
            "totalSize": total,
            "keyCount": count,
            "lastBackupAt": meta.last_backup_at if meta else None,
            "schemaVersion": meta.schema_version if meta else None,
            "createdAt": meta.created_at if meta else None,
        }

    async def get_storage_stats(self) -> Optional[Dict[str, Any]]:
        try:
            return await self._io(self._stats_sync)
        except Exception as ex:
            logger.error("Failed to get storage stats: %s", ex)
            return None


__all__ = ["PersistenceManager", "SavePolicy", "DEFAULT_SAVE_POLICY", "SCHEMA_VERSION"]
