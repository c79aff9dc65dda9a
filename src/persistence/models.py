from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _CamelModel(BaseModel):
    # Durable records use camelCase keys; Python code uses snake_case attributes
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class Envelope(_CamelModel):
    """
    Durable wrapper around one stored value.

    Fields
    - type: JSON type name of `value` (null, boolean, number, string, array, object).
    - value: the payload; must survive a JSON round-trip.
    - timestamp: write time in epoch milliseconds.
    - schema_version: schema version of the writer. Records from the earlier
      writer carry `version` instead, which is accepted on read.
    """

    type: str
    value: Any = None
    timestamp: int
    schema_version: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("schemaVersion", "schema_version", "version"),
        serialization_alias="schemaVersion",
    )


class Metadata(_CamelModel):
    """
    Singleton bookkeeping record for the persistence layer.

    `tracked_keys` behaves as an ordered set of full durable keys eligible for
    bulk backup, clear and export.
    """

    schema_version: str
    created_at: int
    last_backup_at: Optional[int] = None
    tracked_keys: List[str] = Field(default_factory=list)
    last_import_at: Optional[int] = None
    imported_version: Optional[str] = None

    def track(self, key: str) -> bool:
        if key in self.tracked_keys:
            return False
        self.tracked_keys.append(key)
        return True

    def untrack(self, key: str) -> bool:
        if key not in self.tracked_keys:
            return False
        self.tracked_keys = [k for k in self.tracked_keys if k != key]
        return True


class BackupEntry(_CamelModel):
    data: str
    timestamp: int


class ExportBundle(_CamelModel):
    metadata: Metadata
    data: Dict[str, str]
    exported_at: int


__all__ = ["Envelope", "Metadata", "BackupEntry", "ExportBundle"]
