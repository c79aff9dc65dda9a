"""Declarative shape table for state keys.

Each known key maps to a pydantic TypeAdapter; adding a key is a table
entry. Validation only checks shape: the caller's value is stored as given,
never the coerced result. Unknown keys are accepted.
"""

from __future__ import annotations

import math
from typing import Annotated, Any, Dict, List, Mapping, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    StrictBool,
    StrictFloat,
    StrictInt,
    StringConstraints,
    TypeAdapter,
    ValidationError,
    field_validator,
)


class StateValidationError(ValueError):
    """An update does not match the expected shape of its key."""

    def __init__(self, key: Optional[str], message: str) -> None:
        super().__init__(f"{key}: {message}" if key else message)
        self.key = key


UserId = Union[Annotated[str, StringConstraints(strict=True, min_length=1)], StrictInt]


class BalanceShape(BaseModel):
    """`balance`: both amounts are numbers >= 0 (booleans rejected)."""

    model_config = ConfigDict(extra="allow")

    btc: Any
    usd: Any

    @field_validator("btc", "usd")
    @classmethod
    def _amount(cls, v: Any) -> Any:
        if isinstance(v, bool) or not isinstance(v, (int, float)):
            raise ValueError("must be a number")
        if math.isnan(v) or math.isinf(v) or v < 0:
            raise ValueError("must be a finite number >= 0")
        return v


class UserShape(BaseModel):
    """`currentUser`: loosely typed profile that must carry a non-empty id."""

    model_config = ConfigDict(extra="allow")

    id: UserId


_BOOL = TypeAdapter(StrictBool)
_LIST = TypeAdapter(List[Any])
_SECTION = TypeAdapter(Optional[Annotated[str, StringConstraints(strict=True)]])
_TIMESTAMP = TypeAdapter(Optional[Union[StrictInt, StrictFloat]])

STATE_SCHEMA: Dict[str, TypeAdapter] = {
    "currentUser": TypeAdapter(Optional[UserShape]),
    "isAuthenticated": _BOOL,
    "walletConnected": _BOOL,
    "loading": _BOOL,
    "initialized": _BOOL,
    "currentSection": _SECTION,
    "previousSection": _SECTION,
    "balance": TypeAdapter(BalanceShape),
    "connectedWallet": TypeAdapter(Optional[Dict[str, Any]]),
    "transactions": _LIST,
    "pendingTransactions": _LIST,
    "autopayRules": _LIST,
    "errors": _LIST,
    "notifications": _LIST,
    "navigationHistory": _LIST,
    "lastSync": _TIMESTAMP,
    "version": TypeAdapter(Annotated[str, StringConstraints(strict=True)]),
}


def validate_key(key: str, value: Any) -> None:
    """Raise StateValidationError when `value` does not fit `key`'s declared shape."""
    adapter = STATE_SCHEMA.get(key)
    if adapter is None:
        return
    try:
        adapter.validate_python(value)
    except ValidationError as ve:
        raise StateValidationError(key, f"invalid value ({ve.error_count()} error(s)): {ve.errors()[0]['msg']}") from ve


def validate_updates(updates: Any) -> None:
    """Validate a whole partial-state update."""
    if not isinstance(updates, Mapping):
        raise StateValidationError(None, f"updates must be a mapping, got {type(updates).__name__}")
    for key, value in updates.items():
        if not isinstance(key, str) or not key:
            raise StateValidationError(None, f"state keys must be non-empty strings, got {key!r}")
        validate_key(key, value)


def is_valid(key: str, value: Any) -> bool:
    try:
        validate_key(key, value)
    except StateValidationError:
        return False
    return True


__all__ = [
    "STATE_SCHEMA",
    "StateValidationError",
    "BalanceShape",
    "UserShape",
    "validate_key",
    "validate_updates",
    "is_valid",
]
