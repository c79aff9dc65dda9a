"""
Reactive application state.

`StateStore` owns the in-memory state tree: validated updates, per-key
subscriptions tagged with an `UpdateSource`, an ordered middleware chain,
and persistence through `persistence.PersistenceManager`.
"""

from .autosave import AutoSaver
from .models import PERSISTABLE_KEYS, StateErrorType, UpdateSource, default_user, initial_state
from .schema import STATE_SCHEMA, StateValidationError, validate_key, validate_updates
from .store import StateStore

__all__ = [
    "AutoSaver",
    "PERSISTABLE_KEYS",
    "StateErrorType",
    "UpdateSource",
    "default_user",
    "initial_state",
    "STATE_SCHEMA",
    "StateValidationError",
    "validate_key",
    "validate_updates",
    "StateStore",
]
