from __future__ import annotations

import asyncio
import copy
import functools
import inspect
import json
import logging
from collections import defaultdict
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Union
from uuid import uuid4

from common.clock import now_ms
from persistence.codec import MISSING
from persistence.manager import PersistenceManager, SavePolicy

from .autosave import AutoSaver
from .models import (
    AUTH_SECTION,
    HOME_SECTION,
    PERSISTABLE_KEYS,
    STATE_VERSION,
    Callback,
    Filter,
    StateErrorType,
    Subscription,
    UpdateSource,
    default_user,
    initial_state,
)
from .schema import StateValidationError, is_valid, validate_updates


logger = logging.getLogger(__name__)

Middleware = Callable[
    [Dict[str, Any], Mapping[str, Any]],
    Union[Optional[Mapping[str, Any]], Awaitable[Optional[Mapping[str, Any]]]],
]
Unsubscribe = Callable[[], bool]

DEFAULT_STORE_SAVE_POLICY = SavePolicy(backup=False)


def _noop_unsubscribe() -> bool:
    return False


class StateStore:
    """
    Single source of truth for application state.

    Lifecycle
    - Construct with a PersistenceManager, then `await store.init()` before use.
      `wait_initialized()` lets dependents (e.g. the legacy bridge) block on it.

    Updates
    - `set_state()` validates against the schema table, runs middleware,
      commits a new state dict (never mutated in place), persists changed
      persistable keys, then notifies subscribers of each changed key.
    - Failures never escape `set_state`; they become entries in the `errors`
      key, which can be subscribed to like any other key.

    Overlapping writes
    - Commits are synchronous, so the last `set_state` to commit wins in
      memory. Durable writes are serialized per key and always write the value
      committed at the time the write starts, so storage converges to the
      in-memory state instead of to whichever write finished last.
    """

    def __init__(
        self,
        persistence: PersistenceManager,
        *,
        save_policy: SavePolicy = DEFAULT_STORE_SAVE_POLICY,
        persistable_keys: Sequence[str] = PERSISTABLE_KEYS,
        auto_authenticate: bool = False,
        autosave_interval: Optional[float] = None,
        error_cap: int = 10,
        clock: Callable[[], int] = now_ms,
        confirmer: Optional[Callable[[str], bool]] = None,
    ) -> None:
        if error_cap <= 0:
            raise ValueError("error_cap must be > 0")
        self._persistence = persistence
        self._save_policy = save_policy
        self._persistable_keys = tuple(persistable_keys)
        self._auto_authenticate = auto_authenticate
        self._autosave_interval = autosave_interval
        self._error_cap = error_cap
        self._clock = clock
        self._confirmer = confirmer

        self._state: Dict[str, Any] = initial_state(authenticated=auto_authenticate)
        self._subscribers: Dict[str, Dict[str, Subscription]] = {}
        self._middleware: List[Middleware] = []
        self._key_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._ready = asyncio.Event()
        self._autosaver: Optional[AutoSaver] = None

    @property
    def persistence(self) -> PersistenceManager:
        return self._persistence

    @property
    def persistable_keys(self) -> Sequence[str]:
        return self._persistable_keys

    @property
    def is_initialized(self) -> bool:
        return self._ready.is_set()

    @property
    def autosaver(self) -> Optional[AutoSaver]:
        return self._autosaver

    # --------------- Lifecycle ---------------
    async def init(self) -> bool:
        """Load persisted state, start autosave and mark the store initialized."""
        if self.is_initialized:
            return True
        try:
            await self._persistence.initialize()
            await self.load_persisted_state()
            if self._autosave_interval:
                self._autosaver = AutoSaver(self, interval=self._autosave_interval)
                self._autosaver.start()
            ok = await self.set_state({"initialized": True}, persist=False, source=UpdateSource.INIT)
            if not ok:
                raise RuntimeError("Failed to mark state as initialized")
        except Exception as ex:
            logger.exception("Failed to initialize StateStore")
            self.handle_error(StateErrorType.INIT, ex)
            return False
        self._ready.set()
        logger.info("StateStore initialized")
        return True

    async def wait_initialized(self) -> None:
        await self._ready.wait()

    async def close(self) -> None:
        """Stop autosave and drop every subscriber and middleware."""
        if self._autosaver is not None:
            await self._autosaver.stop()
            self._autosaver = None
        self._subscribers.clear()
        self._middleware.clear()
        logger.info("StateStore closed")

    def _confirm(self, message: str) -> bool:
        if self._confirmer is None:
            return True
        return bool(self._confirmer(message))

    # --------------- Reads ---------------
    def get_state(self, key: Optional[str] = None) -> Any:
        """Value of `key`, or a deep copy of the whole state tree."""
        if key is not None:
            return self._state.get(key)
        try:
            return copy.deepcopy(self._state)
        except (TypeError, copy.Error) as ex:
            # unknown keys may hold objects that cannot be copied (locks, sockets)
            logger.warning("State is not deep-copyable (%s); returning a shallow copy", ex)
            return dict(self._state)

    # --------------- Writes ---------------
    async def set_state(
        self,
        updates: Mapping[str, Any],
        *,
        persist: bool = True,
        notify: bool = True,
        validate: bool = True,
        source: UpdateSource = UpdateSource.UNKNOWN,
    ) -> bool:
        """Apply a partial update; returns False when it was rejected or failed."""
        try:
            source = UpdateSource(source)
        except ValueError as ex:
            logger.error("Unknown update source %r", source)
            self.handle_error(StateErrorType.UPDATE, ex)
            return False

        if validate:
            try:
                validate_updates(updates)
            except StateValidationError as ex:
                logger.warning("Rejected state update from %s: %s", source.value, ex)
                return False

        try:
            processed = await self._apply_middleware(dict(updates), MappingProxyType(self._state))
            previous = self._state
            committed = {**previous, **processed}
            committed["lastSync"] = self._clock()
            self._state = committed
        except Exception as ex:
            logger.exception("Failed to set state")
            self.handle_error(StateErrorType.UPDATE, ex)
            return False

        if persist:
            changed = [k for k in self._persistable_keys if k in processed]
            await self._persist_keys(changed)

        if notify:
            self._notify(processed, previous, source)
        return True

    async def _apply_middleware(self, updates: Dict[str, Any], current: Mapping[str, Any]) -> Dict[str, Any]:
        processed = updates
        for middleware in list(self._middleware):
            name = getattr(middleware, "__name__", repr(middleware))
            try:
                result = middleware(dict(processed), current)
                if inspect.isawaitable(result):
                    result = await result
            except Exception:
                logger.exception("Middleware %s failed; skipping it", name)
                continue
            if result is None:
                continue
            if not isinstance(result, Mapping):
                logger.warning("Middleware %s returned %s; ignoring it", name, type(result).__name__)
                continue
            processed = dict(result)
        return processed

    def add_middleware(self, middleware: Middleware) -> None:
        """Append a `(pending_updates, current_state) -> updates | None` stage."""
        if not callable(middleware):
            raise TypeError("Middleware must be callable")
        self._middleware.append(middleware)

    # --------------- Subscriptions ---------------
    def subscribe(
        self,
        key: str,
        callback: Callback,
        *,
        immediate: bool = False,
        filter: Optional[Filter] = None,
    ) -> Unsubscribe:
        """Register `callback(new, previous, source)` for changes of `key`.

        Returns a function that removes the subscription. A non-callable
        callback or filter is recorded as STATE_UPDATE_ERROR and yields an
        unsubscribe function that returns False.
        """
        if not callable(callback) or (filter is not None and not callable(filter)):
            what = "Callback" if not callable(callback) else "Filter"
            logger.error("Rejected subscription to %s: %s is not callable", key, what.lower())
            self.handle_error(StateErrorType.UPDATE, TypeError(f"{what} must be callable"), key=key)
            return _noop_unsubscribe

        sub_id = f"{key}_{uuid4().hex}"
        self._subscribers.setdefault(key, {})[sub_id] = Subscription(
            callback=callback, filter=filter, created_at=self._clock()
        )

        if immediate:
            try:
                callback(self._state.get(key), None, UpdateSource.IMMEDIATE)
            except Exception:
                logger.exception("Immediate callback error for %s", key)

        return functools.partial(self.unsubscribe, key, sub_id)

    def unsubscribe(self, key: str, subscription_id: str) -> bool:
        subs = self._subscribers.get(key)
        if not subs or subscription_id not in subs:
            return False
        del subs[subscription_id]
        if not subs:
            del self._subscribers[key]
        return True

    def subscriber_count(self, key: Optional[str] = None) -> int:
        if key is not None:
            return len(self._subscribers.get(key, {}))
        return sum(len(subs) for subs in self._subscribers.values())

    def _notify(self, updates: Mapping[str, Any], previous: Mapping[str, Any], source: UpdateSource) -> None:
        for key, value in updates.items():
            subs = self._subscribers.get(key)
            if not subs:
                continue
            prev = previous.get(key)
            for sub_id, sub in list(subs.items()):
                if sub_id not in subs:
                    # removed by an earlier callback in this round
                    continue
                try:
                    if sub.filter is not None and not sub.filter(value, prev):
                        continue
                    sub.callback(value, prev, source)
                except Exception:
                    logger.exception("Subscriber callback error for %s; dropping subscription", key)
                    self.unsubscribe(key, sub_id)

    # --------------- Persistence ---------------
    def _persisted_value(self, key: str, source: Mapping[str, Any]) -> Any:
        value = source.get(key, MISSING)
        if key == "currentUser" and not value:
            return default_user(self._clock())
        if key == "isAuthenticated" and self._auto_authenticate:
            return True
        return value

    async def _persist_key(self, key: str, snapshot: Optional[Mapping[str, Any]] = None) -> None:
        async with self._key_locks[key]:
            value = self._persisted_value(key, snapshot if snapshot is not None else self._state)
            if value is MISSING:
                return
            await self._persistence.save(key, value, self._save_policy)

    async def _persist_keys(self, keys: Sequence[str], snapshot: Optional[Mapping[str, Any]] = None) -> bool:
        if not keys:
            return True
        results = await asyncio.gather(
            *(self._persist_key(k, snapshot) for k in keys), return_exceptions=True
        )
        ok = True
        for key, res in zip(keys, results):
            if isinstance(res, BaseException):
                ok = False
                logger.error("Failed to persist %s: %s", key, res)
                self.handle_error(StateErrorType.PERSISTENCE, res, key=key)
        return ok

    async def persist_state(self, updates: Optional[Mapping[str, Any]] = None) -> bool:
        """Persist the given updates, or the whole committed state when None."""
        if updates is None:
            return await self._persist_keys(list(self._persistable_keys))
        keys = [k for k in self._persistable_keys if k in updates]
        return await self._persist_keys(keys, snapshot=updates)

    def flush_sync(self) -> int:
        """Synchronously write every persistable key; used on process teardown."""
        written = 0
        for key in self._persistable_keys:
            value = self._persisted_value(key, self._state)
            if value is MISSING:
                continue
            if self._persistence.save_sync(key, value):
                written += 1
        return written

    async def load_persisted_state(self) -> bool:
        """Merge persisted values over the current state and restore invariants."""
        try:
            keys = list(self._persistable_keys)
            results = await asyncio.gather(
                *(self._persistence.load(k) for k in keys), return_exceptions=True
            )
            persisted: Dict[str, Any] = {}
            for key, value in zip(keys, results):
                if isinstance(value, BaseException):
                    logger.warning("Failed to load persisted state for %s: %s", key, value)
                    continue
                if value is None:
                    continue
                if not is_valid(key, value):
                    logger.warning("Ignoring persisted %s with unexpected shape", key)
                    continue
                persisted[key] = value

            merged = {**self._state, **persisted}
            if not merged.get("currentUser"):
                merged["currentUser"] = default_user(self._clock())
            if self._auto_authenticate:
                merged["isAuthenticated"] = True
            if merged.get("currentSection") == AUTH_SECTION:
                merged["currentSection"] = HOME_SECTION
            self._state = merged
        except Exception as ex:
            logger.exception("Failed to load persisted state")
            self.handle_error(StateErrorType.LOAD, ex)
            return False
        logger.info("Persisted state loaded (%d key(s))", len(persisted))
        return True

    async def clear_persisted_state(self) -> bool:
        results = await asyncio.gather(
            *(self._persistence.remove(k, backup=False) for k in self._persistable_keys),
            return_exceptions=True,
        )
        return all(res is True for res in results)

    async def reset_state(
        self,
        *,
        clear_persisted: bool = True,
        keep_user: bool = False,
        confirm: bool = True,
    ) -> bool:
        """Rebuild the initial state tree and notify every subscriber once."""
        if confirm and not self._confirm("Are you sure you want to reset all application data?"):
            return False
        try:
            if clear_persisted and not await self.clear_persisted_state():
                logger.warning("Some persisted keys could not be cleared")
            previous = self._state
            user = copy.deepcopy(previous.get("currentUser")) if keep_user else None
            fresh = initial_state(
                user=user,
                authenticated=self._auto_authenticate,
                initialized=True,
                last_sync=self._clock(),
                version=previous.get("version") or STATE_VERSION,
            )
            self._state = fresh
        except Exception as ex:
            logger.exception("Failed to reset state")
            self.handle_error(StateErrorType.RESET, ex)
            return False

        announced: Dict[str, Any] = dict(fresh)
        for key in list(self._subscribers):
            announced.setdefault(key, None)
        self._notify(announced, previous, UpdateSource.RESET)
        logger.info("State reset successfully")
        return True

    # --------------- Errors ---------------
    def handle_error(self, kind: StateErrorType, error: BaseException, *, key: Optional[str] = None) -> None:
        """Record an error entry in the bounded `errors` ring and notify its subscribers."""
        entry: Dict[str, Any] = {
            "type": kind.value,
            "message": str(error),
            "error": type(error).__name__,
            "timestamp": self._clock(),
        }
        if key is not None:
            entry["key"] = key
        previous = self._state.get("errors") or []
        errors = (list(previous) + [entry])[-self._error_cap:]
        self._state = {**self._state, "errors": errors}
        self._notify({"errors": errors}, {"errors": previous}, UpdateSource.ERROR)

    # --------------- Introspection ---------------
    def get_state_stats(self) -> Dict[str, Any]:
        return {
            "subscriberCount": self.subscriber_count(),
            "middlewareCount": len(self._middleware),
            "stateSize": len(json.dumps(self._state, default=str)),
            "lastSync": self._state.get("lastSync"),
            "initialized": self._state.get("initialized"),
            "version": self._state.get("version"),
        }

    def export_state(self) -> Dict[str, Any]:
        return {
            "state": self.get_state(),
            "stats": self.get_state_stats(),
            "exportedAt": self._clock(),
        }


__all__ = ["StateStore", "Middleware", "Unsubscribe", "DEFAULT_STORE_SAVE_POLICY"]
