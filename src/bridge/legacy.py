from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from persistence.backends import DurableBackend
from persistence.codec import deserialize
from persistence.errors import DeserializationError
from state.models import AUTH_SECTION, HOME_SECTION, UpdateSource
from state.schema import StateValidationError, validate_updates
from state.store import StateStore


logger = logging.getLogger(__name__)

# Records written by the pre-store application, one per domain
LEGACY_USER_KEY = "satspay_user"
LEGACY_TRANSACTIONS_KEY = "satspay_transactions"
LEGACY_AUTOPAY_KEY = "satspay_autopay"
LEGACY_WALLET_KEY = "satspay_wallet"
LEGACY_NAVIGATION_KEY = "satspay_navigation"

DEFAULT_WAIT_TIMEOUT = 10.0

LegacyHandler = Callable[[str, Dict[str, Any]], None]


class MigrationError(ValueError):
    """A legacy record is malformed; its domain is skipped."""


class BridgeTimeoutError(TimeoutError):
    """The state store did not finish initializing in time."""


# --------------- Legacy record parsers ---------------
def _migrate_user(parsed: Any) -> Dict[str, Any]:
    if not parsed:
        return {"isAuthenticated": False}
    if not isinstance(parsed, dict):
        raise MigrationError("user record must be an object")
    return {"currentUser": parsed, "isAuthenticated": True}


def _migrate_list(target: str) -> Callable[[Any], Dict[str, Any]]:
    def parse(parsed: Any) -> Dict[str, Any]:
        if not isinstance(parsed, list):
            raise MigrationError(f"{target} record must be a list")
        return {target: parsed}

    return parse


def _migrate_wallet(parsed: Any) -> Dict[str, Any]:
    if not isinstance(parsed, dict):
        raise MigrationError("wallet record must be an object")
    out: Dict[str, Any] = {}
    if parsed.get("connected"):
        out["walletConnected"] = True
        out["connectedWallet"] = parsed
    if parsed.get("balance"):
        out["balance"] = parsed["balance"]
    return out


def _migrate_navigation(parsed: Any) -> Dict[str, Any]:
    if not isinstance(parsed, dict):
        raise MigrationError("navigation record must be an object")
    section = parsed.get("currentSection")
    if not section:
        return {}
    return {"currentSection": HOME_SECTION if section == AUTH_SECTION else section}


LEGACY_PARSERS: Tuple[Tuple[str, Callable[[Any], Dict[str, Any]]], ...] = (
    (LEGACY_USER_KEY, _migrate_user),
    (LEGACY_TRANSACTIONS_KEY, _migrate_list("transactions")),
    (LEGACY_AUTOPAY_KEY, _migrate_list("autopayRules")),
    (LEGACY_WALLET_KEY, _migrate_wallet),
    (LEGACY_NAVIGATION_KEY, _migrate_navigation),
)


def parse_legacy_record(legacy_key: str, raw: str) -> Dict[str, Any]:
    """Map one legacy record into store updates.

    Records already rewritten as envelopes (the store persists `transactions`
    under the same name) are unwrapped first. Raises MigrationError for unknown
    keys, invalid JSON, unexpected shapes, or mapped values the store schema
    would reject.
    """
    parser = dict(LEGACY_PARSERS).get(legacy_key)
    if parser is None:
        raise MigrationError(f"unknown legacy key {legacy_key!r}")
    try:
        parsed = deserialize(raw)
    except DeserializationError as ex:
        raise MigrationError(f"{legacy_key} is not valid JSON") from ex
    updates = parser(parsed)
    try:
        validate_updates(updates)
    except StateValidationError as ex:
        raise MigrationError(f"{legacy_key}: {ex}") from ex
    return updates


# --------------- Sync domains ---------------
@dataclass(frozen=True)
class Watch:
    """Store key forwarded to legacy components as `event`."""

    key: str
    event: str
    payload: Callable[[Any, Any, StateStore], Dict[str, Any]]


@dataclass(frozen=True)
class SyncDomain:
    name: str
    source: UpdateSource
    watches: Tuple[Watch, ...]
    to_updates: Callable[[Mapping[str, Any], StateStore], Dict[str, Any]]


def _pick(data: Mapping[str, Any], mapping: Sequence[Tuple[str, str]]) -> Dict[str, Any]:
    return {target: data[src] for src, target in mapping if src in data}


def _navigation_updates(data: Mapping[str, Any], store: StateStore) -> Dict[str, Any]:
    out = _pick(data, [("currentSection", "currentSection"), ("previousSection", "previousSection")])
    history = data.get("history")
    out["navigationHistory"] = history if history is not None else store.get_state("navigationHistory")
    return out


SYNC_DOMAINS: Tuple[SyncDomain, ...] = (
    SyncDomain(
        name="auth",
        source=UpdateSource.AUTH_SYNC,
        watches=(
            Watch(
                "isAuthenticated",
                "authenticationChanged",
                lambda v, p, s: {"isAuthenticated": v, "previousValue": p, "user": s.get_state("currentUser")},
            ),
            Watch("currentUser", "userChanged", lambda v, p, s: {"user": v, "previousValue": p}),
        ),
        to_updates=lambda d, s: _pick(d, [("user", "currentUser"), ("isAuthenticated", "isAuthenticated")]),
    ),
    SyncDomain(
        name="wallet",
        source=UpdateSource.WALLET_SYNC,
        watches=(
            Watch(
                "walletConnected",
                "walletConnectionChanged",
                lambda v, p, s: {"connected": v, "previousValue": p, "wallet": s.get_state("connectedWallet")},
            ),
            Watch("connectedWallet", "connectedWalletChanged", lambda v, p, s: {"wallet": v, "previousValue": p}),
        ),
        to_updates=lambda d, s: _pick(d, [("connected", "walletConnected"), ("wallet", "connectedWallet")]),
    ),
    SyncDomain(
        name="transactions",
        source=UpdateSource.TRANSACTION_SYNC,
        watches=(
            Watch("transactions", "transactionsChanged", lambda v, p, s: {"transactions": v, "previousValue": p}),
        ),
        to_updates=lambda d, s: _pick(d, [("transactions", "transactions")]),
    ),
    SyncDomain(
        name="navigation",
        source=UpdateSource.NAVIGATION_SYNC,
        watches=(
            Watch("currentSection", "navigationChanged", lambda v, p, s: {"currentSection": v, "previousSection": p}),
        ),
        to_updates=_navigation_updates,
    ),
    SyncDomain(
        name="balance",
        source=UpdateSource.BALANCE_SYNC,
        watches=(
            Watch("balance", "balanceChanged", lambda v, p, s: {"balance": v, "previousValue": p}),
        ),
        to_updates=lambda d, s: _pick(d, [("balance", "balance")]),
    ),
)


class LegacyBridge:
    """
    Connects components written against the old ad-hoc storage to the StateStore.

    - `init()` waits for the store, installs one sync domain per area (auth,
      wallet, transactions, navigation, balance) and migrates legacy records once.
    - Store changes are re-broadcast to registered legacy components via
      `notify(event_type, data)`, except changes tagged with the domain's own
      sync source, so a component's write never echoes back to it.
    - Legacy records are read straight from the durable backend; they are left
      in place, which keeps migration idempotent.
    """

    def __init__(
        self,
        store: StateStore,
        backend: DurableBackend,
        *,
        timeout: float = DEFAULT_WAIT_TIMEOUT,
        domains: Sequence[SyncDomain] = SYNC_DOMAINS,
    ) -> None:
        self._store = store
        self._backend = backend
        self._timeout = timeout
        self._domains = tuple(domains)
        self._handlers: Dict[str, SyncDomain] = {}
        self._components: Dict[str, Any] = {}
        self._unsubscribers: List[Callable[[], bool]] = []
        self._initialized = False
        self.last_migration: Dict[str, Any] = {}

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def init(self) -> bool:
        if self._initialized:
            return True
        try:
            await asyncio.wait_for(self._store.wait_initialized(), timeout=self._timeout)
        except asyncio.TimeoutError as ex:
            raise BridgeTimeoutError("State store initialization timeout") from ex

        for domain in self._domains:
            self._install(domain)
        await self.migrate_existing_data()
        self._initialized = True
        logger.info("State synchronization initialized (%d domain(s))", len(self._handlers))
        return True

    def _install(self, domain: SyncDomain) -> None:
        for watch in domain.watches:
            self._unsubscribers.append(self._store.subscribe(watch.key, self._forwarder(domain, watch)))
        self._handlers[domain.name] = domain

    def _forwarder(self, domain: SyncDomain, watch: Watch) -> Callable[[Any, Any, UpdateSource], None]:
        def forward(value: Any, previous: Any, source: UpdateSource) -> None:
            if source is domain.source:
                return
            self.notify(watch.event, watch.payload(value, previous, self._store))

        forward.__name__ = f"forward_{domain.name}_{watch.key}"
        return forward

    # --------------- Legacy components ---------------
    def register_component(self, name: str, handler: Any) -> None:
        """Register a legacy component: a `handler(event_type, data)` callable
        or an object with an `on_state_change(event_type, data)` method."""
        target = getattr(handler, "on_state_change", handler)
        if not callable(target):
            raise TypeError(f"Component {name!r} has no state change handler")
        self._components[name] = target

    def unregister_component(self, name: str) -> bool:
        return self._components.pop(name, None) is not None

    def notify(self, event_type: str, data: Dict[str, Any]) -> None:
        for name, handler in list(self._components.items()):
            try:
                handler(event_type, data)
            except Exception as ex:
                logger.warning("Failed to notify %s of %s: %s", name, event_type, ex)

    async def sync_from_component(self, domain: str, data: Mapping[str, Any]) -> bool:
        """Apply a legacy component's change, tagged with the domain's sync source."""
        handler = self._handlers.get(domain)
        if handler is None:
            logger.warning("No sync handler for domain %s", domain)
            return False
        try:
            updates = handler.to_updates(data, self._store)
        except Exception as ex:
            logger.error("Failed to sync state from %s: %s", domain, ex)
            return False
        return await self._store.set_state(updates, source=handler.source)

    # --------------- Migration ---------------
    async def migrate_existing_data(self) -> Dict[str, Any]:
        """Fold legacy records into one store update; returns the applied updates."""
        merged: Dict[str, Any] = {}
        for legacy_key, _parser in LEGACY_PARSERS:
            try:
                raw = await asyncio.to_thread(self._backend.get, legacy_key)
            except Exception as ex:
                logger.warning("Failed to read %s: %s", legacy_key, ex)
                continue
            if not raw:
                continue
            try:
                merged.update(parse_legacy_record(legacy_key, raw))
            except MigrationError as ex:
                logger.warning("Failed to migrate %s: %s", legacy_key, ex)

        if not merged:
            self.last_migration = {}
            return {}
        ok = await self._store.set_state(merged, source=UpdateSource.MIGRATION, persist=True)
        if not ok:
            logger.error("Legacy migration was rejected by the state store")
            self.last_migration = {}
            return {}
        logger.info("Legacy data migrated: %s", sorted(merged))
        self.last_migration = merged
        return merged

    # --------------- Component facade ---------------
    async def update_state_from_component(self, component: str, updates: Mapping[str, Any]) -> bool:
        if not self._initialized:
            logger.warning("State synchronizer not initialized")
            return False
        logger.debug("State update from component %s: %s", component, sorted(updates))
        return await self._store.set_state(updates, source=UpdateSource.COMPONENT, persist=True)

    def get_state_for_component(self, component: str, keys: Optional[Sequence[str]] = None) -> Optional[Dict[str, Any]]:
        if not self._initialized:
            logger.warning("State synchronizer not initialized (requested by %s)", component)
            return None
        if keys is not None:
            return {k: self._store.get_state(k) for k in keys}
        return self._store.get_state()

    def create_state_binding(
        self,
        component: str,
        key: str,
        callback: Callable[[Any, Any, UpdateSource], None],
    ) -> Optional[Callable[[], bool]]:
        """Subscribe a legacy callback; its errors are logged and never drop the binding."""
        if not self._initialized:
            logger.warning("State synchronizer not initialized")
            return None

        def bound(value: Any, previous: Any, source: UpdateSource) -> None:
            try:
                callback(value, previous, source)
            except Exception:
                logger.exception("State binding error for %s.%s", component, key)

        return self._store.subscribe(key, bound)

    async def reset(self, *, confirm: bool = True) -> bool:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
        self._handlers.clear()
        self._initialized = False
        ok = await self._store.reset_state(confirm=confirm)
        logger.info("State synchronization reset")
        return ok

    def get_stats(self) -> Dict[str, Any]:
        return {
            "initialized": self._initialized,
            "syncHandlers": len(self._handlers),
            "legacyComponents": len(self._components),
            "stateManagerStats": self._store.get_state_stats(),
        }


__all__ = [
    "LegacyBridge",
    "MigrationError",
    "BridgeTimeoutError",
    "SyncDomain",
    "Watch",
    "SYNC_DOMAINS",
    "LEGACY_PARSERS",
    "parse_legacy_record",
]
