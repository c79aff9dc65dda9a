from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple

from common.clock import now_ms


STATE_VERSION = "1.0.0"


class UpdateSource(str, Enum):
    """
    Origin tag attached to every state update.

    Subscribers compare against these members (never raw strings) to skip
    updates they caused themselves, which keeps two-way sync from looping.
    """

    UNKNOWN = "unknown"
    IMMEDIATE = "immediate"
    INIT = "init"
    MIGRATION = "migration"
    RESET = "reset"
    ERROR = "error"
    COMPONENT = "component"
    AUTOSAVE = "autosave"
    AUTH_SYNC = "auth-sync"
    WALLET_SYNC = "wallet-sync"
    TRANSACTION_SYNC = "transaction-sync"
    NAVIGATION_SYNC = "navigation-sync"
    BALANCE_SYNC = "balance-sync"


class StateErrorType(str, Enum):
    INIT = "STATE_INIT_ERROR"
    UPDATE = "STATE_UPDATE_ERROR"
    PERSISTENCE = "STATE_PERSISTENCE_ERROR"
    LOAD = "STATE_LOAD_ERROR"
    RESET = "STATE_RESET_ERROR"


# Keys written to the durable backend; everything else is session-only
PERSISTABLE_KEYS: Tuple[str, ...] = (
    "currentUser",
    "isAuthenticated",
    "walletConnected",
    "connectedWallet",
    "balance",
    "transactions",
    "autopayRules",
    "navigationHistory",
)

HOME_SECTION = "home"
AUTH_SECTION = "auth"


def default_user(now: Optional[int] = None) -> Dict[str, Any]:
    """Placeholder identity used until a real profile is stored."""
    ts = now if now is not None else now_ms()
    return {
        "id": "default-user",
        "name": "SatsPay User",
        "email": "user@satspay.app",
        "age": 25,
        "walletId": None,
        "memberSince": ts,
        "createdAt": ts,
        "lastLogin": ts,
    }


def initial_state(
    *,
    user: Optional[Dict[str, Any]] = None,
    authenticated: bool = False,
    initialized: bool = False,
    last_sync: Optional[int] = None,
    version: str = STATE_VERSION,
) -> Dict[str, Any]:
    """Fresh state tree in its declared baseline shape."""
    return {
        "currentUser": user if user is not None else default_user(),
        "isAuthenticated": authenticated,
        "currentSection": HOME_SECTION,
        "previousSection": None,
        "navigationHistory": [],
        "walletConnected": False,
        "connectedWallet": None,
        "balance": {"btc": 0, "usd": 0},
        "transactions": [],
        "pendingTransactions": [],
        "autopayRules": [],
        "loading": False,
        "errors": [],
        "notifications": [],
        "initialized": initialized,
        "lastSync": last_sync,
        "version": version,
    }


Callback = Callable[[Any, Any, UpdateSource], None]
Filter = Callable[[Any, Any], bool]


@dataclass
class Subscription:
    callback: Callback
    filter: Optional[Filter] = None
    created_at: int = field(default_factory=now_ms)


__all__ = [
    "STATE_VERSION",
    "UpdateSource",
    "StateErrorType",
    "PERSISTABLE_KEYS",
    "HOME_SECTION",
    "AUTH_SECTION",
    "default_user",
    "initial_state",
    "Callback",
    "Filter",
    "Subscription",
]
