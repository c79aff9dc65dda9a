"""
Bridge between the legacy ad-hoc storage format and the StateStore.
"""

from .legacy import BridgeTimeoutError, LegacyBridge, MigrationError

__all__ = ["LegacyBridge", "MigrationError", "BridgeTimeoutError"]
