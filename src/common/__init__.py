"""
Common utilities for satspay-state.

Modules:
- config: Environment-driven settings for storage, autosave and the bridge
- backoff: Retry policy with capped exponential backoff
- clock: Millisecond timestamps shared by envelopes, metadata and state
- log: Logging setup for the runtime entry point
"""

__all__ = [
    "backoff",
    "clock",
    "config",
    "log",
]
