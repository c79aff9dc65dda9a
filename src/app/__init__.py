"""
Runtime wiring for the state layer: backend selection from settings,
store and bridge startup, orderly shutdown.
"""

from .runtime import Runtime, build_backend, start

__all__ = ["Runtime", "build_backend", "start"]
