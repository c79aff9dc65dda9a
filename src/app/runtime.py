from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from bridge.legacy import LegacyBridge
from common.backoff import RetryPolicy
from common.config import Settings
from common.log import configure_logging
from persistence.backends import DurableBackend, JsonFileBackend, MemoryBackend
from persistence.manager import PersistenceManager
from state.store import StateStore


logger = logging.getLogger(__name__)


def build_backend(settings: Settings) -> DurableBackend:
    if settings.backend == "memory":
        return MemoryBackend()
    if settings.backend == "file":
        return JsonFileBackend(Path(settings.state_file))
    if settings.backend == "s3":
        # boto3 client is only created when the S3 backend is selected
        from persistence.s3_backend import S3Backend

        return S3Backend.from_settings(settings)
    raise RuntimeError(f"Unknown backend: {settings.backend}")


@dataclass
class Runtime:
    settings: Settings
    backend: DurableBackend
    persistence: PersistenceManager
    store: StateStore
    bridge: LegacyBridge

    async def shutdown(self) -> None:
        """Persist the latest state and stop background work."""
        await self.store.persist_state()
        await self.store.close()
        logger.info("State runtime stopped")


async def start(
    settings: Optional[Settings] = None,
    *,
    backend: Optional[DurableBackend] = None,
    setup_logging: bool = False,
) -> Runtime:
    """Build and initialize persistence, store and legacy bridge.

    Raises RuntimeError when the store fails to initialize, and
    BridgeTimeoutError when the bridge gives up waiting for it.
    """
    settings = settings or Settings.from_env()
    if setup_logging:
        configure_logging(settings.log_level)

    backend = backend or build_backend(settings)
    persistence = PersistenceManager(
        backend,
        prefix=settings.storage_prefix,
        capacity_bytes=settings.capacity_bytes,
        retry=RetryPolicy(attempts=settings.max_retries),
    )
    store = StateStore(
        persistence,
        auto_authenticate=settings.auto_authenticate,
        autosave_interval=settings.autosave_interval if settings.autosave else None,
    )
    if not await store.init():
        await store.close()
        raise RuntimeError("State store failed to initialize")

    bridge = LegacyBridge(store, backend, timeout=settings.bridge_timeout)
    try:
        await bridge.init()
    except Exception:
        await store.close()
        raise
    logger.info("State runtime started (backend=%s)", settings.backend)
    return Runtime(settings=settings, backend=backend, persistence=persistence, store=store, bridge=bridge)


__all__ = ["Runtime", "build_backend", "start"]
