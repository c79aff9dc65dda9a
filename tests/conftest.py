import os
import sys

import pytest


def pytest_configure():
    # Ensure `src/` is importable as top-level for `common.*` / `state.*` imports
    root = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    src_path = os.path.join(root, "src")
    if src_path not in sys.path:
        sys.path.insert(0, src_path)


class RecordingSleep:
    """Stand-in for asyncio.sleep that records delays instead of waiting."""

    def __init__(self) -> None:
        self.delays = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def sleeps() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def backend():
    from persistence.backends import MemoryBackend

    return MemoryBackend()


@pytest.fixture
def manager(backend, sleeps):
    from persistence.manager import PersistenceManager

    return PersistenceManager(backend, sleep=sleeps)


@pytest.fixture
def store(manager):
    from state.store import StateStore

    return StateStore(manager)
