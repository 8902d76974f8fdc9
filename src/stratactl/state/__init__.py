"""State store interfaces and implementations."""
from __future__ import annotations

from .store import (
    FileStateStore,
    InMemoryStateStore,
    ObservedState,
    StateEntry,
    StateStore,
    StateStoreError,
)

__all__ = [
    "FileStateStore",
    "InMemoryStateStore",
    "ObservedState",
    "StateEntry",
    "StateStore",
    "StateStoreError",
]
