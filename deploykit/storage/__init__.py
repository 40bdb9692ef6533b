# deploykit/storage/__init__.py
"""State store module: key -> state repositories for the safety core."""
from .state_store import StateStore, InMemoryStateStore, JsonFileStateStore

__all__ = [
    'StateStore',
    'InMemoryStateStore',
    'JsonFileStateStore'
]
