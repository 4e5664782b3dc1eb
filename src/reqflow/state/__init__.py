from reqflow.state.locks import KeyedLocks
from reqflow.state.repository import Repository
from reqflow.state.store import ArtifactStore, JsonFileStore, MemoryStore, NotFound, StoreError

__all__ = [
    "ArtifactStore",
    "JsonFileStore",
    "KeyedLocks",
    "MemoryStore",
    "NotFound",
    "Repository",
    "StoreError",
]
