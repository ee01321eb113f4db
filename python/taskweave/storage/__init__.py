"""Task store implementations."""

from taskweave.storage.memory_store import InMemoryTaskStore

__all__ = ["InMemoryTaskStore"]
