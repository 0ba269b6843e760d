from mnemos.models.memory import Memory, EmbeddingStatus, StorageVersion
from mnemos.models.audit import MemoryEvent

__all__ = [
    "Memory", "EmbeddingStatus", "StorageVersion",
    "MemoryEvent",
]
