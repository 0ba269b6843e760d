import json
from datetime import datetime
from enum import Enum
from typing import Optional, Any
from sqlalchemy import Index, text
from sqlmodel import Field
from mnemos.models.base import TimestampMixin
import numpy as np


class EmbeddingStatus(str, Enum):
    PENDING = "pending"
    READY = "ready"
    FAILED = "failed"


class StorageVersion(str, Enum):
    INTELLIGENT = "intelligent_v1"
    FALLBACK = "fallback"


class Memory(TimestampMixin, table=True):
    __table_args__ = (
        # At most one current row per (owner, fingerprint)
        Index(
            "ix_one_current_fact",
            "owner_id",
            "fingerprint",
            unique=True,
            sqlite_where=text("is_current = 1 AND fingerprint IS NOT NULL"),
            postgresql_where=text("is_current AND fingerprint IS NOT NULL"),
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    owner_id: str = Field(index=True)

    content: str  # Normalized fact lines joined by "\n"
    content_hash: str = Field(index=True)  # sha256 of content
    category_name: str = Field(default="general", index=True)
    token_count: int = Field(default=0)
    importance: float = Field(default=0.5)
    explicit_recall: bool = Field(default=False)
    storage_version: StorageVersion = Field(default=StorageVersion.INTELLIGENT)

    # Embedding, stored as BLOB (numpy tobytes)
    embedding: Optional[bytes] = Field(default=None)
    embedding_dims: Optional[int] = Field(default=None)
    embedding_model: Optional[str] = Field(default=None)
    embedding_status: EmbeddingStatus = Field(default=EmbeddingStatus.PENDING, index=True)

    anchors_json: Optional[str] = Field(default=None)  # JSON string of extracted anchors

    # Supersession
    fingerprint: Optional[str] = Field(default=None, index=True)
    fingerprint_confidence: Optional[float] = Field(default=None)
    fingerprint_method: Optional[str] = Field(default=None)
    is_current: bool = Field(default=True, index=True)
    superseded_by: Optional[int] = Field(default=None, foreign_key="memory.id")
    superseded_at: Optional[datetime] = Field(default=None)

    def set_embedding(self, embedding: list[float], model: str):
        """Convert list of floats to bytes for storage."""
        arr = np.array(embedding, dtype=np.float32)
        self.embedding = arr.tobytes()
        self.embedding_dims = len(embedding)
        self.embedding_model = model
        self.embedding_status = EmbeddingStatus.READY

    def get_embedding(self) -> Optional[np.ndarray]:
        """Convert bytes back to numpy array."""
        if not self.embedding:
            return None
        return np.frombuffer(self.embedding, dtype=np.float32)

    def set_anchors(self, anchors: dict[str, Any]):
        self.anchors_json = json.dumps(anchors, ensure_ascii=False)

    def get_anchors(self) -> Optional[dict[str, Any]]:
        if not self.anchors_json:
            return None
        return json.loads(self.anchors_json)
