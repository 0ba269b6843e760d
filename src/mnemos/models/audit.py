from typing import Optional
from sqlmodel import Field
from mnemos.models.base import TimestampMixin


class MemoryEvent(TimestampMixin, table=True):
    __table_args__ = {"extend_existing": True}
    id: Optional[int] = Field(default=None, primary_key=True)
    owner_id: str = Field(index=True)
    request_id: Optional[str] = Field(default=None, index=True, description="Request id bound when the event was recorded")

    action: str  # created | superseded | duplicate | rejected | skipped | fallback
    memory_id: Optional[int] = Field(default=None, index=True)
    fingerprint: Optional[str] = None
    superseded_count: int = Field(default=0)
    reason: Optional[str] = None
    duration_ms: int = Field(default=0)  # Write latency in milliseconds
