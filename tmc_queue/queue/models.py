"""Queue data models."""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, Any, Optional, Mapping


class Source(str, Enum):
    """External systems that produce queue events."""

    TEAMWORK = "teamwork"
    MISSIVE = "missive"
    CRAFT = "craft"


class QueueStatus(str, Enum):
    """Resting states of a queue item."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    DEAD_LETTER = "dead_letter"


@dataclass(frozen=True)
class Lease:
    """Time-bounded claim a worker holds on a processing item."""

    worker_id: str
    expires_at: datetime


@dataclass
class QueueItem:
    """Represents an item in the processing queue."""

    id: int
    source: Source
    event_type: str  # e.g. "task.created", "conversation.updated"
    external_id: str  # ID of the entity in the source system
    payload: Dict[str, Any] = field(default_factory=dict)
    status: QueueStatus = QueueStatus.PENDING
    retry_count: int = 0
    max_retries: int = 3
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    processing_started_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    next_retry_at: Optional[datetime] = None
    worker_id: Optional[str] = None
    processing_time_ms: Optional[int] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "QueueItem":
        """Build an item from a database row with already-decoded values."""
        return cls(
            id=row["id"],
            source=Source(row["source"]),
            event_type=row["event_type"],
            external_id=row["external_id"],
            payload=row.get("payload") or {},
            status=QueueStatus(row["status"]),
            retry_count=row["retry_count"],
            max_retries=row["max_retries"],
            error_message=row.get("error_message"),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
            processing_started_at=row.get("processing_started_at"),
            processed_at=row.get("processed_at"),
            next_retry_at=row.get("next_retry_at"),
            worker_id=row.get("worker_id"),
            processing_time_ms=row.get("processing_time_ms"),
        )

    def lease(self, threshold_minutes: int) -> Optional[Lease]:
        """Return the active claim, or None if the item is not being processed."""
        if self.status != QueueStatus.PROCESSING or self.processing_started_at is None:
            return None
        return Lease(
            worker_id=self.worker_id,
            expires_at=self.processing_started_at + timedelta(minutes=threshold_minutes),
        )


@dataclass
class Checkpoint:
    """Resume position of an incremental sync for one source."""

    source: Source
    last_event_time: datetime
    last_cursor: Optional[str] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Checkpoint":
        return cls(
            source=Source(row["source"]),
            last_event_time=row["last_event_time"],
            last_cursor=row.get("last_cursor"),
            updated_at=row.get("updated_at"),
        )


@dataclass
class QueueHealth:
    """Per-source queue metrics."""

    source: Source
    pending: int = 0
    processing: int = 0
    failed: int = 0  # pending items waiting for a retry
    dead_letter: int = 0
    avg_latency_ms: Optional[float] = None
    oldest_pending_age: Optional[float] = None  # seconds
    stuck_count: int = 0


@dataclass
class RecentError:
    """A failed item as shown to operators."""

    id: int
    source: Source
    event_type: str
    external_id: str
    error_message: Optional[str]
    retry_count: int
    status: QueueStatus
    updated_at: datetime

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "RecentError":
        return cls(
            id=row["id"],
            source=Source(row["source"]),
            event_type=row["event_type"],
            external_id=row["external_id"],
            error_message=row["error_message"],
            retry_count=row["retry_count"],
            status=QueueStatus(row["status"]),
            updated_at=row["updated_at"],
        )


@dataclass
class SyncStatus:
    """Checkpoint position and queue backlog for one source."""

    source: Source
    last_event_time: Optional[datetime] = None
    checkpoint_updated_at: Optional[datetime] = None
    pending: int = 0
    processing: int = 0
    failed: int = 0
    last_processed_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "SyncStatus":
        return cls(
            source=Source(row["source"]),
            last_event_time=row["last_event_time"],
            checkpoint_updated_at=row["checkpoint_updated_at"],
            pending=row["pending"],
            processing=row["processing"],
            failed=row["failed"],
            last_processed_at=row["last_processed_at"],
        )


def coerce_source(source) -> Source:
    """Accept a Source or its string value; reject anything else."""
    if isinstance(source, Source):
        return source
    try:
        return Source(source)
    except ValueError:
        valid = ", ".join(s.value for s in Source)
        raise ValueError(f"Unknown source {source!r} (expected one of: {valid})") from None
