"""Interface shared by the queue store backends."""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional

from tmc_queue import settings
from tmc_queue.logging_conf import logger
from tmc_queue.queue.models import (
    Checkpoint,
    QueueHealth,
    QueueItem,
    QueueStatus,
    RecentError,
    Source,
    SyncStatus,
)


class QueueStore(ABC):
    """Durable queue of connector events plus per-source sync checkpoints.

    Every method is a single atomic operation against the backing database, so
    any number of workers can share one store without further coordination.
    Instances hold one connection and are not meant to be shared between threads.
    """

    @abstractmethod
    def ensure_schema(self) -> None:
        """Create tables and indexes if they don't exist."""

    @abstractmethod
    def close(self) -> None:
        """Release the underlying connection."""

    # Producer side

    @abstractmethod
    def enqueue(
        self,
        source: Source,
        event_type: str,
        external_id: str,
        payload: Optional[Dict[str, Any]] = None,
        max_retries: Optional[int] = None,
        dedupe: bool = False,
    ) -> int:
        """Insert a pending item and return its id.

        With ``dedupe`` an existing pending item for the same
        (source, event_type, external_id) takes the new payload instead.
        """

    @abstractmethod
    def get_item(self, item_id: int) -> Optional[QueueItem]:
        """Fetch a single item, or None."""

    # Worker side

    @abstractmethod
    def dequeue(self, worker_id: str, max_items: int = 10, source: Optional[Source] = None) -> List[QueueItem]:
        """Claim up to max_items eligible pending items for worker_id.

        Rows locked by a concurrent claim are skipped, never waited on.
        """

    @abstractmethod
    def mark_completed(self, item_id: int, processing_time_ms: Optional[int] = None) -> None:
        """Mark an item as successfully processed."""

    @abstractmethod
    def mark_failed(self, item_id: int, error_message: str, retry: bool = True) -> QueueStatus:
        """Schedule a retry with backoff or dead-letter the item.

        Returns the status the item ended up in.
        """

    @abstractmethod
    def renew_lease(self, item_id: int, worker_id: str) -> bool:
        """Extend the claim worker_id holds on a processing item."""

    # Maintenance

    @abstractmethod
    def reset_stuck_items(self, stuck_threshold_minutes: int = 30) -> int:
        """Return abandoned processing items to pending. Returns the count reset."""

    @abstractmethod
    def cleanup_old_items(self, retention_days: int = 7) -> int:
        """Delete completed items older than the retention window. Returns the count deleted."""

    # Checkpoints

    @abstractmethod
    def get_checkpoint(self, source: Source) -> Optional[Checkpoint]:
        ...

    @abstractmethod
    def set_checkpoint(self, source: Source, last_event_time: datetime, last_cursor: Optional[str] = None) -> None:
        ...

    # Monitoring

    @abstractmethod
    def queue_health(self, stuck_threshold_minutes: Optional[int] = None) -> Dict[Source, QueueHealth]:
        ...

    @abstractmethod
    def recent_errors(self, window_hours: int = 24, limit: int = 100) -> List[RecentError]:
        ...

    @abstractmethod
    def sync_status(self) -> List[SyncStatus]:
        ...

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    # Helpers shared by the backends

    @staticmethod
    def _check_max_items(max_items: int) -> None:
        if max_items < 1:
            raise ValueError(f"max_items must be at least 1: {max_items}")

    @staticmethod
    def _resolve_max_retries(max_retries: Optional[int]) -> int:
        if max_retries is None:
            return settings.MAX_RETRIES
        if max_retries < 0:
            raise ValueError(f"max_retries must not be negative: {max_retries}")
        return max_retries

    @staticmethod
    def _empty_health() -> Dict[Source, QueueHealth]:
        return {source: QueueHealth(source=source) for source in Source}

    @staticmethod
    def _log_failure(item: QueueItem, outcome: QueueStatus, error_message: str) -> None:
        extra = {"source": item.source.value, "item_id": item.id}
        if outcome == QueueStatus.DEAD_LETTER:
            logger.error(
                f"Dead-lettered {item.source.value}:{item.external_id} "
                f"(item {item.id}, retries {item.retry_count}/{item.max_retries}): {error_message}",
                extra=extra,
            )
        else:
            logger.warning(
                f"Retry {item.retry_count + 1}/{item.max_retries} scheduled for "
                f"{item.source.value}:{item.external_id} (item {item.id}): {error_message}",
                extra=extra,
            )
