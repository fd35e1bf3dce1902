"""Read-only queue health reporting."""
from typing import Dict, List, Optional

from tmc_queue import settings
from tmc_queue.logging_conf import logger
from tmc_queue.queue.base import QueueStore
from tmc_queue.queue.models import QueueHealth, RecentError, Source, SyncStatus


class HealthMonitor:
    """Aggregates queue and checkpoint state for dashboards and logs."""

    def __init__(self, store: QueueStore, stuck_threshold_minutes: Optional[int] = None):
        self.store = store
        self.stuck_threshold_minutes = (
            stuck_threshold_minutes if stuck_threshold_minutes is not None else settings.STUCK_THRESHOLD_MINUTES
        )

    def queue_health(self) -> Dict[Source, QueueHealth]:
        return self.store.queue_health(self.stuck_threshold_minutes)

    def recent_errors(self, window_hours: int = 24, limit: int = 100) -> List[RecentError]:
        return self.store.recent_errors(window_hours, limit)

    def sync_status(self) -> List[SyncStatus]:
        return self.store.sync_status()

    def is_healthy(self) -> bool:
        """False when any source has stuck items."""
        return not any(h.stuck_count for h in self.queue_health().values())

    def log_summary(self) -> Dict[Source, QueueHealth]:
        health = self.queue_health()
        for source, h in health.items():
            avg = f"{h.avg_latency_ms:.0f}ms" if h.avg_latency_ms is not None else "-"
            oldest = f"{h.oldest_pending_age:.0f}s" if h.oldest_pending_age is not None else "-"
            message = (
                f"Queue {source.value}: pending={h.pending} processing={h.processing} "
                f"failed={h.failed} dead_letter={h.dead_letter} avg={avg} "
                f"oldest_pending={oldest} stuck={h.stuck_count}"
            )
            if h.stuck_count or h.dead_letter:
                logger.warning(message, extra={"source": source.value})
            else:
                logger.info(message, extra={"source": source.value})
        return health
