"""Checkpoint management for tracking sync progress."""
from datetime import datetime, timedelta, timezone
from typing import Optional

from tmc_queue import settings
from tmc_queue.logging_conf import logger
from tmc_queue.queue.base import QueueStore
from tmc_queue.queue.models import Checkpoint, Source, coerce_source


class CheckpointManager:
    """Manages the resume position of one source's incremental sync."""

    def __init__(self, store: QueueStore, source: Source):
        self.store = store
        self.source = coerce_source(source)

    def get(self) -> Optional[Checkpoint]:
        return self.store.get_checkpoint(self.source)

    def get_resume_time(self, now: Optional[datetime] = None) -> datetime:
        """
        Get the time a backfill scan should resume from.

        Returns:
            Last event time with the overlap applied, or on first run the
            PROCESS_AFTER date, or 30 days ago
        """
        now = now or datetime.now(timezone.utc)
        checkpoint = self.get()
        if checkpoint:
            # Overlap so events written around the last scan are not missed
            overlap = timedelta(seconds=settings.BACKFILL_OVERLAP_SECONDS)
            return checkpoint.last_event_time - overlap

        if settings.PROCESS_AFTER:
            try:
                day, month, year = settings.PROCESS_AFTER.split(".")
                return datetime(int(year), int(month), int(day), tzinfo=timezone.utc)
            except ValueError as e:
                logger.error(f"Failed to parse PROCESS_AFTER: {e}")

        return now - timedelta(days=30)

    def get_cursor(self) -> Optional[str]:
        checkpoint = self.get()
        return checkpoint.last_cursor if checkpoint else None

    def save(self, last_event_time: datetime, cursor: Optional[str] = None) -> None:
        """Save the sync position; a time earlier than the stored one is logged."""
        if last_event_time.tzinfo is None:
            last_event_time = last_event_time.replace(tzinfo=timezone.utc)
        current = self.get()
        if current and last_event_time < current.last_event_time:
            logger.warning(
                f"{self.source.value} checkpoint moving backwards: "
                f"{current.last_event_time.isoformat()} -> {last_event_time.isoformat()}",
                extra={"source": self.source.value},
            )
        self.store.set_checkpoint(self.source, last_event_time, cursor)
