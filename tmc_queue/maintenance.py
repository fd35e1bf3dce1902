"""Periodic queue maintenance: stuck-item recovery, retention and health logging."""
import threading
import time
from typing import Dict, Optional

from tmc_queue import settings
from tmc_queue.health import HealthMonitor
from tmc_queue.logging_conf import logger
from tmc_queue.queue.base import QueueStore


class MaintenanceScheduler:
    """Runs the reclaimer and retention sweeper on a fixed interval."""

    def __init__(
        self,
        store: QueueStore,
        interval: Optional[int] = None,
        stuck_threshold_minutes: Optional[int] = None,
        retention_days: Optional[int] = None,
        health_interval: Optional[int] = None,
    ):
        self.store = store
        self.interval = interval or settings.MAINTENANCE_INTERVAL
        self.stuck_threshold_minutes = (
            stuck_threshold_minutes if stuck_threshold_minutes is not None else settings.STUCK_THRESHOLD_MINUTES
        )
        self.retention_days = retention_days if retention_days is not None else settings.RETENTION_DAYS
        self.health_interval = health_interval or settings.HEALTH_LOG_INTERVAL
        self.health = HealthMonitor(store, self.stuck_threshold_minutes)
        self.running = False
        self.thread = None
        self._stop_event = threading.Event()
        self._last_health_log: Optional[float] = None

    def start(self):
        """Start maintenance in a background thread."""
        if self.running:
            logger.warning("Maintenance is already running")
            return

        self.running = True
        self._stop_event.clear()
        self.thread = threading.Thread(target=self._run, name="queue-maintenance", daemon=True)
        self.thread.start()
        logger.info(f"Maintenance started (interval: {self.interval}s)")

    def stop(self):
        if not self.running:
            return

        self.running = False
        self._stop_event.set()
        if self.thread:
            self.thread.join(timeout=10)
        logger.info("Maintenance stopped")

    def _run(self):
        while self.running:
            try:
                self.run_once()
            except Exception as e:
                logger.error(f"Maintenance error: {e}", exc_info=True)
            self._stop_event.wait(self.interval)

    def run_once(self) -> Dict[str, int]:
        """Run one maintenance pass and return what it changed."""
        reset = self.store.reset_stuck_items(self.stuck_threshold_minutes)
        deleted = self.store.cleanup_old_items(self.retention_days)

        now = time.monotonic()
        if self._last_health_log is None or now - self._last_health_log >= self.health_interval:
            self._last_health_log = now
            self.health.log_summary()

        return {"reset": reset, "deleted": deleted}
