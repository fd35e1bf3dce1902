"""Main application - runs queue workers and background maintenance."""
import importlib
import signal
import sys
import time
from typing import List, Optional

from tmc_queue.logging_conf import logger
from tmc_queue import settings
from tmc_queue.maintenance import MaintenanceScheduler
from tmc_queue.queue.factory import open_queue
from tmc_queue.worker import EventRouter, Worker


def load_router(module_name: Optional[str] = None) -> EventRouter:
    """Build the event router from the configured handler module."""
    router = EventRouter()
    module_name = module_name or settings.HANDLER_MODULE
    if module_name:
        module = importlib.import_module(module_name)
        module.register(router)
        logger.info(f"Loaded {len(router)} handlers from {module_name}")
    return router


class Application:
    """Owns the worker threads and the maintenance thread."""

    def __init__(self, router: Optional[EventRouter] = None):
        self.router = router
        self.workers: List[Worker] = []
        self.maintenance: Optional[MaintenanceScheduler] = None
        self.running = False

    def start(self):
        """Start the application."""
        logger.info("=" * 50)
        logger.info("Connector Event Queue")
        logger.info("=" * 50)
        logger.info(f"Worker: {settings.WORKER_ID} ({settings.WORKER_THREADS} threads)")
        logger.info(f"Poll interval: {settings.POLL_INTERVAL}s, batch size: {settings.BATCH_SIZE}")
        logger.info(f"Stuck threshold: {settings.STUCK_THRESHOLD_MINUTES} min, retention: {settings.RETENTION_DAYS} days")
        logger.info("=" * 50)

        settings.validate_config()
        if self.router is None:
            self.router = load_router()

        schema_store = open_queue()
        try:
            schema_store.ensure_schema()
            # Recover claims left behind by a previous crash
            schema_store.reset_stuck_items(settings.STUCK_THRESHOLD_MINUTES)
        finally:
            schema_store.close()

        self.maintenance = MaintenanceScheduler(open_queue())
        self.maintenance.start()

        if len(self.router):
            for n in range(settings.WORKER_THREADS):
                worker = Worker(open_queue(), self.router, worker_id=f"{settings.WORKER_ID}-{n}")
                worker.start()
                self.workers.append(worker)
        else:
            logger.warning("No handlers registered (HANDLER_MODULE unset) - running maintenance only")

        self.running = True
        logger.info("Started")

    def stop(self):
        """Stop the application."""
        if not self.running:
            return
        self.running = False
        for worker in self.workers:
            worker.stop()
            self._close_store(worker)
        if self.maintenance:
            self.maintenance.stop()
            self._close_store(self.maintenance)
        logger.info("Stopped")

    @staticmethod
    def _close_store(owner):
        """Close the store of a stopped thread; leave it open while the thread still runs."""
        if owner.thread is not None and owner.thread.is_alive():
            logger.warning(f"{owner.thread.name} did not stop in time; leaving its store open")
            return
        owner.store.close()

    def run(self):
        """Main loop."""
        self.start()
        try:
            while self.running:
                time.sleep(1)
        except KeyboardInterrupt:
            pass
        self.stop()


def main():
    """Entry point."""
    app = Application()

    def signal_handler(sig, frame):
        logger.info(f"Received signal {sig}")
        app.stop()
        sys.exit(0)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        app.run()
    except ValueError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
