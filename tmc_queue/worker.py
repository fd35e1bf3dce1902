"""Worker for processing queued connector events."""
import time
import threading
from typing import Callable, Dict, Optional, Tuple

from tmc_queue import settings
from tmc_queue.errors import PermanentError, QueueError
from tmc_queue.logging_conf import logger
from tmc_queue.queue.base import QueueStore
from tmc_queue.queue.models import QueueItem, Source, coerce_source

Handler = Callable[[QueueItem], None]

MAX_ERROR_LENGTH = 2000
WILDCARD = "*"


class EventRouter:
    """Dispatches an item to the handler registered for its source and event type."""

    def __init__(self):
        self._handlers: Dict[Tuple[Source, str], Handler] = {}

    def register(self, source, event_type: str, handler: Handler) -> None:
        """Register a handler; event_type "*" catches every event of the source."""
        self._handlers[(coerce_source(source), event_type)] = handler

    def resolve(self, item: QueueItem) -> Optional[Handler]:
        return self._handlers.get((item.source, item.event_type)) or self._handlers.get((item.source, WILDCARD))

    def __call__(self, item: QueueItem) -> None:
        handler = self.resolve(item)
        if handler is None:
            raise PermanentError(f"No handler for {item.source.value} event {item.event_type}")
        handler(item)

    def __len__(self):
        return len(self._handlers)


class Worker:
    """Worker that claims batches from the queue and runs a handler on each item."""

    def __init__(
        self,
        store: QueueStore,
        handler: Handler,
        worker_id: Optional[str] = None,
        batch_size: Optional[int] = None,
        source: Optional[Source] = None,
        poll_interval: Optional[float] = None,
    ):
        self.store = store
        self.handler = handler
        self.worker_id = worker_id or settings.WORKER_ID
        self.batch_size = batch_size or settings.BATCH_SIZE
        self.source = coerce_source(source) if source is not None else None
        self.poll_interval = poll_interval if poll_interval is not None else settings.POLL_INTERVAL
        self.running = False
        self.thread = None
        self._stop_event = threading.Event()

    def start(self):
        """Start the worker in a background thread."""
        if self.running:
            logger.warning(f"Worker {self.worker_id} is already running")
            return

        self.running = True
        self._stop_event.clear()
        self.thread = threading.Thread(target=self._run, name=f"worker-{self.worker_id}", daemon=True)
        self.thread.start()
        logger.info(f"Worker {self.worker_id} started")

    def stop(self):
        """Stop the worker after the item in progress."""
        if not self.running:
            return

        self.running = False
        self._stop_event.set()
        if self.thread:
            self.thread.join(timeout=10)
        logger.info(f"Worker {self.worker_id} stopped")

    def _run(self):
        """Main worker loop."""
        logger.info(f"Worker thread {self.worker_id} started")

        while self.running:
            try:
                processed = self.run_once()
                if not processed:
                    self._stop_event.wait(self.poll_interval)
            except Exception as e:
                logger.error(f"Worker {self.worker_id} error: {e}", exc_info=True)
                self._stop_event.wait(5)

        logger.info(f"Worker thread {self.worker_id} stopped")

    def run_once(self) -> int:
        """Claim and process one batch. Returns the number of items handled."""
        batch = self.store.dequeue(self.worker_id, self.batch_size, self.source)
        if not batch:
            return 0

        handled = 0
        for index, item in enumerate(batch):
            # Items not reached before a stop stay claimed until the reclaimer frees them
            if self._stop_event.is_set():
                break
            # The batch was claimed at once; refresh the lease for later items
            if index and not self.store.renew_lease(item.id, self.worker_id):
                continue
            self._process(item)
            handled += 1
        return handled

    def _process(self, item: QueueItem) -> None:
        extra = {"source": item.source.value, "item_id": item.id}
        logger.info(f"Processing {item.source.value}:{item.external_id} ({item.event_type})", extra=extra)
        started = time.monotonic()
        try:
            self.handler(item)
        except PermanentError as e:
            logger.error(f"Permanent failure for item {item.id}: {e}", extra=extra)
            self._fail(item, e, retry=False)
            return
        except Exception as e:
            logger.error(f"Failed to process item {item.id}: {e}", exc_info=True, extra=extra)
            self._fail(item, e, retry=True)
            return

        elapsed_ms = int((time.monotonic() - started) * 1000)
        try:
            self.store.mark_completed(item.id, elapsed_ms)
        except QueueError as e:
            logger.warning(f"Could not mark item {item.id} completed: {e}", extra=extra)

    def _fail(self, item: QueueItem, error: Exception, retry: bool) -> None:
        message = f"{type(error).__name__}: {error}"[:MAX_ERROR_LENGTH]
        try:
            self.store.mark_failed(item.id, message, retry=retry)
        except QueueError as e:
            logger.warning(f"Could not record failure for item {item.id}: {e}")
