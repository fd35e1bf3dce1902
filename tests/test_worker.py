"""Tests for the worker runtime and maintenance scheduler."""
import time

import pytest

from tmc_queue.errors import PermanentError
from tmc_queue.maintenance import MaintenanceScheduler
from tmc_queue.queue.models import QueueStatus, Source
from tmc_queue.worker import EventRouter, Worker


@pytest.fixture
def handled():
    return []


@pytest.fixture
def router(handled):
    router = EventRouter()
    router.register(Source.TEAMWORK, "task.created", handled.append)
    return router


def test_router_resolves_exact_then_wildcard(store, handled):
    wildcard = []
    router = EventRouter()
    router.register("teamwork", "task.created", handled.append)
    router.register("teamwork", "*", wildcard.append)
    exact_id = store.enqueue("teamwork", "task.created", "1", {})
    other_id = store.enqueue("teamwork", "task.deleted", "2", {})

    for item in store.dequeue("w1", 2):
        router(item)

    assert [i.id for i in handled] == [exact_id]
    assert [i.id for i in wildcard] == [other_id]
    assert len(router) == 2


def test_worker_completes_items(store, router, handled):
    ids = [store.enqueue(Source.TEAMWORK, "task.created", str(n), {"n": n}) for n in range(3)]
    worker = Worker(store, router, worker_id="w1", batch_size=10)

    assert worker.run_once() == 3

    assert [i.payload["n"] for i in handled] == [0, 1, 2]
    for item_id in ids:
        item = store.get_item(item_id)
        assert item.status == QueueStatus.COMPLETED
        assert item.processing_time_ms is not None


def test_worker_idle_batch(store, router):
    assert Worker(store, router, worker_id="w1").run_once() == 0


def test_worker_retries_on_error(store):
    def flaky(item):
        raise RuntimeError("Teamwork API timeout")

    item_id = store.enqueue(Source.TEAMWORK, "task.created", "1", {})
    Worker(store, flaky, worker_id="w1").run_once()

    item = store.get_item(item_id)
    assert item.status == QueueStatus.PENDING
    assert item.retry_count == 1
    assert item.error_message == "RuntimeError: Teamwork API timeout"


def test_worker_dead_letters_permanent_error(store):
    def reject(item):
        raise PermanentError("payload has no task id")

    item_id = store.enqueue(Source.TEAMWORK, "task.created", "1", {})
    Worker(store, reject, worker_id="w1").run_once()

    item = store.get_item(item_id)
    assert item.status == QueueStatus.DEAD_LETTER
    assert item.retry_count == 0
    assert "payload has no task id" in item.error_message


def test_worker_dead_letters_unrouted_events(store, router):
    item_id = store.enqueue(Source.CRAFT, "doc.created", "d1", {})
    Worker(store, router, worker_id="w1").run_once()

    item = store.get_item(item_id)
    assert item.status == QueueStatus.DEAD_LETTER
    assert "No handler for craft event doc.created" in item.error_message


def test_worker_truncates_long_errors(store):
    def noisy(item):
        raise ValueError("x" * 5000)

    item_id = store.enqueue(Source.MISSIVE, "message.received", "m1", {})
    Worker(store, noisy, worker_id="w1").run_once()

    assert len(store.get_item(item_id).error_message) == 2000


def test_worker_limits_to_its_source(store, handled):
    router = EventRouter()
    router.register(Source.MISSIVE, "*", handled.append)
    store.enqueue(Source.TEAMWORK, "task.created", "1", {})
    missive_id = store.enqueue(Source.MISSIVE, "message.received", "m1", {})

    Worker(store, router, worker_id="w1", source="missive").run_once()

    assert [i.id for i in handled] == [missive_id]


def test_worker_thread_processes_queue(store, router, handled):
    item_id = store.enqueue(Source.TEAMWORK, "task.created", "1", {})
    worker = Worker(store, router, worker_id="w1", poll_interval=0.05)

    worker.start()
    try:
        deadline = time.monotonic() + 5
        while time.monotonic() < deadline and store.get_item(item_id).status != QueueStatus.COMPLETED:
            time.sleep(0.02)
    finally:
        worker.stop()

    assert store.get_item(item_id).status == QueueStatus.COMPLETED
    assert worker.running is False


def test_maintenance_pass(store, clock):
    stuck = store.enqueue(Source.TEAMWORK, "task.created", "stuck", {})
    done = store.enqueue(Source.TEAMWORK, "task.created", "done", {})
    store.dequeue("w1", 2)
    store.mark_completed(done, 5)
    clock.advance(days=8)

    scheduler = MaintenanceScheduler(store, stuck_threshold_minutes=30, retention_days=7)
    assert scheduler.run_once() == {"reset": 1, "deleted": 1}

    assert store.get_item(stuck).status == QueueStatus.PENDING
    assert store.get_item(done) is None
    assert scheduler.run_once() == {"reset": 0, "deleted": 0}
