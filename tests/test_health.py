"""Tests for queue health, recent errors and sync status reporting."""
from datetime import timedelta

import pytest

from tmc_queue.health import HealthMonitor
from tmc_queue.queue.models import QueueHealth, QueueStatus, Source

from conftest import T0


@pytest.fixture
def busy_store(store, clock):
    """Teamwork items in every state; nothing for missive or craft."""
    ids = {
        name: store.enqueue(Source.TEAMWORK, "task.updated", name, {})
        for name in ("fast", "slow", "retrying", "dead", "stuck")
    }
    store.dequeue("w1", 5)
    store.mark_completed(ids["fast"], 80)
    store.mark_completed(ids["slow"], 120)
    store.mark_failed(ids["retrying"], "upstream 502")
    store.mark_failed(ids["dead"], "malformed payload", retry=False)
    ids["fresh"] = store.enqueue(Source.TEAMWORK, "task.created", "fresh", {})
    clock.advance(minutes=40)
    store.ids = ids
    return store


def test_queue_health_per_source(busy_store):
    health = HealthMonitor(busy_store, stuck_threshold_minutes=30).queue_health()

    assert set(health) == set(Source)
    teamwork = health[Source.TEAMWORK]
    assert teamwork.pending == 2
    assert teamwork.processing == 1
    assert teamwork.failed == 1
    assert teamwork.dead_letter == 1
    assert teamwork.avg_latency_ms == pytest.approx(100.0)
    assert teamwork.oldest_pending_age == pytest.approx(40 * 60)
    assert teamwork.stuck_count == 1
    assert health[Source.MISSIVE] == QueueHealth(source=Source.MISSIVE)


def test_stuck_count_uses_threshold(busy_store):
    health = HealthMonitor(busy_store, stuck_threshold_minutes=60).queue_health()
    assert health[Source.TEAMWORK].stuck_count == 0


def test_health_is_read_only(busy_store):
    before = [busy_store.get_item(i) for i in busy_store.ids.values()]
    HealthMonitor(busy_store).log_summary()
    assert [busy_store.get_item(i) for i in busy_store.ids.values()] == before


def test_is_healthy(busy_store):
    monitor = HealthMonitor(busy_store, stuck_threshold_minutes=30)
    assert monitor.is_healthy() is False
    busy_store.reset_stuck_items(30)
    assert monitor.is_healthy() is True


def test_log_summary_warns_on_dead_letters(busy_store, caplog):
    with caplog.at_level("INFO"):
        HealthMonitor(busy_store).log_summary()

    warnings = [r.getMessage() for r in caplog.records if r.levelname == "WARNING"]
    assert any("Queue teamwork" in m and "dead_letter=1" in m for m in warnings)


def test_recent_errors(busy_store):
    errors = HealthMonitor(busy_store).recent_errors()

    assert [e.id for e in errors] == [busy_store.ids["dead"], busy_store.ids["retrying"]]
    dead, retrying = errors
    assert dead.status == QueueStatus.DEAD_LETTER
    assert dead.error_message == "malformed payload"
    assert retrying.status == QueueStatus.PENDING
    assert retrying.retry_count == 1
    assert retrying.external_id == "retrying"
    assert retrying.updated_at == T0


def test_recent_errors_window_and_limit(busy_store, clock):
    assert len(busy_store.recent_errors(limit=1)) == 1
    clock.advance(hours=24)
    assert busy_store.recent_errors(window_hours=24) == []
    assert len(busy_store.recent_errors(window_hours=48)) == 2


def test_sync_status_joins_checkpoints(busy_store):
    busy_store.set_checkpoint(Source.TEAMWORK, T0 - timedelta(hours=1), "page-3")
    busy_store.set_checkpoint(Source.CRAFT, T0, None)

    status = {s.source: s for s in HealthMonitor(busy_store).sync_status()}

    assert set(status) == {Source.TEAMWORK, Source.CRAFT}
    teamwork = status[Source.TEAMWORK]
    assert teamwork.last_event_time == T0 - timedelta(hours=1)
    assert teamwork.pending == 2
    assert teamwork.processing == 1
    assert teamwork.failed == 1
    assert teamwork.last_processed_at == T0
    craft = status[Source.CRAFT]
    assert craft.pending == 0
    assert craft.last_processed_at is None
    assert craft.last_event_time == T0


def test_zero_threshold_counts_every_claim(store, clock):
    item_id = store.enqueue(Source.TEAMWORK, "task.created", "1", {})
    store.dequeue("w1", 1)
    clock.advance(minutes=5)

    health = store.queue_health(stuck_threshold_minutes=0)
    assert health[Source.TEAMWORK].stuck_count == 1
    assert HealthMonitor(store, stuck_threshold_minutes=0).is_healthy() is False

    assert store.reset_stuck_items(0) == 1
    assert store.get_item(item_id).status == QueueStatus.PENDING
