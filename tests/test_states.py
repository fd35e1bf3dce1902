"""Tests for the state machine, backoff schedule and models."""
from datetime import timedelta

import pytest

from tmc_queue.errors import InvalidTransitionError
from tmc_queue.queue.models import QueueItem, QueueStatus, Source, coerce_source
from tmc_queue.queue.states import can_transition, check_transition, failure_outcome, retry_delay

from conftest import T0


@pytest.mark.parametrize("retry_count, minutes", [
    (0, 1),
    (1, 5),
    (2, 15),
    (3, 30),
    (4, 60),
    (5, 60),
    (50, 60),
])
def test_retry_delay_schedule(retry_count, minutes):
    assert retry_delay(retry_count) == timedelta(minutes=minutes)


def test_retry_delay_rejects_negative():
    with pytest.raises(ValueError):
        retry_delay(-1)


class TestFailureOutcome:

    def test_retries_while_budget_left(self):
        assert failure_outcome(0, 3) == QueueStatus.PENDING
        assert failure_outcome(2, 3) == QueueStatus.PENDING

    def test_dead_letters_when_budget_exhausted(self):
        assert failure_outcome(3, 3) == QueueStatus.DEAD_LETTER
        assert failure_outcome(3, 3, retry=True) == QueueStatus.DEAD_LETTER

    def test_dead_letters_when_retry_disabled(self):
        assert failure_outcome(0, 3, retry=False) == QueueStatus.DEAD_LETTER

    def test_zero_budget_never_retries(self):
        assert failure_outcome(0, 0) == QueueStatus.DEAD_LETTER


class TestTransitions:

    def test_processing_can_finish_any_way(self):
        for target in (QueueStatus.COMPLETED, QueueStatus.PENDING, QueueStatus.DEAD_LETTER):
            assert can_transition(QueueStatus.PROCESSING, target)

    def test_dead_letter_is_terminal(self):
        for target in QueueStatus:
            assert not can_transition(QueueStatus.DEAD_LETTER, target)

    def test_completed_only_rewrites_itself(self):
        assert can_transition(QueueStatus.COMPLETED, QueueStatus.COMPLETED)
        assert not can_transition(QueueStatus.COMPLETED, QueueStatus.PENDING)
        assert not can_transition(QueueStatus.COMPLETED, QueueStatus.DEAD_LETTER)

    def test_check_transition_raises(self):
        with pytest.raises(InvalidTransitionError) as exc_info:
            check_transition(7, QueueStatus.DEAD_LETTER, QueueStatus.COMPLETED)
        assert exc_info.value.item_id == 7
        assert "dead_letter" in str(exc_info.value)


def test_coerce_source_accepts_strings_and_enums():
    assert coerce_source("craft") is Source.CRAFT
    assert coerce_source(Source.MISSIVE) is Source.MISSIVE


def test_coerce_source_rejects_unknown():
    with pytest.raises(ValueError, match="teamwork, missive, craft"):
        coerce_source("slack")


def test_lease_only_for_processing_items():
    item = QueueItem(id=1, source=Source.TEAMWORK, event_type="task.created", external_id="42")
    assert item.lease(30) is None

    item.status = QueueStatus.PROCESSING
    item.worker_id = "w1"
    item.processing_started_at = T0
    lease = item.lease(30)
    assert lease.worker_id == "w1"
    assert lease.expires_at == T0 + timedelta(minutes=30)
