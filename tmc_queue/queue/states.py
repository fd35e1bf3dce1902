"""Queue item state machine and retry backoff schedule."""
from datetime import timedelta
from typing import Dict, FrozenSet, Tuple

from tmc_queue.errors import InvalidTransitionError
from tmc_queue.queue.models import QueueStatus

# Delay before a failed item becomes eligible again, keyed by retry_count
# before the increment. Anything past the table waits the last entry.
RETRY_DELAYS: Tuple[timedelta, ...] = (
    timedelta(minutes=1),
    timedelta(minutes=5),
    timedelta(minutes=15),
    timedelta(minutes=30),
    timedelta(minutes=60),
)

TRANSITIONS: Dict[QueueStatus, FrozenSet[QueueStatus]] = {
    QueueStatus.PENDING: frozenset({
        QueueStatus.PROCESSING,
        QueueStatus.PENDING,  # failed again before it was claimed
        QueueStatus.COMPLETED,
        QueueStatus.DEAD_LETTER,
    }),
    QueueStatus.PROCESSING: frozenset({
        QueueStatus.COMPLETED,
        QueueStatus.PENDING,
        QueueStatus.DEAD_LETTER,
    }),
    QueueStatus.COMPLETED: frozenset({QueueStatus.COMPLETED}),
    QueueStatus.DEAD_LETTER: frozenset(),
}


def retry_delay(retry_count: int) -> timedelta:
    """Backoff for an item that has already been retried retry_count times."""
    if retry_count < 0:
        raise ValueError(f"retry_count must not be negative: {retry_count}")
    return RETRY_DELAYS[min(retry_count, len(RETRY_DELAYS) - 1)]


def failure_outcome(retry_count: int, max_retries: int, retry: bool = True) -> QueueStatus:
    """Status an item moves to when it fails with the given retry budget."""
    if retry and retry_count < max_retries:
        return QueueStatus.PENDING
    return QueueStatus.DEAD_LETTER


def can_transition(current: QueueStatus, target: QueueStatus) -> bool:
    return target in TRANSITIONS[current]


def check_transition(item_id: int, current: QueueStatus, target: QueueStatus) -> None:
    if not can_transition(current, target):
        raise InvalidTransitionError(item_id, current.value, target.value)
