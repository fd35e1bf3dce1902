"""Queue exceptions."""


class QueueError(Exception):
    """Base class for queue store errors."""


class ItemNotFoundError(QueueError):
    """Raised when a queue item id does not exist."""

    def __init__(self, item_id: int):
        super().__init__(f"Queue item {item_id} not found")
        self.item_id = item_id


class InvalidTransitionError(QueueError):
    """Raised when an operation would move an item out of a terminal state."""

    def __init__(self, item_id: int, current: str, target: str):
        super().__init__(f"Queue item {item_id}: cannot move from {current} to {target}")
        self.item_id = item_id
        self.current = current
        self.target = target


class PermanentError(Exception):
    """Raised by a handler when the event can never succeed.

    The worker dead-letters the item immediately instead of scheduling a retry.
    """
