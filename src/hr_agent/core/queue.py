"""In-memory priority queue of task ids."""

import bisect
import itertools
from dataclasses import dataclass, field
from typing import Callable


@dataclass(order=True)
class QueuedTask:
    sort_key: tuple[int, int] = field(init=False, repr=False)
    task_id: int = field(compare=False)
    task_type: str = field(compare=False)
    priority: int = field(compare=False)
    seq: int = field(compare=False)

    def __post_init__(self):
        self.sort_key = (-self.priority, self.seq)


class TaskQueue:
    """Highest priority first, FIFO among equal priorities.

    Each task keeps the sequence number it got on first enqueue, so a task
    that is put back keeps its place relative to later arrivals.
    """

    def __init__(self):
        self._items: list[QueuedTask] = []
        self._seqs: dict[int, int] = {}
        self._counter = itertools.count()

    def enqueue(self, task_id: int, task_type: str, priority: int) -> QueuedTask:
        if self.contains(task_id):
            return next(i for i in self._items if i.task_id == task_id)
        seq = self._seqs.setdefault(task_id, next(self._counter))
        item = QueuedTask(task_id=task_id, task_type=task_type, priority=priority, seq=seq)
        bisect.insort(self._items, item)
        return item

    def dequeue(self, eligible: Callable[[QueuedTask], bool] | None = None) -> QueuedTask | None:
        """Remove and return the first item accepted by ``eligible``."""
        for index, item in enumerate(self._items):
            if eligible is None or eligible(item):
                del self._items[index]
                return item
        return None

    def remove(self, task_id: int) -> bool:
        for index, item in enumerate(self._items):
            if item.task_id == task_id:
                del self._items[index]
                self._seqs.pop(task_id, None)
                return True
        return False

    def forget(self, task_id: int) -> None:
        """Drop the remembered position of a task that left the queue for good."""
        if not self.contains(task_id):
            self._seqs.pop(task_id, None)

    def contains(self, task_id: int) -> bool:
        return any(i.task_id == task_id for i in self._items)

    def peek(self) -> QueuedTask | None:
        return self._items[0] if self._items else None

    def items(self) -> list[QueuedTask]:
        return list(self._items)

    def clear(self) -> None:
        self._items.clear()
        self._seqs.clear()

    def __len__(self) -> int:
        return len(self._items)
