"""Per-task retry bookkeeping."""

from hr_agent.config import Config


class RetryManager:
    def __init__(self, max_retries: int = 5, delays: list[float] | None = None):
        self.max_retries = max_retries
        self.delays = list(delays) if delays else [10.0, 20.0, 40.0]
        self._counts: dict[int, int] = {}

    @classmethod
    def from_config(cls, config: Config) -> "RetryManager":
        return cls(config.max_retry_count, config.retry_delays)

    def increment(self, task_id: int) -> int:
        self._counts[task_id] = self._counts.get(task_id, 0) + 1
        return self._counts[task_id]

    def count(self, task_id: int) -> int:
        return self._counts.get(task_id, 0)

    def can_retry(self, task_id: int) -> bool:
        return self.count(task_id) < self.max_retries

    def next_delay(self, task_id: int) -> float:
        """Backoff for the current attempt, in seconds.

        Attempt n uses the n-th entry of the delay table. Past the end of the
        table the last delay keeps doubling.
        """
        attempt = max(self.count(task_id), 1)
        if attempt <= len(self.delays):
            return self.delays[attempt - 1]
        return self.delays[-1] * 2 ** (attempt - len(self.delays))

    def clear(self, task_id: int) -> None:
        self._counts.pop(task_id, None)

    def __len__(self) -> int:
        return len(self._counts)
