"""Task type registry."""

from hr_agent.tasks.base import BaseTask, TaskServices
from hr_agent.tasks.health import CaStatusCheckTask
from hr_agent.tasks.workflow import (
    AiCodingTask,
    CheckCaTask,
    ConnectCaTask,
    CreateCaTask,
    CreatePrTask,
    DestroyCaTask,
    IssueProcessingTask,
    RestartCaTask,
    StopCaTask,
)

TASK_TYPES: tuple[type[BaseTask], ...] = (
    IssueProcessingTask,
    CreateCaTask,
    ConnectCaTask,
    AiCodingTask,
    CreatePrTask,
    DestroyCaTask,
    CheckCaTask,
    RestartCaTask,
    StopCaTask,
    CaStatusCheckTask,
)


def build_registry(services: TaskServices | None) -> dict[str, BaseTask]:
    """Instantiate every task type, keyed by name."""
    return {cls.name: cls(services) for cls in TASK_TYPES}
