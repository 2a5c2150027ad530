"""Configuration loading from environment variables."""

import os
from dataclasses import dataclass, field
from pathlib import Path


def _float_list(value: str) -> list[float]:
    return [float(v) for v in value.split(",") if v.strip()]


@dataclass
class Config:
    db_path: Path = field(default_factory=lambda: Path.home() / ".hr_agent" / "hra.db")
    log_level: str = "INFO"

    # Coding-agent pool
    max_ca_count: int = 3
    ca_name_prefix: str = "hra_"
    ca_ready_timeout: float = 60.0
    ca_ready_poll: float = 1.0

    # Scheduling (seconds)
    monitor_interval: float = 30.0
    task_timeout: float = 600.0
    max_retry_count: int = 5
    retry_delays: list[float] = field(default_factory=lambda: [10.0, 20.0, 40.0])
    health_check_intervals: list[float] = field(
        default_factory=lambda: [10.0, 30.0, 60.0, 120.0, 300.0]
    )
    reconcile_intervals: list[float] = field(
        default_factory=lambda: [10.0, 30.0, 60.0, 120.0, 300.0]
    )

    # Garbage collection
    error_retention: float = 86400.0
    gc_batch_size: int = 10

    # Container runtime
    docker_image: str = "hr-agent/coding-agent:latest"
    docker_network: str = "hr-agent"
    agent_port: int = 4096
    agent_model: str = "anthropic/claude-sonnet-4"

    slack_bot_token: str | None = None
    slack_channel: str | None = None

    @classmethod
    def from_env(cls) -> "Config":
        config = cls()

        if db := os.environ.get("HRA_DB_PATH"):
            config.db_path = Path(db)

        if level := os.environ.get("HRA_LOG_LEVEL"):
            config.log_level = level.upper()

        if count := os.environ.get("HRA_MAX_CA_COUNT"):
            config.max_ca_count = int(count)

        if prefix := os.environ.get("HRA_CA_NAME_PREFIX"):
            config.ca_name_prefix = prefix

        if ready := os.environ.get("HRA_CA_READY_TIMEOUT"):
            config.ca_ready_timeout = float(ready)

        if interval := os.environ.get("HRA_MONITOR_INTERVAL"):
            config.monitor_interval = float(interval)

        if timeout := os.environ.get("HRA_TASK_TIMEOUT"):
            config.task_timeout = float(timeout)

        if retries := os.environ.get("HRA_MAX_RETRY_COUNT"):
            config.max_retry_count = int(retries)

        if delays := os.environ.get("HRA_RETRY_DELAYS"):
            config.retry_delays = _float_list(delays)

        if intervals := os.environ.get("HRA_HEALTH_CHECK_INTERVALS"):
            config.health_check_intervals = _float_list(intervals)

        if intervals := os.environ.get("HRA_RECONCILE_INTERVALS"):
            config.reconcile_intervals = _float_list(intervals)

        if retention := os.environ.get("HRA_ERROR_RETENTION"):
            config.error_retention = float(retention)

        if batch := os.environ.get("HRA_GC_BATCH_SIZE"):
            config.gc_batch_size = int(batch)

        if image := os.environ.get("HRA_DOCKER_IMAGE"):
            config.docker_image = image

        if network := os.environ.get("HRA_DOCKER_NETWORK"):
            config.docker_network = network

        if port := os.environ.get("HRA_AGENT_PORT"):
            config.agent_port = int(port)

        if model := os.environ.get("HRA_AGENT_MODEL"):
            config.agent_model = model

        config.slack_bot_token = os.environ.get("SLACK_BOT_TOKEN")
        config.slack_channel = os.environ.get("HRA_SLACK_CHANNEL")

        return config


def get_config() -> Config:
    return Config.from_env()
