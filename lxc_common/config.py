"""
Configuration for the console engine.

Values come from defaults, then ``LXC_CONSOLE_*`` environment variables,
then command-line arguments of the entrypoint (highest priority).

Environment Variables:
    LXC_CONSOLE_ENDPOINT: LXD unix socket path or https:// URL
    LXC_CONSOLE_REFRESH_INTERVAL: Seconds between heartbeat refreshes (default: 10.0)
    LXC_CONSOLE_POLL_INTERVAL: Seconds between operation polls (default: 0.5)
    LXC_CONSOLE_OPERATION_TIMEOUT: Seconds before a remote job is given up (default: 180.0)
    LXC_CONSOLE_OPERATION_RETENTION: Seconds finished operations stay visible (default: 30.0)
    LXC_CONSOLE_HISTORY_LIMIT: Finished operations kept at most (default: 50)
    LXC_CONSOLE_REQUEST_TIMEOUT: Seconds per API request (default: 30.0)
    LXC_CONSOLE_STATUS_SOURCE: "poll" or "wait" (default: poll)
    LXC_CONSOLE_RETRY_BASE_DELAY: First retry delay in seconds (default: 0.5)
    LXC_CONSOLE_RETRY_MULTIPLIER: Backoff multiplier (default: 2.0)
    LXC_CONSOLE_RETRY_MAX_DELAY: Maximum retry delay in seconds (default: 10.0)
    LXC_CONSOLE_RETRY_MAX_ATTEMPTS: Maximum attempts per call (default: 4)
"""

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

ENV_PREFIX = "LXC_CONSOLE_"
STATUS_SOURCES = ("poll", "wait")


def _positive_float(
    env: Mapping[str, str], name: str, default: float
) -> float:
    """Read a positive float from the environment, falling back to default."""
    raw = env.get(ENV_PREFIX + name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning(f"Invalid {ENV_PREFIX}{name}={raw}, using default {default}")
        return default
    if value <= 0:
        logger.warning(f"Invalid {ENV_PREFIX}{name}={value}, using default {default}")
        return default
    return value


def _positive_int(env: Mapping[str, str], name: str, default: int) -> int:
    """Read a positive integer from the environment, falling back to default."""
    raw = env.get(ENV_PREFIX + name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning(f"Invalid {ENV_PREFIX}{name}={raw}, using default {default}")
        return default
    if value <= 0:
        logger.warning(f"Invalid {ENV_PREFIX}{name}={value}, using default {default}")
        return default
    return value


@dataclass
class RetryConfig:
    """
    Backoff parameters for retryable request failures.

    The n-th retry waits ``min(base_delay * multiplier ** (n - 1), max_delay)``.
    ``max_attempts`` counts the first attempt.
    """

    base_delay: float = 0.5
    multiplier: float = 2.0
    max_delay: float = 10.0
    max_attempts: int = 4
    max_elapsed: float | None = None

    def validate(self) -> None:
        if self.base_delay < 0:
            raise ValueError("retry.base_delay must be >= 0")
        if self.multiplier < 1:
            raise ValueError("retry.multiplier must be >= 1")
        if self.max_delay < self.base_delay:
            raise ValueError("retry.max_delay must be >= retry.base_delay")
        if self.max_attempts < 1:
            raise ValueError("retry.max_attempts must be >= 1")

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "RetryConfig":
        env = os.environ if env is None else env
        defaults = cls()
        return cls(
            base_delay=_positive_float(env, "RETRY_BASE_DELAY", defaults.base_delay),
            multiplier=_positive_float(env, "RETRY_MULTIPLIER", defaults.multiplier),
            max_delay=_positive_float(env, "RETRY_MAX_DELAY", defaults.max_delay),
            max_attempts=_positive_int(
                env, "RETRY_MAX_ATTEMPTS", defaults.max_attempts
            ),
        )


@dataclass
class EngineConfig:
    """Settings consumed by the engine and its API client."""

    endpoint: str | None = None  # socket path or https:// URL, None = autodetect
    refresh_interval: float = 10.0
    poll_interval: float = 0.5
    operation_timeout: float = 180.0
    operation_retention: float = 30.0
    prune_interval: float = 5.0
    history_limit: int = 50
    request_timeout: float = 30.0
    status_source: str = "poll"  # "poll" or "wait" (long-poll subscription)
    retry: RetryConfig = field(default_factory=RetryConfig)

    def validate(self) -> None:
        """
        Check that the settings are consistent.

        Raises:
            ValueError: If any value is out of range
        """
        for name in (
            "refresh_interval",
            "poll_interval",
            "operation_timeout",
            "prune_interval",
            "request_timeout",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be > 0")
        if self.operation_retention < 0:
            raise ValueError("operation_retention must be >= 0")
        if self.history_limit < 1:
            raise ValueError("history_limit must be >= 1")
        if self.status_source not in STATUS_SOURCES:
            raise ValueError(
                f"status_source must be one of {', '.join(STATUS_SOURCES)}"
            )
        self.retry.validate()

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "EngineConfig":
        """
        Build a configuration from ``LXC_CONSOLE_*`` environment variables.

        Invalid values are logged and replaced by their defaults.
        """
        env = os.environ if env is None else env
        defaults = cls()

        status_source = env.get(ENV_PREFIX + "STATUS_SOURCE", defaults.status_source)
        if status_source not in STATUS_SOURCES:
            logger.warning(
                f"Invalid {ENV_PREFIX}STATUS_SOURCE={status_source}, using default "
                f"{defaults.status_source}"
            )
            status_source = defaults.status_source

        return cls(
            endpoint=env.get(ENV_PREFIX + "ENDPOINT") or None,
            refresh_interval=_positive_float(
                env, "REFRESH_INTERVAL", defaults.refresh_interval
            ),
            poll_interval=_positive_float(env, "POLL_INTERVAL", defaults.poll_interval),
            operation_timeout=_positive_float(
                env, "OPERATION_TIMEOUT", defaults.operation_timeout
            ),
            operation_retention=_positive_float(
                env, "OPERATION_RETENTION", defaults.operation_retention
            ),
            history_limit=_positive_int(env, "HISTORY_LIMIT", defaults.history_limit),
            request_timeout=_positive_float(
                env, "REQUEST_TIMEOUT", defaults.request_timeout
            ),
            status_source=status_source,
            retry=RetryConfig.from_env(env),
        )
