"""Retry policies with exponential backoff."""

import math
from typing import Optional

from media_pipeline.core.config import Settings, settings


class RetryConfig:
    """Configuration for retry behavior with exponential backoff."""

    def __init__(
        self,
        max_attempts: int = 3,
        initial_delay: float = 1.0,
        max_delay: float = 300.0,
        backoff_multiplier: float = 2.0,
    ):
        self.max_attempts = max_attempts
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.backoff_multiplier = backoff_multiplier

    def calculate_delay(self, attempt: int) -> float:
        """Calculate delay for a given attempt using exponential backoff.

        Args:
            attempt: The current attempt number (1-indexed).

        Returns:
            The delay in seconds, capped at max_delay.
        """
        if attempt < 1:
            return self.initial_delay

        delay = self.initial_delay * math.pow(self.backoff_multiplier, attempt - 1)
        return min(delay, self.max_delay)

    def should_retry(self, attempt: int) -> bool:
        """Whether another attempt may follow the given (1-indexed) attempt."""
        return attempt < self.max_attempts

    def __repr__(self) -> str:
        return (
            f"RetryConfig(max_attempts={self.max_attempts}, initial_delay={self.initial_delay}, "
            f"max_delay={self.max_delay}, backoff_multiplier={self.backoff_multiplier})"
        )


def build_retry_configs(config: Settings) -> dict[str, RetryConfig]:
    """Retry configurations for the external collaborators, from settings."""
    return {
        "transcode_submit": RetryConfig(
            max_attempts=config.TRANSCODE_SUBMIT_MAX_ATTEMPTS,
            initial_delay=config.TRANSCODE_RETRY_INITIAL_DELAY,
            max_delay=config.TRANSCODE_RETRY_MAX_DELAY,
            backoff_multiplier=config.TRANSCODE_RETRY_BACKOFF,
        ),
        "transcode_poll": RetryConfig(
            max_attempts=config.TRANSCODE_POLL_MAX_ATTEMPTS,
            initial_delay=1.0,
            max_delay=10.0,
            backoff_multiplier=2.0,
        ),
        "storage": RetryConfig(
            max_attempts=config.STORAGE_MAX_ATTEMPTS,
            initial_delay=0.5,
            max_delay=5.0,
            backoff_multiplier=2.0,
        ),
        "default": RetryConfig(max_attempts=3, initial_delay=1.0, max_delay=60.0, backoff_multiplier=2),
    }


# Default retry configurations for the module-level settings
RETRY_CONFIGS = build_retry_configs(settings)


def get_retry_config(name: str, config: Optional[Settings] = None) -> RetryConfig:
    """Look up a named retry configuration, falling back to the default.

    With ``config`` the policy is built from those settings instead of the
    module-level ones.
    """
    configs = RETRY_CONFIGS if config is None else build_retry_configs(config)
    return configs.get(name, configs["default"])
