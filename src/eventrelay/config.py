"""
Configuration for the dispatcher and its retry behavior.

This module provides:
- BackoffPolicy: Exponential backoff between publish attempts of a record
- DispatcherConfig: Polling, leasing and retry settings for a Dispatcher
"""

import random
from dataclasses import dataclass, field


@dataclass(frozen=True)
class BackoffPolicy:
    """
    Exponential backoff applied between publish attempts of one record.

    After a failed publish the record becomes claimable again only once the
    delay for its new attempt count has passed.

    Attributes:
        initial_delay: Delay in seconds after the first failed attempt
        multiplier: Growth factor applied per additional attempt
        max_delay: Upper bound for the delay in seconds
        jitter: Fraction of the delay added or subtracted at random (0-1)

    Example:
        >>> policy = BackoffPolicy(initial_delay=1.0, multiplier=2.0)
        >>> policy.delay_for(1)
        1.0
        >>> policy.delay_for(4)
        8.0
    """

    initial_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 300.0
    jitter: float = 0.0

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if self.initial_delay < 0:
            raise ValueError(f"initial_delay must be >= 0, got {self.initial_delay}.")

        if self.multiplier < 1.0:
            raise ValueError(f"multiplier must be >= 1.0, got {self.multiplier}.")

        if self.max_delay < self.initial_delay:
            raise ValueError(
                f"max_delay ({self.max_delay}) must be >= initial_delay ({self.initial_delay})."
            )

        if not 0.0 <= self.jitter <= 1.0:
            raise ValueError(f"jitter must be between 0.0 and 1.0, got {self.jitter}.")

    def delay_for(self, attempt: int) -> float:
        """
        Delay in seconds before the next attempt after ``attempt`` failures.

        Args:
            attempt: Number of failed attempts so far (1-based)

        Returns:
            Non-negative delay in seconds
        """
        if attempt < 1:
            return 0.0

        delay = self.initial_delay * (self.multiplier ** (attempt - 1))
        delay = min(delay, self.max_delay)

        if self.jitter:
            jitter_range = delay * self.jitter
            delay += random.uniform(-jitter_range, jitter_range)  # nosec B311 - not crypto

        return max(0.0, delay)


@dataclass(frozen=True)
class DispatcherConfig:
    """
    Configuration for a Dispatcher.

    Attributes:
        batch_size: Maximum number of records claimed per cycle
        poll_interval: Seconds to sleep after a cycle that found no work
        lease_duration: Seconds after which a claim may be taken over by another worker
        max_attempts: Publish attempts before a record is marked failed for good
        backoff: Delay policy between attempts of the same record
        topic: Default message bus topic
        publish_timeout: Seconds a single publish may take before it counts as failed

    Example:
        >>> config = DispatcherConfig(batch_size=50, lease_duration=60.0)
    """

    batch_size: int = 100
    poll_interval: float = 1.0
    lease_duration: float = 30.0
    max_attempts: int = 5
    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)
    topic: str = "domain-events"
    publish_timeout: float = 10.0

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if self.batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {self.batch_size}.")

        if self.poll_interval <= 0:
            raise ValueError(f"poll_interval must be positive, got {self.poll_interval}.")

        if self.lease_duration <= 0:
            raise ValueError(f"lease_duration must be positive, got {self.lease_duration}.")

        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}.")

        if not self.topic:
            raise ValueError("topic must not be empty.")

        if self.publish_timeout <= 0:
            raise ValueError(f"publish_timeout must be positive, got {self.publish_timeout}.")

        # A publish must finish before its lease can be reclaimed
        if self.publish_timeout >= self.lease_duration:
            raise ValueError(
                f"publish_timeout ({self.publish_timeout}) must be < "
                f"lease_duration ({self.lease_duration})."
            )


__all__ = [
    "BackoffPolicy",
    "DispatcherConfig",
]
