"""
Retry Policy for the Job Engine.

- Computes exponential backoff delays per job type
- Owns the attempt ceiling per job type
- Pure: no storage, no side effects beyond the injected RNG

What RetryPolicy MUST NOT do:
- Execute jobs
- Modify Jobs
- Decide dead-lettering (the dispatcher compares attempts to max_attempts)

Backoff calculation:
    delay = min(max_delay, base_delay * multiplier ^ attempt_index)
    Example with 1000ms base, x2: 1000 -> 2000 -> 4000 -> ... -> 300000
"""

import logging
import random
from dataclasses import dataclass, field
from typing import Optional, Union

from .entities import JobType


logger = logging.getLogger(__name__)


DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY_MS = 1000
DEFAULT_MAX_DELAY_MS = 300_000
DEFAULT_BACKOFF_MULTIPLIER = 2.0
DEFAULT_JITTER_FACTOR = 0.1


@dataclass(frozen=True)
class RetryProfile:
    """Backoff parameters for one job type."""

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    base_delay_ms: int = DEFAULT_BASE_DELAY_MS
    max_delay_ms: int = DEFAULT_MAX_DELAY_MS
    backoff_multiplier: float = DEFAULT_BACKOFF_MULTIPLIER
    jitter_enabled: bool = True
    jitter_factor: float = DEFAULT_JITTER_FACTOR

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay_ms < 0 or self.max_delay_ms < 0:
            raise ValueError("delays must be non-negative")
        if self.backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be >= 1")
        if not 0 <= self.jitter_factor <= 1:
            raise ValueError("jitter_factor must be within [0, 1]")


def default_profiles() -> dict[JobType, RetryProfile]:
    """Per-type defaults: webhooks get 3 attempts, reminders get 2."""
    return {
        JobType.WEBHOOK_PROCESSING: RetryProfile(max_attempts=3),
        JobType.REMINDER_PROCESSING: RetryProfile(max_attempts=2),
    }


@dataclass
class RetryConfig:
    """Retry settings: a default profile plus per-type overrides."""

    default: RetryProfile = field(default_factory=RetryProfile)
    profiles: dict = field(default_factory=default_profiles)


class RetryPolicy:
    """
    Backoff and attempt ceilings per job type.

    With jitter disabled the delay is fully deterministic. With jitter enabled
    a uniform offset in [-range/2, +range/2] is added, where range is
    jitter_factor of the base delay, and the result is clamped to
    [0, max_delay_ms].
    """

    def __init__(
        self,
        config: Optional[RetryConfig] = None,
        rng: Optional[random.Random] = None,
    ):
        self.config = config or RetryConfig()
        self._rng = rng or random.Random()

    def profile_for(self, job_type: Union[JobType, str]) -> RetryProfile:
        try:
            job_type = JobType(job_type)
        except ValueError:
            return self.config.default
        return self.config.profiles.get(job_type, self.config.default)

    def max_attempts(self, job_type: Union[JobType, str]) -> int:
        return self.profile_for(job_type).max_attempts

    def delay_ms(
        self,
        attempt_index: int,
        job_type: Union[JobType, str],
        rng: Optional[random.Random] = None,
    ) -> int:
        """
        Compute the delay before the next attempt.

        Args:
            attempt_index: Zero-based index of the attempt that just failed
            job_type: Job type whose profile applies
            rng: Optional RNG overriding the policy's own

        Returns:
            Delay in milliseconds, floored to an int
        """
        profile = self.profile_for(job_type)
        attempt_index = max(0, attempt_index)

        # Cap before exponentiation can overflow into huge floats
        try:
            raw = profile.base_delay_ms * (profile.backoff_multiplier ** attempt_index)
        except OverflowError:
            raw = float(profile.max_delay_ms)
        delay = min(float(profile.max_delay_ms), raw)

        if profile.jitter_enabled and profile.jitter_factor > 0:
            source = rng or self._rng
            jitter_range = delay * profile.jitter_factor
            delay += source.random() * jitter_range - jitter_range / 2

        delay = max(0.0, min(float(profile.max_delay_ms), delay))
        return int(delay)

