"""Run options and the explicit partial-failure policy."""

from dataclasses import dataclass, field

from .resilience import DEFAULT_COOLDOWN_SECONDS, DEFAULT_FAILURE_THRESHOLD, RetryPolicy


@dataclass(frozen=True)
class FailurePolicy:
    """Decides what a run does with units that exhausted their retries.

    Failed units are always replaced by a placeholder chapter in the
    assembled output and are never persisted, so the next run regenerates
    them. The policy only decides two things:

    - whether the run's results may be committed to the cache at all
      (``failed / total <= max_failed_ratio``);
    - whether a run that produced no unit at all, generated or reused, is a
      run-level failure (``fail_when_all_units_fail``). A run that reuses
      cached units always completes, with placeholders for the failures.
    """

    max_failed_ratio: float = 0.5
    fail_when_all_units_fail: bool = True

    def __post_init__(self):
        if not 0.0 <= self.max_failed_ratio <= 1.0:
            raise ValueError("max_failed_ratio must be between 0.0 and 1.0")

    def permits_commit(self, failed: int, total: int) -> bool:
        if failed == 0:
            return True
        if total <= 0:
            return False
        return failed / total <= self.max_failed_ratio

    def is_total_failure(self, failed: int, total: int) -> bool:
        """True when every one of the document's *total* units failed."""
        return self.fail_when_all_units_fail and total > 0 and failed >= total


@dataclass(frozen=True)
class PipelineOptions:
    max_workers: int = 3
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    failure_policy: FailurePolicy = field(default_factory=FailurePolicy)
    temperature: float = 0.2
    max_tokens: int = 4096
    max_abstractions: int = 10
    max_lines_per_file: int = 150
    progress_buffer_size: int = 256
    breaker_failure_threshold: int = DEFAULT_FAILURE_THRESHOLD
    breaker_cooldown_seconds: float = DEFAULT_COOLDOWN_SECONDS

    @classmethod
    def from_settings(cls, settings) -> "PipelineOptions":
        return cls(
            max_workers=settings.unit_concurrency,
            retry_policy=RetryPolicy(
                max_attempts=settings.retry_max_attempts,
                base_delay=settings.retry_base_delay,
                max_delay=settings.retry_max_delay,
            ),
            failure_policy=FailurePolicy(max_failed_ratio=settings.failure_max_ratio),
            temperature=settings.generation_temperature,
            max_tokens=settings.generation_max_tokens,
            max_abstractions=settings.max_abstractions,
            max_lines_per_file=settings.max_lines_per_file,
            progress_buffer_size=settings.progress_buffer_size,
        )
