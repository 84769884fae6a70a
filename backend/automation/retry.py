"""Failure classification for automation runs.

A failed run is either requeued (the log goes back to ``pending`` and the
next poll picks it up) or finalized as ``failed``. The decision depends
only on the error message and the retries already spent.

Usage:
    classifier = FailureClassifier(max_retries=3)
    decision = classifier.decide(log.retry_count, str(error))
    if decision.requeue:
        ...
"""

from dataclasses import dataclass, field
from typing import Optional

from core.exceptions import WorkflowValidationError

DEFAULT_RETRYABLE_INDICATORS = (
    "network",
    "timeout",
    "fetch",
    "rate limit",
    "too many requests",
    "service unavailable",
    "internal server error",
)


@dataclass
class RetryDecision:
    """What to do with a failed run."""
    requeue: bool
    next_retry_count: int
    error_message: str


@dataclass
class FailureClassifier:
    """Decides whether a failed run is retried."""
    max_retries: int = 3
    retryable_indicators: tuple[str, ...] = field(default=DEFAULT_RETRYABLE_INDICATORS)

    def is_retryable(self, message: Optional[str]) -> bool:
        """Case-insensitive match of the message against transient error indicators."""
        if not message:
            return False
        lowered = message.lower()
        return any(indicator in lowered for indicator in self.retryable_indicators)

    def is_retryable_error(self, error: BaseException) -> bool:
        if isinstance(error, WorkflowValidationError):
            return False
        return self.is_retryable(str(error))

    def decide(self, retry_count: int, message: str) -> RetryDecision:
        """Requeue while the error is transient and the budget is not spent."""
        if self.is_retryable(message) and retry_count < self.max_retries:
            next_count = retry_count + 1
            return RetryDecision(
                requeue=True,
                next_retry_count=next_count,
                error_message=f"{message} (Retry {next_count}/{self.max_retries})",
            )
        return RetryDecision(requeue=False, next_retry_count=retry_count, error_message=message)

    def decide_for(self, retry_count: int, error: BaseException) -> RetryDecision:
        if not self.is_retryable_error(error):
            return RetryDecision(requeue=False, next_retry_count=retry_count, error_message=str(error))
        return self.decide(retry_count, str(error))
