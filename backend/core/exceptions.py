"""Custom exceptions for the automation engine."""

from core.constants import ValidationFailure


class AutomationError(Exception):
    """Base exception for the automation engine."""

    def __init__(self, message: str):
        """Initialize exception with message.

        Args:
            message: Exception message
        """
        self.message = message
        super().__init__(self.message)


class WorkflowValidationError(AutomationError):
    """Workflow is absent, inactive or has nothing to execute. Never retried."""

    def __init__(self, reason: ValidationFailure, message: str):
        """Initialize with the validation failure reason."""
        self.reason = reason
        super().__init__(message)


class StepExecutionError(AutomationError):
    """A single step failed inside an otherwise running workflow."""


class RecipientMissingError(StepExecutionError):
    """The trigger entity has no phone/email on file for the recipient."""


class ChannelDeliveryError(StepExecutionError):
    """An SMS or email channel sender reported a failed delivery."""


class TransientStepError(AutomationError):
    """Raised after the step loop when a step failed with a retryable error.

    Carries the original step message so the failure classifier can
    match on it.
    """

    def __init__(self, message: str, step_index: int):
        """Initialize with the index of the first transient step failure."""
        self.step_index = step_index
        super().__init__(message)


class MetricsUnavailableError(AutomationError):
    """The workflow store offers no atomic metrics increment."""


class InvalidTransitionError(AutomationError):
    """A state write targeted a log that is not in the expected status."""
