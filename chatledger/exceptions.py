"""Exception types raised by the pipeline."""

from typing import Optional


class PipelineError(Exception):
    """Base class for pipeline errors."""
    pass


class CompletionError(PipelineError):
    """Raised when a completion provider call fails."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class DecisionParseError(PipelineError):
    """Raised when a completion response has no usable JSON object."""
    pass


class HandlerNotRegisteredError(PipelineError):
    """Raised when a decision names a service with no registered handler."""
    pass


class ConversationStateNotFoundError(PipelineError):
    """Raised when scratch data is updated for a user without a live state."""
    pass


class QueueItemNotFoundError(PipelineError):
    """Raised when a queue operation references an unknown message id."""
    pass


class InvalidQueueTransitionError(PipelineError):
    """Raised when a queue item is moved out of a state it is not in."""
    pass
