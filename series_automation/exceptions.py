"""
Series Exceptions

Error taxonomy shared by the authoring, execution and runtime layers.

Authoring errors (ValidationError, NotFoundError) reach the caller.
Execution errors are captured into the Progress record by the retry
supervisor and never escape the runtime entry points.
"""

from typing import List, Optional


class SeriesError(Exception):
    """Base class for all series engine errors."""
    pass


class ValidationError(SeriesError):
    """Raised when an authoring operation would store an invalid definition."""
    pass


class ReadinessError(ValidationError):
    """Raised when a series cannot be activated because of readiness blockers."""

    def __init__(self, message: str, blockers: Optional[List[dict]] = None, warnings: Optional[List[dict]] = None):
        super().__init__(message)
        self.blockers = blockers or []
        self.warnings = warnings or []


class NotFoundError(SeriesError):
    """Raised when a series, block, progress or visitor record is missing."""
    pass


class ConcurrentModificationError(SeriesError):
    """Raised when a Progress was changed by someone else since it was loaded."""
    pass


class ExecutionError(SeriesError):
    """Base class for errors raised while executing a block."""

    recoverable = False


class BlockConfigurationError(ExecutionError):
    """The block cannot run with its stored configuration. Retrying will not help."""
    pass


class RecoverableExecutionError(ExecutionError):
    """
    A delivery precondition is not met (e.g. the visitor has no email address).
    The block is retried through the backstop sweep until the attempt budget runs out.
    """

    recoverable = True


class DeliveryError(ExecutionError):
    """A messaging channel failed to deliver. Keeps the recoverability of the underlying error."""

    def __init__(self, message: str, recoverable: bool = True):
        super().__init__(message)
        self.recoverable = recoverable
