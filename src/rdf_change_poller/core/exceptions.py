"""
Exception hierarchy for the change poller.

Callers branch on two families:
- RetryableError: transient broker, network or offsets store failures.
  Back off and call the same operation again.
- FatalError: configuration and authentication problems. Retrying the
  same call cannot succeed.

DecodeError is raised per record and handled inside the poll loop; it never
reaches the caller of KafkaPoller.
"""

from typing import Optional


class ChangePollerError(Exception):
    """Base class for all change poller errors."""
    pass


class RetryableError(ChangePollerError):
    """Raised for transient failures the caller may retry."""
    pass


class FatalError(ChangePollerError):
    """Raised for failures that retrying cannot fix."""
    pass


class ConfigurationError(FatalError):
    """Raised when configuration values are missing or invalid."""
    pass


class PollerClosedError(FatalError):
    """Raised when polling a poller that was already closed."""
    pass


class DecodeError(ChangePollerError):
    """Raised when a single stream record cannot be decoded."""

    def __init__(self, topic: str, cause: str, offset: Optional[int] = None):
        self.topic = topic
        self.cause = cause
        self.offset = offset
        location = topic if offset is None else f"{topic}@{offset}"
        super().__init__(f"Failed to decode record from {location}: {cause}")


class RepositoryError(ChangePollerError):
    """Raised when the offsets repository cannot complete a call."""
    pass


class RetryableRepositoryError(RepositoryError, RetryableError):
    """Transient offsets store failure; the call may be repeated."""
    pass


class FatalRepositoryError(RepositoryError, FatalError):
    """Offsets store failure that cannot succeed on retry."""
    pass
