"""Shared building blocks: exceptions and logging setup."""

from .exceptions import (
    ChangePollerError,
    RetryableError,
    FatalError,
    ConfigurationError,
    PollerClosedError,
    DecodeError,
    RepositoryError,
    RetryableRepositoryError,
    FatalRepositoryError,
)

__all__ = [
    "ChangePollerError",
    "RetryableError",
    "FatalError",
    "ConfigurationError",
    "PollerClosedError",
    "DecodeError",
    "RepositoryError",
    "RetryableRepositoryError",
    "FatalRepositoryError",
]
