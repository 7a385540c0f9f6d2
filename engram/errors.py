"""Shared error types for engram.

Every failure the engine surfaces derives from :class:`EngramError`, so a
hosting application can catch the whole family at its command layer while
still distinguishing input problems from infrastructure failures.
"""

from __future__ import annotations


class EngramError(Exception):
    """Base error for engram."""


class ValidationError(EngramError, ValueError):
    """Malformed input; never retried automatically."""


class NotFoundError(EngramError):
    """Requested memory or relationship id does not exist."""


class AccessDeniedError(EngramError):
    """Injected authorization check rejected the owner/action pair."""


class EmbeddingUnavailableError(EngramError):
    """Embedding provider failed; retry policy belongs to the caller."""


class DimensionMismatchError(EngramError, ValueError):
    """Two vectors of different lengths were compared."""


class PersistenceError(EngramError):
    """Persistence adapter failure; propagated unchanged."""


class EngineStateError(EngramError, RuntimeError):
    """Operation attempted before ``initialize()`` or after ``shutdown()``."""


class OptimizationInProgressError(EngramError, RuntimeError):
    """A tier optimization pass is already running."""


class MissingDependencyError(EngramError, RuntimeError):
    """Optional backend packages are unavailable in the environment."""


__all__ = [
    "EngramError",
    "ValidationError",
    "NotFoundError",
    "AccessDeniedError",
    "EmbeddingUnavailableError",
    "DimensionMismatchError",
    "PersistenceError",
    "EngineStateError",
    "OptimizationInProgressError",
    "MissingDependencyError",
]
