"""Configuration objects for the engram memory engine."""

from .settings import (  # noqa: F401
    DEFAULT_DECAY_RATES,
    EngineConfig,
    GraphConfig,
    SearchConfig,
    TierConfig,
)

__all__ = [
    "DEFAULT_DECAY_RATES",
    "EngineConfig",
    "GraphConfig",
    "SearchConfig",
    "TierConfig",
]
