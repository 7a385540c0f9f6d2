"""
Engine Settings - Tunable Parameters for Tiering, Search and Graph

WHAT: Dataclass configuration for the tier, search and relationship engines
WHERE: engram/config/settings.py - configuration layer
WHO: MemoryOrchestrator and each engine at construction time
TIME: Resolved once at startup; tier config may be swapped at runtime

Defaults mirror the values the companion application shipped with. Every
config object validates itself on construction, so ``dataclasses.replace``
and ``EngineConfig.from_env`` can never produce an inconsistent engine.

Environment overrides (all optional):
- ENGRAM_HOT_THRESHOLD / ENGRAM_WARM_THRESHOLD: tier cut-offs in [0,1]
- ENGRAM_HOT_CAPACITY / ENGRAM_WARM_CAPACITY: tier size caps (0 disables)
- ENGRAM_EMBEDDING_MODEL / ENGRAM_EMBEDDING_DIMENSIONS
- ENGRAM_EMBEDDING_CACHE_TTL (seconds) / ENGRAM_EMBEDDING_CACHE_SIZE
- ENGRAM_SIMILARITY_THRESHOLD / ENGRAM_SEMANTIC_SEARCH (bool)
- ENGRAM_DECAY_INTERVAL (seconds) / ENGRAM_MAX_TRAVERSAL_DEPTH
- ENGRAM_MAINTENANCE_ON_START (bool) / ENGRAM_LOG_LEVEL
"""

from __future__ import annotations

import math
import os
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional

from ..errors import ValidationError

TRUE_VALUES = {"1", "true", "yes", "on"}

DEFAULT_DECAY_RATES: Dict[str, float] = {
    "references": 0.01,
    "similar": 0.005,
    "related": 0.007,
    "causal": 0.003,
    "temporal": 0.02,
}


def _require(condition: bool, message: str) -> None:
    if not condition:
        raise ValidationError(message)


@dataclass(slots=True)
class TierConfig:
    """Scoring weights, thresholds and capacities for tier placement."""

    access_weight: float = 0.30
    importance_weight: float = 0.30
    age_weight: float = 0.25
    connection_weight: float = 0.15
    hot_threshold: float = 0.70
    warm_threshold: float = 0.40
    hot_capacity: Optional[int] = 100
    warm_capacity: Optional[int] = 500
    access_half_life_days: float = 7.0
    frequency_saturation: int = 20  # access count at which frequency maxes out
    age_half_life_days: float = 30.0
    age_floor: float = 0.1
    connection_scale: float = 3.0  # weighted degree giving ~63% connection score
    max_working_set: Optional[int] = None
    transition_history: int = 1000

    def __post_init__(self) -> None:
        weights = self.weights()
        _require(all(w >= 0.0 for w in weights.values()), "tier weights must be non-negative")
        _require(
            math.isclose(sum(weights.values()), 1.0, abs_tol=1e-6),
            f"tier weights must sum to 1.0, got {sum(weights.values()):.4f}",
        )
        _require(0.0 <= self.warm_threshold <= 1.0, "warm_threshold must be in [0,1]")
        _require(0.0 <= self.hot_threshold <= 1.0, "hot_threshold must be in [0,1]")
        _require(
            self.hot_threshold > self.warm_threshold,
            "hot_threshold must be greater than warm_threshold",
        )
        for name in ("hot_capacity", "warm_capacity", "max_working_set"):
            value = getattr(self, name)
            _require(value is None or value > 0, f"{name} must be positive or None")
        _require(self.access_half_life_days > 0, "access_half_life_days must be positive")
        _require(self.age_half_life_days > 0, "age_half_life_days must be positive")
        _require(self.frequency_saturation > 0, "frequency_saturation must be positive")
        _require(0.0 <= self.age_floor <= 1.0, "age_floor must be in [0,1]")
        _require(self.connection_scale > 0, "connection_scale must be positive")
        _require(self.transition_history > 0, "transition_history must be positive")

    def weights(self) -> Dict[str, float]:
        return {
            "access": self.access_weight,
            "importance": self.importance_weight,
            "age": self.age_weight,
            "connection": self.connection_weight,
        }


@dataclass(slots=True)
class SearchConfig:
    """Embedding cache and semantic search parameters."""

    embedding_model: str = "all-MiniLM-L6-v2"
    dimensions: Optional[int] = 384
    max_text_length: int = 512
    batch_size: int = 16
    similarity_threshold: float = 0.3
    cache_enabled: bool = True
    cache_ttl_seconds: float = 60 * 60 * 24
    cache_max_entries: int = 10_000
    semantic_search_enabled: bool = False
    fallback_to_lexical: bool = True
    default_page_size: int = 50

    def __post_init__(self) -> None:
        _require(bool(self.embedding_model), "embedding_model must not be empty")
        _require(self.dimensions is None or self.dimensions > 0, "dimensions must be positive")
        _require(self.max_text_length > 0, "max_text_length must be positive")
        _require(self.batch_size > 0, "batch_size must be positive")
        _require(-1.0 <= self.similarity_threshold <= 1.0, "similarity_threshold must be in [-1,1]")
        _require(self.cache_ttl_seconds > 0, "cache_ttl_seconds must be positive")
        _require(self.cache_max_entries > 0, "cache_max_entries must be positive")
        _require(self.default_page_size > 0, "default_page_size must be positive")


@dataclass(slots=True)
class GraphConfig:
    """Relationship graph discovery, traversal and decay parameters."""

    max_relationships_per_memory: int = 20
    min_relationship_strength: float = 0.1
    confidence_threshold: float = 0.6
    auto_relationship_threshold: float = 0.5
    max_traversal_depth: int = 5
    path_search_horizon: int = 6
    relationship_ttl_days: float = 365.0
    decay_interval_seconds: float = 60 * 60 * 24
    prune_threshold: float = 0.0
    cluster_strength_threshold: float = 0.1
    discovery_neighborhood: int = 200
    temporal_window_hours: float = 24.0
    base_decay_rates: Dict[str, float] = field(default_factory=lambda: dict(DEFAULT_DECAY_RATES))

    def __post_init__(self) -> None:
        _require(self.max_relationships_per_memory > 0, "max_relationships_per_memory must be positive")
        for name in (
            "min_relationship_strength",
            "confidence_threshold",
            "auto_relationship_threshold",
            "prune_threshold",
            "cluster_strength_threshold",
        ):
            value = getattr(self, name)
            _require(0.0 <= value <= 1.0, f"{name} must be in [0,1]")
        _require(self.max_traversal_depth >= 0, "max_traversal_depth must be >= 0")
        _require(self.path_search_horizon > 0, "path_search_horizon must be positive")
        _require(self.relationship_ttl_days > 0, "relationship_ttl_days must be positive")
        _require(self.decay_interval_seconds > 0, "decay_interval_seconds must be positive")
        _require(self.discovery_neighborhood > 0, "discovery_neighborhood must be positive")
        _require(self.temporal_window_hours >= 0, "temporal_window_hours must be >= 0")
        _require(
            all(rate >= 0 for rate in self.base_decay_rates.values()),
            "base_decay_rates must be non-negative",
        )


@dataclass(slots=True)
class EngineConfig:
    """Aggregate configuration handed to ``MemoryOrchestrator``."""

    tier: TierConfig = field(default_factory=TierConfig)
    search: SearchConfig = field(default_factory=SearchConfig)
    graph: GraphConfig = field(default_factory=GraphConfig)
    maintenance_on_start: bool = False
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "EngineConfig":
        """Build a config from ``ENGRAM_*`` variables, falling back to defaults."""

        env = os.environ if environ is None else environ

        tier_defaults = TierConfig()
        tier = TierConfig(
            hot_threshold=_env_float(env, "ENGRAM_HOT_THRESHOLD", tier_defaults.hot_threshold),
            warm_threshold=_env_float(env, "ENGRAM_WARM_THRESHOLD", tier_defaults.warm_threshold),
            hot_capacity=_env_capacity(env, "ENGRAM_HOT_CAPACITY", tier_defaults.hot_capacity),
            warm_capacity=_env_capacity(env, "ENGRAM_WARM_CAPACITY", tier_defaults.warm_capacity),
        )

        search_defaults = SearchConfig()
        search = SearchConfig(
            embedding_model=env.get("ENGRAM_EMBEDDING_MODEL", search_defaults.embedding_model),
            dimensions=_env_int(env, "ENGRAM_EMBEDDING_DIMENSIONS", search_defaults.dimensions),
            cache_ttl_seconds=_env_float(env, "ENGRAM_EMBEDDING_CACHE_TTL", search_defaults.cache_ttl_seconds),
            cache_max_entries=_env_int(env, "ENGRAM_EMBEDDING_CACHE_SIZE", search_defaults.cache_max_entries),
            similarity_threshold=_env_float(
                env, "ENGRAM_SIMILARITY_THRESHOLD", search_defaults.similarity_threshold
            ),
            semantic_search_enabled=_env_bool(
                env, "ENGRAM_SEMANTIC_SEARCH", search_defaults.semantic_search_enabled
            ),
        )

        graph_defaults = GraphConfig()
        graph = GraphConfig(
            decay_interval_seconds=_env_float(
                env, "ENGRAM_DECAY_INTERVAL", graph_defaults.decay_interval_seconds
            ),
            max_traversal_depth=_env_int(
                env, "ENGRAM_MAX_TRAVERSAL_DEPTH", graph_defaults.max_traversal_depth
            ),
        )

        return cls(
            tier=tier,
            search=search,
            graph=graph,
            maintenance_on_start=_env_bool(env, "ENGRAM_MAINTENANCE_ON_START", False),
            log_level=env.get("ENGRAM_LOG_LEVEL", "INFO").upper(),
        )


def _env_float(env: Mapping[str, str], key: str, default: float) -> float:
    raw = env.get(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValidationError(f"{key} must be a number, got {raw!r}") from exc


def _env_int(env: Mapping[str, str], key: str, default: Optional[int]) -> Optional[int]:
    raw = env.get(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValidationError(f"{key} must be an integer, got {raw!r}") from exc


def _env_capacity(env: Mapping[str, str], key: str, default: Optional[int]) -> Optional[int]:
    value = _env_int(env, key, default)
    return None if value == 0 else value


def _env_bool(env: Mapping[str, str], key: str, default: bool) -> bool:
    raw = env.get(key)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in TRUE_VALUES


__all__ = [
    "DEFAULT_DECAY_RATES",
    "EngineConfig",
    "GraphConfig",
    "SearchConfig",
    "TierConfig",
]
