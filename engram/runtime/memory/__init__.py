"""
Tiered Memory Engine - Tiering, Semantic Search & Relationship Graph

WHAT: In-process engine ranking memories into hot/warm/cold tiers
WHERE: engram/runtime/memory/ - runtime subsystem
WHO: Companion applications storing and recalling free-text memories
TIME: CRUD bound by the persistence adapter; search bound by embedding latency

Components (leaf first):
- store: persistence adapter protocol + in-memory reference adapter
- embedders: text -> vector providers (callable, hashing, sentence-transformers)
- search: embedding cache, cosine ranking, lexical matching
- graph: typed decaying relationships, traversal, paths, analytics
- tiering: composite scores, capacity-aware optimization passes
- orchestrator: validated facade owning lifecycle

Boundary Notes:
- Engines never call each other; the orchestrator wires them together
- The persistence adapter is the only shared mutable resource
"""

from .concurrency import CancellationToken, KeyedLocks, SingleFlight  # noqa: F401
from .embedders import (  # noqa: F401
    CallableEmbeddingProvider,
    EmbeddingProvider,
    HashingEmbeddingProvider,
    SentenceTransformerConfig,
    SentenceTransformerProvider,
)
from .graph import (  # noqa: F401
    ConnectionPath,
    DecayResult,
    GraphAnalytics,
    RelatedMemory,
    RelationshipCandidate,
    RelationshipGraph,
)
from .models import (  # noqa: F401
    MemoryEmbedding,
    MemoryEntity,
    MemoryRelationship,
    MemoryTier,
    MemoryType,
    RelationshipType,
    TransitionReason,
)
from .orchestrator import HealthReport, MaintenanceResult, MemoryOrchestrator  # noqa: F401
from .search import (  # noqa: F401
    EmbeddingCache,
    SearchPage,
    SemanticSearchEngine,
    SemanticSearchResult,
    SimilarityMatch,
    cosine_similarity,
)
from .store import InMemoryMemoryStore, MemoryFilter, MemoryStore  # noqa: F401
from .telemetry import (  # noqa: F401
    LoggingTelemetryClient,
    NoOpTelemetryClient,
    TelemetryClient,
    TelemetrySpan,
)
from .tiering import (  # noqa: F401
    MemoryScore,
    TierEngine,
    TierMetrics,
    TierOptimizationResult,
    TierTransition,
)
