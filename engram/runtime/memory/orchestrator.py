"""
Memory Orchestrator - Public facade of the memory engine

WHAT: Validated CRUD, search, tiering, graph and health operations
WHERE: engram/runtime/memory/orchestrator.py - top of the engine stack
WHO: The host application's command layer
TIME: CRUD bound by the adapter; searches bound by embedding latency

Composes the persistence adapter, the semantic search engine, the
relationship graph and the tier engine. The engines never call each other;
the orchestrator fetches candidates and hands each engine what it needs.

Boundary Notes:
- Every public operation is async and wrapped in a telemetry span
- Writes to one memory id are serialized; reads take no locks
- Batch passes observe a shared cancellation token tripped by ``shutdown``
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from ...config.settings import EngineConfig
from ...errors import (
    AccessDeniedError,
    EmbeddingUnavailableError,
    EngineStateError,
    NotFoundError,
    ValidationError,
)
from .concurrency import CancellationToken, KeyedLocks
from .embedders import EmbeddingProvider
from .graph import (
    ConnectionPath,
    DecayResult,
    GraphAnalytics,
    RelatedMemory,
    RelationshipCandidate,
    RelationshipGraph,
)
from .models import (
    MemoryEntity,
    MemoryRelationship,
    MemoryTier,
    MemoryType,
    RelationshipType,
    utcnow,
)
from .search import SearchPage, SemanticSearchEngine, SemanticSearchResult, SimilarityMatch
from .store import InMemoryMemoryStore, MemoryFilter, MemoryStore
from .telemetry import NoOpTelemetryClient, TelemetryClient
from .tiering import MemoryScore, TierEngine, TierMetrics, TierOptimizationResult, TierTransition

logger = logging.getLogger(__name__)

AuthorizationCheck = Callable[[str, str], Union[bool, Awaitable[bool]]]
TierSelector = Union[MemoryTier, str, Iterable[Union[MemoryTier, str]]]

CREATE_FIELDS = frozenset({"owner_id", "content", "memory_type", "importance", "tags", "metadata"})
UPDATABLE_FIELDS = frozenset({"owner_id", "content", "memory_type", "importance", "tags", "metadata"})
IMMUTABLE_FIELDS = frozenset({"id", "created_at", "tier", "access_count", "last_accessed"})


@dataclass(slots=True)
class HealthReport:
    status: str
    total_memories: int = 0
    memories_by_type: Dict[str, int] = field(default_factory=dict)
    memories_by_tier: Dict[str, int] = field(default_factory=dict)
    relationship_count: int = 0
    cache_size: int = 0
    subsystems: Dict[str, str] = field(default_factory=dict)
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class MaintenanceResult:
    decay: DecayResult
    optimization: TierOptimizationResult


def _normalize_fields(data: Mapping[str, Any]) -> Dict[str, Any]:
    payload = dict(data)
    if "type" in payload and "memory_type" not in payload:
        payload["memory_type"] = payload.pop("type")
    return payload


def _tier_set(selector: Optional[TierSelector]) -> Optional[frozenset]:
    if selector is None:
        return None
    if isinstance(selector, (MemoryTier, str)):
        selector = [selector]
    try:
        return frozenset(MemoryTier(t) for t in selector)
    except ValueError as exc:
        raise ValidationError(f"unknown tier in filter: {selector!r}") from exc


class MemoryOrchestrator:
    """Facade that coordinates persistence, search, tiering and the graph."""

    def __init__(
        self,
        store: MemoryStore | None = None,
        *,
        config: EngineConfig | None = None,
        provider: EmbeddingProvider | None = None,
        telemetry: TelemetryClient | None = None,
        authorize: AuthorizationCheck | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._config = config or EngineConfig()
        self._store = store if store is not None else InMemoryMemoryStore()
        self._telemetry = telemetry or NoOpTelemetryClient()
        self._authorize = authorize
        self._clock = clock
        self._locks = KeyedLocks()
        self._search = SemanticSearchEngine(provider, self._config.search, clock=clock)
        self._graph = RelationshipGraph(
            self._store,
            self._config.graph,
            vectorizer=self._memory_vector,
            clock=clock,
            locks=self._locks,
        )
        self._tiers = TierEngine(
            self._store,
            self._config.tier,
            connections=self._graph.weighted_degrees,
            clock=clock,
            locks=self._locks,
        )
        self._state = "created"
        self._token = CancellationToken()
        self._running_batches = 0
        self._batches_idle = asyncio.Event()
        self._batches_idle.set()

    # ------------------ properties ------------------
    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def store(self) -> MemoryStore:
        return self._store

    @property
    def search_engine(self) -> SemanticSearchEngine:
        return self._search

    @property
    def graph(self) -> RelationshipGraph:
        return self._graph

    @property
    def tier_engine(self) -> TierEngine:
        return self._tiers

    @property
    def telemetry(self) -> TelemetryClient:
        return self._telemetry

    @property
    def running(self) -> bool:
        return self._state == "running"

    # ------------------ lifecycle -------------------
    async def initialize(self) -> None:
        if self.running:
            return
        self._token = CancellationToken()
        self._state = "running"
        logger.info(
            f"Memory engine started (semantic={'on' if self._config.search.semantic_search_enabled else 'off'}, "
            f"model={self._search.model})"
        )
        if self._config.maintenance_on_start:
            await self.run_maintenance()

    async def shutdown(self) -> None:
        """Stop accepting work and wait for running batches to wind down."""

        if self._state != "running":
            return
        self._state = "stopping"
        self._token.cancel("shutdown")
        await self._batches_idle.wait()
        self._state = "stopped"
        logger.info("Memory engine stopped")

    def _require_running(self) -> None:
        if self._state != "running":
            raise EngineStateError(f"memory engine is {self._state}; call initialize() first")

    @asynccontextmanager
    async def _batch(self) -> AsyncIterator[CancellationToken]:
        self._running_batches += 1
        self._batches_idle.clear()
        try:
            yield self._token
        finally:
            self._running_batches -= 1
            if self._running_batches == 0:
                self._batches_idle.set()

    async def _check_access(self, owner_id: str, action: str) -> None:
        if self._authorize is None:
            return
        verdict = self._authorize(owner_id, action)
        if inspect.isawaitable(verdict):
            verdict = await verdict
        if not verdict:
            logger.warning(f"Access denied: owner={owner_id} action={action}")
            raise AccessDeniedError(f"{action} denied for owner {owner_id}")

    async def _memory_vector(self, memory: MemoryEntity) -> Optional[List[float]]:
        if not self._search.available:
            return None
        return (await self._search.embed_memory(memory)).vector

    # ------------------ CRUD ------------------------
    async def create(self, data: Mapping[str, Any]) -> MemoryEntity:
        """Validate and persist a new memory (tier cold, no accesses)."""

        self._require_running()
        payload = _normalize_fields(data)
        unknown = set(payload) - CREATE_FIELDS
        if unknown:
            raise ValidationError(f"unsupported fields on create: {sorted(unknown)}")

        with self._telemetry.span("engram.create", attributes={"owner_id": payload.get("owner_id")}) as span:
            now = self._clock()
            try:
                memory = MemoryEntity(**payload, tier=MemoryTier.COLD, created_at=now, last_accessed=now)
            except PydanticValidationError as exc:
                raise ValidationError(f"invalid memory: {exc}") from exc
            await self._check_access(memory.owner_id, "create")
            stored = await self._store.create_memory(memory)
            span.tag_memory(stored)
        logger.debug(f"Created memory {stored.id} for {stored.owner_id}")
        return stored

    async def retrieve(self, memory_id: str) -> Optional[MemoryEntity]:
        """Fetch a memory and record the access; ``None`` when absent."""

        self._require_running()
        with self._telemetry.span("engram.retrieve", attributes={"memory_id": memory_id}) as span:
            async with self._locks.hold(memory_id):
                memory = await self._store.get_memory(memory_id)
                if memory is None:
                    span.set_attribute("found", False)
                    return None
                now = self._clock()
                if now <= memory.last_accessed:
                    now = memory.last_accessed + timedelta(microseconds=1)
                memory.last_accessed = now
                memory.access_count += 1
                stored = await self._store.update_memory(memory)
            span.set_attribute("found", True)
            span.tag_memory(stored)
        return stored

    async def update(self, memory_id: str, changes: Mapping[str, Any]) -> MemoryEntity:
        self._require_running()
        payload = _normalize_fields(changes)
        frozen = set(payload) & IMMUTABLE_FIELDS
        if frozen:
            raise ValidationError(f"fields cannot be updated: {sorted(frozen)}")
        unknown = set(payload) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"unsupported fields on update: {sorted(unknown)}")

        with self._telemetry.span("engram.update", attributes={"memory_id": memory_id}) as span:
            async with self._locks.hold(memory_id):
                memory = await self._store.get_memory(memory_id)
                if memory is None:
                    raise NotFoundError(f"memory {memory_id} does not exist")
                span.tag_memory(memory)
                await self._check_access(memory.owner_id, "update")
                record = memory.model_dump()
                record.update(payload)
                try:
                    merged = MemoryEntity.model_validate(record)
                except PydanticValidationError as exc:
                    raise ValidationError(f"invalid update: {exc}") from exc
                if merged.owner_id != memory.owner_id:
                    await self._check_access(merged.owner_id, "update")
                return await self._store.update_memory(merged)

    async def delete(self, memory_id: str) -> bool:
        """Remove a memory, its relationships and its cached embedding."""

        self._require_running()
        with self._telemetry.span("engram.delete", attributes={"memory_id": memory_id}) as span:
            async with self._locks.hold(memory_id):
                memory = await self._store.get_memory(memory_id)
                if memory is None:
                    span.set_attribute("deleted", False)
                    return False
                span.tag_memory(memory)
                await self._check_access(memory.owner_id, "delete")
                deleted = await self._store.delete_memory(memory_id)
            if deleted:
                removed = await self._graph.delete_relationships_for_memory(memory_id)
                self._search.forget_memory(memory_id)
                logger.debug(f"Deleted memory {memory_id} and {removed} relationships")
            span.set_attribute("deleted", deleted)
        return deleted

    # ------------------ search ----------------------
    async def search(
        self,
        query: str,
        owner_id: Optional[str] = None,
        tier_filter: Optional[TierSelector] = None,
        *,
        page: int = 1,
        page_size: Optional[int] = None,
    ) -> SearchPage:
        """Token search, blended with semantic ranking when enabled."""

        self._require_running()
        if page < 1:
            raise ValidationError("page must be >= 1")
        size = page_size or self._config.search.default_page_size
        if size < 1:
            raise ValidationError("page_size must be >= 1")

        with self._telemetry.span("engram.search", attributes={"query_chars": len(query)}) as span:
            candidates = await self._store.list_memories(
                MemoryFilter(owner_id=owner_id, tiers=_tier_set(tier_filter))
            )
            ranked = [memory for memory, _ in self._search.lexical_search(query, candidates)]
            mode = "lexical"
            warnings: List[str] = []

            if self._config.search.semantic_search_enabled and query.strip():
                try:
                    result = await self._search.semantic_search(query, candidates, limit=len(candidates))
                except EmbeddingUnavailableError as exc:
                    warnings.append(f"semantic ranking unavailable: {exc}")
                    logger.warning(f"Search degraded to lexical: {exc}")
                else:
                    seen = {m.id for m in result.memories}
                    ranked = result.memories + [m for m in ranked if m.id not in seen]
                    mode = "hybrid"

            start = (page - 1) * size
            span.set_attribute("mode", mode)
            span.set_attribute("total", len(ranked))
        return SearchPage(
            items=ranked[start : start + size],
            total=len(ranked),
            page=page,
            page_size=size,
            mode=mode,
            warnings=warnings,
        )

    async def semantic_search(
        self,
        query: str,
        filters: Optional[MemoryFilter] = None,
        limit: int = 10,
        threshold: Optional[float] = None,
    ) -> SemanticSearchResult:
        """Similarity search over filtered candidates.

        When the provider is unavailable and lexical fallback is configured,
        the result is marked ``degraded`` and ranked by token matches.
        """

        self._require_running()
        with self._telemetry.span("engram.semantic_search", attributes={"limit": limit}) as span:
            candidates = await self._store.list_memories(filters)
            try:
                result = await self._search.semantic_search(query, candidates, limit=limit, threshold=threshold)
            except EmbeddingUnavailableError as exc:
                if not self._config.search.fallback_to_lexical:
                    raise
                logger.warning(f"Semantic search degraded to lexical: {exc}")
                lexical = self._search.lexical_search(query, candidates)
                result = SemanticSearchResult(
                    query=query,
                    matches=[
                        SimilarityMatch(memory, 0.0, f"Lexical match on {hits} term(s)")
                        for memory, hits in lexical[:limit]
                    ],
                    candidates_considered=len(candidates),
                    threshold=self._config.search.similarity_threshold if threshold is None else threshold,
                    model=self._search.model,
                    degraded=True,
                    warnings=[f"embedding unavailable: {exc}"],
                )
            span.set_attribute("matches", len(result.matches))
            span.set_attribute("degraded", result.degraded)
        return result

    async def find_similar_memories(
        self,
        memory_id: str,
        limit: int = 10,
        threshold: Optional[float] = None,
    ) -> List[SimilarityMatch]:
        self._require_running()
        with self._telemetry.span("engram.find_similar", attributes={"memory_id": memory_id}):
            memory = await self._store.get_memory(memory_id)
            if memory is None:
                raise NotFoundError(f"memory {memory_id} does not exist")
            query = await self._search.embed_memory(memory)
            candidates = [m for m in await self._store.list_memories() if m.id != memory_id]
            return await self._search.find_similar(query.vector, candidates, limit=limit, threshold=threshold)

    # ------------------ tiering ---------------------
    async def promote(self, memory_id: str, tier: MemoryTier | str) -> TierTransition:
        self._require_running()
        with self._telemetry.span("engram.promote", attributes={"memory_id": memory_id}):
            return await self._tiers.promote(memory_id, tier)

    async def demote(self, memory_id: str, tier: MemoryTier | str) -> TierTransition:
        self._require_running()
        with self._telemetry.span("engram.demote", attributes={"memory_id": memory_id}):
            return await self._tiers.demote(memory_id, tier)

    async def set_tier(self, memory_id: str, tier: MemoryTier | str) -> TierTransition:
        self._require_running()
        with self._telemetry.span("engram.set_tier", attributes={"memory_id": memory_id}):
            return await self._tiers.set_tier(memory_id, tier)

    async def optimize_memory_tiers(self) -> TierOptimizationResult:
        self._require_running()
        with self._telemetry.span("engram.optimize_memory_tiers") as span:
            async with self._batch() as token:
                result = await self._tiers.optimize_memory_tiers(token)
            span.set_attribute("processed", result.processed)
            span.set_attribute("transitions", len(result.transitions))
        return result

    async def get_tier_metrics(self) -> Dict[MemoryTier, TierMetrics]:
        self._require_running()
        with self._telemetry.span("engram.get_tier_metrics"):
            return await self._tiers.collect_tier_metrics()

    async def get_memory_score(self, memory_id: str) -> MemoryScore:
        self._require_running()
        with self._telemetry.span("engram.get_memory_score", attributes={"memory_id": memory_id}):
            return await self._tiers.get_memory_score(memory_id)

    def recent_transitions(self, limit: Optional[int] = None) -> List[TierTransition]:
        return self._tiers.recent_transitions(limit)

    # ------------------ graph -----------------------
    async def create_relationship(
        self,
        from_memory_id: str,
        to_memory_id: str,
        relationship_type: RelationshipType | str,
        strength: float = 0.5,
        confidence: float = 0.8,
        *,
        decay_rate: Optional[float] = None,
    ) -> MemoryRelationship:
        self._require_running()
        with self._telemetry.span("engram.create_relationship", attributes={"type": str(relationship_type)}):
            return await self._graph.create_relationship(
                from_memory_id,
                to_memory_id,
                relationship_type,
                strength,
                confidence,
                decay_rate=decay_rate,
            )

    async def update_relationship_strength(
        self,
        relationship_id: str,
        strength: float,
        confidence: Optional[float] = None,
    ) -> MemoryRelationship:
        self._require_running()
        with self._telemetry.span("engram.update_relationship_strength"):
            return await self._graph.update_relationship_strength(relationship_id, strength, confidence)

    async def delete_memory_relationship(self, relationship_id: str) -> bool:
        self._require_running()
        with self._telemetry.span("engram.delete_memory_relationship"):
            return await self._graph.delete_relationship(relationship_id)

    async def discover_relationships(self, memory_id: str) -> List[RelationshipCandidate]:
        self._require_running()
        with self._telemetry.span("engram.discover_relationships", attributes={"memory_id": memory_id}):
            async with self._batch() as token:
                return await self._graph.discover_relationships(memory_id, token)

    async def auto_create_memory_relationships(self, memory_id: str) -> List[MemoryRelationship]:
        self._require_running()
        with self._telemetry.span("engram.auto_create_relationships", attributes={"memory_id": memory_id}):
            async with self._batch() as token:
                return await self._graph.auto_create_relationships(memory_id, token)

    async def get_related_memories(
        self,
        memory_id: str,
        max_depth: Optional[int] = None,
        min_strength: Optional[float] = None,
        relationship_types: Optional[Iterable[RelationshipType | str]] = None,
        sort_by: str = "strength",
        include_expired: bool = False,
    ) -> List[RelatedMemory]:
        self._require_running()
        with self._telemetry.span("engram.get_related_memories", attributes={"memory_id": memory_id}):
            return await self._graph.get_related_memories(
                memory_id,
                max_depth=max_depth,
                min_strength=min_strength,
                relationship_types=relationship_types,
                sort_by=sort_by,
                include_expired=include_expired,
            )

    async def find_connection_path(self, from_memory_id: str, to_memory_id: str) -> Optional[ConnectionPath]:
        self._require_running()
        with self._telemetry.span("engram.find_connection_path"):
            return await self._graph.find_connection_path(from_memory_id, to_memory_id)

    async def generate_graph_analytics(self) -> GraphAnalytics:
        self._require_running()
        with self._telemetry.span("engram.generate_graph_analytics"):
            return await self._graph.generate_graph_analytics()

    async def run_relationship_decay(self, now: Optional[datetime] = None) -> DecayResult:
        self._require_running()
        with self._telemetry.span("engram.run_relationship_decay") as span:
            async with self._batch() as token:
                result = await self._graph.run_relationship_decay(now=now, token=token)
            span.set_attribute("pruned", result.pruned)
        return result

    async def run_maintenance(self) -> MaintenanceResult:
        """Relationship decay followed by a tier optimization pass."""

        decay = await self.run_relationship_decay()
        optimization = await self.optimize_memory_tiers()
        return MaintenanceResult(decay=decay, optimization=optimization)

    # ------------------ health ----------------------
    async def get_health(self) -> HealthReport:
        with self._telemetry.span("engram.get_health"):
            memories = await self._store.list_memories()
            by_type = {t.value: 0 for t in MemoryType}
            by_tier = {t.value: 0 for t in MemoryTier}
            for memory in memories:
                by_type[memory.memory_type.value] += 1
                by_tier[memory.tier.value] += 1

            search_health = self._search.health()
            graph_health = await self._graph.health()
            graph_health["discovery"] = "semantic" if self._search.available else "lexical"
            tier_health = self._tiers.health()
            semantic_wanted = self._config.search.semantic_search_enabled
            search_status = str(search_health["status"])
            if not semantic_wanted:
                search_status = "lexical"

            if self._state != "running":
                status = self._state
            elif semantic_wanted and not self._search.available:
                status = "degraded"
            else:
                status = "ready"

        return HealthReport(
            status=status,
            total_memories=len(memories),
            memories_by_type=by_type,
            memories_by_tier=by_tier,
            relationship_count=int(graph_health["relationships"]),
            cache_size=len(self._search.cache),
            subsystems={
                "store": "ready",
                "search": search_status,
                "graph": str(graph_health["status"]),
                "tiering": str(tier_health["status"]),
            },
            details={"search": search_health, "graph": graph_health, "tiering": tier_health},
        )


__all__ = [
    "AuthorizationCheck",
    "HealthReport",
    "MaintenanceResult",
    "MemoryOrchestrator",
]
