"""
Relationship Graph - Typed, weighted, decaying edges between memories

WHAT: Edge CRUD, heuristic discovery, traversal, path finding, decay, analytics
WHERE: engram/runtime/memory/graph.py - graph layer over the persistence adapter
WHO: MemoryOrchestrator (graph operations); TierEngine reads weighted degrees
TIME: Traversal O(depth * E) over a snapshot; decay O(E) adapter round trips

Traversal and path finding run on an arena built from one relationship
snapshot: memory ids are interned to integer indices and adjacency lists
hold ``(neighbor_index, edge_index)`` pairs. Edges are directed records but
connectivity is treated as undirected, as in the companion application.

Strength model:
    strength(t) = max(0, strength(t0) - decay_rate * intervals(t - t0))
    where t0 is the later of last verification and last decay application

Boundary Notes:
- Writes to one edge are serialized through KeyedLocks; reads take none
- Discovery never persists; auto creation persists the confident subset
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from ...config.settings import GraphConfig
from ...errors import EmbeddingUnavailableError, NotFoundError, ValidationError
from .concurrency import CancellationToken, KeyedLocks
from .models import (
    MemoryEntity,
    MemoryRelationship,
    RelationshipType,
    clamp_unit,
    utcnow,
)
from .search import cosine_similarity
from .store import MemoryStore

logger = logging.getLogger(__name__)

VectorFunction = Callable[[MemoryEntity], Awaitable[Optional[Sequence[float]]]]
SORT_KEYS = ("strength", "confidence", "recency")
_PRUNE_EPSILON = 1e-9
_TOKEN_PATTERN = re.compile(r"[a-z0-9]+")


@dataclass(slots=True)
class RelationshipCandidate:
    """Proposed, not yet persisted, relationship from discovery."""

    from_memory_id: str
    to_memory_id: str
    relationship_type: RelationshipType
    strength: float
    confidence: float
    reason: str = ""


@dataclass(slots=True)
class RelatedMemory:
    """Memory reached by traversal, with its strongest path from the start."""

    memory: MemoryEntity
    relationship: MemoryRelationship  # final edge of the path
    depth: int
    strength: float  # weakest edge along the path
    confidence: float  # least confident edge along the path
    path: List[str] = field(default_factory=list)


@dataclass(slots=True)
class ConnectionPath:
    """Shortest hop path between two memories."""

    memory_ids: List[str]
    relationships: List[MemoryRelationship]

    @property
    def hops(self) -> int:
        return len(self.relationships)

    @property
    def min_strength(self) -> float:
        if not self.relationships:
            return 1.0
        return min(r.strength for r in self.relationships)


@dataclass(slots=True)
class GraphAnalytics:
    total_relationships: int
    total_memories: int
    average_strength: float
    most_connected_memory: Optional[str]
    most_connected_degree: int
    relationships_by_type: Dict[str, int]
    density: float
    cluster_count: int


@dataclass(slots=True)
class DecayResult:
    processed: int = 0
    decayed: int = 0
    pruned: int = 0
    pruned_ids: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    cancelled: bool = False
    duration_ms: float = 0.0


class _Arena:
    """Index-based adjacency over one relationship snapshot."""

    def __init__(self, relationships: Iterable[MemoryRelationship]) -> None:
        self.ids: List[str] = []
        self.index: Dict[str, int] = {}
        self.edges: List[MemoryRelationship] = []
        self.adjacency: List[List[Tuple[int, int]]] = []
        for rel in relationships:
            a = self._intern(rel.from_memory_id)
            b = self._intern(rel.to_memory_id)
            edge = len(self.edges)
            self.edges.append(rel)
            self.adjacency[a].append((b, edge))
            self.adjacency[b].append((a, edge))

    def _intern(self, memory_id: str) -> int:
        slot = self.index.get(memory_id)
        if slot is None:
            slot = len(self.ids)
            self.index[memory_id] = slot
            self.ids.append(memory_id)
            self.adjacency.append([])
        return slot


def _tokens(memory: MemoryEntity) -> Set[str]:
    return set(_TOKEN_PATTERN.findall(memory.search_text().lower()))


def lexical_similarity(a: MemoryEntity, b: MemoryEntity) -> float:
    """Jaccard overlap of content and tag tokens, used without embeddings."""

    ta, tb = _tokens(a), _tokens(b)
    if not ta or not tb:
        return 0.0
    return len(ta & tb) / len(ta | tb)


class RelationshipGraph:
    """Owner of every relationship record."""

    def __init__(
        self,
        store: MemoryStore,
        config: GraphConfig | None = None,
        *,
        vectorizer: Optional[VectorFunction] = None,
        clock: Callable[[], datetime] = utcnow,
        locks: KeyedLocks | None = None,
    ) -> None:
        self.store = store
        self.config = config or GraphConfig()
        self._vectorizer = vectorizer
        self._clock = clock
        self._locks = locks or KeyedLocks()
        self.last_decay: Optional[datetime] = None

    # ------------------ helpers ---------------------
    def decay_rate_for(self, relationship_type: RelationshipType, strength: float) -> float:
        """Per-interval decay: stronger edges decay more slowly."""

        base = self.config.base_decay_rates.get(relationship_type.value, 0.01)
        return base * (1.0 - strength * 0.5)

    def is_expired(self, relationship: MemoryRelationship, now: Optional[datetime] = None) -> bool:
        now = now or self._clock()
        return now - relationship.created_at > timedelta(days=self.config.relationship_ttl_days)

    @staticmethod
    def _coerce_type(value: Any) -> RelationshipType:
        try:
            return RelationshipType(value)
        except ValueError as exc:
            raise ValidationError(f"unknown relationship type: {value!r}") from exc

    @staticmethod
    def _coerce_unit(name: str, value: float) -> float:
        try:
            return clamp_unit(value)
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"{name} must be a number: {value!r}") from exc

    async def _find_edge(
        self, from_id: str, to_id: str, relationship_type: RelationshipType
    ) -> Optional[MemoryRelationship]:
        for rel in await self.store.list_relationships(from_id):
            if (
                rel.from_memory_id == from_id
                and rel.to_memory_id == to_id
                and rel.relationship_type == relationship_type
            ):
                return rel
        return None

    # ------------------ CRUD ------------------------
    async def create_relationship(
        self,
        from_memory_id: str,
        to_memory_id: str,
        relationship_type: RelationshipType | str,
        strength: float = 0.5,
        confidence: float = 0.8,
        *,
        decay_rate: Optional[float] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> MemoryRelationship:
        """Create an edge, or reaffirm the existing (from, to, type) edge."""

        if from_memory_id == to_memory_id:
            raise ValidationError("a memory cannot be related to itself")
        rel_type = self._coerce_type(relationship_type)
        strength = self._coerce_unit("strength", strength)
        confidence = self._coerce_unit("confidence", confidence)
        if decay_rate is not None and decay_rate < 0:
            raise ValidationError("decay_rate must be >= 0")

        for memory_id in (from_memory_id, to_memory_id):
            if await self.store.get_memory(memory_id) is None:
                raise NotFoundError(f"memory {memory_id} does not exist")

        async with self._locks.hold(("edge", from_memory_id, to_memory_id, rel_type)):
            now = self._clock()
            existing = await self._find_edge(from_memory_id, to_memory_id, rel_type)
            if existing is not None:
                # same lock order as strength updates and decay: edge key, then id
                async with self._locks.hold(existing.id):
                    existing = await self.store.get_relationship(existing.id) or existing
                    existing.strength = strength
                    existing.confidence = confidence
                    existing.last_verified = now
                    existing.decay_rate = (
                        decay_rate if decay_rate is not None else self.decay_rate_for(rel_type, strength)
                    )
                    if metadata:
                        existing.metadata.update(metadata)
                    logger.debug(f"Reaffirmed relationship {existing.id}")
                    return await self.store.put_relationship(existing)

            relationship = MemoryRelationship(
                from_memory_id=from_memory_id,
                to_memory_id=to_memory_id,
                relationship_type=rel_type,
                strength=strength,
                confidence=confidence,
                created_at=now,
                last_verified=now,
                decay_rate=decay_rate if decay_rate is not None else self.decay_rate_for(rel_type, strength),
                metadata=dict(metadata or {}),
            )
            stored = await self.store.put_relationship(relationship)
        logger.info(
            f"Created {rel_type.value} relationship {from_memory_id} -> {to_memory_id} "
            f"(strength={strength:.2f})"
        )
        return stored

    async def get_relationship(self, relationship_id: str) -> Optional[MemoryRelationship]:
        return await self.store.get_relationship(relationship_id)

    async def list_relationships(self, memory_id: Optional[str] = None) -> List[MemoryRelationship]:
        return await self.store.list_relationships(memory_id)

    async def update_relationship_strength(
        self,
        relationship_id: str,
        strength: float,
        confidence: Optional[float] = None,
    ) -> MemoryRelationship:
        """Set new strength (and confidence); counts as a verification."""

        strength = self._coerce_unit("strength", strength)
        if confidence is not None:
            confidence = self._coerce_unit("confidence", confidence)
        async with self._locks.hold(relationship_id):
            relationship = await self.store.get_relationship(relationship_id)
            if relationship is None:
                raise NotFoundError(f"relationship {relationship_id} does not exist")
            relationship.strength = strength
            if confidence is not None:
                relationship.confidence = confidence
            relationship.last_verified = self._clock()
            relationship.decay_rate = self.decay_rate_for(relationship.relationship_type, strength)
            return await self.store.put_relationship(relationship)

    async def delete_relationship(self, relationship_id: str) -> bool:
        async with self._locks.hold(relationship_id):
            deleted = await self.store.delete_relationship(relationship_id)
        if deleted:
            logger.debug(f"Deleted relationship {relationship_id}")
        return deleted

    async def delete_relationships_for_memory(self, memory_id: str) -> int:
        removed = 0
        for rel in await self.store.list_relationships(memory_id):
            if await self.delete_relationship(rel.id):
                removed += 1
        return removed

    # ------------------ discovery -------------------
    def relationship_type_for(self, a: MemoryEntity, b: MemoryEntity, similarity: float) -> RelationshipType:
        if abs(a.created_at - b.created_at) < timedelta(hours=self.config.temporal_window_hours):
            return RelationshipType.TEMPORAL
        if similarity > 0.8:
            return RelationshipType.SIMILAR
        if similarity > 0.6:
            return RelationshipType.RELATED
        return RelationshipType.REFERENCES

    @staticmethod
    def confidence_for(a: MemoryEntity, b: MemoryEntity, similarity: float) -> float:
        confidence = similarity
        if a.owner_id == b.owner_id:
            confidence += 0.1
        shared = set(a.tags) & set(b.tags)
        confidence += 0.05 * len(shared)
        return clamp_unit(confidence)

    async def _vector(self, memory: MemoryEntity) -> Optional[Sequence[float]]:
        if self._vectorizer is None:
            return None
        try:
            return await self._vectorizer(memory)
        except EmbeddingUnavailableError as exc:
            logger.warning(f"Falling back to lexical similarity for {memory.id}: {exc}")
            return None

    async def discover_relationships(
        self,
        memory_id: str,
        token: CancellationToken | None = None,
    ) -> List[RelationshipCandidate]:
        """Propose edges from ``memory_id`` to similar, not yet linked memories."""

        target = await self.store.get_memory(memory_id)
        if target is None:
            raise NotFoundError(f"memory {memory_id} does not exist")

        linked = {rel.other_end(memory_id) for rel in await self.store.list_relationships(memory_id)}
        neighborhood = [
            m for m in await self.store.list_memories() if m.id != memory_id and m.id not in linked
        ]
        neighborhood.sort(key=lambda m: m.last_accessed, reverse=True)
        neighborhood = neighborhood[: self.config.discovery_neighborhood]

        target_vector = await self._vector(target)
        candidates: List[RelationshipCandidate] = []
        for other in neighborhood:
            if token is not None and token.cancelled:
                logger.info(f"Discovery for {memory_id} cancelled: {token.reason}")
                break
            similarity: Optional[float] = None
            method = "semantic"
            if target_vector is not None:
                other_vector = await self._vector(other)
                if other_vector is not None:
                    similarity = cosine_similarity(target_vector, other_vector)
            if similarity is None:
                similarity = lexical_similarity(target, other)
                method = "lexical"
            if similarity < self.config.auto_relationship_threshold:
                continue
            strength = clamp_unit(similarity)
            candidates.append(
                RelationshipCandidate(
                    from_memory_id=memory_id,
                    to_memory_id=other.id,
                    relationship_type=self.relationship_type_for(target, other, strength),
                    strength=strength,
                    confidence=self.confidence_for(target, other, strength),
                    reason=f"{method.capitalize()} similarity: {strength * 100:.1f}%",
                )
            )

        candidates.sort(key=lambda c: (-c.strength, c.to_memory_id))
        limited = candidates[: self.config.max_relationships_per_memory]
        logger.info(
            f"Relationship discovery for {memory_id}: {len(candidates)} found, {len(limited)} returned"
        )
        return limited

    async def auto_create_relationships(
        self,
        memory_id: str,
        token: CancellationToken | None = None,
    ) -> List[MemoryRelationship]:
        """Persist the discovered candidates that meet the confidence threshold."""

        created: List[MemoryRelationship] = []
        for candidate in await self.discover_relationships(memory_id, token):
            if token is not None and token.cancelled:
                break
            if candidate.confidence < self.config.confidence_threshold:
                continue
            try:
                created.append(
                    await self.create_relationship(
                        candidate.from_memory_id,
                        candidate.to_memory_id,
                        candidate.relationship_type,
                        candidate.strength,
                        candidate.confidence,
                        metadata={"auto": True, "reason": candidate.reason},
                    )
                )
            except NotFoundError as exc:
                logger.warning(f"Skipping auto relationship to {candidate.to_memory_id}: {exc}")
        return created

    # ------------------ traversal -------------------
    async def _arena(self, include_expired: bool, now: datetime) -> _Arena:
        relationships = await self.store.list_relationships()
        if not include_expired:
            relationships = [r for r in relationships if not self.is_expired(r, now)]
        return _Arena(relationships)

    async def get_related_memories(
        self,
        memory_id: str,
        max_depth: Optional[int] = None,
        min_strength: Optional[float] = None,
        relationship_types: Optional[Iterable[RelationshipType | str]] = None,
        sort_by: str = "strength",
        include_expired: bool = False,
    ) -> List[RelatedMemory]:
        """Memories within ``max_depth`` hops, each via its strongest path.

        Path strength is the weakest edge on the path. Among equally strong
        paths the one with fewer hops wins.
        """

        if sort_by not in SORT_KEYS:
            raise ValidationError(f"sort_by must be one of {SORT_KEYS}, got {sort_by!r}")
        depth_limit = self.config.max_traversal_depth if max_depth is None else max_depth
        if depth_limit < 0:
            raise ValidationError("max_depth must be >= 0")
        floor = self.config.min_relationship_strength if min_strength is None else min_strength
        allowed = {self._coerce_type(t) for t in relationship_types} if relationship_types else None
        if depth_limit == 0:
            return []

        arena = await self._arena(include_expired, self._clock())
        root = arena.index.get(memory_id)
        if root is None:
            return []

        def usable(edge: MemoryRelationship) -> bool:
            return edge.strength >= floor and (allowed is None or edge.relationship_type in allowed)

        # best[v] = (bottleneck strength, edge path) of the strongest walk found so far
        best: Dict[int, Tuple[float, List[int]]] = {root: (float("inf"), [])}
        frontier = [root]
        for _ in range(depth_limit):
            improved: Dict[int, Tuple[float, List[int]]] = {}
            for node in frontier:
                node_strength, node_path = best[node]
                for neighbor, edge_index in arena.adjacency[node]:
                    edge = arena.edges[edge_index]
                    if neighbor == root or not usable(edge):
                        continue
                    strength = min(node_strength, edge.strength)
                    current = improved.get(neighbor) or best.get(neighbor)
                    if current is None or strength > current[0]:
                        improved[neighbor] = (strength, node_path + [edge_index])
            if not improved:
                break
            best.update(improved)
            frontier = list(improved)

        results: List[RelatedMemory] = []
        for node, (strength, path_edges) in best.items():
            if node == root:
                continue
            memory = await self.store.get_memory(arena.ids[node])
            if memory is None:
                continue
            edges = [arena.edges[i] for i in path_edges]
            hops = [memory_id]
            for edge in edges:
                hops.append(edge.other_end(hops[-1]))
            results.append(
                RelatedMemory(
                    memory=memory,
                    relationship=edges[-1],
                    depth=len(edges),
                    strength=strength,
                    confidence=min(e.confidence for e in edges),
                    path=hops,
                )
            )

        if sort_by == "strength":
            results.sort(key=lambda r: (-r.strength, r.depth, r.memory.id))
        elif sort_by == "confidence":
            results.sort(key=lambda r: (-r.confidence, r.depth, r.memory.id))
        else:
            results.sort(key=lambda r: (-r.relationship.last_verified.timestamp(), r.depth, r.memory.id))
        return results

    async def find_connection_path(
        self,
        from_memory_id: str,
        to_memory_id: str,
        max_hops: Optional[int] = None,
        include_expired: bool = False,
    ) -> Optional[ConnectionPath]:
        """Fewest-hop path; ties go to the path whose weakest edge is strongest."""

        horizon = self.config.path_search_horizon if max_hops is None else max_hops
        if from_memory_id == to_memory_id:
            if await self.store.get_memory(from_memory_id) is None:
                return None
            return ConnectionPath(memory_ids=[from_memory_id], relationships=[])

        arena = await self._arena(include_expired, self._clock())
        source = arena.index.get(from_memory_id)
        target = arena.index.get(to_memory_id)
        if source is None or target is None:
            return None

        settled: Dict[int, Tuple[float, List[int]]] = {source: (float("inf"), [])}
        frontier = [source]
        for _ in range(horizon):
            level: Dict[int, Tuple[float, List[int]]] = {}
            for node in frontier:
                node_strength, node_path = settled[node]
                for neighbor, edge_index in arena.adjacency[node]:
                    if neighbor in settled:
                        continue
                    edge = arena.edges[edge_index]
                    strength = min(node_strength, edge.strength)
                    current = level.get(neighbor)
                    if current is None or strength > current[0]:
                        level[neighbor] = (strength, node_path + [edge_index])
            if not level:
                return None
            settled.update(level)
            if target in level:
                edges = [arena.edges[i] for i in level[target][1]]
                ids = [from_memory_id]
                for edge in edges:
                    ids.append(edge.other_end(ids[-1]))
                return ConnectionPath(memory_ids=ids, relationships=edges)
            frontier = list(level)
        return None

    # ------------------ decay -----------------------
    async def run_relationship_decay(
        self,
        now: Optional[datetime] = None,
        token: CancellationToken | None = None,
    ) -> DecayResult:
        """Apply elapsed decay to every edge; prune edges that reach zero."""

        started = time.perf_counter()
        now = now or self._clock()
        interval = self.config.decay_interval_seconds
        result = DecayResult()

        for snapshot in await self.store.list_relationships():
            if token is not None and token.cancelled:
                result.cancelled = True
                logger.info(f"Relationship decay cancelled: {token.reason}")
                break
            result.processed += 1
            try:
                async with self._locks.hold(snapshot.id):
                    relationship = await self.store.get_relationship(snapshot.id)
                    if relationship is None:
                        continue
                    elapsed = (now - relationship.decay_reference()).total_seconds() / interval
                    if elapsed <= 0 or relationship.decay_rate == 0:
                        continue
                    strength = max(0.0, relationship.strength - relationship.decay_rate * elapsed)
                    if strength <= self.config.prune_threshold + _PRUNE_EPSILON:
                        await self.store.delete_relationship(relationship.id)
                        result.pruned += 1
                        result.pruned_ids.append(relationship.id)
                        continue
                    relationship.strength = strength
                    relationship.last_decayed = now
                    await self.store.put_relationship(relationship)
                    result.decayed += 1
            except Exception as exc:
                logger.warning(f"Decay failed for relationship {snapshot.id}: {exc}")
                result.errors.append(f"{snapshot.id}: {exc}")

        self.last_decay = now
        result.duration_ms = (time.perf_counter() - started) * 1000.0
        logger.info(
            f"Relationship decay: processed={result.processed} decayed={result.decayed} "
            f"pruned={result.pruned} errors={len(result.errors)}"
        )
        return result

    # ------------------ analytics -------------------
    async def weighted_degrees(self, include_expired: bool = False) -> Dict[str, float]:
        """Sum of incident edge strengths per memory id."""

        now = self._clock()
        degrees: Dict[str, float] = {}
        for rel in await self.store.list_relationships():
            if not include_expired and self.is_expired(rel, now):
                continue
            for memory_id in (rel.from_memory_id, rel.to_memory_id):
                degrees[memory_id] = degrees.get(memory_id, 0.0) + rel.strength
        return degrees

    async def generate_graph_analytics(self) -> GraphAnalytics:
        relationships = await self.store.list_relationships()
        memory_ids = [m.id for m in await self.store.list_memories()]

        nodes: Dict[str, int] = {memory_id: i for i, memory_id in enumerate(memory_ids)}
        for rel in relationships:
            for memory_id in (rel.from_memory_id, rel.to_memory_id):
                nodes.setdefault(memory_id, len(nodes))

        degree: Dict[str, int] = {}
        by_type = {t.value: 0 for t in RelationshipType}
        for rel in relationships:
            by_type[rel.relationship_type.value] += 1
            degree[rel.from_memory_id] = degree.get(rel.from_memory_id, 0) + 1
            degree[rel.to_memory_id] = degree.get(rel.to_memory_id, 0) + 1

        most_connected: Optional[str] = None
        most_degree = 0
        for memory_id, count in sorted(degree.items()):
            if count > most_degree:
                most_connected, most_degree = memory_id, count

        parent = list(range(len(nodes)))

        def find(i: int) -> int:
            while parent[i] != i:
                parent[i] = parent[parent[i]]
                i = parent[i]
            return i

        for rel in relationships:
            if rel.strength < self.config.cluster_strength_threshold:
                continue
            a, b = find(nodes[rel.from_memory_id]), find(nodes[rel.to_memory_id])
            if a != b:
                parent[a] = b

        n = len(nodes)
        possible = n * (n - 1) / 2
        total = len(relationships)
        # reciprocal and multi-typed edges share one pair
        linked_pairs = len({frozenset((r.from_memory_id, r.to_memory_id)) for r in relationships})
        return GraphAnalytics(
            total_relationships=total,
            total_memories=n,
            average_strength=sum(r.strength for r in relationships) / total if total else 0.0,
            most_connected_memory=most_connected,
            most_connected_degree=most_degree,
            relationships_by_type=by_type,
            density=linked_pairs / possible if possible else 0.0,
            cluster_count=len({find(i) for i in range(n)}),
        )

    async def health(self) -> Dict[str, Any]:
        relationships = await self.store.list_relationships()
        return {
            "status": "ready",
            "relationships": len(relationships),
            "last_decay": self.last_decay.isoformat() if self.last_decay else None,
            "discovery": "semantic" if self._vectorizer is not None else "lexical",
        }


__all__ = [
    "ConnectionPath",
    "DecayResult",
    "GraphAnalytics",
    "RelatedMemory",
    "RelationshipCandidate",
    "RelationshipGraph",
    "lexical_similarity",
]
