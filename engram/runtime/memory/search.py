"""
Semantic Search - Embedding cache, similarity ranking and lexical matching

WHAT: Cached embedding generation plus cosine-ranked and token-ranked retrieval
WHERE: engram/runtime/memory/search.py - retrieval layer
WHO: MemoryOrchestrator (search, semantic_search, find_similar_memories)
TIME: Cache hit <1ms; provider call dominates (5-50ms local, more remote)

Pipeline:
1. Preprocess text (strip control characters, collapse whitespace, truncate)
2. Look up the content-hash keyed cache for the active model
3. On miss, call the provider once per distinct text (single-flight)
4. Rank pre-filtered candidates by cosine similarity

Boundary Notes:
- The cache is an injectable object, never a module-level singleton
- Failed provider calls are not cached; the next request retries
- Structural filters are applied by the caller before candidates arrive here
"""

from __future__ import annotations

import asyncio
import logging
import time
import unicodedata
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

from ...config.settings import SearchConfig
from ...errors import DimensionMismatchError, EmbeddingUnavailableError, ValidationError
from .concurrency import SingleFlight
from .embedders import EmbeddingProvider
from .models import MemoryEmbedding, MemoryEntity, generate_content_hash, utcnow

logger = logging.getLogger(__name__)

CacheKey = Tuple[str, str]


def preprocess_text(text: str, max_length: int) -> str:
    """Strip control characters, collapse whitespace and truncate."""

    kept = "".join(ch for ch in text if ch.isspace() or unicodedata.category(ch)[0] != "C")
    collapsed = " ".join(kept.split())
    return collapsed[:max_length].rstrip()


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Normalized dot product in [-1, 1].

    Raises DimensionMismatchError when the vectors differ in length. A zero
    vector has no direction and scores 0 against everything.
    """

    if len(a) != len(b):
        raise DimensionMismatchError(f"vector dimensions differ: {len(a)} != {len(b)}")
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    norm = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if norm == 0.0:
        return 0.0
    return float(np.clip(np.dot(va, vb) / norm, -1.0, 1.0))


def explain_similarity(similarity: float) -> str:
    if similarity > 0.9:
        return "Nearly identical content"
    if similarity > 0.8:
        return "Highly similar content and concepts"
    if similarity > 0.7:
        return "Similar topics and themes"
    if similarity > 0.6:
        return "Related concepts"
    if similarity > 0.5:
        return "Some shared elements"
    return "Weak similarity"


@dataclass(slots=True)
class _CacheEntry:
    vector: List[float]
    stored_at: float


@dataclass(slots=True)
class _MemoryEntry:
    embedding: MemoryEmbedding
    stored_at: float


class EmbeddingCache:
    """Bounded LRU of text embeddings keyed by (content hash, model).

    Entries older than ``ttl_seconds`` are treated as misses and evicted on
    access. ``clock`` returns monotonic seconds and is injectable for tests.
    """

    def __init__(
        self,
        *,
        ttl_seconds: float = 60 * 60 * 24,
        max_entries: int = 10_000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_entries <= 0:
            raise ValidationError("max_entries must be positive")
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[CacheKey, _CacheEntry]" = OrderedDict()
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def now(self) -> float:
        return self._clock()

    def is_stale(self, stored_at: float, now: Optional[float] = None) -> bool:
        """True once an entry stored at ``stored_at`` has outlived the TTL."""

        now = self._clock() if now is None else now
        return now - stored_at >= self.ttl_seconds

    def _expired(self, entry: _CacheEntry, now: float) -> bool:
        return self.is_stale(entry.stored_at, now)

    def get(self, content_hash: str, model: str) -> Optional[List[float]]:
        key = (content_hash, model)
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return None
        if self._expired(entry, self._clock()):
            del self._entries[key]
            self.misses += 1
            return None
        self._entries.move_to_end(key)
        self.hits += 1
        return list(entry.vector)

    def put(self, content_hash: str, model: str, vector: Sequence[float]) -> None:
        key = (content_hash, model)
        self._entries[key] = _CacheEntry(vector=list(vector), stored_at=self._clock())
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    def invalidate(self, content_hash: str, model: Optional[str] = None) -> int:
        """Drop entries for a hash (under one model, or all models)."""

        doomed = [k for k in self._entries if k[0] == content_hash and (model is None or k[1] == model)]
        for key in doomed:
            del self._entries[key]
        return len(doomed)

    def retain_model(self, model: str) -> int:
        """Drop every entry produced by a model other than ``model``."""

        doomed = [k for k in self._entries if k[1] != model]
        for key in doomed:
            del self._entries[key]
        return len(doomed)

    def purge_expired(self) -> int:
        now = self._clock()
        doomed = [k for k, entry in self._entries.items() if self._expired(entry, now)]
        for key in doomed:
            del self._entries[key]
        return len(doomed)

    def clear(self) -> None:
        self._entries.clear()

    def stats(self) -> Dict[str, float]:
        lookups = self.hits + self.misses
        return {
            "size": len(self._entries),
            "max_entries": self.max_entries,
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": self.hits / lookups if lookups else 0.0,
        }


@dataclass(slots=True)
class SimilarityMatch:
    """One ranked candidate with its score and a human-readable reason."""

    memory: MemoryEntity
    similarity: float
    explanation: str = ""


@dataclass(slots=True)
class SemanticSearchResult:
    """Outcome of a semantic search, possibly degraded to lexical ranking."""

    query: str
    matches: List[SimilarityMatch] = field(default_factory=list)
    candidates_considered: int = 0
    threshold: float = 0.0
    model: str = ""
    degraded: bool = False
    warnings: List[str] = field(default_factory=list)

    @property
    def memories(self) -> List[MemoryEntity]:
        return [match.memory for match in self.matches]


@dataclass(slots=True)
class SearchPage:
    """One page of lexical (or hybrid) search results."""

    items: List[MemoryEntity]
    total: int
    page: int
    page_size: int
    mode: str = "lexical"
    warnings: List[str] = field(default_factory=list)

    @property
    def has_more(self) -> bool:
        return self.page * self.page_size < self.total


def _recency_key(memory: MemoryEntity) -> float:
    return memory.last_accessed.timestamp()


class SemanticSearchEngine:
    """Embedding generation, caching and similarity ranking."""

    def __init__(
        self,
        provider: Optional[EmbeddingProvider] = None,
        config: SearchConfig | None = None,
        *,
        cache: EmbeddingCache | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.config = config or SearchConfig()
        self._provider = provider
        self._cache = cache or EmbeddingCache(
            ttl_seconds=self.config.cache_ttl_seconds,
            max_entries=self.config.cache_max_entries,
        )
        self._clock = clock
        self._flight: SingleFlight[List[float]] = SingleFlight()
        self._memory_embeddings: "OrderedDict[CacheKey, _MemoryEntry]" = OrderedDict()
        self._warned_dimensions: set[str] = set()
        self.provider_calls = 0
        self.provider_failures = 0

    # ------------------ properties ------------------
    @property
    def cache(self) -> EmbeddingCache:
        return self._cache

    @property
    def provider(self) -> Optional[EmbeddingProvider]:
        return self._provider

    @property
    def model(self) -> str:
        if self._provider is not None:
            return self._provider.model
        return self.config.embedding_model

    @property
    def available(self) -> bool:
        return self._provider is not None

    def set_provider(self, provider: Optional[EmbeddingProvider]) -> None:
        """Swap the embedding backend; entries of other models are dropped."""

        previous = self.model
        self._provider = provider
        if self.model != previous:
            dropped = self._cache.retain_model(self.model)
            self._memory_embeddings.clear()
            logger.info(f"Embedding model changed {previous} -> {self.model}; dropped {dropped} cache entries")

    # ------------------ embeddings ------------------
    def preprocess(self, text: str) -> str:
        return preprocess_text(text, self.config.max_text_length)

    async def generate_embedding(self, text: str) -> List[float]:
        """Return the embedding of ``text`` under the active model."""

        cleaned = self.preprocess(text)
        if not cleaned:
            raise ValidationError("cannot embed empty text")
        model = self.model
        content_hash = generate_content_hash(cleaned)

        if self.config.cache_enabled:
            cached = self._cache.get(content_hash, model)
            if cached is not None:
                logger.debug(f"Embedding cache hit for {content_hash[:19]}")
                return cached

        return await self._flight.do(
            (content_hash, model),
            lambda: self._compute_embedding(cleaned, content_hash, model),
        )

    async def _compute_embedding(self, text: str, content_hash: str, model: str) -> List[float]:
        provider = self._provider
        if provider is None:
            raise EmbeddingUnavailableError("no embedding provider configured")

        self.provider_calls += 1
        try:
            raw = await provider.embed(text)
        except EmbeddingUnavailableError:
            self.provider_failures += 1
            raise
        except Exception as exc:
            self.provider_failures += 1
            logger.warning(f"Embedding provider {model} failed: {exc}")
            raise EmbeddingUnavailableError(f"embedding provider {model} failed: {exc}") from exc

        vector = [float(x) for x in raw]
        if not vector or not all(np.isfinite(vector)):
            self.provider_failures += 1
            raise EmbeddingUnavailableError(f"embedding provider {model} returned an invalid vector")

        expected = self.config.dimensions
        if expected is not None and len(vector) != expected and model not in self._warned_dimensions:
            self._warned_dimensions.add(model)
            logger.warning(f"Model {model} produced {len(vector)} dimensions, configured {expected}")

        if self.config.cache_enabled:
            self._cache.put(content_hash, model, vector)
        return vector

    async def generate_batch_embeddings(self, texts: Sequence[str]) -> List[List[float]]:
        """Embed many texts, ``batch_size`` provider calls at a time."""

        results: List[List[float]] = []
        size = self.config.batch_size
        for start in range(0, len(texts), size):
            batch = texts[start : start + size]
            results.extend(await asyncio.gather(*(self.generate_embedding(t) for t in batch)))
        return results

    async def embed_memory(self, memory: MemoryEntity) -> MemoryEmbedding:
        """Embedding of a memory's content and tags, reused while unchanged.

        Reuse follows the text cache: nothing is kept when caching is off,
        and an entry older than the cache TTL is recomputed.
        """

        text = self.preprocess(memory.search_text())
        content_hash = generate_content_hash(text)
        key = (memory.id, self.model)
        caching = self.config.cache_enabled
        if caching:
            existing = self._memory_entry(key)
            if existing is not None and existing.embedding.content_hash == content_hash:
                self._memory_embeddings.move_to_end(key)
                return existing.embedding

        vector = await self.generate_embedding(text)
        embedding = MemoryEmbedding(
            memory_id=memory.id,
            vector=vector,
            model=key[1],
            content_hash=content_hash,
            created_at=self._clock(),
        )
        if caching:
            self._memory_embeddings[key] = _MemoryEntry(embedding=embedding, stored_at=self._cache.now())
            self._memory_embeddings.move_to_end(key)
            while len(self._memory_embeddings) > self.config.cache_max_entries:
                self._memory_embeddings.popitem(last=False)
        return embedding

    def _memory_entry(self, key: CacheKey) -> Optional[_MemoryEntry]:
        entry = self._memory_embeddings.get(key)
        if entry is not None and self._cache.is_stale(entry.stored_at):
            del self._memory_embeddings[key]
            logger.debug(f"Memory embedding for {key[0]} expired")
            return None
        return entry

    def cached_memory_embedding(self, memory_id: str) -> Optional[MemoryEmbedding]:
        entry = self._memory_entry((memory_id, self.model))
        return entry.embedding if entry is not None else None

    def forget_memory(self, memory_id: str) -> int:
        """Drop cached per-memory embeddings for a deleted memory."""

        doomed = [k for k in self._memory_embeddings if k[0] == memory_id]
        for key in doomed:
            entry = self._memory_embeddings.pop(key).embedding
            self._cache.invalidate(entry.content_hash, entry.model)
        return len(doomed)

    # ------------------ ranking ---------------------
    @staticmethod
    def rank(
        query_vector: Sequence[float],
        embedded: Sequence[Tuple[MemoryEntity, Sequence[float]]],
        limit: int,
        threshold: float,
    ) -> List[SimilarityMatch]:
        """Score, threshold, sort (newer access wins ties) and truncate."""

        if limit <= 0:
            return []
        matches: List[SimilarityMatch] = []
        for memory, vector in embedded:
            similarity = cosine_similarity(query_vector, vector)
            if similarity >= threshold:
                matches.append(SimilarityMatch(memory, similarity, explain_similarity(similarity)))
        matches.sort(key=lambda m: (-m.similarity, -_recency_key(m.memory)))
        return matches[:limit]

    async def find_similar(
        self,
        query_vector: Sequence[float],
        candidates: Sequence[MemoryEntity],
        limit: int = 10,
        threshold: Optional[float] = None,
    ) -> List[SimilarityMatch]:
        """Rank candidates against a query vector.

        Candidates whose embedding cannot be produced are skipped with a
        warning; if none of them can be embedded the provider is considered
        unavailable and EmbeddingUnavailableError is raised.
        """

        threshold = self.config.similarity_threshold if threshold is None else threshold
        embedded: List[Tuple[MemoryEntity, Sequence[float]]] = []
        failures = 0
        size = self.config.batch_size
        for start in range(0, len(candidates), size):
            batch = candidates[start : start + size]
            outcomes = await asyncio.gather(
                *(self.embed_memory(memory) for memory in batch), return_exceptions=True
            )
            for memory, outcome in zip(batch, outcomes):
                if isinstance(outcome, EmbeddingUnavailableError):
                    failures += 1
                    logger.warning(f"Skipping memory {memory.id}: {outcome}")
                elif isinstance(outcome, ValidationError):
                    # nothing searchable in it
                    continue
                elif isinstance(outcome, BaseException):
                    raise outcome
                else:
                    embedded.append((memory, outcome.vector))

        if candidates and not embedded and failures:
            raise EmbeddingUnavailableError(f"could not embed any of {failures} candidates")
        return self.rank(query_vector, embedded, limit, threshold)

    async def semantic_search(
        self,
        query: str,
        candidates: Sequence[MemoryEntity],
        limit: int = 10,
        threshold: Optional[float] = None,
    ) -> SemanticSearchResult:
        """Embed ``query`` and rank the already-filtered ``candidates``."""

        threshold = self.config.similarity_threshold if threshold is None else threshold
        query_vector = await self.generate_embedding(query)
        matches = await self.find_similar(query_vector, candidates, limit=limit, threshold=threshold)
        logger.debug(f"Semantic search matched {len(matches)}/{len(candidates)} candidates")
        return SemanticSearchResult(
            query=query,
            matches=matches,
            candidates_considered=len(candidates),
            threshold=threshold,
            model=self.model,
        )

    def lexical_search(
        self,
        query: str,
        candidates: Sequence[MemoryEntity],
    ) -> List[Tuple[MemoryEntity, int]]:
        """Substring/token matching over content and tags.

        Returns (memory, matched term count) pairs, most matched terms first,
        newer access first on ties. An empty query matches every candidate.
        """

        terms = list(dict.fromkeys(self.preprocess(query).lower().split()))
        phrase = " ".join(terms)
        scored: List[Tuple[MemoryEntity, int]] = []
        for memory in candidates:
            haystack = memory.search_text().lower()
            if not terms:
                scored.append((memory, 0))
                continue
            hits = sum(1 for term in terms if term in haystack)
            if hits == 0:
                continue
            if len(terms) > 1 and phrase in haystack:
                hits += 1
            scored.append((memory, hits))
        scored.sort(key=lambda pair: (-pair[1], -_recency_key(pair[0])))
        return scored

    def health(self) -> Dict[str, object]:
        return {
            "status": "ready" if self.available else "unavailable",
            "model": self.model,
            "cache": self._cache.stats(),
            "memory_embeddings": len(self._memory_embeddings),
            "provider_calls": self.provider_calls,
            "provider_failures": self.provider_failures,
            "inflight": len(self._flight),
        }


__all__ = [
    "EmbeddingCache",
    "SearchPage",
    "SemanticSearchEngine",
    "SemanticSearchResult",
    "SimilarityMatch",
    "cosine_similarity",
    "explain_similarity",
    "preprocess_text",
]
