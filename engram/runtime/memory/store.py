"""
Memory Store - Persistence adapter contract and in-process reference adapter

WHAT: Async CRUD + filtered listing over memories and relationships
WHERE: engram/runtime/memory/store.py - interfaces with the host's database
WHO: MemoryOrchestrator, TierEngine and RelationshipGraph
TIME: Adapter-defined; the in-memory adapter is O(n) per filtered list

The engine never talks to a database directly. Hosts inject any object that
satisfies :class:`MemoryStore`; adapters own their internal concurrency
control and report failures as :class:`~engram.errors.PersistenceError`.

Boundary Notes:
- All mutations pass through the adapter; there is no other shared state
- Adapters return detached copies so callers cannot mutate stored state
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, FrozenSet, Iterable, List, Optional, Protocol

from ...errors import PersistenceError
from .models import MemoryEntity, MemoryRelationship, MemoryTier, MemoryType


@dataclass(slots=True, frozen=True)
class MemoryFilter:
    """Structural predicate pushed down to the adapter before scoring."""

    owner_id: Optional[str] = None
    memory_types: Optional[FrozenSet[MemoryType]] = None
    tiers: Optional[FrozenSet[MemoryTier]] = None
    min_importance: Optional[int] = None
    created_after: Optional[datetime] = None
    created_before: Optional[datetime] = None
    ids: Optional[FrozenSet[str]] = None
    limit: Optional[int] = None

    def __post_init__(self) -> None:
        # accept any iterable of raw values; store frozensets of enum members
        if self.memory_types is not None:
            object.__setattr__(self, "memory_types", frozenset(MemoryType(t) for t in self.memory_types))
        if self.tiers is not None:
            object.__setattr__(self, "tiers", frozenset(MemoryTier(t) for t in self.tiers))
        if self.ids is not None:
            object.__setattr__(self, "ids", frozenset(self.ids))

    def matches(self, memory: MemoryEntity) -> bool:
        if self.owner_id is not None and memory.owner_id != self.owner_id:
            return False
        if self.memory_types is not None and memory.memory_type not in self.memory_types:
            return False
        if self.tiers is not None and memory.tier not in self.tiers:
            return False
        if self.min_importance is not None and memory.importance < self.min_importance:
            return False
        if self.created_after is not None and memory.created_at < self.created_after:
            return False
        if self.created_before is not None and memory.created_at > self.created_before:
            return False
        if self.ids is not None and memory.id not in self.ids:
            return False
        return True


class MemoryStore(Protocol):
    """Abstract interface for memory and relationship persistence."""

    async def create_memory(self, memory: MemoryEntity) -> MemoryEntity:
        """Insert a new memory; fails if the id already exists."""

    async def get_memory(self, memory_id: str) -> Optional[MemoryEntity]:
        """Return the memory or ``None`` when absent."""

    async def update_memory(self, memory: MemoryEntity) -> MemoryEntity:
        """Replace an existing memory record; fails if absent."""

    async def delete_memory(self, memory_id: str) -> bool:
        """Remove a memory; returns False when it was already absent."""

    async def list_memories(self, memory_filter: Optional[MemoryFilter] = None) -> List[MemoryEntity]:
        """Return memories matching the filter, oldest first."""

    async def count_memories(self, memory_filter: Optional[MemoryFilter] = None) -> int:
        """Count memories matching the filter."""

    async def put_relationship(self, relationship: MemoryRelationship) -> MemoryRelationship:
        """Insert or replace a relationship record."""

    async def get_relationship(self, relationship_id: str) -> Optional[MemoryRelationship]:
        """Return the relationship or ``None`` when absent."""

    async def delete_relationship(self, relationship_id: str) -> bool:
        """Remove a relationship; returns False when it was already absent."""

    async def list_relationships(self, memory_id: Optional[str] = None) -> List[MemoryRelationship]:
        """Return all relationships, or those incident to ``memory_id``."""


class InMemoryMemoryStore(MemoryStore):
    """Dictionary-backed adapter used by tests, benchmarks and embedded hosts."""

    def __init__(
        self,
        memories: Iterable[MemoryEntity] = (),
        relationships: Iterable[MemoryRelationship] = (),
    ) -> None:
        self._lock = asyncio.Lock()
        self._memories: Dict[str, MemoryEntity] = {m.id: m.model_copy(deep=True) for m in memories}
        self._relationships: Dict[str, MemoryRelationship] = {
            r.id: r.model_copy(deep=True) for r in relationships
        }

    # ------------------ memories ------------------
    async def create_memory(self, memory: MemoryEntity) -> MemoryEntity:
        async with self._lock:
            if memory.id in self._memories:
                raise PersistenceError(f"memory {memory.id} already exists")
            self._memories[memory.id] = memory.model_copy(deep=True)
        return memory.model_copy(deep=True)

    async def get_memory(self, memory_id: str) -> Optional[MemoryEntity]:
        stored = self._memories.get(memory_id)
        return stored.model_copy(deep=True) if stored is not None else None

    async def update_memory(self, memory: MemoryEntity) -> MemoryEntity:
        async with self._lock:
            if memory.id not in self._memories:
                raise PersistenceError(f"memory {memory.id} does not exist")
            self._memories[memory.id] = memory.model_copy(deep=True)
        return memory.model_copy(deep=True)

    async def delete_memory(self, memory_id: str) -> bool:
        async with self._lock:
            return self._memories.pop(memory_id, None) is not None

    async def list_memories(self, memory_filter: Optional[MemoryFilter] = None) -> List[MemoryEntity]:
        snapshot = list(self._memories.values())
        rows = [m for m in snapshot if memory_filter is None or memory_filter.matches(m)]
        rows.sort(key=lambda m: m.created_at)
        if memory_filter is not None and memory_filter.limit is not None:
            rows = rows[: memory_filter.limit]
        return [m.model_copy(deep=True) for m in rows]

    async def count_memories(self, memory_filter: Optional[MemoryFilter] = None) -> int:
        if memory_filter is None:
            return len(self._memories)
        return sum(1 for m in list(self._memories.values()) if memory_filter.matches(m))

    # ------------------ relationships -------------
    async def put_relationship(self, relationship: MemoryRelationship) -> MemoryRelationship:
        async with self._lock:
            self._relationships[relationship.id] = relationship.model_copy(deep=True)
        return relationship.model_copy(deep=True)

    async def get_relationship(self, relationship_id: str) -> Optional[MemoryRelationship]:
        stored = self._relationships.get(relationship_id)
        return stored.model_copy(deep=True) if stored is not None else None

    async def delete_relationship(self, relationship_id: str) -> bool:
        async with self._lock:
            return self._relationships.pop(relationship_id, None) is not None

    async def list_relationships(self, memory_id: Optional[str] = None) -> List[MemoryRelationship]:
        snapshot = list(self._relationships.values())
        if memory_id is not None:
            snapshot = [r for r in snapshot if r.touches(memory_id)]
        return [r.model_copy(deep=True) for r in snapshot]


__all__ = [
    "InMemoryMemoryStore",
    "MemoryFilter",
    "MemoryStore",
]
