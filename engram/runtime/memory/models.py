"""
Memory Models - Type-safe data structures for tiered memory

WHAT: Pydantic models for memories, cached embeddings and relationships
WHERE: engram/runtime/memory/models.py - data layer
WHO: Orchestrator, engines and persistence adapters exchanging records
TIME: Model validation <1ms

Every enumerated field is a ``str`` enum so an out-of-range tier, type or
relationship kind cannot be constructed. All models include:
- Timezone-aware UTC timestamps (ISO 8601 in records)
- Bounded numeric fields (importance in [0,100], strength/confidence in [0,1])
- Metadata dictionaries for extensibility
- ``to_record()`` / ``from_record()`` for persistence adapters

Boundary Notes:
- Models enforce schema consistency on construction and on assignment
- Only the tier engine assigns ``tier``; only the graph engine owns edges
"""

from __future__ import annotations

import hashlib
import json
import math
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_content_hash(content: str) -> str:
    """Generate SHA-256 hash of content for cache keys and staleness checks."""
    return f"sha256:{hashlib.sha256(content.encode('utf-8')).hexdigest()}"


def generate_key(prefix: str) -> str:
    """Generate a prefixed, collision-free identifier."""
    return f"{prefix}_{uuid.uuid4().hex}"


def clamp_unit(value: float) -> float:
    """Clamp a number into [0,1]; NaN is rejected."""
    number = float(value)
    if math.isnan(number):
        raise ValueError("value must be a number, got NaN")
    return max(0.0, min(1.0, number))


def _ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _parse_timestamp(raw: Any) -> Optional[datetime]:
    if raw is None or isinstance(raw, datetime):
        return raw
    return datetime.fromisoformat(str(raw).replace("Z", "+00:00"))


class MemoryType(str, Enum):
    """Closed set of memory payload kinds."""

    TEXT = "text"
    IMAGE = "image"
    AUDIO = "audio"
    VIDEO = "video"
    FILE = "file"


class MemoryTier(str, Enum):
    """Coarse storage/priority class of a memory."""

    HOT = "hot"
    WARM = "warm"
    COLD = "cold"

    @property
    def rank(self) -> int:
        """Ordering helper: cold < warm < hot."""
        return _TIER_RANK[self]


_TIER_RANK = {MemoryTier.COLD: 0, MemoryTier.WARM: 1, MemoryTier.HOT: 2}


class RelationshipType(str, Enum):
    """Kinds of directed edges between memories."""

    REFERENCES = "references"
    SIMILAR = "similar"
    RELATED = "related"
    CAUSAL = "causal"
    TEMPORAL = "temporal"


class TransitionReason(str, Enum):
    """Why a memory changed tier."""

    ACCESS_PATTERN = "access_pattern"
    IMPORTANCE_CHANGE = "importance_change"
    AGE_DECAY = "age_decay"
    MANUAL = "manual"
    OPTIMIZATION = "optimization"


class MemoryEntity(BaseModel):
    """
    Unit of storage: a free-text or structured memory owned by one persona.

    Examples:
    - content="User prefers dark mode in the evening", tags=["preference"]
    - content={"text": "Flight lands 9:40", "source": "calendar"}, type=text
    """

    model_config = ConfigDict(validate_assignment=True)

    id: str = Field(default_factory=lambda: generate_key("mem"), min_length=1)
    owner_id: str = Field(min_length=1)
    content: Union[str, Dict[str, Any]]
    memory_type: MemoryType = MemoryType.TEXT
    importance: int = Field(default=50, ge=0, le=100)
    tags: List[str] = Field(default_factory=list)
    tier: MemoryTier = MemoryTier.COLD
    created_at: datetime = Field(default_factory=utcnow)
    last_accessed: datetime = Field(default_factory=utcnow)
    access_count: int = Field(default=0, ge=0)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _default_last_accessed(cls, data: Any) -> Any:
        if isinstance(data, dict) and data.get("last_accessed") is None and data.get("created_at"):
            data = dict(data)
            data["last_accessed"] = data["created_at"]
        return data

    @field_validator("owner_id")
    @classmethod
    def _owner_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("owner_id must not be empty")
        return value

    @field_validator("content")
    @classmethod
    def _content_not_empty(cls, value: Union[str, Dict[str, Any]]) -> Union[str, Dict[str, Any]]:
        if isinstance(value, str):
            value = value.strip()
            if not value:
                raise ValueError("content must not be empty")
        elif not value:
            raise ValueError("content must not be empty")
        return value

    @field_validator("tags")
    @classmethod
    def _normalize_tags(cls, value: List[str]) -> List[str]:
        seen: Dict[str, None] = {}
        for tag in value:
            cleaned = str(tag).strip()
            if cleaned and cleaned not in seen:
                seen[cleaned] = None
        return list(seen)

    @field_validator("created_at", "last_accessed")
    @classmethod
    def _timestamps_utc(cls, value: datetime) -> datetime:
        return _ensure_utc(value)

    def display_text(self) -> str:
        """Normalize content to the string used for scoring and search."""
        if isinstance(self.content, str):
            return self.content
        for key in ("text", "data", "content"):
            inner = self.content.get(key)
            if isinstance(inner, str) and inner.strip():
                return inner
        return json.dumps(self.content, sort_keys=True, default=str)

    def search_text(self) -> str:
        """Display text plus tags, as embedded and lexically matched."""
        return f"{self.display_text()} {' '.join(self.tags)}".strip()

    def content_size(self) -> int:
        """Approximate storage footprint of the content in bytes."""
        if isinstance(self.content, str):
            return len(self.content.encode("utf-8"))
        return len(json.dumps(self.content, sort_keys=True, default=str).encode("utf-8"))

    def to_record(self) -> Dict[str, Any]:
        """Convert to a plain record for persistence adapters."""
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "content": self.content,
            "memory_type": self.memory_type.value,
            "importance": self.importance,
            "tags": list(self.tags),
            "tier": self.tier.value,
            "created_at": self.created_at.isoformat(),
            "last_accessed": self.last_accessed.isoformat(),
            "access_count": self.access_count,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> MemoryEntity:
        """Create instance from a persistence record."""
        return cls(
            id=record["id"],
            owner_id=record["owner_id"],
            content=record["content"],
            memory_type=record.get("memory_type", MemoryType.TEXT),
            importance=record.get("importance", 50),
            tags=record.get("tags", []),
            tier=record.get("tier", MemoryTier.COLD),
            created_at=_parse_timestamp(record["created_at"]),
            last_accessed=_parse_timestamp(record.get("last_accessed")),
            access_count=record.get("access_count", 0),
            metadata=record.get("metadata", {}),
        )


class MemoryEmbedding(BaseModel):
    """Derived, cached embedding of one memory under one model."""

    memory_id: str = Field(min_length=1)
    vector: List[float] = Field(min_length=1)
    model: str = Field(min_length=1)
    content_hash: str = ""
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def dimensions(self) -> int:
        return len(self.vector)


class MemoryRelationship(BaseModel):
    """
    Directed, typed, weighted edge between two memories.

    Examples:
    - from=mem_trip_plan, to=mem_flight_booking, type="causal"
    - from=mem_ml_notes, to=mem_dl_notes, type="similar", strength=0.82
    """

    model_config = ConfigDict(validate_assignment=True)

    id: str = Field(default_factory=lambda: generate_key("rel"), min_length=1)
    from_memory_id: str = Field(min_length=1)
    to_memory_id: str = Field(min_length=1)
    relationship_type: RelationshipType
    strength: float = 0.5
    confidence: float = 0.8
    created_at: datetime = Field(default_factory=utcnow)
    last_verified: datetime = Field(default_factory=utcnow)
    last_decayed: Optional[datetime] = None
    decay_rate: float = Field(default=0.01, ge=0.0)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("strength", "confidence", mode="before")
    @classmethod
    def _clamp(cls, value: Any) -> float:
        return clamp_unit(value)

    @field_validator("created_at", "last_verified", "last_decayed")
    @classmethod
    def _timestamps_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _ensure_utc(value) if value is not None else None

    @model_validator(mode="after")
    def _reject_self_loop(self) -> MemoryRelationship:
        if self.from_memory_id == self.to_memory_id:
            raise ValueError("relationship endpoints must differ")
        return self

    def other_end(self, memory_id: str) -> str:
        """Return the endpoint opposite ``memory_id``."""
        return self.to_memory_id if self.from_memory_id == memory_id else self.from_memory_id

    def touches(self, memory_id: str) -> bool:
        return memory_id in (self.from_memory_id, self.to_memory_id)

    def decay_reference(self) -> datetime:
        """Timestamp from which unapplied decay is measured."""
        if self.last_decayed is None or self.last_decayed < self.last_verified:
            return self.last_verified
        return self.last_decayed

    def to_record(self) -> Dict[str, Any]:
        """Convert to a plain edge record for persistence adapters."""
        return {
            "id": self.id,
            "from_memory_id": self.from_memory_id,
            "to_memory_id": self.to_memory_id,
            "relationship_type": self.relationship_type.value,
            "strength": self.strength,
            "confidence": self.confidence,
            "created_at": self.created_at.isoformat(),
            "last_verified": self.last_verified.isoformat(),
            "last_decayed": self.last_decayed.isoformat() if self.last_decayed else None,
            "decay_rate": self.decay_rate,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> MemoryRelationship:
        """Create instance from a persistence edge record."""
        return cls(
            id=record["id"],
            from_memory_id=record["from_memory_id"],
            to_memory_id=record["to_memory_id"],
            relationship_type=record["relationship_type"],
            strength=record.get("strength", 0.5),
            confidence=record.get("confidence", 0.8),
            created_at=_parse_timestamp(record["created_at"]),
            last_verified=_parse_timestamp(record["last_verified"]),
            last_decayed=_parse_timestamp(record.get("last_decayed")),
            decay_rate=record.get("decay_rate", 0.01),
            metadata=record.get("metadata", {}),
        )


__all__ = [
    "MemoryEmbedding",
    "MemoryEntity",
    "MemoryRelationship",
    "MemoryTier",
    "MemoryType",
    "RelationshipType",
    "TransitionReason",
    "clamp_unit",
    "generate_content_hash",
    "generate_key",
    "utcnow",
]
