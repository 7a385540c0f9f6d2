"""
Tier Engine - Composite scoring and hot/warm/cold placement

WHAT: Scores memories, recommends tiers, runs capacity-aware optimization passes
WHERE: engram/runtime/memory/tiering.py - placement layer
WHO: MemoryOrchestrator (optimize, promote/demote, metrics, scores)
TIME: Scoring O(1) per memory; a pass is O(n log n) plus one write per move

Score components, each in [0,1]:
    access     = 0.5^(days_since_access / access_half_life) * (0.5 + 0.5 * frequency)
    frequency  = min(1, ln(1 + access_count) / ln(1 + frequency_saturation))
    importance = importance / 100
    age        = max(age_floor, 0.5^(age_days / age_half_life))
    connection = 1 - exp(-weighted_degree / connection_scale)
    total      = weighted sum of the four (weights sum to 1)

Boundary Notes:
- Only this engine assigns ``tier`` during passes; manual moves go through it too
- A transition is recorded only after the new tier has been persisted
- Passes work on an id snapshot; memories created mid-pass wait for the next run
"""

from __future__ import annotations

import dataclasses
import json
import logging
import math
import time
import zlib
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Deque, Dict, List, Optional

from ...config.settings import TierConfig
from ...errors import NotFoundError, OptimizationInProgressError, ValidationError
from .concurrency import CancellationToken, KeyedLocks
from .models import MemoryEntity, MemoryTier, TransitionReason, utcnow
from .store import MemoryFilter, MemoryStore

logger = logging.getLogger(__name__)

ConnectionSource = Callable[[], Awaitable[Dict[str, float]]]
_SECONDS_PER_DAY = 86400.0


@dataclass(slots=True)
class MemoryScore:
    memory_id: str
    access_score: float
    importance_score: float
    age_score: float
    connection_score: float
    total_score: float
    recommended_tier: MemoryTier
    current_tier: MemoryTier = MemoryTier.COLD


@dataclass(slots=True)
class TierTransition:
    memory_id: str
    from_tier: MemoryTier
    to_tier: MemoryTier
    reason: TransitionReason
    score: float
    timestamp: datetime


@dataclass(slots=True)
class TierMetrics:
    tier: MemoryTier
    count: int = 0
    average_importance: float = 0.0
    average_access_count: float = 0.0
    average_age_days: float = 0.0
    average_score: float = 0.0
    storage_bytes: int = 0
    last_optimized: Optional[datetime] = None


@dataclass(slots=True)
class TierOptimizationResult:
    processed: int = 0
    transitions: List[TierTransition] = field(default_factory=list)
    metrics: Dict[MemoryTier, TierMetrics] = field(default_factory=dict)
    duration_ms: float = 0.0
    space_reclaimed_bytes: int = 0
    errors: List[str] = field(default_factory=list)
    cancelled: bool = False


def compressed_savings(memory: MemoryEntity) -> int:
    """Bytes saved by compressing a memory's content for cold storage."""

    if isinstance(memory.content, str):
        raw = memory.content.encode("utf-8")
    else:
        raw = json.dumps(memory.content, sort_keys=True, default=str).encode("utf-8")
    return max(0, len(raw) - len(zlib.compress(raw, 6)))


class TierEngine:
    """Scores memories and moves them between tiers."""

    def __init__(
        self,
        store: MemoryStore,
        config: TierConfig | None = None,
        *,
        connections: Optional[ConnectionSource] = None,
        clock: Callable[[], datetime] = utcnow,
        locks: KeyedLocks | None = None,
    ) -> None:
        self.store = store
        self.config = config or TierConfig()
        self._connections = connections
        self._clock = clock
        self._locks = locks or KeyedLocks()
        self._history: Deque[TierTransition] = deque(maxlen=self.config.transition_history)
        self._optimizing = False
        self.last_optimized: Optional[datetime] = None
        self._pass_number = 0
        self._scored_in_pass: Dict[str, int] = {}

    @property
    def optimizing(self) -> bool:
        return self._optimizing

    def update_config(self, **changes: object) -> TierConfig:
        """Swap in a revalidated copy of the tier config."""

        try:
            updated = dataclasses.replace(self.config, **changes)
        except TypeError as exc:
            raise ValidationError(f"unknown tier setting: {exc}") from exc
        if updated.transition_history != self.config.transition_history:
            self._history = deque(self._history, maxlen=updated.transition_history)
        self.config = updated
        logger.info(f"Tier config updated: {sorted(changes)}")
        return updated

    # ------------------ scoring ---------------------
    def recommend_tier(self, total_score: float) -> MemoryTier:
        if total_score >= self.config.hot_threshold:
            return MemoryTier.HOT
        if total_score >= self.config.warm_threshold:
            return MemoryTier.WARM
        return MemoryTier.COLD

    def calculate_memory_score(
        self,
        memory: MemoryEntity,
        weighted_degree: float = 0.0,
        now: Optional[datetime] = None,
    ) -> MemoryScore:
        """Pure function of the memory, its weighted degree and ``now``."""

        cfg = self.config
        now = now or self._clock()

        days_idle = max(0.0, (now - memory.last_accessed).total_seconds() / _SECONDS_PER_DAY)
        recency = 0.5 ** (days_idle / cfg.access_half_life_days)
        frequency = min(1.0, math.log1p(memory.access_count) / math.log1p(cfg.frequency_saturation))
        access = recency * (0.5 + 0.5 * frequency)

        importance = memory.importance / 100.0

        age_days = max(0.0, (now - memory.created_at).total_seconds() / _SECONDS_PER_DAY)
        age = max(cfg.age_floor, 0.5 ** (age_days / cfg.age_half_life_days))

        connection = 1.0 - math.exp(-max(0.0, weighted_degree) / cfg.connection_scale)

        total = (
            cfg.access_weight * access
            + cfg.importance_weight * importance
            + cfg.age_weight * age
            + cfg.connection_weight * connection
        )
        total = max(0.0, min(1.0, total))
        return MemoryScore(
            memory_id=memory.id,
            access_score=access,
            importance_score=importance,
            age_score=age,
            connection_score=connection,
            total_score=total,
            recommended_tier=self.recommend_tier(total),
            current_tier=memory.tier,
        )

    async def _degrees(self) -> Dict[str, float]:
        if self._connections is None:
            return {}
        return await self._connections()

    async def get_memory_score(self, memory_id: str) -> MemoryScore:
        memory = await self.store.get_memory(memory_id)
        if memory is None:
            raise NotFoundError(f"memory {memory_id} does not exist")
        degrees = await self._degrees()
        return self.calculate_memory_score(memory, degrees.get(memory_id, 0.0))

    # ------------------ planning --------------------
    def _reason_for(self, score: MemoryScore, target: MemoryTier) -> TransitionReason:
        if target.rank > score.current_tier.rank:
            weighted_access = self.config.access_weight * score.access_score
            weighted_importance = self.config.importance_weight * score.importance_score
            if weighted_importance > weighted_access:
                return TransitionReason.IMPORTANCE_CHANGE
            return TransitionReason.ACCESS_PATTERN
        return TransitionReason.AGE_DECAY

    def plan_transitions(self, scores: List[MemoryScore]) -> Dict[str, tuple[MemoryTier, TransitionReason]]:
        """Target tier and reason for every memory whose tier should change.

        Threshold recommendations come first; hot and warm overflow beyond
        their capacities is then pushed down one tier, lowest scores first.
        """

        targets: Dict[str, MemoryTier] = {s.memory_id: s.recommended_tier for s in scores}
        overflowed: set[str] = set()
        ranked = sorted(scores, key=lambda s: (-s.total_score, s.memory_id))
        for tier, lower, capacity in (
            (MemoryTier.HOT, MemoryTier.WARM, self.config.hot_capacity),
            (MemoryTier.WARM, MemoryTier.COLD, self.config.warm_capacity),
        ):
            if capacity is None:
                continue
            members = [s for s in ranked if targets[s.memory_id] == tier]
            for score in members[capacity:]:
                targets[score.memory_id] = lower
                overflowed.add(score.memory_id)

        plan: Dict[str, tuple[MemoryTier, TransitionReason]] = {}
        for score in scores:
            target = targets[score.memory_id]
            if target == score.current_tier:
                continue
            if score.memory_id in overflowed:
                reason = TransitionReason.OPTIMIZATION
            else:
                reason = self._reason_for(score, target)
            plan[score.memory_id] = (target, reason)
        return plan

    # ------------------ passes ----------------------
    async def optimize_memory_tiers(
        self,
        token: CancellationToken | None = None,
        now: Optional[datetime] = None,
    ) -> TierOptimizationResult:
        """Re-score the working set and persist every resulting tier move."""

        if self._optimizing:
            raise OptimizationInProgressError("a tier optimization pass is already running")
        self._optimizing = True
        try:
            return await self._optimize(token, now)
        finally:
            self._optimizing = False

    async def _working_set(self) -> List[MemoryEntity]:
        """Memories scored by this pass, least recently scored first.

        With ``max_working_set`` unset every memory is scored. Otherwise the
        window rotates: memories never scored come first, then those scored
        longest ago, so each memory is reached within a bounded number of passes.
        """

        memories = await self.store.list_memories()
        self._pass_number += 1
        limit = self.config.max_working_set
        present = {m.id for m in memories}
        self._scored_in_pass = {k: v for k, v in self._scored_in_pass.items() if k in present}
        if limit is not None and len(memories) > limit:
            memories = sorted(memories, key=lambda m: self._scored_in_pass.get(m.id, 0))[:limit]
        for memory in memories:
            self._scored_in_pass[memory.id] = self._pass_number
        return memories

    async def _optimize(self, token: CancellationToken | None, now: Optional[datetime]) -> TierOptimizationResult:
        started = time.perf_counter()
        now = now or self._clock()
        result = TierOptimizationResult()

        working_set = await self._working_set()
        degrees = await self._degrees()
        scores = [self.calculate_memory_score(m, degrees.get(m.id, 0.0), now) for m in working_set]
        score_by_id = {s.memory_id: s for s in scores}
        result.processed = len(scores)
        plan = self.plan_transitions(scores)
        logger.info(f"Tier optimization planned {len(plan)} moves over {len(scores)} memories")

        for memory_id, (target, reason) in plan.items():
            if token is not None and token.cancelled:
                result.cancelled = True
                logger.info(f"Tier optimization cancelled: {token.reason}")
                break
            expected = score_by_id[memory_id].current_tier
            try:
                async with self._locks.hold(memory_id):
                    memory = await self.store.get_memory(memory_id)
                    if memory is None or memory.tier != expected:
                        logger.debug(f"Skipping {memory_id}: changed since snapshot")
                        continue
                    memory.tier = target
                    stored = await self.store.update_memory(memory)
            except Exception as exc:
                logger.warning(f"Tier move failed for {memory_id}: {exc}")
                result.errors.append(f"{memory_id}: {exc}")
                continue
            transition = self._record(memory_id, expected, target, reason, score_by_id[memory_id].total_score)
            result.transitions.append(transition)
            if target == MemoryTier.COLD:
                result.space_reclaimed_bytes += compressed_savings(stored)

        self.last_optimized = now
        result.metrics = await self.collect_tier_metrics(now=now, degrees=degrees)
        result.duration_ms = (time.perf_counter() - started) * 1000.0
        logger.info(
            f"Tier optimization: processed={result.processed} moved={len(result.transitions)} "
            f"errors={len(result.errors)} reclaimed={result.space_reclaimed_bytes}B "
            f"in {result.duration_ms:.1f}ms"
        )
        return result

    def _record(
        self,
        memory_id: str,
        from_tier: MemoryTier,
        to_tier: MemoryTier,
        reason: TransitionReason,
        score: float,
    ) -> TierTransition:
        transition = TierTransition(
            memory_id=memory_id,
            from_tier=from_tier,
            to_tier=to_tier,
            reason=reason,
            score=score,
            timestamp=self._clock(),
        )
        self._history.append(transition)
        logger.info(f"Tier transition {memory_id}: {from_tier.value} -> {to_tier.value} ({reason.value})")
        return transition

    # ------------------ manual moves ----------------
    async def set_tier(
        self,
        memory_id: str,
        tier: MemoryTier | str,
        reason: TransitionReason = TransitionReason.MANUAL,
    ) -> TierTransition:
        """Move a memory to ``tier`` without consulting its score."""

        return await self._move(memory_id, tier, reason, direction=0)

    async def promote(self, memory_id: str, tier: MemoryTier | str) -> TierTransition:
        return await self._move(memory_id, tier, TransitionReason.MANUAL, direction=1)

    async def demote(self, memory_id: str, tier: MemoryTier | str) -> TierTransition:
        return await self._move(memory_id, tier, TransitionReason.MANUAL, direction=-1)

    async def _move(
        self,
        memory_id: str,
        tier: MemoryTier | str,
        reason: TransitionReason,
        direction: int,
    ) -> TierTransition:
        try:
            target = MemoryTier(tier)
        except ValueError as exc:
            raise ValidationError(f"unknown tier: {tier!r}") from exc

        degrees = await self._degrees()
        async with self._locks.hold(memory_id):
            memory = await self.store.get_memory(memory_id)
            if memory is None:
                raise NotFoundError(f"memory {memory_id} does not exist")
            current = memory.tier
            if target == current:
                raise ValidationError(f"memory {memory_id} is already {current.value}")
            if direction > 0 and target.rank < current.rank:
                raise ValidationError(f"cannot promote {current.value} to {target.value}")
            if direction < 0 and target.rank > current.rank:
                raise ValidationError(f"cannot demote {current.value} to {target.value}")
            score = self.calculate_memory_score(memory, degrees.get(memory_id, 0.0))
            memory.tier = target
            await self.store.update_memory(memory)
        return self._record(memory_id, current, target, reason, score.total_score)

    # ------------------ reporting -------------------
    def recent_transitions(self, limit: Optional[int] = None) -> List[TierTransition]:
        """Newest first."""

        history = list(reversed(self._history))
        return history if limit is None else history[:limit]

    async def collect_tier_metrics(
        self,
        now: Optional[datetime] = None,
        degrees: Optional[Dict[str, float]] = None,
    ) -> Dict[MemoryTier, TierMetrics]:
        now = now or self._clock()
        if degrees is None:
            degrees = await self._degrees()
        metrics: Dict[MemoryTier, TierMetrics] = {}
        for tier in MemoryTier:
            members = await self.store.list_memories(MemoryFilter(tiers=frozenset({tier})))
            entry = TierMetrics(tier=tier, count=len(members), last_optimized=self.last_optimized)
            if members:
                count = len(members)
                entry.average_importance = sum(m.importance for m in members) / count
                entry.average_access_count = sum(m.access_count for m in members) / count
                entry.average_age_days = (
                    sum((now - m.created_at).total_seconds() for m in members) / count / _SECONDS_PER_DAY
                )
                entry.average_score = (
                    sum(self.calculate_memory_score(m, degrees.get(m.id, 0.0), now).total_score for m in members)
                    / count
                )
                entry.storage_bytes = sum(m.content_size() for m in members)
            metrics[tier] = entry
        return metrics

    def health(self) -> Dict[str, object]:
        return {
            "status": "optimizing" if self._optimizing else "ready",
            "last_optimized": self.last_optimized.isoformat() if self.last_optimized else None,
            "transitions_recorded": len(self._history),
        }


__all__ = [
    "MemoryScore",
    "TierEngine",
    "TierMetrics",
    "TierOptimizationResult",
    "TierTransition",
    "compressed_savings",
]
