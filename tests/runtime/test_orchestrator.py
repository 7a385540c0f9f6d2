import asyncio

import pytest

from engram.config import EngineConfig, SearchConfig
from engram.errors import (
    AccessDeniedError,
    EmbeddingUnavailableError,
    EngineStateError,
    NotFoundError,
    ValidationError,
)
from engram.runtime.memory.models import MemoryTier, MemoryType, TransitionReason
from engram.runtime.memory.orchestrator import MemoryOrchestrator
from engram.runtime.memory.store import MemoryFilter
from engram.runtime.memory.telemetry import TelemetryClient


class CaptureTelemetryClient(TelemetryClient):
    def __init__(self) -> None:
        self.spans: list[tuple[str, dict]] = []

    def emit_span(self, name: str, attributes: dict) -> None:
        self.spans.append((name, attributes))


def _semantic_config(**search_overrides) -> EngineConfig:
    return EngineConfig(search=SearchConfig(semantic_search_enabled=True, **search_overrides))


def _run(orchestrator, body):
    async def scenario():
        await orchestrator.initialize()
        try:
            return await body()
        finally:
            await orchestrator.shutdown()

    return asyncio.run(scenario())


def test_operations_require_initialize(clock):
    orchestrator = MemoryOrchestrator(clock=clock)
    with pytest.raises(EngineStateError):
        asyncio.run(orchestrator.create({"owner_id": "p1", "content": "x"}))


def test_create_assigns_defaults_and_unique_ids(clock):
    orchestrator = MemoryOrchestrator(clock=clock)

    async def body():
        return [
            await orchestrator.create({"owner_id": "p1", "content": f"note {i}", "type": "text", "importance": 70})
            for i in range(5)
        ]

    created = _run(orchestrator, body)
    assert all(m.tier == MemoryTier.COLD and m.access_count == 0 for m in created)
    assert all(m.created_at == clock() for m in created)
    assert len({m.id for m in created}) == 5


@pytest.mark.parametrize(
    "payload",
    [
        {"owner_id": "p1", "content": ""},
        {"owner_id": "", "content": "x"},
        {"owner_id": "p1", "content": "x", "importance": 101},
        {"owner_id": "p1", "content": "x", "memory_type": "smell"},
        {"owner_id": "p1", "content": "x", "tier": "hot"},
        {"owner_id": "p1", "content": "x", "id": "mem_chosen"},
    ],
)
def test_create_rejects_invalid_input(clock, payload):
    orchestrator = MemoryOrchestrator(clock=clock)

    async def body():
        with pytest.raises(ValidationError):
            await orchestrator.create(payload)

    _run(orchestrator, body)


def test_authorization_denial_is_raised_and_logged(clock, caplog):
    async def authorize(owner_id, action):
        return owner_id != "intruder"

    orchestrator = MemoryOrchestrator(clock=clock, authorize=authorize)

    async def body():
        allowed = await orchestrator.create({"owner_id": "p1", "content": "fine"})
        with pytest.raises(AccessDeniedError):
            await orchestrator.create({"owner_id": "intruder", "content": "sneaky"})
        return allowed, await orchestrator.store.count_memories()

    with caplog.at_level("WARNING", logger="engram"):
        allowed, count = _run(orchestrator, body)
    assert allowed.owner_id == "p1"
    assert count == 1
    assert "Access denied" in caplog.text


def test_retrieve_tracks_access(clock):
    orchestrator = MemoryOrchestrator(clock=clock)

    async def body():
        memory = await orchestrator.create({"owner_id": "p1", "content": "remember the milk"})
        first = await orchestrator.retrieve(memory.id)
        second = await orchestrator.retrieve(memory.id)
        clock.advance(minutes=5)
        third = await orchestrator.retrieve(memory.id)
        missing = await orchestrator.retrieve("mem_missing")
        return memory, first, second, third, missing

    memory, first, second, third, missing = _run(orchestrator, body)
    assert [first.access_count, second.access_count, third.access_count] == [1, 2, 3]
    assert memory.last_accessed < first.last_accessed < second.last_accessed < third.last_accessed
    assert first.content == second.content == third.content
    assert missing is None


def test_update_merges_and_guards_fields(clock):
    orchestrator = MemoryOrchestrator(clock=clock)

    async def body():
        memory = await orchestrator.create({"owner_id": "p1", "content": "draft", "tags": ["a"]})
        updated = await orchestrator.update(memory.id, {"content": "final", "importance": 90})
        with pytest.raises(ValidationError):
            await orchestrator.update(memory.id, {"tier": "hot"})
        with pytest.raises(ValidationError):
            await orchestrator.update(memory.id, {"importance": 500})
        with pytest.raises(ValidationError):
            await orchestrator.update(memory.id, {"colour": "blue"})
        with pytest.raises(NotFoundError):
            await orchestrator.update("mem_missing", {"content": "x"})
        return memory, updated

    memory, updated = _run(orchestrator, body)
    assert updated.id == memory.id
    assert updated.content == "final"
    assert updated.importance == 90
    assert updated.tags == ["a"]
    assert updated.created_at == memory.created_at


def test_delete_is_idempotent_and_cascades(clock, embedder):
    orchestrator = MemoryOrchestrator(clock=clock, provider=embedder)

    async def body():
        a = await orchestrator.create({"owner_id": "p1", "content": "machine learning"})
        b = await orchestrator.create({"owner_id": "p1", "content": "deep learning"})
        await orchestrator.create_relationship(a.id, b.id, "similar", strength=0.9)
        await orchestrator.find_similar_memories(a.id)
        first = await orchestrator.delete(a.id)
        second = await orchestrator.delete(a.id)
        edges = await orchestrator.store.list_relationships()
        return first, second, edges, orchestrator.search_engine.cached_memory_embedding(a.id)

    first, second, edges, cached = _run(orchestrator, body)
    assert (first, second) == (True, False)
    assert edges == []
    assert cached is None


def test_semantic_search_scenario(clock, embedder):
    orchestrator = MemoryOrchestrator(config=_semantic_config(), provider=embedder, clock=clock)

    async def body():
        a = await orchestrator.create({"owner_id": "p1", "content": "machine learning basics"})
        b = await orchestrator.create({"owner_id": "p1", "content": "deep learning fundamentals"})
        c = await orchestrator.create({"owner_id": "p1", "content": "grocery list"})
        result = await orchestrator.semantic_search("neural networks", threshold=0.3)
        return a, b, c, result

    a, b, c, result = _run(orchestrator, body)
    ranked = [m.memory.id for m in result.matches]
    assert set(ranked[:2]) == {a.id, b.id}
    assert c.id not in ranked
    assert not result.degraded


def test_semantic_search_applies_structural_filters(clock, embedder):
    orchestrator = MemoryOrchestrator(config=_semantic_config(), provider=embedder, clock=clock)

    async def body():
        mine = await orchestrator.create({"owner_id": "p1", "content": "machine learning", "importance": 80})
        await orchestrator.create({"owner_id": "p2", "content": "machine learning"})
        await orchestrator.create({"owner_id": "p1", "content": "neural networks", "importance": 10})
        await orchestrator.create({"owner_id": "p1", "content": "deep learning", "memory_type": "image", "importance": 90})
        filters = MemoryFilter(owner_id="p1", min_importance=50, memory_types=[MemoryType.TEXT])
        return mine, await orchestrator.semantic_search("ai models", filters=filters)

    mine, result = _run(orchestrator, body)
    assert [m.memory.id for m in result.matches] == [mine.id]
    assert result.candidates_considered == 1


def test_semantic_search_degrades_to_lexical(clock, embedder):
    embedder.fail = True
    orchestrator = MemoryOrchestrator(config=_semantic_config(), provider=embedder, clock=clock)

    async def body():
        hit = await orchestrator.create({"owner_id": "p1", "content": "grocery list for friday"})
        await orchestrator.create({"owner_id": "p1", "content": "tax paperwork"})
        return hit, await orchestrator.semantic_search("grocery")

    hit, result = _run(orchestrator, body)
    assert result.degraded
    assert result.warnings
    assert [m.memory.id for m in result.matches] == [hit.id]


def test_semantic_search_without_fallback_raises(clock, embedder):
    embedder.fail = True
    orchestrator = MemoryOrchestrator(
        config=_semantic_config(fallback_to_lexical=False), provider=embedder, clock=clock
    )

    async def body():
        await orchestrator.create({"owner_id": "p1", "content": "anything"})
        with pytest.raises(EmbeddingUnavailableError):
            await orchestrator.semantic_search("anything")

    _run(orchestrator, body)


def test_lexical_search_paginates_and_filters(clock):
    orchestrator = MemoryOrchestrator(clock=clock)

    async def body():
        for i in range(5):
            await orchestrator.create({"owner_id": "p1", "content": f"trip note {i}"})
        await orchestrator.create({"owner_id": "p2", "content": "trip note other"})
        first = await orchestrator.search("trip", owner_id="p1", page=1, page_size=2)
        last = await orchestrator.search("trip", owner_id="p1", page=3, page_size=2)
        hot_only = await orchestrator.search("trip", tier_filter="hot")
        with pytest.raises(ValidationError):
            await orchestrator.search("trip", page=0)
        return first, last, hot_only

    first, last, hot_only = _run(orchestrator, body)
    assert first.total == 5 and len(first.items) == 2 and first.has_more
    assert len(last.items) == 1 and not last.has_more
    assert first.mode == "lexical"
    assert hot_only.total == 0


def test_hybrid_search_puts_semantic_matches_first(clock, embedder):
    orchestrator = MemoryOrchestrator(config=_semantic_config(), provider=embedder, clock=clock)

    async def body():
        a = await orchestrator.create({"owner_id": "p1", "content": "deep learning fundamentals"})
        b = await orchestrator.create({"owner_id": "p1", "content": "neural networks course"})
        page = await orchestrator.search("neural networks")
        embedder.fail = True
        degraded = await orchestrator.search("shopping trip")
        return a, b, page, degraded

    a, b, page, degraded = _run(orchestrator, body)
    assert page.mode == "hybrid"
    assert {m.id for m in page.items} == {a.id, b.id}
    assert degraded.mode == "lexical"
    assert degraded.warnings


def test_tier_operations_through_facade(clock):
    orchestrator = MemoryOrchestrator(clock=clock)

    async def body():
        memory = await orchestrator.create({"owner_id": "p1", "content": "passport number", "importance": 100})
        promoted = await orchestrator.promote(memory.id, "hot")
        set_back = await orchestrator.set_tier(memory.id, "warm")
        score = await orchestrator.get_memory_score(memory.id)
        result = await orchestrator.optimize_memory_tiers()
        metrics = await orchestrator.get_tier_metrics()
        return promoted, set_back, score, result, metrics

    promoted, set_back, score, result, metrics = _run(orchestrator, body)
    assert promoted.reason == TransitionReason.MANUAL
    assert set_back.to_tier == MemoryTier.WARM
    assert score.importance_score == 1.0
    assert result.processed == 1
    assert sum(m.count for m in metrics.values()) == 1
    assert orchestrator.recent_transitions()[0].memory_id == promoted.memory_id


def test_graph_operations_through_facade(clock, embedder):
    orchestrator = MemoryOrchestrator(provider=embedder, clock=clock)

    async def body():
        a = await orchestrator.create({"owner_id": "p1", "content": "machine learning basics"})
        b = await orchestrator.create({"owner_id": "p1", "content": "deep learning fundamentals"})
        c = await orchestrator.create({"owner_id": "p1", "content": "grocery list"})
        candidates = await orchestrator.discover_relationships(a.id)
        created = await orchestrator.auto_create_memory_relationships(a.id)
        manual = await orchestrator.create_relationship(b.id, c.id, "references", strength=0.4)
        updated = await orchestrator.update_relationship_strength(manual.id, 0.6)
        related = await orchestrator.get_related_memories(a.id, max_depth=2)
        path = await orchestrator.find_connection_path(a.id, c.id)
        analytics = await orchestrator.generate_graph_analytics()
        clock.advance(days=1)
        decay = await orchestrator.run_relationship_decay()
        removed = await orchestrator.delete_memory_relationship(manual.id)
        return a, b, c, candidates, created, updated, related, path, analytics, decay, removed

    a, b, c, candidates, created, updated, related, path, analytics, decay, removed = _run(orchestrator, body)
    assert [cand.to_memory_id for cand in candidates] == [b.id]
    assert len(created) == 1
    assert updated.strength == 0.6
    assert [r.memory.id for r in related] == [b.id, c.id]
    assert path.memory_ids == [a.id, b.id, c.id]
    assert analytics.total_relationships == 2
    assert decay.decayed == 2
    assert removed is True


def test_health_report(clock):
    orchestrator = MemoryOrchestrator(config=_semantic_config(), clock=clock)

    async def body():
        await orchestrator.create({"owner_id": "p1", "content": "a photo", "memory_type": "image"})
        await orchestrator.create({"owner_id": "p1", "content": "a note"})
        return await orchestrator.get_health()

    report = _run(orchestrator, body)
    assert report.status == "degraded"
    assert report.total_memories == 2
    assert report.memories_by_type["image"] == 1
    assert report.memories_by_tier == {"hot": 0, "warm": 0, "cold": 2}
    assert report.subsystems["search"] == "unavailable"
    assert report.cache_size == 0

    stopped = asyncio.run(orchestrator.get_health())
    assert stopped.status == "stopped"


def test_shutdown_cancels_running_batches(clock):
    orchestrator = MemoryOrchestrator(clock=clock)

    async def scenario():
        await orchestrator.initialize()
        for i in range(3):
            memory = await orchestrator.create({"owner_id": "p1", "content": f"n{i}", "importance": 100})
            await orchestrator.retrieve(memory.id)
        async with orchestrator._batch() as token:
            shutdown = asyncio.create_task(orchestrator.shutdown())
            await asyncio.sleep(0)
            assert token.cancelled
            assert not shutdown.done()
        await shutdown
        with pytest.raises(EngineStateError):
            await orchestrator.optimize_memory_tiers()

    asyncio.run(scenario())
    assert not orchestrator.running


def test_maintenance_on_start_and_telemetry(clock):
    telemetry = CaptureTelemetryClient()
    orchestrator = MemoryOrchestrator(
        config=EngineConfig(maintenance_on_start=True), telemetry=telemetry, clock=clock
    )

    async def body():
        created = await orchestrator.create({"owner_id": "p1", "content": "x"})
        with pytest.raises(NotFoundError):
            await orchestrator.update("mem_missing", {"content": "y"})
        with pytest.raises(ValidationError):
            await orchestrator.update(created.id, {"importance": 500})
        return created

    created = _run(orchestrator, body)
    names = [name for name, _ in telemetry.spans]
    assert names[:2] == ["engram.run_relationship_decay", "engram.optimize_memory_tiers"]
    assert "engram.create" in names
    failed = [attrs for name, attrs in telemetry.spans if name == "engram.update"]
    assert failed[0]["success"] is False
    assert failed[0]["error"] == "NotFoundError"
    assert failed[0]["error_kind"] == "not_found"
    assert failed[1]["error_kind"] == "invalid_request"
    assert failed[1]["memory_id"] == created.id
    assert failed[1]["owner_id"] == "p1"
    assert failed[1]["tier"] == created.tier.value
    assert all("duration_ms" in attrs for _, attrs in telemetry.spans)
