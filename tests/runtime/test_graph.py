import asyncio
from datetime import timedelta

import pytest

from engram.config import GraphConfig
from engram.errors import NotFoundError, ValidationError
from engram.runtime.memory.concurrency import CancellationToken
from engram.runtime.memory.graph import RelationshipGraph, lexical_similarity
from engram.runtime.memory.models import MemoryEntity, RelationshipType
from engram.runtime.memory.store import InMemoryMemoryStore


def _seed(clock, *contents, days_apart: int = 2):
    memories = []
    for index, content in enumerate(contents):
        stamp = clock() - timedelta(days=days_apart * (len(contents) - index))
        memories.append(MemoryEntity(owner_id="p1", content=content, created_at=stamp))
    return InMemoryMemoryStore(memories), memories


def test_create_relationship_validates_and_reaffirms(clock):
    store, (a, b) = _seed(clock, "alpha", "beta")
    graph = RelationshipGraph(store, clock=clock)

    async def scenario():
        with pytest.raises(ValidationError):
            await graph.create_relationship(a.id, a.id, "similar")
        with pytest.raises(ValidationError):
            await graph.create_relationship(a.id, b.id, "friendly")
        with pytest.raises(NotFoundError):
            await graph.create_relationship(a.id, "mem_missing", "similar")

        first = await graph.create_relationship(a.id, b.id, "similar", strength=1.4, confidence=0.7)
        clock.advance(hours=1)
        second = await graph.create_relationship(a.id, b.id, RelationshipType.SIMILAR, strength=0.4)
        reverse = await graph.create_relationship(b.id, a.id, "similar", strength=0.6)
        return first, second, reverse, await store.list_relationships()

    first, second, reverse, stored = asyncio.run(scenario())
    assert first.strength == 1.0
    assert second.id == first.id
    assert second.strength == 0.4
    assert second.last_verified > first.last_verified
    assert reverse.id != first.id
    assert len(stored) == 2


def test_decay_rate_derived_from_type_and_strength(clock):
    graph = RelationshipGraph(InMemoryMemoryStore(), clock=clock)
    assert graph.decay_rate_for(RelationshipType.TEMPORAL, 0.0) == pytest.approx(0.02)
    assert graph.decay_rate_for(RelationshipType.TEMPORAL, 1.0) == pytest.approx(0.01)
    assert graph.decay_rate_for(RelationshipType.CAUSAL, 0.5) < graph.decay_rate_for(RelationshipType.REFERENCES, 0.5)


def test_update_strength_and_delete(clock):
    store, (a, b) = _seed(clock, "alpha", "beta")
    graph = RelationshipGraph(store, clock=clock)

    async def scenario():
        rel = await graph.create_relationship(a.id, b.id, "related", strength=0.5)
        updated = await graph.update_relationship_strength(rel.id, 0.9, confidence=0.95)
        with pytest.raises(NotFoundError):
            await graph.update_relationship_strength("rel_missing", 0.2)
        deleted = await graph.delete_relationship(rel.id)
        again = await graph.delete_relationship(rel.id)
        return updated, deleted, again

    updated, deleted, again = asyncio.run(scenario())
    assert updated.strength == 0.9
    assert updated.confidence == 0.95
    assert updated.decay_rate == pytest.approx(0.007 * (1 - 0.45))
    assert (deleted, again) == (True, False)


def test_decay_scenario_reduces_then_prunes(clock):
    store, (a, b) = _seed(clock, "alpha", "beta")
    graph = RelationshipGraph(store, clock=clock)

    async def scenario():
        rel = await graph.create_relationship(a.id, b.id, "references", strength=0.8, decay_rate=0.1)
        clock.advance(days=5)
        first = await graph.run_relationship_decay()
        after_first = await store.get_relationship(rel.id)
        repeat = await graph.run_relationship_decay()
        after_repeat = await store.get_relationship(rel.id)
        clock.advance(days=3)
        final = await graph.run_relationship_decay()
        return first, after_first, repeat, after_repeat, final, await store.get_relationship(rel.id)

    first, after_first, repeat, after_repeat, final, gone = asyncio.run(scenario())
    assert first.decayed == 1
    assert after_first.strength == pytest.approx(0.3)
    assert repeat.decayed == 0
    assert after_repeat.strength == pytest.approx(0.3)
    assert final.pruned == 1
    assert gone is None


def test_decay_is_non_increasing_and_reset_by_verification(clock):
    store, (a, b) = _seed(clock, "alpha", "beta")
    graph = RelationshipGraph(store, clock=clock)

    async def scenario():
        rel = await graph.create_relationship(a.id, b.id, "similar", strength=0.9, decay_rate=0.05)
        strengths = []
        for _ in range(4):
            clock.advance(days=1)
            await graph.run_relationship_decay()
            strengths.append((await store.get_relationship(rel.id)).strength)
        await graph.update_relationship_strength(rel.id, 0.9)
        await graph.run_relationship_decay()
        return strengths, (await store.get_relationship(rel.id)).strength

    strengths, reaffirmed = asyncio.run(scenario())
    assert strengths == sorted(strengths, reverse=True)
    assert all(0.0 <= s <= 1.0 for s in strengths)
    assert strengths[-1] == pytest.approx(0.7)
    assert reaffirmed == pytest.approx(0.9)


def test_decay_honours_cancellation(clock):
    store, (a, b, c) = _seed(clock, "alpha", "beta", "gamma")
    graph = RelationshipGraph(store, clock=clock)
    token = CancellationToken()

    async def scenario():
        await graph.create_relationship(a.id, b.id, "related")
        await graph.create_relationship(b.id, c.id, "related")
        token.cancel("test")
        return await graph.run_relationship_decay(token=token)

    result = asyncio.run(scenario())
    assert result.cancelled
    assert result.processed == 0


def _chain(clock):
    # a -0.9- b -0.8- c -0.7- d, plus a weak shortcut a -0.2- d
    store, memories = _seed(clock, "alpha", "beta", "gamma", "delta", "epsilon")
    graph = RelationshipGraph(store, GraphConfig(min_relationship_strength=0.1), clock=clock)
    a, b, c, d, e = memories

    async def build():
        await graph.create_relationship(a.id, b.id, "related", strength=0.9)
        await graph.create_relationship(b.id, c.id, "causal", strength=0.8)
        await graph.create_relationship(c.id, d.id, "related", strength=0.7)
        await graph.create_relationship(a.id, d.id, "references", strength=0.2)

    asyncio.run(build())
    return graph, memories


def test_related_memories_depth_and_strongest_path(clock):
    graph, (a, b, c, d, e) = _chain(clock)

    async def scenario():
        return [await graph.get_related_memories(a.id, max_depth=depth) for depth in range(5)]

    by_depth = asyncio.run(scenario())
    assert by_depth[0] == []
    sizes = [len(r) for r in by_depth]
    assert sizes == sorted(sizes)
    assert {r.memory.id for r in by_depth[1]} == {b.id, d.id}

    deep = {r.memory.id: r for r in by_depth[3]}
    assert deep[d.id].strength == pytest.approx(0.7)
    assert deep[d.id].depth == 3
    assert deep[d.id].path == [a.id, b.id, c.id, d.id]
    assert e.id not in deep
    assert [r.memory.id for r in by_depth[3]][0] == b.id


def test_related_memories_filters(clock):
    graph, (a, b, c, d, e) = _chain(clock)

    async def scenario():
        strong = await graph.get_related_memories(a.id, max_depth=3, min_strength=0.75)
        related_only = await graph.get_related_memories(a.id, max_depth=3, relationship_types=["related"])
        unknown = await graph.get_related_memories("mem_nowhere", max_depth=3)
        return strong, related_only, unknown

    strong, related_only, unknown = asyncio.run(scenario())
    assert {r.memory.id for r in strong} == {b.id, c.id}
    assert {r.memory.id for r in related_only} == {b.id}
    assert unknown == []
    with pytest.raises(ValidationError):
        asyncio.run(graph.get_related_memories(a.id, sort_by="vibes"))


def test_expired_relationships_skipped_unless_requested(clock):
    store, (a, b) = _seed(clock, "alpha", "beta")
    graph = RelationshipGraph(store, GraphConfig(relationship_ttl_days=30), clock=clock)

    async def scenario():
        await graph.create_relationship(a.id, b.id, "causal", strength=0.9, decay_rate=0.0)
        clock.advance(days=31)
        hidden = await graph.get_related_memories(a.id, max_depth=1)
        shown = await graph.get_related_memories(a.id, max_depth=1, include_expired=True)
        return hidden, shown

    hidden, shown = asyncio.run(scenario())
    assert hidden == []
    assert [r.memory.id for r in shown] == [b.id]


def test_connection_path_prefers_fewest_hops_then_strength(clock):
    graph, (a, b, c, d, e) = _chain(clock)

    async def scenario():
        direct = await graph.find_connection_path(a.id, d.id)
        two_hop = await graph.find_connection_path(a.id, c.id)
        missing = await graph.find_connection_path(a.id, e.id)
        itself = await graph.find_connection_path(a.id, a.id)
        short_horizon = await graph.find_connection_path(b.id, d.id, max_hops=1)
        return direct, two_hop, missing, itself, short_horizon

    direct, two_hop, missing, itself, short_horizon = asyncio.run(scenario())
    assert direct.memory_ids == [a.id, d.id]
    assert direct.hops == 1
    # a-b-c (min 0.8) beats a-d-c (min 0.2)
    assert two_hop.memory_ids == [a.id, b.id, c.id]
    assert two_hop.min_strength == pytest.approx(0.8)
    assert missing is None
    assert itself.memory_ids == [a.id] and itself.hops == 0
    assert short_horizon is None


def test_graph_analytics(clock):
    graph, (a, b, c, d, e) = _chain(clock)
    analytics = asyncio.run(graph.generate_graph_analytics())

    assert analytics.total_relationships == 4
    assert analytics.total_memories == 5
    assert analytics.average_strength == pytest.approx((0.9 + 0.8 + 0.7 + 0.2) / 4)
    assert analytics.relationships_by_type["related"] == 2
    assert analytics.relationships_by_type["temporal"] == 0
    assert analytics.density == pytest.approx(4 / 10)
    assert analytics.cluster_count == 2  # {a, b, c, d} and isolated e
    assert analytics.most_connected_memory in {a.id, d.id, b.id, c.id}
    assert analytics.most_connected_degree == 2


def test_weighted_degrees(clock):
    graph, (a, b, c, d, e) = _chain(clock)
    degrees = asyncio.run(graph.weighted_degrees())
    assert degrees[a.id] == pytest.approx(1.1)
    assert e.id not in degrees


def test_lexical_similarity():
    x = MemoryEntity(owner_id="p", content="trip to lisbon")
    y = MemoryEntity(owner_id="p", content="lisbon trip photos")
    z = MemoryEntity(owner_id="p", content="tax return")
    assert lexical_similarity(x, y) == pytest.approx(2 / 4)
    assert lexical_similarity(x, z) == 0.0


def test_discovery_uses_vectors_and_heuristics(clock, embedder):
    older = clock() - timedelta(days=10)
    target = MemoryEntity(owner_id="p1", content="machine learning basics", tags=["study"], created_at=older)
    close = MemoryEntity(owner_id="p1", content="deep learning notes", tags=["study"], created_at=clock())
    same_day = MemoryEntity(owner_id="p2", content="neural networks", created_at=older + timedelta(hours=2))
    far = MemoryEntity(owner_id="p1", content="grocery list", created_at=clock())
    store = InMemoryMemoryStore([target, close, same_day, far])

    async def vectorize(memory):
        return embedder.encode(memory.search_text())

    graph = RelationshipGraph(store, GraphConfig(auto_relationship_threshold=0.5), vectorizer=vectorize, clock=clock)

    async def scenario():
        candidates = await graph.discover_relationships(target.id)
        created = await graph.auto_create_relationships(target.id)
        rediscovered = await graph.discover_relationships(target.id)
        return candidates, created, rediscovered

    candidates, created, rediscovered = asyncio.run(scenario())
    by_id = {c.to_memory_id: c for c in candidates}
    assert set(by_id) == {close.id, same_day.id}
    assert by_id[same_day.id].relationship_type == RelationshipType.TEMPORAL
    assert by_id[close.id].relationship_type == RelationshipType.SIMILAR
    assert by_id[close.id].confidence > by_id[close.id].strength - 1e-9
    assert {r.to_memory_id for r in created} == {close.id, same_day.id}
    assert all(r.metadata.get("auto") for r in created)
    assert rediscovered == []


def test_discovery_falls_back_to_lexical(clock):
    target = MemoryEntity(owner_id="p1", content="lisbon trip plan", created_at=clock() - timedelta(days=9))
    match = MemoryEntity(owner_id="p1", content="lisbon trip plan photos", created_at=clock())
    store = InMemoryMemoryStore([target, match])
    graph = RelationshipGraph(store, clock=clock)

    candidates = asyncio.run(graph.discover_relationships(target.id))
    assert [c.to_memory_id for c in candidates] == [match.id]
    assert candidates[0].reason.startswith("Lexical")
    with pytest.raises(NotFoundError):
        asyncio.run(graph.discover_relationships("mem_missing"))


def test_density_counts_each_linked_pair_once(clock):
    store, (a, b, c) = _seed(clock, "alpha", "beta", "gamma")
    graph = RelationshipGraph(store, clock=clock)

    async def scenario():
        await graph.create_relationship(a.id, b.id, "related", strength=0.6)
        await graph.create_relationship(b.id, a.id, "related", strength=0.6)
        await graph.create_relationship(a.id, b.id, "similar", strength=0.6)
        return await graph.generate_graph_analytics()

    analytics = asyncio.run(scenario())
    assert analytics.total_relationships == 3
    assert analytics.density == pytest.approx(1 / 3)
