from __future__ import annotations

import asyncio
import math
import zlib
from datetime import datetime, timedelta, timezone

import pytest

from engram.runtime.memory.store import InMemoryMemoryStore

ML_TERMS = {"machine", "learning", "deep", "neural", "network", "networks", "ai", "model", "models"}
FOOD_TERMS = {"grocery", "groceries", "milk", "eggs", "bread", "food", "shopping"}


class ConceptEmbedder:
    """Deterministic provider: known topic words share one axis each."""

    model = "concept-test-v1"
    dimensions = 16

    def __init__(self) -> None:
        self.calls: list[str] = []
        self.fail = False
        self.delay = 0.0

    def encode(self, text: str) -> list[float]:
        vector = [0.0] * self.dimensions
        for word in text.lower().split():
            word = word.strip(".,!?")
            if word in ML_TERMS:
                vector[0] += 1.0
            elif word in FOOD_TERMS:
                vector[1] += 1.0
            elif word:
                vector[2 + zlib.crc32(word.encode()) % (self.dimensions - 2)] += 0.3
        norm = math.sqrt(sum(x * x for x in vector))
        return [x / norm for x in vector] if norm else vector

    async def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise RuntimeError("provider offline")
        return self.encode(text)


class ManualClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock(datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def embedder() -> ConceptEmbedder:
    return ConceptEmbedder()


@pytest.fixture
def store() -> InMemoryMemoryStore:
    return InMemoryMemoryStore()
