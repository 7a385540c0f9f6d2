"""
Embedding Providers - text -> fixed-length vector backends

WHAT: Provider protocol plus callable, hashing and sentence-transformers backends
WHERE: engram/runtime/memory/embedders.py - model boundary
WHO: SemanticSearchEngine (the only caller)
TIME: Hashing <1ms per text; local transformer models 5-50ms per text on CPU

The engine treats a provider as a pure, possibly slow, possibly failing
black box. Synchronous backends run in a worker thread so the event loop
keeps serving unrelated requests while a model encodes.

Boundary Notes:
- ``model`` identifies the vector space; cache entries are keyed by it
- Optional model packages are imported lazily on ``load()``
"""

from __future__ import annotations

import asyncio
import importlib
import inspect
import re
import threading
import zlib
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Sequence, Union

import numpy as np

from ...errors import MissingDependencyError

EmbeddingFunction = Callable[[str], Union[Sequence[float], Awaitable[Sequence[float]]]]

REQUIRED_PACKAGES = ("sentence_transformers",)
_TOKEN_PATTERN = re.compile(r"[a-z0-9]+")


class EmbeddingProvider(Protocol):
    """Anything that turns text into a vector under a named model."""

    model: str

    async def embed(self, text: str) -> List[float]:
        """Return the embedding for ``text``; may raise on backend failure."""


class CallableEmbeddingProvider(EmbeddingProvider):
    """Adapt a plain ``text -> vector`` function (sync or async)."""

    def __init__(self, fn: EmbeddingFunction, *, model: str) -> None:
        self._fn = fn
        self.model = model

    async def embed(self, text: str) -> List[float]:
        if inspect.iscoroutinefunction(self._fn):
            result = await self._fn(text)
        else:
            result = await asyncio.to_thread(self._fn, text)
            if inspect.isawaitable(result):
                result = await result
        return [float(x) for x in result]


class HashingEmbeddingProvider(EmbeddingProvider):
    """Deterministic feature-hashing bag-of-words vectors.

    Needs no model download and no network, which makes it the default for
    benchmarks and smoke setups. Similarity reflects shared vocabulary only.
    """

    def __init__(self, dimensions: int = 384, *, model: Optional[str] = None) -> None:
        if dimensions <= 0:
            raise ValueError("dimensions must be positive")
        self.dimensions = dimensions
        self.model = model or f"hashing-{dimensions}"

    def encode(self, text: str) -> List[float]:
        vector = np.zeros(self.dimensions, dtype=np.float64)
        for token in _TOKEN_PATTERN.findall(text.lower()):
            digest = zlib.crc32(token.encode("utf-8"))
            sign = 1.0 if digest & 1 else -1.0
            vector[(digest >> 1) % self.dimensions] += sign
        norm = np.linalg.norm(vector)
        if norm > 0:
            vector /= norm
        return vector.tolist()

    async def embed(self, text: str) -> List[float]:
        return self.encode(text)


@dataclass(slots=True)
class SentenceTransformerConfig:
    """Configuration for a local sentence-transformers model."""

    model_id: str = "sentence-transformers/all-MiniLM-L6-v2"
    device: str = "cpu"
    normalize: bool = True
    cache_folder: Optional[str] = None


class SentenceTransformerProvider(EmbeddingProvider):
    """Local transformer embeddings via ``sentence-transformers``.

    Install with ``pip install engram[embeddings]``. The model is loaded on
    first use (or explicitly with :meth:`load`) and encoding runs in a
    worker thread.
    """

    def __init__(self, config: SentenceTransformerConfig | None = None) -> None:
        self.config = config or SentenceTransformerConfig()
        self.model = self.config.model_id
        self._model: Any = None
        self._modules: Dict[str, Any] = {}
        self._load_lock = threading.Lock()

    @staticmethod
    def dependencies_available() -> bool:
        for package in REQUIRED_PACKAGES:
            try:
                importlib.import_module(package)
            except ImportError:
                return False
        return True

    def _ensure_dependencies(self) -> None:
        missing: list[str] = []
        modules = {}
        for package in REQUIRED_PACKAGES:
            try:
                modules[package] = importlib.import_module(package)
            except ImportError:
                missing.append(package)
        if missing:
            raise MissingDependencyError(
                "Missing embedding dependencies: "
                + ", ".join(missing)
                + ". Install with `pip install engram[embeddings]`."
            )
        self._modules = modules

    def is_loaded(self) -> bool:
        return self._model is not None

    def load(self) -> None:
        """Load the model into memory (idempotent)."""

        with self._load_lock:
            if self._model is not None:
                return
            self._ensure_dependencies()
            sentence_transformers = self._modules["sentence_transformers"]
            self._model = sentence_transformers.SentenceTransformer(
                self.config.model_id,
                device=self.config.device,
                cache_folder=self.config.cache_folder,
            )

    def _encode(self, text: str) -> List[float]:
        self.load()
        vector = self._model.encode(
            text,
            normalize_embeddings=self.config.normalize,
            convert_to_numpy=True,
        )
        return np.asarray(vector, dtype=np.float64).tolist()

    async def embed(self, text: str) -> List[float]:
        return await asyncio.to_thread(self._encode, text)


__all__ = [
    "CallableEmbeddingProvider",
    "EmbeddingFunction",
    "EmbeddingProvider",
    "HashingEmbeddingProvider",
    "SentenceTransformerConfig",
    "SentenceTransformerProvider",
]
