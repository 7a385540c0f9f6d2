"""engram - tiered memory engine with semantic search and a relationship graph."""

__version__ = "0.1.0"

__all__ = [
    "config",
    "errors",
    "logging",
    "runtime",
]
