"""Logging utilities for engram."""

from __future__ import annotations

from .setup import DATE_FORMAT, LOG_FORMAT, configure_logging  # noqa: F401

__all__ = ["DATE_FORMAT", "LOG_FORMAT", "configure_logging"]
