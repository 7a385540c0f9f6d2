"""Runtime subsystems of the engram memory engine."""

__all__ = ["memory"]
