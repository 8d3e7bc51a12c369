"""podwarden — per-group sandbox orchestration for a containerised AI agent."""

__version__ = "0.1.0"
