"""Persisted, resumable workflow state."""

__all__: list[str] = []
