"""Subprocess execution of task CLI invocations."""

__all__: list[str] = []
