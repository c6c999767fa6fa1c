"""Local workflow runner components.

- Settings loaded from .env
- Structured logging
- Workflow parsing, execution and resumable state
- A small CLI surface
"""
