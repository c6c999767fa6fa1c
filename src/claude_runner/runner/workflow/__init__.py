"""Workflow documents and their execution.

This package holds first-class types for:
- The workflow document model and its YAML parser
- Placeholder resolution between steps
- The execution engine and the events it emits
"""

__all__: list[str] = []
