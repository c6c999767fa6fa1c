"""Workflow files on disk.

Workflows live in a directory (``.github/workflows`` by default) as
``claude-<id>.yml`` or ``claude-<id>.yaml``. Files that do not follow the
prefix are other CI workflows and are ignored.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from claude_runner.runner.workflow.document import WorkflowDocument
from claude_runner.runner.workflow.parser import WorkflowParseError, parse_workflow, to_yaml

logger = logging.getLogger(__name__)

WORKFLOW_PREFIX = "claude-"
_EXTENSIONS = (".yml", ".yaml")


class WorkflowNotFoundError(FileNotFoundError):
    pass


@dataclass(frozen=True, slots=True)
class WorkflowMetadata:
    id: str
    name: str
    path: Path
    modified: datetime
    description: str | None = None

    def to_json(self) -> dict[str, object]:
        return {
            "id": self.id,
            "name": self.name,
            "path": str(self.path),
            "modified": self.modified.isoformat(),
            "description": self.description,
        }


def workflow_file_name(name: str) -> str:
    """``"My Pipeline"`` -> ``"claude-my-pipeline.yml"``"""

    return f"{WORKFLOW_PREFIX}{re.sub(r'[^a-z0-9]', '-', name.lower())}.yml"


def load_workflow_file(path: Path) -> WorkflowDocument:
    return parse_workflow(path.read_text(encoding="utf-8"))


def validate_workflow_file(path: Path) -> dict[str, object]:
    try:
        load_workflow_file(path)
    except (OSError, WorkflowParseError) as e:
        return {"valid": False, "errors": [str(e)]}
    return {"valid": True, "errors": []}


class WorkflowLibrary:
    def __init__(self, directory: Path) -> None:
        self._directory = directory

    @property
    def directory(self) -> Path:
        return self._directory

    def list_workflows(self) -> list[WorkflowMetadata]:
        """All parsable workflows, most recently modified first."""

        if not self._directory.is_dir():
            return []

        found: list[WorkflowMetadata] = []
        for path in self._directory.iterdir():
            if not path.name.startswith(WORKFLOW_PREFIX) or path.suffix not in _EXTENSIONS:
                continue
            try:
                doc = load_workflow_file(path)
            except (OSError, WorkflowParseError) as e:
                logger.warning(
                    "Skipping unparsable workflow", extra={"path": str(path), "error": str(e)}
                )
                continue

            description = doc.declared_inputs().get("description")
            found.append(
                WorkflowMetadata(
                    id=path.stem,
                    name=doc.name,
                    path=path,
                    modified=datetime.fromtimestamp(path.stat().st_mtime, tz=UTC),
                    description=(
                        str(description.default)
                        if description is not None and description.default is not None
                        else None
                    ),
                )
            )

        return sorted(found, key=lambda meta: meta.modified, reverse=True)

    def path_for(self, workflow_id: str) -> Path:
        """Existing file for ``workflow_id``, preferring ``.yml``."""

        for ext in _EXTENSIONS:
            candidate = self._directory / f"{workflow_id}{ext}"
            if candidate.exists():
                return candidate
        raise WorkflowNotFoundError(f"Workflow not found: {workflow_id}")

    def load(self, workflow_id: str) -> WorkflowDocument:
        return load_workflow_file(self.path_for(workflow_id))

    def save(self, workflow_id: str, doc: WorkflowDocument) -> Path:
        self._directory.mkdir(parents=True, exist_ok=True)
        path = self._directory / f"{workflow_id}.yml"
        path.write_text(to_yaml(doc), encoding="utf-8")
        logger.info("Workflow saved", extra={"path": str(path)})
        return path

    def delete(self, workflow_id: str) -> None:
        self.path_for(workflow_id).unlink()

    def validate(self, workflow_id: str) -> dict[str, object]:
        try:
            path = self.path_for(workflow_id)
        except WorkflowNotFoundError as e:
            return {"valid": False, "errors": [str(e)]}
        return validate_workflow_file(path)
