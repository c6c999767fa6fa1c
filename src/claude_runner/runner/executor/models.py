"""Known model identifiers accepted by the task CLI."""

from __future__ import annotations

from dataclasses import dataclass

DEFAULT_MODEL = "auto"


@dataclass(frozen=True, slots=True)
class ModelInfo:
    id: str
    name: str
    description: str


AVAILABLE_MODELS: tuple[ModelInfo, ...] = (
    ModelInfo("auto", "Auto", "Use default model (no override)"),
    ModelInfo("claude-opus-4-20250514", "Claude Opus 4", "Most capable, highest cost"),
    ModelInfo("claude-sonnet-4-20250514", "Claude Sonnet 4", "Balanced performance and cost"),
    ModelInfo("claude-3-7-sonnet-20250219", "Claude Sonnet 3.7", "Good performance, moderate cost"),
    ModelInfo("claude-3-5-haiku-20241022", "Claude Haiku 3.5", "Fastest, lowest cost"),
)

# Older ids and CLI aliases still accepted on the command line.
_ACCEPTED_IDS: frozenset[str] = frozenset(
    {
        "claude-3-5-sonnet-latest",
        "claude-3-5-sonnet-20241022",
        "claude-3-5-haiku-latest",
        "claude-3-opus-latest",
        "claude-3-opus-20240229",
        "claude-3-sonnet-20240229",
        "claude-3-haiku-20240307",
        "sonnet",
        "opus",
        "haiku",
    }
)


def model_ids() -> list[str]:
    return [model.id for model in AVAILABLE_MODELS]


def model_display_name(model_id: str) -> str:
    for model in AVAILABLE_MODELS:
        if model.id == model_id:
            return model.name
    return model_id


def validate_model(model_id: str) -> bool:
    return model_id in model_ids() or model_id in _ACCEPTED_IDS


def validate_path(path: str) -> bool:
    """Reject empty paths and paths containing NUL bytes."""

    if not path or not path.strip():
        return False
    return "\0" not in path
