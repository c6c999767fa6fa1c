"""Claude Runner.

Runs multi-step task workflows described in GitHub Actions style YAML:
- steps executed through the task CLI as subprocesses
- sessions chained explicitly between steps
- progress checkpointed to a local JSON store so runs can pause and resume
"""

__version__ = "0.1.0"

from claude_runner.runner.config import RunnerSettings

__all__ = ["__version__", "RunnerSettings"]
