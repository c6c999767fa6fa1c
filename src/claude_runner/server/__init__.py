"""REST API over the local workflow runner."""

from claude_runner.server.app import create_app

__all__ = ["create_app"]
