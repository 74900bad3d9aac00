"""Core shared infrastructure for swarmctl.

This package contains foundational utilities:
    - config: Application configuration management
    - console: Rich console output and logging
    - result: Result type and error taxonomy
    - retry: Backoff for transient provider failures
    - system: Local command execution
"""

from __future__ import annotations

from . import config, console

__all__ = ["config", "console"]
