"""swarmctl - orchestration engine for parallel, isolated work items.

This package runs independent tasks through explore, plan, implement and
review phases in isolated git worktrees, derives a merge order from the
files each task touches and integrates approved tasks one at a time.

Exports:
    __version__: Package version string.
"""

from __future__ import annotations

__all__ = ["__version__"]

__version__ = "0.1.0"
