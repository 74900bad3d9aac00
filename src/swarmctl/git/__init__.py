"""Git operations used by the worktree workspace provider.

This package provides async git operations:
    - AsyncRepo: Non-blocking git commands
    - Worktree management
    - Merge, revert and diff operations
"""

from __future__ import annotations

from .client import AsyncRepo, WorktreeInfo

__all__ = [
    "AsyncRepo",
    "WorktreeInfo",
]
