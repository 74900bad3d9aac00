"""Git worktree workspace provider.

Each task gets its own worktree on a ``<prefix>/<task>-<hex>`` branch, so
phase workers never contend for the index or trample each other's files.
Integration happens in the main checkout, on the baseline branch.
"""

from __future__ import annotations

import asyncio
import logging
import re
import shutil
import tempfile
import uuid
from pathlib import Path

from swarmctl.core.config import WorkspaceConfig
from swarmctl.core.result import Err, GitError, Ok, Result
from swarmctl.core.system import run_command
from swarmctl.git import AsyncRepo
from swarmctl.swarm.types import MergeOutcome, ValidationOutcome, WorkspaceHandle

logger = logging.getLogger(__name__)

_WORKTREE_DIR_PATTERN = re.compile(r"^worktree-[\w-]+-[a-f0-9]{8}$")


class GitWorkspaceProvider:
    """Workspace provider backed by git worktrees.

    Attributes:
        repo: The main repository; its checkout receives every merge
        worktree_root: Directory where worktrees are created

    [invariant:async-io] All operations use async subprocess
    """

    def __init__(
        self,
        repo: AsyncRepo,
        *,
        worktree_root: Path | None = None,
        branch_prefix: str = "swarm",
        validate_command: str | None = None,
        validate_timeout: float = 600.0,
        identity: tuple[str, str] | None = None,
    ) -> None:
        """Initialize the provider.

        Args:
            repo: The main git repository
            worktree_root: Directory for worktrees (default: temp dir)
            branch_prefix: Prefix for per-task branches
            validate_command: Command validating the baseline; None always passes
            validate_timeout: Seconds before validation is killed
            identity: Optional (name, email) for commits made by the provider
        """
        self._repo = repo
        self._worktree_root = worktree_root or Path(tempfile.gettempdir()) / "swarmctl-worktrees"
        self._branch_prefix = branch_prefix
        self._validate_command = validate_command
        self._validate_timeout = validate_timeout
        self._identity = identity
        self._active: dict[str, WorkspaceHandle] = {}
        self._initialized = False

    @classmethod
    async def open(
        cls,
        path: Path,
        config: WorkspaceConfig,
        *,
        identity: tuple[str, str] | None = None,
    ) -> Result[GitWorkspaceProvider, GitError]:
        """Open the repository at ``path`` and prepare the worktree root."""
        match await AsyncRepo.open(path):
            case Err(err):
                return Err(err)
            case Ok(repo):
                provider = cls(
                    repo,
                    worktree_root=config.worktree_root,
                    branch_prefix=config.branch_prefix,
                    validate_command=config.validate_command,
                    validate_timeout=config.validate_timeout,
                    identity=identity,
                )
        match await provider.initialize():
            case Err(err):
                return Err(err)
            case Ok(_):
                return Ok(provider)

    @property
    def repo(self) -> AsyncRepo:
        return self._repo

    @property
    def worktree_root(self) -> Path:
        return self._worktree_root

    @property
    def active(self) -> dict[str, WorkspaceHandle]:
        return dict(self._active)

    async def initialize(self) -> Result[None, GitError]:
        """Create the worktree root and prune orphans of crashed sessions."""
        if self._initialized:
            return Ok(None)

        try:
            await asyncio.to_thread(self._worktree_root.mkdir, parents=True, exist_ok=True)
        except OSError as exc:
            return Err(GitError(f"Failed to create worktree root: {exc}"))

        removed = await self.prune_orphaned_worktrees()
        if removed > 0:
            logger.info("Pruned %d orphaned worktrees", removed)

        self._initialized = True
        return Ok(None)

    # ------------------------------------------------------------------
    # WorkspaceProvider
    # ------------------------------------------------------------------

    async def allocate(self, task_id: str, baseline: str) -> WorkspaceHandle:
        base_commit = (await self._repo.rev_parse(baseline)).unwrap()

        unique_suffix = uuid.uuid4().hex[:8]
        branch = f"{self._branch_prefix}/{task_id}-{unique_suffix}"
        path = self._worktree_root / f"worktree-{task_id}-{unique_suffix}"

        created = (
            await self._repo.worktree_add(path, branch, new_branch=True, start_point=base_commit)
        ).unwrap()

        handle = WorkspaceHandle(task_id=task_id, path=created, branch=branch, base_commit=base_commit)
        self._active[task_id] = handle
        return handle

    async def release(self, handle: WorkspaceHandle) -> None:
        result = await self._repo.worktree_remove(handle.path, force=True)
        self._active.pop(handle.task_id, None)
        if isinstance(result, Err):
            logger.debug("worktree remove failed for %s: %s", handle.task_id, result.error)
            await self._repo.worktree_prune()
        # The branch stays reachable from the baseline when it merged.
        await self._repo.delete_branch(handle.branch, force=True)

    async def proposed_touch_set(self, handle: WorkspaceHandle) -> frozenset[str]:
        worktree = AsyncRepo(handle.path)
        committed = (await worktree.diff_names(handle.base_commit)).unwrap()
        pending = (await worktree.status_short()).unwrap()
        return frozenset(committed) | {path for _, path in pending}

    async def merge(self, handle: WorkspaceHandle, baseline: str) -> MergeOutcome:
        await self._commit_pending(handle)

        current = (await self._repo.current_branch()).unwrap()
        if current != baseline:
            (await self._repo.checkout_branch(baseline)).unwrap()
        previous_head = (await self._repo.head(short=False)).unwrap()

        match await self._repo.merge(
            handle.branch,
            no_ff=True,
            message=f"Merge {handle.task_id} ({handle.branch})",
            identity=self._identity,
        ):
            case Ok(commit):
                return MergeOutcome(merged=True, commit=commit, previous_head=previous_head)
            case Err(err):
                conflicts = (await self._repo.get_conflict_files()).unwrap_or([])
                aborted = await self._repo.merge_abort()
                if isinstance(aborted, Err):
                    # Nothing was staged (e.g. refused before starting); make sure.
                    (await self._repo.reset("--hard", previous_head)).unwrap()
                return MergeOutcome(
                    merged=False,
                    previous_head=previous_head,
                    conflicts=tuple(conflicts),
                    detail=err.message,
                )

    async def validate(self, baseline: str) -> ValidationOutcome:
        if not self._validate_command:
            return ValidationOutcome(passed=True)

        match await run_command(
            self._validate_command, self._repo.path, timeout=self._validate_timeout
        ):
            case Err(err):
                return ValidationOutcome(passed=False, detail=str(err))
            case Ok(result) if not result.ok:
                output = result.tail() or "no output"
                return ValidationOutcome(passed=False, detail=f"exit {result.returncode}: {output}")
            case Ok(_):
                return ValidationOutcome(passed=True)

    async def revert(self, baseline: str, outcome: MergeOutcome) -> None:
        if outcome.previous_head is None:
            raise GitError("Cannot revert a merge without its previous head")
        (await self._repo.reset("--hard", outcome.previous_head)).unwrap()
        logger.info("Reset %s to %s", baseline, outcome.previous_head[:12])

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    async def _commit_pending(self, handle: WorkspaceHandle) -> None:
        worktree = AsyncRepo(handle.path)
        pending = (await worktree.status_short()).unwrap()
        if not pending:
            return
        (await worktree.add_all()).unwrap()
        (await worktree.commit(f"{handle.task_id}: workspace changes", identity=self._identity)).unwrap()

    async def detect_orphaned_worktrees(self) -> list[Path]:
        """Worktree directories under the root not tracked by this provider."""
        if not self._worktree_root.exists():
            return []

        def _scan() -> list[Path]:
            return [
                d
                for d in self._worktree_root.iterdir()
                if d.is_dir() and _WORKTREE_DIR_PATTERN.match(d.name)
            ]

        candidates = await asyncio.to_thread(_scan)
        active_paths = {handle.path for handle in self._active.values()}
        return [path for path in candidates if path not in active_paths]

    async def prune_orphaned_worktrees(self) -> int:
        """Remove orphaned worktrees from previous crashed sessions."""
        orphans = await self.detect_orphaned_worktrees()
        if not orphans:
            return 0

        logger.warning(
            "Found %d orphaned worktrees from previous session: %s",
            len(orphans),
            [p.name for p in orphans],
        )

        removed = 0
        for path in orphans:
            result = await self._repo.worktree_remove(path, force=True)
            if isinstance(result, Ok):
                removed += 1
                continue
            # The orphan may not be registered with git at all.
            try:
                await asyncio.to_thread(shutil.rmtree, path)
                removed += 1
            except OSError as exc:
                logger.error("Failed to remove orphan %s: %s", path, exc)

        await self._repo.worktree_prune()
        return removed


__all__ = ["GitWorkspaceProvider"]
