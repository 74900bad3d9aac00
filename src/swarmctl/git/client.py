from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path

from swarmctl.core.result import Err, GitError, Ok, Result

Identity = tuple[str, str]


@dataclass
class WorktreeInfo:
    """One entry of ``git worktree list``."""

    path: Path
    branch: str
    commit: str
    is_locked: bool
    prunable: bool


async def _run_git(cwd: Path, *args: str) -> Result[str, GitError]:
    """Run git in ``cwd`` and return stdout, or the failure as GitError."""
    if not cwd.exists():
        return Err(GitError("Repository path does not exist", context={"cwd": str(cwd)}))

    try:
        process = await asyncio.create_subprocess_exec(
            "git",
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            stdin=asyncio.subprocess.DEVNULL,
            cwd=cwd,
        )
    except OSError as exc:
        return Err(GitError(f"Cannot run git: {exc}", context={"cwd": str(cwd)}))

    stdout, stderr = await process.communicate()
    output = stdout.decode("utf-8", errors="replace")
    if process.returncode == 0:
        return Ok(output)

    detail = stderr.decode("utf-8", errors="replace").strip() or output.strip()
    return Err(
        GitError(
            detail or f"git {args[0]} failed",
            context={"args": " ".join(args), "returncode": process.returncode},
        )
    )


def _parse_worktree_list(output: str) -> list[WorktreeInfo]:
    """Parse ``git worktree list --porcelain``; entries are blank-line separated."""
    worktrees: list[WorktreeInfo] = []
    for block in output.strip().split("\n\n"):
        fields: dict[str, str] = {}
        for line in block.splitlines():
            key, _, value = line.partition(" ")
            fields[key] = value
        if "worktree" not in fields:
            continue
        worktrees.append(
            WorktreeInfo(
                path=Path(fields["worktree"]),
                branch=fields.get("branch", "").removeprefix("refs/heads/"),
                commit=fields.get("HEAD", ""),
                is_locked="locked" in fields,
                prunable="prunable" in fields,
            )
        )
    return worktrees


def _identity_args(identity: Identity | None) -> list[str]:
    if identity is None:
        return []
    name, email = identity
    return ["-c", f"user.name={name}", "-c", f"user.email={email}"]


def _lines(output: str) -> list[str]:
    return [line.strip() for line in output.splitlines() if line.strip()]


def _parse_status(output: str) -> list[tuple[str, str]]:
    entries: list[tuple[str, str]] = []
    for line in output.splitlines():
        if len(line) < 4:
            continue
        entries.append((line[:2].strip(), line[3:].strip('"')))
    return entries


def _discard(_: str) -> None:
    return None


class AsyncRepo:
    """Non-blocking git commands for one checkout (main or worktree)."""

    def __init__(self, root: Path) -> None:
        self._root = root

    @property
    def path(self) -> Path:
        return self._root

    @classmethod
    async def open(cls, path: Path | str = ".") -> Result[AsyncRepo, GitError]:
        """Locate the top level of the repository containing ``path``."""
        toplevel = await _run_git(Path(path).expanduser(), "rev-parse", "--show-toplevel")
        return toplevel.map(lambda raw: cls(Path(raw.strip()).resolve()))

    async def run_git(self, *args: str) -> Result[str, GitError]:
        return await _run_git(self._root, *args)

    async def head(self, short: bool = True) -> Result[str, GitError]:
        args = ["rev-parse", "--short", "HEAD"] if short else ["rev-parse", "HEAD"]
        return (await self.run_git(*args)).map(str.strip)

    async def rev_parse(self, ref: str) -> Result[str, GitError]:
        """Full commit id of ``ref``; fails if it does not name a commit."""
        return (await self.run_git("rev-parse", "--verify", f"{ref}^{{commit}}")).map(str.strip)

    async def current_branch(self) -> Result[str, GitError]:
        return (await self.run_git("rev-parse", "--abbrev-ref", "HEAD")).map(str.strip)

    async def status_short(self) -> Result[list[tuple[str, str]], GitError]:
        """Pending changes as (status code, path), untracked files included.

        Renames are reported as a deletion plus an addition so both paths count.
        """
        status = await self.run_git("status", "--porcelain", "--no-renames", "--untracked-files=all")
        return status.map(_parse_status)

    async def add_all(self) -> Result[None, GitError]:
        return (await self.run_git("add", "--all")).map(_discard)

    async def commit(self, message: str, *, identity: Identity | None = None) -> Result[str, GitError]:
        """Commit the index and return the new head."""
        match await self.run_git(*_identity_args(identity), "commit", "-m", message):
            case Err(err):
                return Err(err)
            case Ok(_):
                return await self.head(short=False)

    async def reset(self, mode: str, ref: str) -> Result[None, GitError]:
        return (await self.run_git("reset", mode, ref)).map(_discard)

    async def diff_names(self, base: str, ref: str = "HEAD") -> Result[list[str], GitError]:
        """Paths changed between ``base`` and ``ref``; a rename lists both sides."""
        diff = await self.run_git("diff", "--name-only", "--no-renames", f"{base}..{ref}")
        return diff.map(_lines)

    # -------------------------------------------------------------------------
    # Worktrees
    # -------------------------------------------------------------------------

    async def worktree_add(
        self,
        path: Path,
        branch: str,
        *,
        new_branch: bool = True,
        start_point: str | None = None,
    ) -> Result[Path, GitError]:
        """Create a worktree at ``path`` checked out on ``branch``.

        Args:
            path: Directory for the new worktree
            branch: Branch name (created if new_branch=True)
            new_branch: Create the branch with -b
            start_point: Commit the new branch starts from (default: HEAD)

        Returns:
            Ok(resolved worktree path) on success, Err(GitError) on failure
        """
        args = ["worktree", "add"]
        if new_branch:
            args += ["-b", branch, str(path)]
        else:
            args += [str(path), branch]
        if start_point:
            args.append(start_point)
        return (await self.run_git(*args)).map(lambda _: path.resolve())

    async def worktree_remove(self, path: Path, *, force: bool = False) -> Result[None, GitError]:
        args = ["worktree", "remove", *(["--force"] if force else []), str(path)]
        return (await self.run_git(*args)).map(_discard)

    async def worktree_list(self) -> Result[list[WorktreeInfo], GitError]:
        return (await self.run_git("worktree", "list", "--porcelain")).map(_parse_worktree_list)

    async def worktree_prune(self) -> Result[None, GitError]:
        """Forget worktrees whose directories are gone."""
        return (await self.run_git("worktree", "prune")).map(_discard)

    # -------------------------------------------------------------------------
    # Integration
    # -------------------------------------------------------------------------

    async def merge(
        self,
        branch: str,
        *,
        no_ff: bool = False,
        message: str | None = None,
        identity: Identity | None = None,
    ) -> Result[str, GitError]:
        """Merge ``branch`` into the checked out branch.

        Returns:
            Ok(new head) on success; Err(GitError) on conflict, with the
            merge left in progress for the caller to inspect and abort
        """
        args = [*_identity_args(identity), "merge"]
        if no_ff:
            args.append("--no-ff")
        if message:
            args += ["-m", message]
        args.append(branch)

        match await self.run_git(*args):
            case Err(err):
                return Err(err)
            case Ok(_):
                return await self.head(short=False)

    async def merge_abort(self) -> Result[None, GitError]:
        return (await self.run_git("merge", "--abort")).map(_discard)

    async def get_conflict_files(self) -> Result[list[str], GitError]:
        """Repository-relative paths with unresolved conflicts."""
        return (await self.run_git("diff", "--name-only", "--diff-filter=U")).map(_lines)

    async def checkout_branch(self, branch: str) -> Result[None, GitError]:
        return (await self.run_git("checkout", branch)).map(_discard)

    async def delete_branch(self, branch: str, *, force: bool = False) -> Result[None, GitError]:
        return (await self.run_git("branch", "-D" if force else "-d", branch)).map(_discard)


__all__ = ["AsyncRepo", "Identity", "WorktreeInfo"]
