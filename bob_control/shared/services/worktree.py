"""Git worktree manager — one isolated checkout per room.

Worktrees live under a single sandbox base directory
(``<tempdir>/bob-control-worktrees`` by default) at
``<base>/<repo-name>-<workspace-id>``. Records are keyed by workspace
id, which is the room id.

Forced removal falls back to deleting the directory only after three
independent checks pass (see ``verify_safe_to_delete``). Every check
runs even if an earlier one passed.
"""
from __future__ import annotations

import asyncio
import logging
import os
import re
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from ...engine.errors import SafetyViolationError, WorktreeError
from ...engine.models import WorktreeRecord

logger = logging.getLogger(__name__)

_UUID_SUFFIX_RE = re.compile(
    r"-([0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12})$"
)

# Refused only when the target IS one of these.
_EXACT_DENYLIST_POSIX = ("/", "/home", "/root", "/Users", "/tmp", "/var", "/private/tmp")
_EXACT_DENYLIST_WINDOWS = ("C:\\", "C:\\Users", "C:\\Documents and Settings")
# Refused when the target is one of these or anywhere below them.
_SUBTREE_DENYLIST_POSIX = (
    "/usr", "/etc", "/bin", "/sbin", "/lib", "/lib64", "/boot", "/dev",
    "/proc", "/sys", "/opt", "/System", "/Library", "/Applications",
)
_SUBTREE_DENYLIST_WINDOWS = (
    "C:\\Windows", "C:\\Program Files", "C:\\Program Files (x86)",
)


def default_worktree_base() -> Path:
    return Path(tempfile.gettempdir()) / "bob-control-worktrees"


def _resolve(path: str | Path) -> Path:
    return Path(path).expanduser().resolve()


def _system_denylist() -> tuple[set[Path], set[Path]]:
    """(exact, subtree) denylist entries, symlinks resolved."""
    if os.name == "nt":
        exact_raw, subtree_raw = _EXACT_DENYLIST_WINDOWS, _SUBTREE_DENYLIST_WINDOWS
    else:
        exact_raw, subtree_raw = _EXACT_DENYLIST_POSIX, _SUBTREE_DENYLIST_POSIX
    exact = {Path(p) for p in exact_raw} | {_resolve(p) for p in exact_raw}
    exact.add(_resolve(Path.home()))
    subtree = {Path(p) for p in subtree_raw} | {_resolve(p) for p in subtree_raw}
    return exact, subtree


# ── Deletion safety checks ──


def check_within_base(resolved: Path, resolved_base: Path) -> None:
    """The path must be strictly inside the sandbox base."""
    if resolved == resolved_base or resolved_base not in resolved.parents:
        raise SafetyViolationError(
            str(resolved), f"path is outside the worktree base {resolved_base}",
        )


def check_not_system_dir(resolved: Path) -> None:
    """The path must not be, or lie under, a protected system directory."""
    exact, subtree = _system_denylist()
    if resolved in exact:
        raise SafetyViolationError(str(resolved), "path is a system directory")
    for root in subtree:
        if resolved == root or root in resolved.parents:
            raise SafetyViolationError(
                str(resolved), f"path is inside system directory {root}",
            )


def check_contains_workspace_id(resolved: Path, workspace_id: str) -> None:
    """The path must name the workspace it belongs to."""
    if not workspace_id or workspace_id not in str(resolved):
        raise SafetyViolationError(
            str(resolved), f"path does not contain workspace id {workspace_id!r}",
        )


@dataclass
class WorktreeInfo:
    """One entry of ``git worktree list --porcelain``."""
    path: str
    head: str = ""
    branch: Optional[str] = None
    detached: bool = False
    bare: bool = False
    locked: bool = False
    lock_reason: Optional[str] = None


class WorktreeManager:
    """Creates and removes per-room git worktrees.

    Safe to use concurrently for different workspace ids; operations
    on the same id must be serialized by the caller.
    """

    def __init__(
        self,
        base_dir: str | Path | None = None,
        *,
        git_timeout: float = 30.0,
    ) -> None:
        self.base_dir = Path(base_dir) if base_dir else default_worktree_base()
        self.git_timeout = git_timeout
        self._records: dict[str, WorktreeRecord] = {}

    # ── git plumbing ──

    async def _git(self, *args: str, cwd: str | Path) -> tuple[int, str, str]:
        """Run git; returns (returncode, stdout, stderr). Never raises for git errors."""
        try:
            proc = await asyncio.create_subprocess_exec(
                "git", *args,
                cwd=str(cwd),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            return 127, "", f"git could not be started: {exc}"
        try:
            out, err = await asyncio.wait_for(proc.communicate(), timeout=self.git_timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            return -1, "", f"git {args[0]} timed out after {self.git_timeout:g}s"
        return (
            proc.returncode if proc.returncode is not None else -1,
            out.decode("utf-8", errors="replace"),
            err.decode("utf-8", errors="replace"),
        )

    async def is_git_repo(self, directory: str | Path) -> bool:
        if not Path(directory).is_dir():
            return False
        code, out, _ = await self._git("rev-parse", "--is-inside-work-tree", cwd=directory)
        return code == 0 and out.strip() == "true"

    async def get_current_branch(self, directory: str | Path) -> str | None:
        if not Path(directory).is_dir():
            return None
        code, out, _ = await self._git("rev-parse", "--abbrev-ref", "HEAD", cwd=directory)
        branch = out.strip()
        if code != 0 or not branch or branch == "HEAD":
            return None
        return branch

    async def branch_exists(self, repo_path: str | Path, branch: str) -> bool:
        """True if *branch* exists locally or on origin."""
        for ref in (f"refs/heads/{branch}", f"refs/remotes/origin/{branch}"):
            code, _, _ = await self._git("rev-parse", "--verify", "--quiet", ref, cwd=repo_path)
            if code == 0:
                return True
        return False

    async def create_branch(self, directory: str | Path, branch: str) -> bool:
        """Check out *branch* in place, creating it from HEAD if needed.

        Returns True when the branch was newly created.
        """
        if await self.branch_exists(directory, branch):
            code, _, err = await self._git("checkout", branch, cwd=directory)
            created = False
        else:
            code, _, err = await self._git("checkout", "-b", branch, cwd=directory)
            created = True
        if code != 0:
            raise WorktreeError(f"git checkout {branch} failed: {err.strip()}")
        return created

    async def prune(self, repo_path: str | Path) -> None:
        """Drop stale worktree bookkeeping. Best effort."""
        code, _, err = await self._git("worktree", "prune", cwd=repo_path)
        if code != 0:
            logger.debug("git worktree prune in %s failed: %s", repo_path, err.strip())

    async def list_worktrees(self, repo_path: str | Path) -> list[WorktreeInfo]:
        """List the worktrees git knows about for *repo_path*."""
        code, out, _ = await self._git("worktree", "list", "--porcelain", cwd=repo_path)
        if code != 0:
            return []
        worktrees: list[WorktreeInfo] = []
        current: dict = {}
        for line in out.splitlines():
            if not line:
                if current:
                    worktrees.append(WorktreeInfo(**current))
                    current = {}
                continue
            if line.startswith("worktree "):
                current["path"] = line[len("worktree "):]
            elif line.startswith("HEAD "):
                current["head"] = line[len("HEAD "):]
            elif line.startswith("branch "):
                current["branch"] = line[len("branch "):].removeprefix("refs/heads/")
            elif line == "bare":
                current["bare"] = True
            elif line == "detached":
                current["detached"] = True
            elif line.startswith("locked"):
                current["locked"] = True
                if " " in line:
                    current["lock_reason"] = line.split(" ", 1)[1]
        if current:
            worktrees.append(WorktreeInfo(**current))
        return worktrees

    # ── Records ──

    def worktree_path(self, repo_path: str | Path, workspace_id: str) -> Path:
        return self.base_dir / f"{Path(repo_path).resolve().name}-{workspace_id}"

    def get_worktree_info(self, workspace_id: str) -> WorktreeRecord | None:
        return self._records.get(workspace_id)

    @property
    def records(self) -> list[WorktreeRecord]:
        return list(self._records.values())

    async def create_worktree(
        self,
        repo_path: str | Path,
        branch: str,
        workspace_id: str,
    ) -> WorktreeRecord:
        """Create ``<base>/<repo>-<workspace_id>`` on *branch*.

        The branch is created from HEAD unless it already exists locally
        or on origin. A worktree that already exists at the target path
        is treated as success.
        """
        repo = Path(repo_path)
        if not repo.exists():
            raise WorktreeError(f"Repository path does not exist: {repo}")
        if not repo.is_dir():
            raise WorktreeError(f"Repository path is not a directory: {repo}")
        if not await self.is_git_repo(repo):
            raise WorktreeError(f"Not a git repository: {repo}")

        self.base_dir.mkdir(parents=True, exist_ok=True)
        path = self.worktree_path(repo, workspace_id)
        existing_branch = await self.branch_exists(repo, branch)
        if existing_branch:
            args = ("worktree", "add", str(path), branch)
        else:
            args = ("worktree", "add", "-b", branch, str(path))

        code, out, err = await self._git(*args, cwd=repo)
        if code != 0:
            if "already exists" in err and path.is_dir():
                logger.info("Worktree already exists at %s; reusing it", path)
            else:
                raise WorktreeError(
                    f"git worktree add failed: {err.strip() or out.strip()}"
                )

        record = WorktreeRecord(
            workspace_id=workspace_id,
            path=str(path),
            repo_path=str(repo.resolve()),
            branch=branch,
            is_new_branch=not existing_branch,
        )
        self._records[workspace_id] = record
        logger.info(
            "Worktree created workspace=%s path=%s branch=%s new_branch=%s",
            workspace_id[:8], path, branch, record.is_new_branch,
        )
        return record

    def verify_safe_to_delete(self, path: str | Path, workspace_id: str) -> Path:
        """Run all three deletion checks; return the resolved path.

        Raises SafetyViolationError on the first failing check.
        """
        resolved = _resolve(path)
        resolved_base = _resolve(self.base_dir)
        check_within_base(resolved, resolved_base)
        check_not_system_dir(resolved)
        check_contains_workspace_id(resolved, workspace_id)
        return resolved

    async def remove_worktree(self, workspace_id: str, force: bool = False) -> bool:
        """Remove the worktree for *workspace_id*.

        Returns False if nothing is recorded for the id. Without *force*
        a failed ``git worktree remove`` raises WorktreeError; with it,
        the directory is deleted after the safety checks pass.
        """
        record = self._records.get(workspace_id)
        if record is None:
            return False

        path = Path(record.path)
        args = ["worktree", "remove"]
        if force:
            args.append("--force")
        args.append(str(path))
        code, _, err = await self._git(*args, cwd=record.repo_path)

        if code != 0:
            if not force:
                raise WorktreeError(f"git worktree remove failed: {err.strip()}")
            logger.warning(
                "git worktree remove failed for %s (%s); deleting directory",
                path, err.strip(),
            )
            if path.exists() or path.is_symlink():
                try:
                    safe_path = self.verify_safe_to_delete(path, workspace_id)
                except SafetyViolationError:
                    logger.error("Worktree deletion refused for %s", path)
                    raise
                loop = asyncio.get_running_loop()
                await loop.run_in_executor(None, shutil.rmtree, str(safe_path))

        await self.prune(record.repo_path)
        del self._records[workspace_id]
        logger.info("Worktree removed workspace=%s path=%s", workspace_id[:8], path)
        return True

    async def cleanup_all_worktrees(self) -> dict[str, str]:
        """Force-remove every recorded worktree.

        Returns workspace id -> error text for the ones that failed;
        never raises, so shutdown cannot be blocked by one bad worktree.
        """
        errors: dict[str, str] = {}
        for workspace_id in list(self._records):
            try:
                await self.remove_worktree(workspace_id, force=True)
            except Exception as exc:
                errors[workspace_id] = str(exc)
                logger.warning("Worktree cleanup failed for %s: %s", workspace_id[:8], exc)
        return errors

    async def prune_orphaned(self) -> int:
        """Delete leftover worktree dirs under the base that have no record.

        Called at startup to clean up after a server that exited
        uncleanly. Each directory still has to pass the safety checks.
        """
        if not self.base_dir.is_dir():
            return 0
        pruned = 0
        repos: set[Path] = set()
        for entry in self.base_dir.iterdir():
            match = _UUID_SUFFIX_RE.search(entry.name)
            if not match or not entry.is_dir():
                continue
            workspace_id = match.group(1)
            if workspace_id in self._records:
                continue
            git_file = entry / ".git"
            if git_file.is_file():
                content = git_file.read_text(encoding="utf-8", errors="replace").strip()
                if content.startswith("gitdir:"):
                    # <repo>/.git/worktrees/<name> -> <repo>/.git
                    repos.add(Path(content[len("gitdir:"):].strip()).parent.parent)
            try:
                safe_path = self.verify_safe_to_delete(entry, workspace_id)
            except SafetyViolationError as exc:
                logger.error("Skipping orphaned worktree: %s", exc)
                continue
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, shutil.rmtree, str(safe_path))
            pruned += 1
        for git_dir in repos:
            if git_dir.is_dir():
                await self.prune(git_dir)
        if pruned:
            logger.info("Pruned %d orphaned worktrees at startup", pruned)
        return pruned
