"""
Git Worktree Manager Module

Handles creation, diffing, committing and removal of the isolated git
worktree each agent instance works in. Worktrees live under
<repo>/.worktrees/ and are bound to a dedicated branch.
"""

import logging
import os
import re
import shutil
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from ..core.errors import CommandError, ValidationError, WorktreeError, join_errors
from ..utils.executor import Executor

logger = logging.getLogger(__name__)

WORKTREES_DIR = ".worktrees"

ERR_BASE_SHA_NOT_SET = "base commit SHA not set"
ERR_WORKTREE_PATH_GONE = "worktree path gone"
TRANSIENT_DIFF_ERRORS = (ERR_BASE_SHA_NOT_SET, ERR_WORKTREE_PATH_GONE)

_INVALID_BRANCH_CHARS = re.compile(r"[^a-z0-9\-_/.]+")
_REPEATED_DASHES = re.compile(r"-+")


def sanitize_branch_name(name: str) -> str:
    """
    Turn a free-form title into a git-safe branch name.

    Lowercases, converts spaces to dashes, drops anything outside
    [a-z0-9-_/.], collapses dash runs and trims leading/trailing '-' and '/'.
    """
    name = name.lower().replace(" ", "-")
    name = _INVALID_BRANCH_CHARS.sub("", name)
    name = _REPEATED_DASHES.sub("-", name)
    return name.strip("-/")


def worktree_directory(repo_path: str) -> Path:
    return Path(repo_path) / WORKTREES_DIR


def worktree_path_for_branch(repo_path: str, branch: str) -> str:
    """Worktree location for a branch; '/' in the branch becomes '-'."""
    return str(worktree_directory(repo_path) / branch.replace("/", "-"))


@dataclass
class DiffStats:
    """Line counts of a worktree diff against its base commit."""
    added: int = 0
    removed: int = 0
    content: str = ""
    error: Optional[str] = None

    def is_empty(self) -> bool:
        return self.added == 0 and self.removed == 0 and not self.content

    def is_transient(self) -> bool:
        """True for conditions the caller should silently skip this tick."""
        return self.error in TRANSIENT_DIFF_ERRORS

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return asdict(self)


class GitWorktree:
    """
    Manages one git worktree bound to one branch.

    Features:
    - Lazy materialization: construction only computes names and paths
    - Setup from a new or an existing branch, recording a base commit
    - Dirty check, local commit and diff against the base commit
    - Remove (keep branch), prune, and full cleanup (drop branch too)
    """

    def __init__(self,
                 repo_path: str,
                 worktree_path: str,
                 session_name: str,
                 branch_name: str,
                 base_commit_sha: str = "",
                 executor: Optional[Executor] = None):
        """
        Initialize a worktree controller without touching the filesystem.

        Args:
            repo_path: Root of the hosting repository
            worktree_path: Where the worktree is (or will be) checked out
            session_name: Tag of the session that owns the worktree
            branch_name: Branch the worktree is bound to
            base_commit_sha: Commit diffs are computed against
            executor: Command executor (defaults to subprocess)
        """
        self.repo_path = str(repo_path)
        self.worktree_path = str(worktree_path)
        self.session_name = session_name
        self.branch_name = branch_name
        self.base_commit_sha = base_commit_sha
        self.executor = executor or Executor()

    @classmethod
    def new(cls,
            repo_path: str,
            session_name: str,
            branch_prefix: str = "",
            executor: Optional[Executor] = None) -> Tuple["GitWorktree", str]:
        """
        Derive branch and path from a session title.

        Returns:
            Tuple[GitWorktree, str]: (controller, branch name)

        Raises:
            ValidationError: The title sanitizes to an empty branch name
        """
        branch = sanitize_branch_name(session_name)
        if not branch:
            raise ValidationError(f"cannot derive a branch name from {session_name!r}")
        branch = f"{branch_prefix}{branch}"
        worktree = cls(repo_path, worktree_path_for_branch(repo_path, branch),
                       session_name, branch, executor=executor)
        return worktree, branch

    @classmethod
    def on_branch(cls,
                  repo_path: str,
                  session_name: str,
                  branch: str,
                  executor: Optional[Executor] = None) -> "GitWorktree":
        """Controller pinned to an explicit branch (reused if it exists)."""
        return cls(repo_path, worktree_path_for_branch(repo_path, branch),
                   session_name, branch, executor=executor)

    # Accessors

    def get_worktree_path(self) -> str:
        return self.worktree_path

    def get_branch_name(self) -> str:
        return self.branch_name

    def get_repo_path(self) -> str:
        return self.repo_path

    def get_base_commit_sha(self) -> str:
        return self.base_commit_sha

    def _git(self, cwd: str, *args: str) -> str:
        output = self.executor.output(["git", "-C", cwd] + list(args))
        return output.decode("utf-8", errors="replace")

    # Setup

    def setup(self) -> None:
        """
        Materialize the worktree.

        Creating .worktrees/ and checking whether the branch exists run in
        parallel; either failure aborts.

        Raises:
            WorktreeError: Any git or filesystem step failed
        """
        worktrees_dir = worktree_directory(self.repo_path)

        def make_dir() -> None:
            worktrees_dir.mkdir(parents=True, exist_ok=True)

        def branch_exists() -> bool:
            try:
                self._git(self.repo_path, "rev-parse", "--verify", f"refs/heads/{self.branch_name}")
                return True
            except CommandError:
                return False

        with ThreadPoolExecutor(max_workers=2) as pool:
            mkdir_future = pool.submit(make_dir)
            exists_future = pool.submit(branch_exists)
            try:
                mkdir_future.result()
            except OSError as e:
                raise WorktreeError(f"failed to create worktree directory: {e}") from e
            exists = exists_future.result()

        if exists:
            self._setup_from_existing_branch()
        else:
            self._setup_new_worktree()
        logger.info("worktree ready at %s on %s (base %s)",
                    self.worktree_path, self.branch_name, self.base_commit_sha[:8])

    def _remove_stale_entry(self) -> None:
        try:
            self._git(self.repo_path, "worktree", "remove", "-f", self.worktree_path)
        except CommandError:
            pass

    def _setup_from_existing_branch(self) -> None:
        self._remove_stale_entry()

        try:
            self._git(self.repo_path, "worktree", "add", self.worktree_path, self.branch_name)
        except CommandError as e:
            raise WorktreeError(f"failed to create worktree from branch {self.branch_name}: {e}") from e

        if self.base_commit_sha:
            return
        try:
            self.base_commit_sha = self._git(self.repo_path, "merge-base", "HEAD", self.branch_name).strip()
        except CommandError:
            try:
                self.base_commit_sha = self._git(self.worktree_path, "rev-parse", "HEAD").strip()
            except CommandError as e:
                logger.warning("could not resolve a base commit for %s: %s", self.branch_name, e)

    def _setup_new_worktree(self) -> None:
        self._remove_stale_entry()

        try:
            head_commit = self._git(self.repo_path, "rev-parse", "HEAD").strip()
        except CommandError as e:
            text = str(e)
            if ("ambiguous argument 'HEAD'" in text
                    or "not a valid object name" in text
                    or "unknown revision" in text):
                raise WorktreeError(
                    "this appears to be a brand new repository: please create an initial "
                    "commit before creating an instance") from e
            raise WorktreeError(f"failed to get HEAD commit hash: {e}") from e

        self.base_commit_sha = head_commit
        try:
            self._git(self.repo_path, "worktree", "add", "-b", self.branch_name,
                      self.worktree_path, head_commit)
        except CommandError as e:
            raise WorktreeError(f"failed to create worktree from commit {head_commit}: {e}") from e

    # Inspection

    def is_dirty(self) -> bool:
        try:
            output = self._git(self.worktree_path, "status", "--porcelain")
        except CommandError as e:
            raise WorktreeError(f"failed to check worktree status: {e}") from e
        return bool(output.strip())

    def is_branch_checked_out(self) -> bool:
        """True when some worktree (including the main one) has the branch checked out."""
        try:
            output = self._git(self.repo_path, "worktree", "list", "--porcelain")
        except CommandError as e:
            raise WorktreeError(f"failed to list worktrees: {e}") from e
        target = f"branch refs/heads/{self.branch_name}"
        return any(line.strip() == target for line in output.splitlines())

    def diff(self) -> DiffStats:
        """
        Diff the worktree (including untracked files) against the base commit.

        Transient conditions are reported on DiffStats.error instead of raised.
        """
        if not self.base_commit_sha:
            return DiffStats(error=ERR_BASE_SHA_NOT_SET)
        if not os.path.isdir(self.worktree_path):
            return DiffStats(error=ERR_WORKTREE_PATH_GONE)

        try:
            # Intent-to-add so untracked files show up in the diff
            self._git(self.worktree_path, "add", "-N", ".")
            content = self._git(self.worktree_path, "diff", self.base_commit_sha)
        except CommandError as e:
            if not os.path.isdir(self.worktree_path):
                return DiffStats(error=ERR_WORKTREE_PATH_GONE)
            return DiffStats(error=str(e))

        stats = DiffStats(content=content)
        for line in content.splitlines():
            if line.startswith("+") and not line.startswith("+++"):
                stats.added += 1
            elif line.startswith("-") and not line.startswith("---"):
                stats.removed += 1
        return stats

    # Mutation

    def commit_changes(self, message: str) -> None:
        """Stage everything and commit locally, skipping hooks."""
        try:
            self._git(self.worktree_path, "add", "-A")
            self._git(self.worktree_path, "commit", "-m", message, "--no-verify")
        except CommandError as e:
            raise WorktreeError(f"failed to commit changes: {e}") from e

    def remove(self) -> None:
        """Remove the worktree checkout, keeping the branch."""
        try:
            self._git(self.repo_path, "worktree", "remove", "-f", self.worktree_path)
        except CommandError as e:
            raise WorktreeError(f"failed to remove worktree: {e}") from e

    def prune(self) -> None:
        try:
            self._git(self.repo_path, "worktree", "prune")
        except CommandError as e:
            raise WorktreeError(f"failed to prune worktrees: {e}") from e

    def cleanup(self) -> None:
        """
        Remove the worktree, delete its branch and prune.

        Every step is attempted; failures are joined into one error.
        """
        errors: List[Exception] = []

        if os.path.exists(self.worktree_path):
            try:
                self._git(self.repo_path, "worktree", "remove", "-f", self.worktree_path)
            except CommandError as e:
                errors.append(WorktreeError(f"failed to remove worktree: {e}"))

        branch_present = True
        try:
            self._git(self.repo_path, "rev-parse", "--verify", f"refs/heads/{self.branch_name}")
        except CommandError:
            branch_present = False
        if branch_present:
            try:
                self._git(self.repo_path, "branch", "-D", self.branch_name)
            except CommandError as e:
                errors.append(WorktreeError(f"failed to remove branch {self.branch_name}: {e}"))

        try:
            self.prune()
        except WorktreeError as e:
            errors.append(e)

        error = join_errors(errors)
        if error is not None:
            raise error


def _parse_worktree_branches(porcelain: str) -> Dict[str, str]:
    branches: Dict[str, str] = {}
    current = ""
    for line in porcelain.splitlines():
        if line.startswith("worktree "):
            current = line[len("worktree "):]
        elif line.startswith("branch ") and current:
            branches[current] = line[len("branch "):].replace("refs/heads/", "", 1)
    return branches


def cleanup_worktrees(repo_path: str, executor: Optional[Executor] = None) -> List[str]:
    """
    Remove every worktree under <repo>/.worktrees/ and delete its branch.

    Falls back to a raw recursive delete when git refuses to remove a
    directory, then prunes.

    Returns:
        List[str]: Worktree directories that were removed

    Raises:
        WorktreeError: Listing or pruning failed
    """
    executor = executor or Executor()
    worktrees_dir = worktree_directory(repo_path)
    if not worktrees_dir.is_dir():
        return []

    def run(*args: str) -> str:
        return executor.output(["git", "-C", str(repo_path)] + list(args)).decode("utf-8", errors="replace")

    try:
        branches = _parse_worktree_branches(run("worktree", "list", "--porcelain"))
    except CommandError as e:
        raise WorktreeError(f"failed to list worktrees: {e}") from e

    removed = []
    for entry in sorted(worktrees_dir.iterdir()):
        if not entry.is_dir():
            continue
        path = str(entry)
        try:
            run("worktree", "remove", "-f", path)
        except CommandError as e:
            logger.warning("git worktree remove failed for %s, removing directory: %s", path, e)
            shutil.rmtree(path, ignore_errors=True)
        removed.append(path)

        for wt_path, branch in branches.items():
            if os.path.basename(wt_path.rstrip("/")) == entry.name:
                try:
                    run("branch", "-D", branch)
                except CommandError as e:
                    logger.error("failed to delete branch %s: %s", branch, e)
                break

    try:
        run("worktree", "prune")
    except CommandError as e:
        raise WorktreeError(f"failed to prune worktrees: {e}") from e
    return removed
