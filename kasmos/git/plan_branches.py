"""
Plan Branch Helpers

Branch and worktree naming for implementation plans, plus the git steps used
by the planner/coder/reviewer workflow: ensure or reset a plan branch, build
the shared worktree coder and reviewer work in, and commit a plan scaffold on
the main branch.
"""

import logging
import re
from pathlib import Path
from typing import Optional

from ..core.errors import CommandError, WorktreeError
from ..utils.executor import Executor
from .worktree_manager import GitWorktree, sanitize_branch_name, worktree_path_for_branch

logger = logging.getLogger(__name__)

PLAN_BRANCH_PREFIX = "plan/"
SHARED_PLAN_SESSION = "plan-shared"
PLANS_DIR = Path("docs") / "plans"
PLAN_STATE_FILE = "plan-state.json"

_DATE_PREFIX_RE = re.compile(r"^\d{4}-\d{2}-\d{2}-")


def display_name(plan_file: str) -> str:
    """
    Human name of a plan file.

    "2026-02-21-auth-refactor.md" -> "auth-refactor"
    """
    name = Path(plan_file).name
    if name.endswith(".md"):
        name = name[:-3]
    return _DATE_PREFIX_RE.sub("", name)


def plan_branch_from_file(plan_file: str) -> str:
    """Branch a plan's work happens on: plan/<slug>."""
    slug = sanitize_branch_name(display_name(plan_file)) or "plan"
    return f"{PLAN_BRANCH_PREFIX}{slug}"


def plan_worktree_path(repo_path: str, branch: str) -> str:
    """<repo>/.worktrees/plan-<slug> for branch plan/<slug>."""
    return worktree_path_for_branch(repo_path, branch)


def new_shared_plan_worktree(repo_path: str,
                             branch: str,
                             executor: Optional[Executor] = None) -> GitWorktree:
    """Worktree controller shared by the coder and reviewer of one plan."""
    return GitWorktree(repo_path, plan_worktree_path(repo_path, branch),
                       SHARED_PLAN_SESSION, branch, executor=executor)


def _git(executor: Executor, repo_path: str, *args: str) -> str:
    return executor.output(["git", "-C", str(repo_path)] + list(args)).decode("utf-8", errors="replace")


def ensure_plan_branch(repo_path: str, branch: str, executor: Optional[Executor] = None) -> bool:
    """
    Create the plan branch off HEAD unless it already exists.

    Returns:
        bool: True if the branch was created, False if it already existed
    """
    executor = executor or Executor()
    try:
        _git(executor, repo_path, "rev-parse", "--verify", branch)
        return False
    except CommandError:
        pass

    try:
        _git(executor, repo_path, "branch", branch)
    except CommandError as e:
        raise WorktreeError(f"create plan branch {branch}: {e}") from e
    logger.info("created plan branch %s", branch)
    return True


def reset_plan_branch(repo_path: str, branch: str, executor: Optional[Executor] = None) -> None:
    """Drop the plan worktree and branch, then recreate the branch from HEAD."""
    executor = executor or Executor()
    worktree_path = plan_worktree_path(repo_path, branch)

    for args in (("worktree", "remove", "-f", worktree_path), ("branch", "-D", branch)):
        try:
            _git(executor, repo_path, *args)
        except CommandError as e:
            logger.debug("ignoring %s failure during plan reset: %s", args[0], e)

    try:
        _git(executor, repo_path, "branch", branch)
    except CommandError as e:
        raise WorktreeError(f"recreate plan branch {branch}: {e}") from e
    try:
        _git(executor, repo_path, "worktree", "prune")
    except CommandError as e:
        raise WorktreeError(f"prune worktrees: {e}") from e
    logger.info("reset plan branch %s", branch)


def commit_plan_scaffold_on_main(repo_path: str,
                                 plan_file: str,
                                 executor: Optional[Executor] = None) -> None:
    """
    Stage the plan file and the plan-state registry on the main checkout and commit.

    An already-committed scaffold ("nothing to commit") counts as success.
    """
    executor = executor or Executor()
    plan_path = str(PLANS_DIR / plan_file)
    state_path = str(PLANS_DIR / PLAN_STATE_FILE)

    try:
        _git(executor, repo_path, "add", plan_path, state_path)
    except CommandError as e:
        raise WorktreeError(f"stage plan scaffold: {e}") from e

    message = f"feat(plan): add {display_name(plan_file)} scaffold"
    try:
        _git(executor, repo_path, "commit", "-m", message)
    except CommandError as e:
        output = e.stdout + e.stderr
        if "nothing to commit" in output or "nothing added to commit" in output:
            return
        raise WorktreeError(f"commit plan scaffold: {e}") from e
