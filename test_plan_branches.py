#!/usr/bin/env python3
"""
Plan Branch Tests for kasmos
"""

import os
import shutil
import sys
import tempfile
import unittest
from pathlib import Path

# Add parent directory to path
sys.path.append(str(Path(__file__).parent))

from kasmos.git.plan_branches import (
    PLAN_STATE_FILE, PLANS_DIR, SHARED_PLAN_SESSION, commit_plan_scaffold_on_main, display_name,
    ensure_plan_branch, new_shared_plan_worktree, plan_branch_from_file, plan_worktree_path,
    reset_plan_branch,
)
from kasmos.git.worktree_manager import WORKTREES_DIR
from testutils import git, git_available, init_git_repo


class TestPlanNaming(unittest.TestCase):

    def test_display_name(self):
        self.assertEqual(display_name("2026-02-21-auth-refactor.md"), "auth-refactor")
        self.assertEqual(display_name("docs/plans/cleanup.md"), "cleanup")
        self.assertEqual(display_name("notes"), "notes")

    def test_plan_branch_from_file(self):
        self.assertEqual(plan_branch_from_file("2026-02-21-Auth Refactor.md"), "plan/auth-refactor")

    def test_plan_worktree_path(self):
        self.assertEqual(plan_worktree_path("/repo", "plan/auth-refactor"),
                         os.path.join("/repo", WORKTREES_DIR, "plan-auth-refactor"))

    def test_shared_worktree_controller(self):
        worktree = new_shared_plan_worktree("/repo", "plan/x")
        self.assertEqual(worktree.session_name, SHARED_PLAN_SESSION)
        self.assertEqual(worktree.get_branch_name(), "plan/x")
        self.assertEqual(worktree.get_worktree_path(), os.path.join("/repo", WORKTREES_DIR, "plan-x"))


@unittest.skipUnless(git_available(), "git not installed")
class TestPlanBranchGit(unittest.TestCase):
    """Test plan branch operations with real git"""

    def setUp(self):
        self.test_dir = tempfile.mkdtemp()
        self.repo = init_git_repo(Path(self.test_dir) / "repo")

    def tearDown(self):
        shutil.rmtree(self.test_dir)

    def test_ensure_plan_branch_creates_once(self):
        self.assertTrue(ensure_plan_branch(str(self.repo), "plan/feature"))
        self.assertFalse(ensure_plan_branch(str(self.repo), "plan/feature"))
        self.assertEqual(git(self.repo, "rev-parse", "plan/feature"), git(self.repo, "rev-parse", "HEAD"))

    def test_shared_worktree_setup(self):
        ensure_plan_branch(str(self.repo), "plan/shared")
        worktree = new_shared_plan_worktree(str(self.repo), "plan/shared")
        worktree.setup()
        self.assertTrue(os.path.isdir(worktree.get_worktree_path()))

    def test_reset_plan_branch_moves_to_head(self):
        ensure_plan_branch(str(self.repo), "plan/reset")
        worktree = new_shared_plan_worktree(str(self.repo), "plan/reset")
        worktree.setup()
        (Path(worktree.get_worktree_path()) / "x.txt").write_text("x\n")
        worktree.commit_changes("plan work")

        reset_plan_branch(str(self.repo), "plan/reset")

        self.assertFalse(os.path.exists(worktree.get_worktree_path()))
        self.assertEqual(git(self.repo, "rev-parse", "plan/reset"), git(self.repo, "rev-parse", "HEAD"))

    def test_commit_plan_scaffold(self):
        plans = self.repo / PLANS_DIR
        plans.mkdir(parents=True)
        (plans / "2026-03-01-search.md").write_text("# Search\n")
        (plans / PLAN_STATE_FILE).write_text("{}\n")

        commit_plan_scaffold_on_main(str(self.repo), "2026-03-01-search.md")

        self.assertEqual(git(self.repo, "log", "-1", "--format=%s"), "feat(plan): add search scaffold")

        # Already committed: nothing to commit is not an error
        commit_plan_scaffold_on_main(str(self.repo), "2026-03-01-search.md")


if __name__ == '__main__':
    unittest.main()
