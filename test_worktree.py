#!/usr/bin/env python3
"""
Git Worktree Tests for kasmos
Exercises the worktree controller against throwaway repositories.
"""

import os
import shutil
import sys
import tempfile
import unittest
from pathlib import Path

# Add parent directory to path
sys.path.append(str(Path(__file__).parent))

from kasmos.core.errors import ValidationError, WorktreeError
from kasmos.git.worktree_manager import (
    ERR_BASE_SHA_NOT_SET, ERR_WORKTREE_PATH_GONE, WORKTREES_DIR, DiffStats, GitWorktree,
    cleanup_worktrees, sanitize_branch_name, worktree_path_for_branch,
)
from testutils import git, git_available, init_git_repo


class TestBranchNaming(unittest.TestCase):

    def test_sanitize_branch_name(self):
        self.assertEqual(sanitize_branch_name("Fix Login Bug!"), "fix-login-bug")
        self.assertEqual(sanitize_branch_name("  a  b "), "a-b")
        self.assertEqual(sanitize_branch_name("feature/x.y"), "feature/x.y")
        self.assertEqual(sanitize_branch_name("/--weird--/"), "weird")
        self.assertEqual(sanitize_branch_name("!!!"), "")

    def test_worktree_path_flattens_slashes(self):
        self.assertEqual(worktree_path_for_branch("/repo", "plan/auth"),
                         os.path.join("/repo", WORKTREES_DIR, "plan-auth"))

    def test_new_rejects_empty_branch(self):
        with self.assertRaises(ValidationError):
            GitWorktree.new("/repo", "???")

    def test_new_applies_prefix(self):
        worktree, branch = GitWorktree.new("/repo", "My Task", branch_prefix="alice/")
        self.assertEqual(branch, "alice/my-task")
        self.assertEqual(worktree.get_worktree_path(),
                         os.path.join("/repo", WORKTREES_DIR, "alice-my-task"))
        self.assertEqual(worktree.get_base_commit_sha(), "")

    def test_diff_stats_transient(self):
        self.assertTrue(DiffStats(error=ERR_BASE_SHA_NOT_SET).is_transient())
        self.assertTrue(DiffStats(error=ERR_WORKTREE_PATH_GONE).is_transient())
        self.assertFalse(DiffStats(error="fatal: bad object").is_transient())
        self.assertTrue(DiffStats().is_empty())


@unittest.skipUnless(git_available(), "git not installed")
class TestGitWorktree(unittest.TestCase):
    """Test worktree setup, diff, commit and cleanup with real git"""

    def setUp(self):
        self.test_dir = tempfile.mkdtemp()
        self.repo = init_git_repo(Path(self.test_dir) / "repo")

    def tearDown(self):
        shutil.rmtree(self.test_dir)

    def test_setup_new_branch_records_head(self):
        worktree, branch = GitWorktree.new(str(self.repo), "feature one")
        worktree.setup()

        self.assertTrue(os.path.isdir(worktree.get_worktree_path()))
        self.assertEqual(worktree.get_base_commit_sha(), git(self.repo, "rev-parse", "HEAD"))
        self.assertEqual(git(Path(worktree.get_worktree_path()), "rev-parse", "--abbrev-ref", "HEAD"),
                         branch)

    def test_setup_from_existing_branch_keeps_commits(self):
        git(self.repo, "branch", "existing")
        worktree = GitWorktree.on_branch(str(self.repo), "t", "existing")
        worktree.setup()

        self.assertTrue(os.path.isdir(worktree.get_worktree_path()))
        self.assertEqual(worktree.get_base_commit_sha(), git(self.repo, "merge-base", "HEAD", "existing"))

    def test_setup_in_empty_repo_explains(self):
        empty = Path(self.test_dir) / "empty"
        empty.mkdir()
        git(empty, "init", "-q")
        worktree, _ = GitWorktree.new(str(empty), "first")

        with self.assertRaises(WorktreeError) as ctx:
            worktree.setup()
        self.assertIn("initial commit", str(ctx.exception))

    def test_diff_counts_tracked_and_untracked(self):
        worktree, _ = GitWorktree.new(str(self.repo), "diffing")
        worktree.setup()
        wt = Path(worktree.get_worktree_path())
        (wt / "README.md").write_text("# Changed\nsecond line\n")
        (wt / "new.txt").write_text("a\nb\nc\n")

        stats = worktree.diff()

        self.assertIsNone(stats.error)
        self.assertEqual(stats.added, 5)
        self.assertEqual(stats.removed, 1)
        self.assertIn("new.txt", stats.content)

    def test_diff_transient_conditions(self):
        worktree, _ = GitWorktree.new(str(self.repo), "gone")
        self.assertEqual(worktree.diff().error, ERR_BASE_SHA_NOT_SET)

        worktree.setup()
        worktree.remove()
        self.assertEqual(worktree.diff().error, ERR_WORKTREE_PATH_GONE)

    def test_dirty_and_commit(self):
        worktree, branch = GitWorktree.new(str(self.repo), "committer")
        worktree.setup()
        self.assertFalse(worktree.is_dirty())

        (Path(worktree.get_worktree_path()) / "work.txt").write_text("wip\n")
        self.assertTrue(worktree.is_dirty())

        worktree.commit_changes("wip commit")
        self.assertFalse(worktree.is_dirty())
        self.assertEqual(git(self.repo, "log", "-1", "--format=%s", branch), "wip commit")

    def test_branch_checked_out(self):
        worktree, _ = GitWorktree.new(str(self.repo), "checked")
        worktree.setup()
        self.assertTrue(worktree.is_branch_checked_out())

        worktree.remove()
        worktree.prune()
        self.assertFalse(worktree.is_branch_checked_out())

    def test_remove_keeps_branch_and_setup_reuses_it(self):
        worktree, branch = GitWorktree.new(str(self.repo), "pausable")
        worktree.setup()
        (Path(worktree.get_worktree_path()) / "kept.txt").write_text("kept\n")
        worktree.commit_changes("keep me")
        base = worktree.get_base_commit_sha()

        worktree.remove()
        worktree.prune()
        self.assertFalse(os.path.exists(worktree.get_worktree_path()))
        self.assertTrue(git(self.repo, "rev-parse", "--verify", f"refs/heads/{branch}"))

        worktree.setup()
        self.assertTrue((Path(worktree.get_worktree_path()) / "kept.txt").exists())
        self.assertEqual(worktree.get_base_commit_sha(), base)

    def test_cleanup_removes_worktree_and_branch(self):
        worktree, branch = GitWorktree.new(str(self.repo), "doomed")
        worktree.setup()

        worktree.cleanup()

        self.assertFalse(os.path.exists(worktree.get_worktree_path()))
        self.assertNotIn(branch, git(self.repo, "branch", "--list", branch))

    def test_cleanup_when_nothing_exists(self):
        worktree, _ = GitWorktree.new(str(self.repo), "never-created")
        worktree.cleanup()

    def test_cleanup_worktrees_removes_everything(self):
        first, b1 = GitWorktree.new(str(self.repo), "first")
        second, b2 = GitWorktree.new(str(self.repo), "second")
        first.setup()
        second.setup()

        removed = cleanup_worktrees(str(self.repo))

        self.assertEqual(sorted(os.path.basename(p) for p in removed), ["first", "second"])
        self.assertEqual(os.listdir(self.repo / WORKTREES_DIR), [])
        self.assertEqual(git(self.repo, "branch", "--list", b1, b2), "")

    def test_cleanup_worktrees_without_directory(self):
        self.assertEqual(cleanup_worktrees(str(self.repo)), [])


if __name__ == '__main__':
    unittest.main()
