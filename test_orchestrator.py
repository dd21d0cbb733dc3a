#!/usr/bin/env python3
"""
Orchestrator Tests for kasmos
Tests the instance model: creation, metadata ticks, lifecycle by title,
persistence, orphan adoption and reset.
"""

import os
import shutil
import sys
import tempfile
import unittest
from pathlib import Path
from unittest.mock import Mock, patch

# Add parent directory to path
sys.path.append(str(Path(__file__).parent))

from kasmos.core.errors import KasmosError, PreconditionError, ValidationError
from kasmos.core.instance import InstanceStatus
from kasmos.core.orchestrator import Orchestrator
from kasmos.core.session_manager import InstanceStorage
from kasmos.git.worktree_manager import WORKTREES_DIR
from kasmos.monitoring.resource_monitor import ResourceUsage
from kasmos.tmux.messaging import PermissionChoice
from kasmos.utils.config_loader import KasmosConfig
from testutils import FakeTmux, git_available, init_git_repo

CLAUDE_SCREEN = "Do you trust the files in this folder?\nNo, and tell Claude what to do differently"
AIDER_SCREEN = "Open documentation url for more info"
OPENCODE_DIALOG = "Permission required\n  Run command\n\nPatterns\n\n- npm test\n"


class TestOrchestratorModel(unittest.TestCase):
    """Test model bookkeeping that needs neither tmux nor git"""

    def setUp(self):
        self.test_dir = tempfile.mkdtemp()
        self.tmux = FakeTmux(passthrough=False)
        self.orchestrator = Orchestrator(
            config=KasmosConfig(config_dir=self.test_dir, default_program="aider", auto_yes=True),
            executor=self.tmux.executor,
            pty_factory=self.tmux.pty_factory,
            process_inspector=Mock(),
        )

    def tearDown(self):
        shutil.rmtree(self.test_dir)

    def test_create_uses_config_defaults(self):
        instance = self.orchestrator.create_instance("first", path=self.test_dir)

        self.assertEqual(instance.program, "aider")
        self.assertTrue(instance.auto_yes)
        self.assertFalse(instance.started)
        self.assertIs(self.orchestrator.get_instance("first"), instance)

    def test_explicit_options_override_config(self):
        instance = self.orchestrator.create_instance("second", program="claude", auto_yes=False)
        self.assertEqual(instance.program, "claude")
        self.assertFalse(instance.auto_yes)

    def test_sanitized_name_collision_rejected(self):
        self.orchestrator.create_instance("a b")
        with self.assertRaises(ValidationError):
            self.orchestrator.create_instance("ab")
        self.assertEqual(len(self.orchestrator.list_instances()), 1)

    def test_unknown_title(self):
        with self.assertRaises(ValidationError):
            self.orchestrator.pause("missing")
        self.assertIsNone(self.orchestrator.remove_instance("missing"))

    def test_storage_defaults_to_config_state_file(self):
        self.assertEqual(self.orchestrator.storage.state_file, Path(self.test_dir) / "instances.json")

    def test_tick_without_started_instances(self):
        self.orchestrator.create_instance("idle")
        self.assertEqual(self.orchestrator.tick(), [])

    def test_adopt_rejects_foreign_sessions(self):
        self.tmux.add_session("work")
        with self.assertRaises(ValidationError):
            self.orchestrator.adopt_orphan("work")


@unittest.skipUnless(git_available(), "git not installed")
class OrchestratorTestCase(unittest.TestCase):
    """Shared fixture: temp repository, fake tmux and a state file in the temp dir"""

    def setUp(self):
        self.test_dir = tempfile.mkdtemp()
        self.repo = init_git_repo(Path(self.test_dir) / "repo")
        self.config_dir = Path(self.test_dir) / "config"
        self.tmux = FakeTmux()
        self.inspector = Mock()
        self.inspector.usage.return_value = ResourceUsage(pid=4243, cpu_percent=3.0, mem_mb=64.0)

        sleep_patcher = patch("time.sleep")
        sleep_patcher.start()
        self.addCleanup(sleep_patcher.stop)

        self.orchestrator = self.make_orchestrator()

    def tearDown(self):
        shutil.rmtree(self.test_dir)

    def make_orchestrator(self) -> Orchestrator:
        return Orchestrator(
            config=KasmosConfig(config_dir=str(self.config_dir), default_program="bash"),
            executor=self.tmux.executor,
            pty_factory=self.tmux.pty_factory,
            process_inspector=self.inspector,
            storage=InstanceStorage(self.config_dir / "instances.json"),
            clipboard=Mock(return_value=True),
        )

    def start(self, title, **kwargs):
        instance = self.orchestrator.create_instance(title, path=str(self.repo), **kwargs)
        instance.start(True)
        self.orchestrator.save()
        return instance


class TestTick(OrchestratorTestCase):
    """Test the metadata tick"""

    def test_tick_applies_metadata(self):
        instance = self.start("ticker")
        self.tmux.panes["kas_ticker"] = "working..."

        results = self.orchestrator.tick()

        self.assertEqual([i for i, _ in results], [instance])
        self.assertEqual(instance.status, InstanceStatus.RUNNING)
        self.assertEqual(instance.cached_content, "working...")
        self.assertEqual(instance.cpu_percent, 3.0)

    def test_tick_goes_ready_after_debounce(self):
        instance = self.start("settles")
        self.tmux.panes["kas_settles"] = "$ "

        for _ in range(7):
            self.orchestrator.tick()

        self.assertEqual(instance.status, InstanceStatus.READY)

    def test_tick_skips_paused_instances(self):
        self.start("sleeper")
        self.orchestrator.pause("sleeper")
        self.assertEqual(self.orchestrator.tick(), [])

    def test_auto_yes_taps_enter_on_prompt(self):
        self.tmux.default_content = CLAUDE_SCREEN
        instance = self.start("asker", program="claude", auto_yes=True)
        self.tmux.sent_keys.clear()

        for _ in range(7):
            self.orchestrator.tick()

        self.assertTrue(instance.prompt_detected)
        self.assertIn(["tmux", "send-keys", "-t", "kas_asker", "Enter"], self.tmux.sent_keys)

    def test_prompt_without_auto_yes_is_left_alone(self):
        self.tmux.default_content = CLAUDE_SCREEN
        self.start("careful", program="claude", auto_yes=False)
        self.tmux.sent_keys.clear()

        for _ in range(7):
            self.orchestrator.tick()

        self.assertEqual(self.tmux.sent_keys, [])

    def test_queued_prompt_delivered_once_ready(self):
        self.tmux.default_content = AIDER_SCREEN
        instance = self.start("helper", program="aider", prompt="add tests")
        self.tmux.sent_keys.clear()

        self.orchestrator.tick()
        self.assertEqual(instance.queued_prompt, "add tests")

        for _ in range(6):
            self.orchestrator.tick()

        self.assertEqual(instance.queued_prompt, "")
        self.assertIn(["tmux", "send-keys", "-l", "-t", "kas_helper", "add tests"], self.tmux.sent_keys)

    def test_tick_bounded_by_pool_size(self):
        self.orchestrator.config.worker_pool_size = 1
        for title in ("one", "two", "three"):
            self.start(title)
        self.assertEqual(len(self.orchestrator.tick()), 3)


class TestLifecycleByTitle(OrchestratorTestCase):
    """Test pause, resume, kill and stop through the orchestrator"""

    def test_pause_and_resume_persist_status(self):
        self.start("worker")

        self.orchestrator.pause("worker")
        self.assertEqual(self.orchestrator.storage.find("worker").status, "paused")

        self.orchestrator.resume("worker")
        self.assertEqual(self.orchestrator.storage.find("worker").status, "running")

    def test_kill_drops_instance(self):
        instance = self.start("doomed")
        worktree_path = instance.get_worktree_path()

        self.orchestrator.kill("doomed")

        self.assertIsNone(self.orchestrator.get_instance("doomed"))
        self.assertIsNone(self.orchestrator.storage.find("doomed"))
        self.assertNotIn("kas_doomed", self.tmux.sessions)
        self.assertFalse(os.path.exists(worktree_path))

    def test_kill_drops_instance_even_on_error(self):
        self.start("stubborn")
        self.tmux.fail.add("kill-session")

        with self.assertRaises(KasmosError):
            self.orchestrator.kill("stubborn")

        self.assertIsNone(self.orchestrator.get_instance("stubborn"))
        self.assertIsNone(self.orchestrator.storage.find("stubborn"))

    def test_stop_keeps_entry(self):
        instance = self.start("stopped")

        self.orchestrator.stop("stopped")

        self.assertIs(self.orchestrator.get_instance("stopped"), instance)
        self.assertNotIn("kas_stopped", self.tmux.sessions)
        self.assertTrue(os.path.isdir(instance.get_worktree_path()))

    def test_respond_permission(self):
        self.tmux.default_content = "Ask anything"
        self.start("asker", program="opencode")
        self.tmux.sent_keys.clear()

        with self.assertRaises(PreconditionError):
            self.orchestrator.respond_permission("asker", PermissionChoice.ALLOW_ONCE)
        self.assertEqual(self.tmux.sent_keys, [])

        self.tmux.panes["kas_asker"] = OPENCODE_DIALOG
        instance, prompt = self.orchestrator.respond_permission("asker", PermissionChoice.REJECT)

        self.assertEqual(prompt.pattern, "npm test")
        self.assertIsNone(instance.permission_prompt)
        self.assertEqual([cmd[-1] for cmd in self.tmux.sent_keys], ["Right", "Right", "Enter"])


class TestRestore(OrchestratorTestCase):
    """Test rebuilding the model from the state file"""

    def test_restore_reattaches_live_sessions(self):
        self.start("alive")
        self.start("dead")
        self.start("resting")
        self.orchestrator.pause("resting")
        self.tmux.sessions.discard("kas_dead")

        restored = self.make_orchestrator().restore()

        self.assertEqual([i.title for i in restored], ["alive", "resting"])
        alive, resting = restored
        self.assertTrue(alive.started)
        self.assertEqual(alive.status, InstanceStatus.RUNNING)
        self.assertTrue(resting.paused)
        self.assertTrue(os.path.isdir(alive.get_worktree_path()))

    def test_restore_skips_titles_already_in_model(self):
        self.start("twice")
        self.assertEqual(len(self.orchestrator.restore()), 1)


class TestOrphansAndReset(OrchestratorTestCase):
    """Test orphan adoption and the full reset"""

    def test_discover_and_adopt_orphan(self):
        self.start("managed")
        self.tmux.add_session("kas_stray", "leftover output")

        orphans = self.orchestrator.discover_orphans()
        self.assertEqual([s.name for s in orphans], ["kas_stray"])

        instance = self.orchestrator.adopt_orphan("kas_stray", path=str(self.repo))

        self.assertEqual(instance.title, "stray")
        self.assertIsNone(instance.git_worktree)
        self.assertEqual(self.orchestrator.discover_orphans(), [])
        self.assertIsNotNone(self.orchestrator.storage.find("stray"))

    def test_adopt_managed_session_rejected(self):
        self.start("owned")
        with self.assertRaises(ValidationError):
            self.orchestrator.adopt_orphan("kas_owned")

    def test_reset_cleans_everything(self):
        self.start("one")
        self.start("two")
        self.tmux.add_session("klique_legacy")
        self.tmux.add_session("unrelated")

        result = self.orchestrator.reset()

        self.assertEqual(sorted(result["sessions"]), ["kas_one", "kas_two", "klique_legacy"])
        self.assertEqual(len(result["worktrees"]), 2)
        self.assertEqual(self.tmux.sessions, {"unrelated"})
        self.assertEqual(os.listdir(self.repo / WORKTREES_DIR), [])
        self.assertEqual(self.orchestrator.list_instances(), [])
        self.assertEqual(self.orchestrator.storage.load_data(), [])

    def test_reset_with_explicit_repo_and_empty_model(self):
        self.start("left")
        fresh = self.make_orchestrator()
        fresh.storage.clear()

        result = fresh.reset(str(self.repo))

        self.assertEqual(len(result["worktrees"]), 1)


if __name__ == '__main__':
    unittest.main()
