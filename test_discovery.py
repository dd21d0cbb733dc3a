#!/usr/bin/env python3
"""
Session Discovery Tests for kasmos
Tests orphan discovery, session counting and bulk cleanup.
"""

import sys
import unittest
from pathlib import Path

# Add parent directory to path
sys.path.append(str(Path(__file__).parent))

from kasmos.core.errors import CommandError, TmuxError
from kasmos.tmux.discovery import cleanup_sessions, count_kas_sessions, discover_all, discover_orphans
from testutils import FakeTmux, MockExecutor


class TestDiscovery(unittest.TestCase):
    """Test listing of kasmos sessions"""

    def setUp(self):
        self.tmux = FakeTmux(passthrough=False)
        for name in ("kas_one", "kas_two", "work", "klique_old"):
            self.tmux.add_session(name)

    def test_discover_all_filters_prefix_and_tags_managed(self):
        sessions = discover_all(self.tmux.executor, ["kas_one"])

        self.assertEqual([s.name for s in sessions], ["kas_one", "kas_two"])
        self.assertTrue(sessions[0].managed)
        self.assertFalse(sessions[1].managed)
        self.assertEqual((sessions[0].width, sessions[0].height), (80, 24))
        self.assertEqual(sessions[0].created, 1700000000)

    def test_discover_orphans(self):
        orphans = discover_orphans(self.tmux.executor, ["kas_one"])
        self.assertEqual([s.name for s in orphans], ["kas_two"])

    def test_no_server_means_no_sessions(self):
        self.tmux.sessions.clear()
        self.assertEqual(discover_all(self.tmux.executor, []), [])
        self.assertEqual(count_kas_sessions(self.tmux.executor), 0)
        self.assertEqual(cleanup_sessions(self.tmux.executor), [])

    def test_other_failures_raise(self):
        def fail(cmd):
            raise CommandError(cmd, None, reason="tmux not found")

        with self.assertRaises(TmuxError):
            discover_all(MockExecutor(output_func=fail), [])

    def test_count(self):
        self.assertEqual(count_kas_sessions(self.tmux.executor), 2)

    def test_parses_attached_flag(self):
        executor = MockExecutor(output_func=lambda cmd: b"kas_a|1|2|1|100|50\nkas_b|bad|1|0|80|24\n")
        sessions = discover_all(executor, [])
        self.assertTrue(sessions[0].attached)
        self.assertEqual(sessions[0].windows, 2)
        self.assertEqual(sessions[1].created, 0)


class TestCleanupSessions(unittest.TestCase):

    def test_kills_current_and_legacy_prefixes(self):
        tmux = FakeTmux(passthrough=False)
        for name in ("kas_one", "klique_old", "hivemind_older", "work"):
            tmux.add_session(name)

        killed = cleanup_sessions(tmux.executor)

        self.assertEqual(sorted(killed), ["hivemind_older", "kas_one", "klique_old"])
        self.assertEqual(tmux.sessions, {"work"})
        self.assertIn("tmux kill-session -t klique_old", tmux.executor.commands)


if __name__ == '__main__':
    unittest.main()
