#!/usr/bin/env python3
"""
Status Monitor and Program Family Tests for kasmos
"""

import sys
import unittest
from pathlib import Path
from unittest.mock import patch

# Add parent directory to path
sys.path.append(str(Path(__file__).parent))

from kasmos.tmux.monitor import DEBOUNCE_TICKS, FAILURE_LOG_EVERY, StatusMonitor, strip_ansi
from kasmos.tmux.programs import (
    AIDER, CLAUDE, GEMINI, OPENCODE, detect_family, is_claude_program, is_opencode_program,
    program_supports_cli_prompt,
)


class TestStripAnsi(unittest.TestCase):

    def test_strips_color_and_cursor_sequences(self):
        self.assertEqual(strip_ansi("\x1b[31mred\x1b[0m \x1b[2Kline"), "red line")

    def test_strips_osc_title(self):
        self.assertEqual(strip_ansi("\x1b]0;title\x07text"), "text")

    def test_plain_text_unchanged(self):
        self.assertEqual(strip_ansi("plain > prompt"), "plain > prompt")


class TestStatusMonitor(unittest.TestCase):
    """Test idle detection and failure accounting"""

    def test_first_capture_is_update(self):
        monitor = StatusMonitor()
        self.assertEqual(monitor.observe("abc"), (True, False))

    def test_debounce_window(self):
        monitor = StatusMonitor()
        results = [monitor.observe("same")[0] for _ in range(DEBOUNCE_TICKS + 3)]
        self.assertEqual(results, [True] * DEBOUNCE_TICKS + [False] * 3)

    def test_change_resets_counter(self):
        monitor = StatusMonitor()
        for _ in range(DEBOUNCE_TICKS + 1):
            monitor.observe("same")
        self.assertEqual(monitor.observe("different")[0], True)
        self.assertEqual(monitor.unchanged_ticks, 0)

    def test_ansi_only_changes_are_not_updates(self):
        monitor = StatusMonitor()
        for _ in range(DEBOUNCE_TICKS + 1):
            monitor.observe("\x1b[32mdone\x1b[0m")
        self.assertFalse(monitor.observe("\x1b[33mdone\x1b[0m")[0])

    def test_success_resets_failures(self):
        monitor = StatusMonitor()
        monitor.record_failure("kas_x", RuntimeError("boom"))
        monitor.record_failure("kas_x", RuntimeError("boom"))
        monitor.observe("ok")
        self.assertEqual(monitor.capture_failures, 0)

    @patch("kasmos.tmux.monitor.logger")
    def test_failures_logged_sparsely(self, mock_logger):
        monitor = StatusMonitor()
        for _ in range(FAILURE_LOG_EVERY * 2):
            monitor.record_failure("kas_x", RuntimeError("boom"))

        self.assertEqual(mock_logger.error.call_count, 1)
        self.assertEqual(mock_logger.warning.call_count, 2)

    def test_hash_ignores_escapes(self):
        self.assertEqual(StatusMonitor.hash("\x1b[1mx\x1b[0m"), StatusMonitor.hash("x"))

    def test_opencode_prompt_is_absence_of_interrupt_hint(self):
        monitor = StatusMonitor(OPENCODE)
        self.assertFalse(monitor.observe("working... esc interrupt")[1])
        self.assertTrue(monitor.observe("Ask anything")[1])


class TestProgramFamilies(unittest.TestCase):
    """Test program classification"""

    def test_detect_by_suffix_and_prefix(self):
        self.assertIs(detect_family("claude"), CLAUDE)
        self.assertIs(detect_family("/usr/local/bin/claude"), CLAUDE)
        self.assertIs(detect_family("~/.opencode/bin/opencode"), OPENCODE)
        self.assertIs(detect_family("aider --model ollama_chat/gemma3:1b"), AIDER)
        self.assertIs(detect_family("gemini"), GEMINI)
        self.assertIsNone(detect_family("bash"))
        self.assertIsNone(detect_family(""))

    def test_cli_prompt_support(self):
        self.assertTrue(program_supports_cli_prompt("claude"))
        self.assertTrue(program_supports_cli_prompt("opencode"))
        self.assertFalse(program_supports_cli_prompt("aider"))
        self.assertFalse(program_supports_cli_prompt("gemini"))
        self.assertFalse(program_supports_cli_prompt("bash"))

    def test_program_helpers(self):
        self.assertTrue(is_claude_program("/opt/claude"))
        self.assertFalse(is_claude_program("opencode"))
        self.assertTrue(is_opencode_program("opencode"))

    def test_ready_markers(self):
        self.assertTrue(CLAUDE.is_ready("Do you trust the files in this folder?"))
        self.assertEqual(CLAUDE.ready_keys, ("Enter",))
        self.assertEqual(OPENCODE.ready_keys, ())
        self.assertEqual(AIDER.ready_keys, ("D", "Enter"))
        self.assertEqual(GEMINI.ready_timeout, 45.0)


if __name__ == '__main__':
    unittest.main()
