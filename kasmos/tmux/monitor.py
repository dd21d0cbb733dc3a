"""
Status Monitor Module

Per-session idle detection. Pane captures are hashed after stripping ANSI
escape sequences, and a run of identical captures has to last a few ticks
before the session is reported as no longer updating.
"""

import hashlib
import logging
import re
from typing import Optional, Tuple

from .programs import ProgramFamily

logger = logging.getLogger(__name__)

# Identical ticks required before reporting "not updated" (~3s at 500ms ticks)
DEBOUNCE_TICKS = 6

# Log the first capture failure, then every Nth
FAILURE_LOG_EVERY = 30

_ANSI_RE = re.compile(
    r"\x1b\[[0-?]*[ -/]*[@-~]"            # CSI sequences
    r"|\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)"  # OSC sequences
    r"|\x1b[@-Z\\-_]"                      # two-byte escapes
)


def strip_ansi(text: str) -> str:
    """Remove terminal escape sequences from captured pane text."""
    return _ANSI_RE.sub("", text)


class StatusMonitor:
    """
    Tracks pane content between ticks.

    Attributes:
        prev_output_hash: SHA-256 digest of the last successful capture
        capture_failures: Consecutive failed captures
        unchanged_ticks: Consecutive ticks with identical content
    """

    def __init__(self, family: Optional[ProgramFamily] = None):
        self.family = family
        self.prev_output_hash: Optional[bytes] = None
        self.capture_failures = 0
        self.unchanged_ticks = 0

    @staticmethod
    def hash(content: str) -> bytes:
        return hashlib.sha256(strip_ansi(content).encode("utf-8")).digest()

    def record_failure(self, session_name: str, error: Exception) -> None:
        """Count a failed capture, logging sparsely."""
        self.capture_failures += 1
        if self.capture_failures == 1:
            logger.error("error capturing pane content for %s (failure #1): %s",
                         session_name, error)
        elif self.capture_failures % FAILURE_LOG_EVERY == 0:
            logger.warning("error capturing pane content for %s (failure #%d): %s",
                           session_name, self.capture_failures, error)

    def observe(self, content: str) -> Tuple[bool, bool]:
        """
        Feed one successful capture.

        Returns:
            Tuple[bool, bool]: (updated, has_prompt)
        """
        self.capture_failures = 0

        stripped = strip_ansi(content)
        has_prompt = self.family.has_prompt(stripped) if self.family else False

        new_hash = hashlib.sha256(stripped.encode("utf-8")).digest()
        if new_hash != self.prev_output_hash:
            self.prev_output_hash = new_hash
            self.unchanged_ticks = 0
            return True, has_prompt

        self.unchanged_ticks += 1
        if self.unchanged_ticks < DEBOUNCE_TICKS:
            # Still debouncing, keep the session in Running
            return True, has_prompt
        return False, has_prompt
