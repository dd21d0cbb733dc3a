"""
Tmux Messaging Module

Keystroke delivery into a tmux session: literal text, named keys, and the
key sequences that answer opencode's permission dialog.
"""

import logging
import time
from enum import Enum
from typing import List

from ..utils.executor import Executor

logger = logging.getLogger(__name__)


class PermissionChoice(Enum):
    """Answer to opencode's "Allow once | Allow always | Reject" dialog."""
    ALLOW_ONCE = "allow_once"
    ALLOW_ALWAYS = "allow_always"
    REJECT = "reject"


class TmuxMessenger:
    """
    Sends keystrokes to one tmux session.

    Features:
    - Literal text delivery (send-keys -l, no key-binding interpretation)
    - Named key taps (Enter, Right, D Enter)
    - Permission dialog navigation for opencode
    """

    # Pause before the confirmation Enter of the "allow always" follow-up dialog
    PERMISSION_CONFIRM_DELAY = 0.3

    def __init__(self, executor: Executor, session_name: str):
        """
        Initialize tmux messenger.

        Args:
            executor: Command executor used for every tmux call
            session_name: Sanitized tmux session name
        """
        self.executor = executor
        self.session_name = session_name

    def send_keys(self, text: str) -> None:
        """Type text into the pane exactly as given."""
        self.executor.run(["tmux", "send-keys", "-l", "-t", self.session_name, text])

    def send_key_names(self, *keys: str) -> None:
        """Send named keys (e.g. Enter, Right) in a single send-keys call."""
        self.executor.run(["tmux", "send-keys", "-t", self.session_name] + list(keys))

    def tap_enter(self) -> None:
        self.send_key_names("Enter")

    def tap_right(self) -> None:
        self.send_key_names("Right")

    def tap_d_and_enter(self) -> None:
        """Acknowledge aider/gemini's startup screen."""
        self.send_key_names("D", "Enter")

    def send_permission_response(self, choice: PermissionChoice) -> None:
        """
        Answer opencode's permission dialog.

        "Allow once" is highlighted by default and arrow keys move right, so:
        - ALLOW_ONCE: Enter
        - ALLOW_ALWAYS: Right, Enter, then Enter again on the follow-up dialog
        - REJECT: Right, Right, Enter

        Each key is its own send-keys call so opencode sees discrete events.

        Args:
            choice: The permission answer to send
        """
        keys = self.permission_key_sequence(choice)
        for i, key in enumerate(keys):
            if choice == PermissionChoice.ALLOW_ALWAYS and i == len(keys) - 1:
                time.sleep(self.PERMISSION_CONFIRM_DELAY)
            self.send_key_names(key)
        logger.info("sent permission response %s to %s", choice.value, self.session_name)

    @staticmethod
    def permission_key_sequence(choice: PermissionChoice) -> List[str]:
        """Keys sent for a permission choice, in order."""
        if choice == PermissionChoice.ALLOW_ONCE:
            return ["Enter"]
        if choice == PermissionChoice.ALLOW_ALWAYS:
            return ["Right", "Enter", "Enter"]
        return ["Right", "Right", "Enter"]
