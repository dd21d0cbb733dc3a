"""
System Utilities Module

System-level helpers: clipboard access, command availability and a summary
of the host environment for the debug command.
"""

import getpass
import logging
import platform
import shutil
import subprocess
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import psutil

logger = logging.getLogger(__name__)

# Clipboard programs in preference order: macOS, Wayland, X11
CLIPBOARD_COMMANDS: List[List[str]] = [
    ["pbcopy"],
    ["wl-copy"],
    ["xclip", "-selection", "clipboard"],
    ["xsel", "--clipboard", "--input"],
]


class SystemUtils:
    """
    System-level utilities.
    """

    @staticmethod
    def check_command_availability(command: str) -> bool:
        """
        Check if a command is available in PATH.

        Args:
            command: Command name to check

        Returns:
            bool: True if command is available
        """
        return shutil.which(command) is not None

    @staticmethod
    def copy_to_clipboard(text: str) -> bool:
        """
        Copy text to the system clipboard using the first available tool.

        Args:
            text: Text to copy

        Returns:
            bool: True if a clipboard tool accepted the text
        """
        for command in CLIPBOARD_COMMANDS:
            if not SystemUtils.check_command_availability(command[0]):
                continue
            try:
                subprocess.run(command, input=text, text=True, check=True,
                               capture_output=True, timeout=5)
                return True
            except (subprocess.SubprocessError, OSError) as e:
                logger.debug("clipboard copy via %s failed: %s", command[0], e)
        return False

    @staticmethod
    def get_system_info() -> Dict[str, Any]:
        """
        Get system information.

        Returns:
            Dict containing system information
        """
        memory = psutil.virtual_memory()
        return {
            'platform': platform.system(),
            'platform_release': platform.release(),
            'architecture': platform.machine(),
            'hostname': platform.node(),
            'username': getpass.getuser(),
            'python_version': platform.python_version(),
            'python_executable': sys.executable,
            'working_directory': str(Path.cwd()),
            'cpu_count': psutil.cpu_count(),
            'memory_total_mb': round(memory.total / (1024 * 1024)),
            'tmux_available': SystemUtils.check_command_availability('tmux'),
            'git_available': SystemUtils.check_command_availability('git'),
        }

    @staticmethod
    def get_tool_version(command: List[str]) -> Optional[str]:
        """First line of a tool's version output, or None if it cannot run."""
        try:
            result = subprocess.run(command, capture_output=True, text=True, timeout=5)
        except (subprocess.SubprocessError, OSError):
            return None
        if result.returncode != 0:
            return None
        lines = (result.stdout or result.stderr).strip().splitlines()
        return lines[0] if lines else None
