"""
Command Executor Module

Single indirection over "spawn an external process and wait for it". Every
call that touches tmux, git or the process tree goes through an Executor so
the whole stack can be driven by a recording mock in tests.
"""

import logging
import subprocess
from pathlib import Path
from typing import List, Optional, Sequence, Union

from ..core.errors import CommandError

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


def command_to_string(cmd: Sequence[str]) -> str:
    """Render an argv as a single space-joined string."""
    return " ".join(str(part) for part in cmd)


class Executor:
    """
    Runs external commands with subprocess.

    Provides two operations:
    - run: wait for the command, raise CommandError on failure
    - output: same, returning captured stdout as bytes
    """

    def run(self, cmd: Sequence[str], cwd: Optional[PathLike] = None) -> None:
        """
        Run a command and wait for it to finish.

        Args:
            cmd: Command and arguments as list
            cwd: Working directory for the command

        Raises:
            CommandError: Non-zero exit or spawn failure
        """
        self._execute(cmd, cwd)

    def output(self, cmd: Sequence[str], cwd: Optional[PathLike] = None) -> bytes:
        """
        Run a command and return its standard output.

        Args:
            cmd: Command and arguments as list
            cwd: Working directory for the command

        Returns:
            Raw stdout bytes. Standard error is not part of the result.

        Raises:
            CommandError: Non-zero exit or spawn failure
        """
        return self._execute(cmd, cwd)

    def _execute(self, cmd: Sequence[str], cwd: Optional[PathLike]) -> bytes:
        argv: List[str] = [str(part) for part in cmd]
        try:
            result = subprocess.run(
                argv,
                cwd=str(cwd) if cwd is not None else None,
                stdin=subprocess.DEVNULL,
                capture_output=True
            )
        except (FileNotFoundError, PermissionError, NotADirectoryError) as e:
            logger.debug("failed to spawn %s: %s", command_to_string(argv), e)
            raise CommandError(argv, None, reason=str(e)) from e

        if result.returncode != 0:
            raise CommandError(
                argv,
                result.returncode,
                stdout=result.stdout.decode("utf-8", errors="replace"),
                stderr=result.stderr.decode("utf-8", errors="replace"),
            )
        return result.stdout
