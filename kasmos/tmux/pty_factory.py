"""
PTY Factory Module

Allocates a pseudo-terminal and binds it to a spawned command. The tmux
attach client runs on such a PTY so kasmos can resize it and forward
keystrokes without touching the developer's real terminal.
"""

import fcntl
import logging
import os
import pty
import struct
import subprocess
import termios
from typing import List, Optional, Sequence

logger = logging.getLogger(__name__)


class PtyHandle:
    """
    Read/write/closable handle on the master side of a PTY.

    Args:
        master_fd: Master file descriptor
        process: The process running on the slave side
    """

    def __init__(self, master_fd: int, process: Optional[subprocess.Popen] = None):
        self.master_fd = master_fd
        self.process = process
        self.closed = False

    def fileno(self) -> int:
        return self.master_fd

    def read(self, size: int = 4096) -> bytes:
        return os.read(self.master_fd, size)

    def write(self, data: bytes) -> int:
        return os.write(self.master_fd, data)

    def resize(self, rows: int, cols: int) -> None:
        """Set the terminal window size seen by the process."""
        fcntl.ioctl(self.master_fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))

    def close(self) -> None:
        """Close the master side and reap the process. Idempotent."""
        if self.closed:
            return
        self.closed = True
        try:
            os.close(self.master_fd)
        finally:
            if self.process is not None and self.process.poll() is None:
                self.process.terminate()
                try:
                    self.process.wait(timeout=2)
                except subprocess.TimeoutExpired:
                    logger.warning("pty process %s did not exit, killing", self.process.pid)
                    self.process.kill()
                    self.process.wait()


class PtyFactory:
    """Starts commands on freshly allocated pseudo-terminals."""

    def __init__(self, rows: int = 24, cols: int = 80):
        self.rows = rows
        self.cols = cols

    def start(self, cmd: Sequence[str]) -> PtyHandle:
        """
        Spawn a command with a new PTY as its controlling terminal.

        Args:
            cmd: Command and arguments as list

        Returns:
            PtyHandle on the master side
        """
        argv: List[str] = [str(part) for part in cmd]
        master, slave = pty.openpty()
        fcntl.ioctl(master, termios.TIOCSWINSZ, struct.pack("HHHH", self.rows, self.cols, 0, 0))
        try:
            process = subprocess.Popen(
                argv,
                stdin=slave,
                stdout=slave,
                stderr=slave,
                preexec_fn=os.setsid,
                close_fds=True,
            )
        except OSError:
            os.close(master)
            raise
        finally:
            os.close(slave)

        logger.debug("started %s on pty (pid %s)", argv[:3], process.pid)
        return PtyHandle(master, process)
