"""
Test doubles shared by the kasmos test modules.

MockExecutor records every command and lets a test script the results.
MockPtyFactory records the commands it was asked to start and hands out
MockPtyHandles. FakeTmux combines both into a small in-memory tmux server so
lifecycle tests can run without tmux; non-tmux commands (git) are passed to
a real Executor.
"""

import shutil
import subprocess
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Set

from kasmos.core.errors import CommandError
from kasmos.utils.executor import Executor, command_to_string


class MockExecutor(Executor):
    """Executor that records commands instead of running them."""

    def __init__(self,
                 run_func: Optional[Callable[[List[str]], None]] = None,
                 output_func: Optional[Callable[[List[str]], bytes]] = None):
        self.run_func = run_func
        self.output_func = output_func
        self.commands: List[str] = []

    def run(self, cmd: Sequence[str], cwd=None) -> None:
        self.commands.append(command_to_string(cmd))
        if self.run_func is not None:
            self.run_func(list(cmd))

    def output(self, cmd: Sequence[str], cwd=None) -> bytes:
        self.commands.append(command_to_string(cmd))
        if self.output_func is not None:
            return self.output_func(list(cmd))
        return b""

    def matching(self, prefix: str) -> List[str]:
        return [c for c in self.commands if c.startswith(prefix)]


class MockPtyHandle:
    def __init__(self, cmd: Sequence[str]):
        self.cmd = list(cmd)
        self.closed = False
        self.size = None

    def fileno(self) -> int:
        return -1

    def resize(self, rows: int, cols: int) -> None:
        self.size = (rows, cols)

    def close(self) -> None:
        self.closed = True


class MockPtyFactory:
    """PTY factory that records started commands."""

    def __init__(self, on_start: Optional[Callable[[List[str]], None]] = None):
        self.on_start = on_start
        self.commands: List[List[str]] = []
        self.handles: List[MockPtyHandle] = []

    def start(self, cmd: Sequence[str]) -> MockPtyHandle:
        self.commands.append(list(cmd))
        if self.on_start is not None:
            self.on_start(list(cmd))
        handle = MockPtyHandle(cmd)
        self.handles.append(handle)
        return handle


def _fail(cmd: List[str], message: str = "") -> CommandError:
    return CommandError(cmd, 1, stderr=message)


class FakeTmux:
    """
    In-memory stand-in for a tmux server.

    Attributes:
        sessions: Names of live sessions
        panes: Pane content returned by capture-pane, per session
        pane_pids: PID returned by display-message, per session
        fail: Subcommands (e.g. "capture-pane") that should fail
        default_content: Pane content of sessions created by new-session
        spawn_sessions: Whether new-session actually creates the session
    """

    def __init__(self, passthrough: bool = True):
        self.sessions: Set[str] = set()
        self.panes: Dict[str, str] = {}
        self.pane_pids: Dict[str, int] = {}
        self.created: Dict[str, int] = {}
        self.fail: Set[str] = set()
        self.default_content = ""
        self.spawn_sessions = True
        self.sent_keys: List[List[str]] = []
        self.new_session_commands: List[List[str]] = []
        self.real = Executor() if passthrough else None
        self.executor = MockExecutor(run_func=self._run, output_func=self._output)
        self.pty_factory = MockPtyFactory(on_start=self._pty_start)

    def add_session(self, name: str, content: str = "", pid: int = 4242) -> None:
        self.sessions.add(name)
        self.panes[name] = content
        self.pane_pids[name] = pid
        self.created[name] = 1700000000

    def _target(self, cmd: List[str]) -> str:
        for i, part in enumerate(cmd):
            if part.startswith("-t="):
                return part[3:]
            if part in ("-t", "-s") and i + 1 < len(cmd):
                return cmd[i + 1]
        return ""

    def _pty_start(self, cmd: List[str]) -> None:
        sub = cmd[1]
        if sub in self.fail:
            raise _fail(cmd, f"{sub} failed")
        if sub == "new-session":
            self.new_session_commands.append(cmd)
            if self.spawn_sessions:
                self.add_session(self._target(cmd), self.default_content)
        elif sub == "attach-session" and self._target(cmd) not in self.sessions:
            raise _fail(cmd, "can't find session")

    def _tmux(self, cmd: List[str]) -> bytes:
        sub = cmd[1]
        if sub in self.fail:
            raise _fail(cmd, f"{sub} failed")
        target = self._target(cmd)

        if sub in ("ls", "list-sessions"):
            if not self.sessions:
                raise _fail(cmd, "no server running")
            lines = []
            for name in sorted(self.sessions):
                if sub == "ls":
                    lines.append(f"{name}: 1 windows (created Tue Jan  1 00:00:00 2030)")
                else:
                    lines.append(f"{name}|{self.created[name]}|1|0|80|24")
            return ("\n".join(lines) + "\n").encode()

        if target not in self.sessions:
            raise _fail(cmd, f"can't find session: {target}")
        if sub == "kill-session":
            self.sessions.discard(target)
        elif sub == "send-keys":
            self.sent_keys.append(cmd)
        elif sub == "capture-pane":
            return self.panes.get(target, "").encode()
        elif sub == "display-message":
            return f"{self.pane_pids.get(target, 0)}\n".encode()
        return b""

    def _run(self, cmd: List[str]) -> None:
        self._output(cmd)

    def _output(self, cmd: List[str]) -> bytes:
        if cmd[0] == "tmux":
            return self._tmux(cmd)
        if self.real is None:
            return b""
        return self.real.output(cmd)


def git_available() -> bool:
    return shutil.which("git") is not None


def init_git_repo(path: Path) -> Path:
    """Create a repository with one commit at path."""
    path.mkdir(parents=True, exist_ok=True)
    for args in (["init", "-q"],
                 ["config", "user.email", "test@example.com"],
                 ["config", "user.name", "Test User"],
                 ["config", "commit.gpgsign", "false"]):
        subprocess.run(["git"] + args, cwd=path, check=True, capture_output=True)
    (path / "README.md").write_text("# Test Project\n")
    subprocess.run(["git", "add", "."], cwd=path, check=True, capture_output=True)
    subprocess.run(["git", "commit", "-q", "-m", "Initial commit"], cwd=path, check=True, capture_output=True)
    return path


def git(path: Path, *args: str) -> str:
    result = subprocess.run(["git"] + list(args), cwd=path, check=True, capture_output=True, text=True)
    return result.stdout.strip()
