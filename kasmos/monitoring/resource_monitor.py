"""
Resource Monitor Module

Resolves the agent process behind a tmux pane and reports its CPU and
memory usage. The POSIX pgrep/ps inspector is the default; the psutil
inspector works anywhere psutil does.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional

import psutil

from ..core.errors import CommandError, KasmosError
from ..utils.executor import Executor

logger = logging.getLogger(__name__)


class ResourceError(KasmosError):
    """Process usage could not be read."""


@dataclass
class ResourceUsage:
    """CPU and memory of one agent process."""
    pid: int
    cpu_percent: float
    mem_mb: float

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return asdict(self)


class ProcessInspector(ABC):
    """Reads usage of the process running in a pane."""

    @abstractmethod
    def usage(self, pane_pid: int) -> ResourceUsage:
        """
        Usage of the agent behind a pane.

        The pane process is normally a shell; the agent is its first child
        when there is one.

        Args:
            pane_pid: PID reported by tmux for the pane

        Raises:
            ResourceError: The process could not be inspected
        """


class PgrepProcessInspector(ProcessInspector):
    """Uses `pgrep -P` and `ps -o %cpu=,rss=` through the command executor."""

    def __init__(self, executor: Optional[Executor] = None):
        self.executor = executor or Executor()

    def _agent_pid(self, pane_pid: int) -> int:
        try:
            output = self.executor.output(["pgrep", "-P", str(pane_pid)])
        except CommandError:
            # No children: the pane process is the agent itself
            return pane_pid
        for line in output.decode("utf-8", errors="replace").splitlines():
            line = line.strip()
            if line.isdigit():
                return int(line)
        return pane_pid

    def usage(self, pane_pid: int) -> ResourceUsage:
        pid = self._agent_pid(pane_pid)
        try:
            output = self.executor.output(["ps", "-o", "%cpu=,rss=", "-p", str(pid)])
        except CommandError as e:
            raise ResourceError(f"failed to read usage of pid {pid}: {e}") from e

        fields = output.decode("utf-8", errors="replace").split()
        if len(fields) < 2:
            raise ResourceError(f"unexpected ps output for pid {pid}: {output!r}")
        try:
            cpu = float(fields[0])
            rss_kb = float(fields[1])
        except ValueError as e:
            raise ResourceError(f"failed to parse ps output for pid {pid}: {e}") from e
        return ResourceUsage(pid=pid, cpu_percent=cpu, mem_mb=rss_kb / 1024.0)


class PsutilProcessInspector(ProcessInspector):
    """Portable inspector backed by psutil."""

    def __init__(self):
        # Agent process per pane PID; psutil measures CPU between calls on
        # the same Process object
        self._processes: Dict[int, psutil.Process] = {}

    def _prune(self) -> None:
        """Forget panes whose agent has exited (killed or finished instances)."""
        for pane_pid, process in list(self._processes.items()):
            if not process.is_running():
                del self._processes[pane_pid]

    def usage(self, pane_pid: int) -> ResourceUsage:
        self._prune()
        agent_pid = pane_pid
        try:
            pane = psutil.Process(pane_pid)
            children = pane.children()
            agent_pid = children[0].pid if children else pane_pid
            process = self._processes.get(pane_pid)
            if process is None or process.pid != agent_pid:
                process = psutil.Process(agent_pid)
                self._processes[pane_pid] = process
            cpu = process.cpu_percent(interval=None)
            mem_mb = process.memory_info().rss / (1024.0 * 1024.0)
        except (psutil.NoSuchProcess, psutil.AccessDenied) as e:
            self._processes.pop(pane_pid, None)
            raise ResourceError(f"failed to inspect pid {agent_pid}: {e}") from e
        return ResourceUsage(pid=agent_pid, cpu_percent=cpu, mem_mb=mem_mb)


def create_process_inspector(backend: str = "pgrep", executor: Optional[Executor] = None) -> ProcessInspector:
    """
    Build the inspector named by the resource_backend setting.

    Raises:
        ValueError: Unknown backend name
    """
    if backend == "pgrep":
        return PgrepProcessInspector(executor)
    if backend == "psutil":
        return PsutilProcessInspector()
    raise ValueError(f"unknown resource backend: {backend}")
