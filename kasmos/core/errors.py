"""
Error Types Module

Exception hierarchy shared by the instance lifecycle, the tmux layer and the
git worktree layer.
"""

from typing import List, Optional, Sequence


class KasmosError(Exception):
    """Base class for all kasmos errors."""


class ValidationError(KasmosError):
    """Invalid identity: empty title, bad branch name, duplicate title."""


class PreconditionError(KasmosError):
    """Operation invoked in a state that does not allow it."""


class TmuxError(KasmosError):
    """Failure inside a tmux session operation."""


class WorktreeError(KasmosError):
    """Failure inside a git worktree operation."""


class CommandError(KasmosError):
    """
    An external command exited non-zero or could not be spawned.

    Attributes:
        cmd: The argv that was executed
        returncode: Exit status, or None when the process never started
        stdout: Captured standard output (may be empty)
        stderr: Captured standard error (may be empty)
    """

    def __init__(self,
                 cmd: Sequence[str],
                 returncode: Optional[int],
                 stdout: str = "",
                 stderr: str = "",
                 reason: str = ""):
        self.cmd = list(cmd)
        self.returncode = returncode
        self.stdout = stdout or ""
        self.stderr = stderr or ""
        self.reason = reason

        name = " ".join(self.cmd[:2]) if self.cmd else "<empty>"
        if returncode is None:
            message = f"{name}: failed to start: {reason}"
        else:
            message = f"{name}: exit status {returncode}"
        detail = self.stderr.strip() or self.stdout.strip()
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class JoinedError(KasmosError):
    """Several independent failures from a multi-step operation."""

    def __init__(self, errors: Sequence[BaseException]):
        self.errors: List[BaseException] = list(errors)
        super().__init__("; ".join(str(e) for e in self.errors))


def join_errors(errors: Sequence[Optional[BaseException]]) -> Optional[BaseException]:
    """
    Collapse a list of errors into one.

    Returns None when nothing failed, the error itself when exactly one step
    failed, and a JoinedError otherwise.
    """
    errors = [e for e in errors if e is not None]
    if not errors:
        return None
    if len(errors) == 1:
        return errors[0]
    return JoinedError(errors)
