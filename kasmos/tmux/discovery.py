"""
Session Discovery Module

Enumerates tmux sessions carrying the orchestration prefix, classifies them
as managed or orphaned against the in-memory model, and bulk-kills kasmos
sessions (including ones left by the legacy prefixes).
"""

import logging
import re
from dataclasses import dataclass, asdict
from typing import Any, Dict, Iterable, List, Optional

from ..core.errors import CommandError, TmuxError
from ..utils.executor import Executor
from .session_controller import LEGACY_PREFIXES, TMUX_PREFIX

logger = logging.getLogger(__name__)

LIST_FORMAT = "#{session_name}|#{session_created}|#{session_windows}|#{session_attached}|#{window_width}|#{window_height}"

_CLEANUP_RE = re.compile(
    r"(?:" + "|".join(re.escape(p) for p in (TMUX_PREFIX,) + LEGACY_PREFIXES) + r").*:"
)


@dataclass
class SessionInfo:
    """One kasmos-prefixed tmux session as reported by the server."""
    name: str
    created: int
    windows: int
    attached: bool
    width: int
    height: int
    managed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return asdict(self)


def _is_no_server_error(error: CommandError) -> bool:
    # tmux exits 1 when no server is running or there are no sessions
    return error.returncode == 1


def _to_int(value: str) -> int:
    try:
        return int(value)
    except ValueError:
        return 0


def _parse_session_line(line: str) -> Optional[SessionInfo]:
    parts = line.split("|")
    if len(parts) < 6:
        return None
    return SessionInfo(
        name=parts[0],
        created=_to_int(parts[1]),
        windows=_to_int(parts[2]),
        attached=parts[3].strip() not in ("", "0"),
        width=_to_int(parts[4]),
        height=_to_int(parts[5]),
    )


def discover_all(executor: Executor, known_names: Iterable[str]) -> List[SessionInfo]:
    """
    List every kasmos-prefixed session.

    Args:
        executor: Command executor
        known_names: Sanitized session names owned by the in-memory model

    Returns:
        List[SessionInfo]: Prefixed sessions, each tagged managed or not

    Raises:
        TmuxError: tmux failed for a reason other than "no server"
    """
    known = set(known_names)
    try:
        output = executor.output(["tmux", "list-sessions", "-F", LIST_FORMAT])
    except CommandError as e:
        if _is_no_server_error(e):
            return []
        raise TmuxError(f"failed to list tmux sessions: {e}") from e

    sessions = []
    for line in output.decode("utf-8", errors="replace").splitlines():
        info = _parse_session_line(line.strip())
        if info is None or not info.name.startswith(TMUX_PREFIX):
            continue
        info.managed = info.name in known
        sessions.append(info)
    return sessions


def discover_orphans(executor: Executor, known_names: Iterable[str]) -> List[SessionInfo]:
    """Prefixed sessions the in-memory model does not know about."""
    return [s for s in discover_all(executor, known_names) if not s.managed]


def count_kas_sessions(executor: Executor) -> int:
    """Number of sessions carrying the orchestration prefix."""
    try:
        output = executor.output(["tmux", "ls"])
    except CommandError as e:
        if _is_no_server_error(e):
            return 0
        raise TmuxError(f"failed to list tmux sessions: {e}") from e

    count = 0
    for line in output.decode("utf-8", errors="replace").splitlines():
        name = line.split(":", 1)[0]
        if name.startswith(TMUX_PREFIX):
            count += 1
    return count


def cleanup_sessions(executor: Executor) -> List[str]:
    """
    Kill every kasmos session, including legacy-prefixed ones.

    Returns:
        List[str]: Names of the sessions that were killed

    Raises:
        TmuxError: Listing or killing a session failed
    """
    try:
        output = executor.output(["tmux", "ls"])
    except CommandError as e:
        if _is_no_server_error(e):
            return []
        raise TmuxError(f"failed to list tmux sessions: {e}") from e

    killed = []
    for line in output.decode("utf-8", errors="replace").splitlines():
        match = _CLEANUP_RE.match(line)
        if not match:
            continue
        name = line.split(":", 1)[0]
        logger.info("cleaning up session: %s", name)
        try:
            executor.run(["tmux", "kill-session", "-t", name])
        except CommandError as e:
            raise TmuxError(f"failed to kill tmux session {name}: {e}") from e
        killed.append(name)
    return killed
