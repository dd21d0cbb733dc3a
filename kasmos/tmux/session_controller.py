"""
Tmux Session Controller Module

Owns exactly one detached tmux session hosting an agent program. Handles
name sanitization, command-line construction (environment sentinel, wave
identity, family-specific flags and initial prompt), startup polling, the
attach PTY, keystroke delivery, pane capture and idle detection.
"""

import logging
import os
import re
import select
import shutil
import sys
import tempfile
import termios
import threading
import time
import tty
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from ..core.errors import CommandError, KasmosError, TmuxError, join_errors
from ..utils.executor import Executor
from .messaging import PermissionChoice, TmuxMessenger
from .monitor import StatusMonitor
from .programs import (
    MAX_INLINE_PROMPT_LEN,
    ProgramFamily,
    PromptFileStyle,
    detect_family,
)
from .pty_factory import PtyFactory, PtyHandle
from .shell import shell_escape_single_quote

logger = logging.getLogger(__name__)

TMUX_PREFIX = "kas_"
LEGACY_PREFIXES = ("klique_", "hivemind_")

# Directory (relative to the work dir) holding prompts too long for the command line
PROMPT_SCRATCH_DIR = ".kasmos"

MANAGED_ENV_VAR = "KASMOS_MANAGED"

# Ctrl-Q ends an interactive attach
DETACH_KEY = b"\x11"

_WHITESPACE_RE = re.compile(r"\s+")

ProgressFunc = Callable[[int, str], None]


def to_kas_tmux_name(title: str) -> str:
    """
    Sanitize a user-visible title into a tmux session name.

    Whitespace is removed, dots become underscores (tmux treats '.' as a
    pane separator) and the orchestration prefix is prepended.
    """
    name = _WHITESPACE_RE.sub("", title)
    name = name.replace(".", "_")
    return f"{TMUX_PREFIX}{name}"


class TmuxSession:
    """
    Controls one tmux session for one agent instance.

    Provides functionality for:
    - Starting a detached session running the agent program
    - Reattaching to a session that survived a restart
    - Sending keys and permission answers
    - Capturing pane content and reporting idle/busy transitions
    - Closing the session and its prompt scratch file
    """

    # Session existence polling after new-session
    SESSION_START_TIMEOUT = 2.0
    SESSION_POLL_INITIAL = 0.005
    SESSION_POLL_MAX = 0.05

    # Program-ready polling after the session is up
    READY_POLL_INITIAL = 0.1
    READY_POLL_GROWTH = 1.2
    READY_POLL_MAX = 1.0

    def __init__(self,
                 name: str,
                 program: str,
                 skip_permissions: bool = False,
                 pty_factory: Optional[PtyFactory] = None,
                 executor: Optional[Executor] = None):
        """
        Initialize tmux session.

        Args:
            name: User-visible title; sanitized into the tmux session name
            program: Agent command line to run inside the session
            skip_permissions: Append --dangerously-skip-permissions for claude
            pty_factory: PTY allocator (defaults to real PTYs)
            executor: Command executor (defaults to subprocess)
        """
        self.sanitized_name = to_kas_tmux_name(name)
        self.program = program
        self.skip_permissions = skip_permissions
        self.pty_factory = pty_factory or PtyFactory()
        self.executor = executor or Executor()

        self.family: Optional[ProgramFamily] = detect_family(program)
        self.agent_type = ""
        self.initial_prompt = ""
        self.task_number = 0
        self.wave_number = 0
        self.peer_count = 0
        self.progress_func: Optional[ProgressFunc] = None

        # True once start() has created the server-side session itself
        self.spawned = False
        self.prompt_file: Optional[Path] = None
        self._pty: Optional[PtyHandle] = None
        self.monitor = StatusMonitor(self.family)
        self.messenger = TmuxMessenger(self.executor, self.sanitized_name)

    @classmethod
    def from_existing(cls,
                      session_name: str,
                      program: str,
                      pty_factory: Optional[PtyFactory] = None,
                      executor: Optional[Executor] = None) -> "TmuxSession":
        """Bind to a server-side session by its raw (already sanitized) name."""
        session = cls("", program, pty_factory=pty_factory, executor=executor)
        session.sanitized_name = session_name
        session.messenger = TmuxMessenger(session.executor, session_name)
        return session

    # Configuration

    def set_agent_type(self, agent_type: str) -> None:
        self.agent_type = agent_type or ""

    def set_task_env(self, task_number: int, wave_number: int, peer_count: int) -> None:
        """Expose wave identity to the child as KASMOS_TASK/WAVE/PEERS."""
        self.task_number = task_number
        self.wave_number = wave_number
        self.peer_count = peer_count

    def set_initial_prompt(self, prompt: str) -> None:
        self.initial_prompt = prompt or ""

    def set_progress_func(self, func: Optional[ProgressFunc]) -> None:
        self.progress_func = func

    def _report_progress(self, stage: int, description: str) -> None:
        if self.progress_func is not None:
            self.progress_func(stage, description)

    # Command construction

    def build_program_command(self, work_dir: str) -> str:
        """
        Build the shell command line tmux runs inside the new session.

        A prompt longer than MAX_INLINE_PROMPT_LEN is written to a scratch
        file under <work_dir>/.kasmos/ which Close removes.

        Args:
            work_dir: Directory the session starts in

        Returns:
            str: Environment assignments followed by the program and its flags
        """
        program = self.program
        if self.skip_permissions and self.family is not None and self.family.supports_skip_permissions:
            program += " --dangerously-skip-permissions"

        if self.agent_type and "--agent" not in program:
            program += f" --agent {self.agent_type}"

        program += self._prompt_arguments(work_dir)

        env = [f"{MANAGED_ENV_VAR}=1"]
        if self.task_number > 0:
            env.extend([
                f"KASMOS_TASK={self.task_number}",
                f"KASMOS_WAVE={self.wave_number}",
                f"KASMOS_PEERS={self.peer_count}",
            ])
        return " ".join(env + [program])

    def _prompt_arguments(self, work_dir: str) -> str:
        family = self.family
        if not self.initial_prompt or family is None or not family.inline_prompt:
            return ""

        if len(self.initial_prompt) <= MAX_INLINE_PROMPT_LEN:
            escaped = shell_escape_single_quote(self.initial_prompt)
            if family.inline_flag:
                return f" {family.inline_flag} {escaped}"
            return f" {escaped}"

        rel_path = self._write_prompt_file(work_dir)
        if family.prompt_file_style == PromptFileStyle.AT_FILE:
            return f" @{rel_path}"
        # No file-reference syntax: let the shell read the file
        return f' {family.inline_flag} "$(cat {shell_escape_single_quote(rel_path)})"'

    def _write_prompt_file(self, work_dir: str) -> str:
        scratch_dir = Path(work_dir) / PROMPT_SCRATCH_DIR
        try:
            scratch_dir.mkdir(parents=True, exist_ok=True)
            # Ignored by git so a pause commit (add -A) never picks prompts up
            ignore_file = scratch_dir / ".gitignore"
            if not ignore_file.exists():
                ignore_file.write_text("*\n")
            fd, path = tempfile.mkstemp(prefix="prompt-", suffix=".md", dir=str(scratch_dir))
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(self.initial_prompt)
        except OSError as e:
            raise TmuxError(f"failed to write prompt file: {e}") from e

        self.prompt_file = Path(path)
        logger.info("wrote %d-char prompt to %s", len(self.initial_prompt), path)
        return f"{PROMPT_SCRATCH_DIR}/{self.prompt_file.name}"

    # Lifecycle

    def start(self, work_dir: str) -> None:
        """
        Create the detached session and attach a PTY to it.

        An existing session with the same name is reattached instead of
        killed, since it may still host a live agent from before a crash.
        Afterwards `spawned` tells whether this call created the session.

        Args:
            work_dir: Working directory for the session

        Raises:
            TmuxError: Session could not be created, attached or confirmed
        """
        self.spawned = False
        if self.does_session_exist():
            logger.info("tmux session %s already exists, reattaching", self.sanitized_name)
            self.restore()
            return

        program_line = self.build_program_command(work_dir)
        self._report_progress(1, "Creating tmux session...")

        cmd = ["tmux", "new-session", "-d", "-s", self.sanitized_name, "-c", str(work_dir), program_line]
        try:
            spawn = self.pty_factory.start(cmd)
        except (OSError, KasmosError) as e:
            cleanup_error = None
            if self.does_session_exist():
                try:
                    self.executor.run(["tmux", "kill-session", "-t", self.sanitized_name])
                except CommandError as ce:
                    cleanup_error = ce
            self._remove_prompt_file()
            message = f"error starting tmux session: {e}"
            if cleanup_error is not None:
                message += f" (cleanup error: {cleanup_error})"
            raise TmuxError(message) from e

        self.spawned = True
        self._report_progress(2, "Waiting for session to start...")
        deadline = time.monotonic() + self.SESSION_START_TIMEOUT
        sleep_duration = self.SESSION_POLL_INITIAL
        while not self.does_session_exist():
            if time.monotonic() >= deadline:
                spawn.close()
                message = f"timed out waiting for tmux session {self.sanitized_name}"
                try:
                    self.close()
                except KasmosError as ce:
                    message += f" (cleanup error: {ce})"
                raise TmuxError(message)
            time.sleep(sleep_duration)
            sleep_duration = min(sleep_duration * 2, self.SESSION_POLL_MAX)
        spawn.close()
        # Delivered; a later restart of this session must not replay it
        self.initial_prompt = ""

        self._report_progress(3, "Configuring session...")
        self._apply_session_options()

        try:
            self.restore()
        except KasmosError as e:
            message = f"error restoring tmux session: {e}"
            try:
                self.close()
            except KasmosError as ce:
                message += f" (cleanup error: {ce})"
            raise TmuxError(message) from e

        if self.family is not None:
            self._report_progress(4, "Waiting for program to start...")
            self._wait_for_program_ready(self.family)

    def _apply_session_options(self) -> None:
        options = [
            ["tmux", "set-option", "-t", self.sanitized_name, "history-limit", "10000"],
            ["tmux", "set-option", "-t", self.sanitized_name, "mouse", "on"],
            ["tmux", "set-environment", "-t", self.sanitized_name, MANAGED_ENV_VAR, "1"],
        ]
        for option in options:
            try:
                self.executor.run(option)
            except CommandError as e:
                logger.warning("failed to set %s for session %s: %s",
                               option[4], self.sanitized_name, e)

    def _wait_for_program_ready(self, family: ProgramFamily) -> None:
        started = time.monotonic()
        sleep_duration = self.READY_POLL_INITIAL
        while time.monotonic() - started < family.ready_timeout:
            time.sleep(sleep_duration)
            try:
                content = self.capture_pane_content()
            except TmuxError:
                content = ""
            if family.is_ready(content):
                if family.ready_keys:
                    try:
                        self.messenger.send_key_names(*family.ready_keys)
                    except CommandError as e:
                        logger.error("could not acknowledge %s startup screen: %s", family.name, e)
                return
            sleep_duration = min(sleep_duration * self.READY_POLL_GROWTH, self.READY_POLL_MAX)
        logger.warning("%s in %s did not show its ready marker within %.0fs",
                       family.name, self.sanitized_name, family.ready_timeout)

    def restore(self) -> None:
        """Attach a fresh PTY to the existing session and reset the monitor."""
        if self._pty is not None:
            self._close_pty_quietly()
        try:
            self._pty = self.pty_factory.start(["tmux", "attach-session", "-t", self.sanitized_name])
        except (OSError, KasmosError) as e:
            raise TmuxError(f"error opening PTY: {e}") from e
        self.monitor = StatusMonitor(self.family)

    def close(self) -> None:
        """
        Close the PTY, kill the session and remove the prompt scratch file.

        Every step is attempted; failures are joined into one error.
        """
        errors: List[Exception] = []

        if self._pty is not None:
            try:
                self._pty.close()
            except OSError as e:
                errors.append(TmuxError(f"error closing PTY: {e}"))
            self._pty = None

        try:
            self.executor.run(["tmux", "kill-session", "-t", self.sanitized_name])
        except CommandError as e:
            errors.append(TmuxError(f"error killing tmux session: {e}"))

        try:
            self._remove_prompt_file()
        except OSError as e:
            errors.append(TmuxError(f"error removing prompt file: {e}"))

        error = join_errors(errors)
        if error is not None:
            raise error

    def _remove_prompt_file(self) -> None:
        if self.prompt_file is None:
            return
        try:
            self.prompt_file.unlink()
        except FileNotFoundError:
            pass
        self.prompt_file = None

    def _close_pty_quietly(self) -> None:
        try:
            self._pty.close()
        except OSError as e:
            logger.warning("error closing PTY for %s: %s", self.sanitized_name, e)
        self._pty = None

    def does_session_exist(self) -> bool:
        # -t= forces an exact match; plain -t does prefix matching
        try:
            self.executor.run(["tmux", "has-session", f"-t={self.sanitized_name}"])
            return True
        except CommandError:
            return False

    # Attach / detach

    def attach(self) -> threading.Event:
        """
        Connect the developer's terminal to the session.

        Output of the session PTY is copied to stdout and keystrokes to the
        PTY until Ctrl-Q is pressed.

        Returns:
            threading.Event: Set once the terminal has been detached
        """
        if self._pty is None:
            raise TmuxError(f"session {self.sanitized_name} has no PTY, restore it first")

        detached = threading.Event()
        pty_handle = self._pty
        stdin_fd = sys.stdin.fileno()
        saved_attrs = termios.tcgetattr(stdin_fd)

        size = shutil.get_terminal_size()
        try:
            pty_handle.resize(size.lines, size.columns)
        except OSError as e:
            logger.warning("failed to resize PTY for %s: %s", self.sanitized_name, e)

        tty.setraw(stdin_fd)

        def copy_output():
            while not detached.is_set():
                try:
                    ready, _, _ = select.select([pty_handle], [], [], 0.1)
                    if ready:
                        data = pty_handle.read()
                        if not data:
                            break
                        sys.stdout.buffer.write(data)
                        sys.stdout.buffer.flush()
                except (OSError, ValueError):
                    break

        def copy_input():
            try:
                while True:
                    ready, _, _ = select.select([stdin_fd], [], [], 0.1)
                    if not ready:
                        continue
                    data = os.read(stdin_fd, 1024)
                    if not data or DETACH_KEY in data:
                        break
                    pty_handle.write(data)
            except OSError as e:
                logger.warning("attach input loop for %s ended: %s", self.sanitized_name, e)
            finally:
                termios.tcsetattr(stdin_fd, termios.TCSADRAIN, saved_attrs)
                try:
                    self.detach()
                except KasmosError as e:
                    logger.error("error detaching from %s: %s", self.sanitized_name, e)
                detached.set()

        threading.Thread(target=copy_output, daemon=True).start()
        threading.Thread(target=copy_input, daemon=True).start()
        return detached

    def detach(self) -> None:
        """End an interactive attach and bind a fresh background PTY."""
        if self._pty is not None:
            try:
                self._pty.close()
            except OSError as e:
                raise TmuxError(f"error closing attach PTY: {e}") from e
            self._pty = None
        self.restore()

    def detach_safely(self) -> None:
        """Drop the PTY without touching the session or its scrollback."""
        if self._pty is None:
            return
        try:
            self._pty.close()
        except OSError as e:
            raise TmuxError(f"error closing PTY: {e}") from e
        finally:
            self._pty = None

    def set_detached_size(self, width: int, height: int) -> None:
        """Resize the background PTY so captures match the preview pane."""
        if self._pty is None:
            return
        try:
            self._pty.resize(height, width)
        except OSError as e:
            raise TmuxError(f"error resizing PTY: {e}") from e

    def get_pty(self) -> Optional[PtyHandle]:
        return self._pty

    # Keys

    def tap_enter(self) -> None:
        self.messenger.tap_enter()

    def tap_right(self) -> None:
        self.messenger.tap_right()

    def tap_d_and_enter(self) -> None:
        self.messenger.tap_d_and_enter()

    def send_keys(self, keys: str) -> None:
        self.messenger.send_keys(keys)

    def send_permission_response(self, choice: PermissionChoice) -> None:
        self.messenger.send_permission_response(choice)

    # Capture and monitoring

    def capture_pane_content(self) -> str:
        """Capture the visible pane, preserving escape sequences."""
        try:
            output = self.executor.output(
                ["tmux", "capture-pane", "-p", "-e", "-J", "-t", self.sanitized_name])
        except CommandError as e:
            raise TmuxError(f"error capturing pane content: {e}") from e
        return output.decode("utf-8", errors="replace")

    def capture_pane_content_with_options(self, start: str, end: str) -> str:
        """
        Capture a line range of the pane history.

        Args:
            start: First line ("-" for the start of history)
            end: Last line ("-" for the end of the visible pane)
        """
        try:
            output = self.executor.output(
                ["tmux", "capture-pane", "-p", "-e", "-J", "-S", start, "-E", end,
                 "-t", self.sanitized_name])
        except CommandError as e:
            raise TmuxError(f"failed to capture tmux pane content with options: {e}") from e
        return output.decode("utf-8", errors="replace")

    def has_updated(self) -> Tuple[bool, bool]:
        """
        Check whether the pane changed since the last tick.

        Returns:
            Tuple[bool, bool]: (updated, has_prompt)
        """
        updated, has_prompt, _, _ = self.has_updated_with_content()
        return updated, has_prompt

    def has_updated_with_content(self) -> Tuple[bool, bool, str, bool]:
        """
        Same as has_updated, also returning the captured content.

        Returns:
            Tuple: (updated, has_prompt, raw_content, captured)
        """
        try:
            content = self.capture_pane_content()
        except TmuxError as e:
            self.monitor.record_failure(self.sanitized_name, e)
            return False, False, "", False

        updated, has_prompt = self.monitor.observe(content)
        return updated, has_prompt, content, True

    def get_pane_pid(self) -> int:
        """PID of the process running in the session's pane."""
        try:
            output = self.executor.output(
                ["tmux", "display-message", "-p", "-t", self.sanitized_name, "#{pane_pid}"])
        except CommandError as e:
            raise TmuxError(f"failed to get pane PID: {e}") from e
        try:
            return int(output.decode("utf-8", errors="replace").strip())
        except ValueError as e:
            raise TmuxError(f"failed to parse pane PID: {e}") from e
