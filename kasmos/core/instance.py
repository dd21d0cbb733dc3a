"""
Instance Module

An Instance binds one agent program running in a tmux session to one git
worktree on a dedicated branch, and tracks what the UI shows about it:
status, cached pane content, diff stats and resource usage.

Lifecycle operations (start variants, pause, resume, kill, adopt) compose
the tmux and git layers in a fixed order with best-effort rollback.
collect_metadata() is the only method safe to call from a worker thread; its
result is applied back on the caller's thread with apply_metadata().
"""

import logging
import os
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional, Tuple

from ..git.worktree_manager import DiffStats, GitWorktree
from ..monitoring.resource_monitor import PgrepProcessInspector, ProcessInspector, ResourceError
from ..tmux.messaging import PermissionChoice
from ..tmux.permission import PermissionPrompt, parse_permission_prompt
from ..tmux.programs import program_supports_cli_prompt
from ..tmux.pty_factory import PtyFactory
from ..tmux.session_controller import TmuxSession
from ..utils.executor import Executor
from ..utils.system_utils import SystemUtils
from .errors import KasmosError, PreconditionError, TmuxError, ValidationError, join_errors

logger = logging.getLogger(__name__)

# Pause between typing a prompt and pressing Enter, so the Enter is not
# swallowed as a newline inside the prompt
PROMPT_ENTER_DELAY = 0.1


class InstanceStatus(Enum):
    """Instance status as shown in the UI."""
    RUNNING = "running"
    READY = "ready"
    LOADING = "loading"
    PAUSED = "paused"


class AgentType(Enum):
    """Role hint passed to the agent program as --agent <type>."""
    UNSPECIFIED = ""
    PLANNER = "planner"
    CODER = "coder"
    REVIEWER = "reviewer"


@dataclass
class InstanceOptions:
    """Identity and agent binding of a new instance."""
    title: str
    path: str
    program: str
    agent_type: AgentType = AgentType.UNSPECIFIED
    skip_permissions: bool = False
    auto_yes: bool = False
    plan_file: str = ""
    task_number: int = 0
    wave_number: int = 0
    peer_count: int = 0
    prompt: str = ""


@dataclass
class InstanceMetadata:
    """
    Result of one per-tick poll of an instance.

    Plain values only, so it can be produced on a worker thread and applied
    on the caller's thread.
    """
    content: str = ""
    content_captured: bool = False
    updated: bool = False
    has_prompt: bool = False
    diff_stats: Optional[DiffStats] = None
    cpu_percent: float = 0.0
    mem_mb: float = 0.0
    resource_usage_valid: bool = False
    tmux_alive: bool = False
    permission_prompt: Optional[PermissionPrompt] = None


class Instance:
    """
    Composite lifecycle unit for one agent.

    Features:
    - Start in a fresh worktree, on the main checkout, on a pinned branch,
      or in a worktree shared with peers
    - Pause (commit, detach, drop checkout) and resume
    - Kill with joined cleanup errors
    - Adoption of orphaned tmux sessions
    - Per-tick metadata collection and application
    """

    def __init__(self,
                 options: InstanceOptions,
                 executor: Optional[Executor] = None,
                 pty_factory: Optional[PtyFactory] = None,
                 process_inspector: Optional[ProcessInspector] = None,
                 branch_prefix: str = "",
                 clipboard: Optional[Callable[[str], bool]] = None):
        """
        Initialize an instance. Nothing external is touched until a start call.

        Args:
            options: Identity and agent binding
            executor: Command executor shared with the tmux and git layers
            pty_factory: PTY allocator for the tmux session
            process_inspector: Resource usage reader (defaults to pgrep/ps)
            branch_prefix: Prefix for branches derived from the title
            clipboard: Callable that copies text to the clipboard

        Raises:
            ValidationError: Title is empty
        """
        if not options.title:
            raise ValidationError("instance title cannot be empty")

        agent_type = options.agent_type
        if not isinstance(agent_type, AgentType):
            try:
                agent_type = AgentType(agent_type or "")
            except ValueError as e:
                raise ValidationError(f"unknown agent type: {options.agent_type}") from e

        self.title = options.title
        self.path = os.path.abspath(options.path)
        self.program = options.program
        self.agent_type = agent_type
        self.skip_permissions = options.skip_permissions
        self.auto_yes = options.auto_yes
        self.plan_file = options.plan_file
        self.task_number = options.task_number
        self.wave_number = options.wave_number
        self.peer_count = options.peer_count
        self.queued_prompt = options.prompt

        self.branch = ""
        self.status = InstanceStatus.LOADING
        self.implementation_complete = False
        self.prompt_detected = False
        self.permission_prompt: Optional[PermissionPrompt] = None

        self.cached_content = ""
        self.cached_content_set = False
        self.diff_stats: Optional[DiffStats] = None
        self.cpu_percent = 0.0
        self.mem_mb = 0.0

        self.loading_stage = 0
        self.loading_total = 0
        self.loading_message = ""

        self.executor = executor or Executor()
        self.pty_factory = pty_factory or PtyFactory()
        self.process_inspector = process_inspector or PgrepProcessInspector(self.executor)
        self.branch_prefix = branch_prefix
        self.clipboard = clipboard or SystemUtils.copy_to_clipboard

        self._started = False
        self._shared_worktree = False
        self._tmux_session: Optional[TmuxSession] = None
        self._git_worktree: Optional[GitWorktree] = None

    def __repr__(self) -> str:
        return f"Instance(title={self.title!r}, status={self.status.value}, branch={self.branch!r})"

    # State accessors

    @property
    def started(self) -> bool:
        return self._started

    @property
    def paused(self) -> bool:
        return self.status == InstanceStatus.PAUSED

    @property
    def shared_worktree(self) -> bool:
        return self._shared_worktree

    @property
    def tmux_session(self) -> Optional[TmuxSession]:
        return self._tmux_session

    @property
    def git_worktree(self) -> Optional[GitWorktree]:
        return self._git_worktree

    def get_worktree_path(self) -> str:
        """Directory the agent works in: the worktree, or the repo for main-branch instances."""
        if self._git_worktree is not None:
            return self._git_worktree.get_worktree_path()
        return self.path

    def set_status(self, status: InstanceStatus) -> None:
        if status != self.status:
            logger.debug("%s: %s -> %s", self.title, self.status.value, status.value)
        self.status = status

    def set_loading_progress(self, stage: int, message: str) -> None:
        self.loading_stage = stage
        self.loading_message = message

    # Test seams

    def set_tmux_session(self, session: TmuxSession) -> None:
        self._tmux_session = session

    def set_git_worktree(self, worktree: Optional[GitWorktree], shared: bool = False) -> None:
        self._git_worktree = worktree
        self._shared_worktree = shared

    def mark_started(self) -> None:
        self._started = True

    def set_diff_stats(self, stats: Optional[DiffStats]) -> None:
        self.diff_stats = stats

    # Start variants

    def _prepare_tmux_session(self, stage_offset: int) -> TmuxSession:
        if self._tmux_session is None:
            self._tmux_session = TmuxSession(self.title, self.program, self.skip_permissions,
                                             pty_factory=self.pty_factory, executor=self.executor)
        session = self._tmux_session
        session.set_agent_type(self.agent_type.value)
        if self.task_number > 0:
            session.set_task_env(self.task_number, self.wave_number, self.peer_count)
        session.set_progress_func(
            lambda stage, description: self.set_loading_progress(stage_offset + stage, description))
        self._transfer_prompt_to_cli()
        return session

    def _transfer_prompt_to_cli(self) -> None:
        # Programs without CLI prompt support keep the prompt queued for send-keys
        if self.queued_prompt and program_supports_cli_prompt(self.program):
            self._tmux_session.set_initial_prompt(self.queued_prompt)
            self.queued_prompt = ""

    def _begin_loading(self, total: int) -> None:
        self.loading_total = total
        self.loading_stage = 0
        self.loading_message = "Initializing..."
        self.set_loading_progress(1, "Preparing session...")

    def _rollback_start(self, error: Exception, close_session: bool = True) -> KasmosError:
        """
        Release what a failed start left behind and fold cleanup errors in.

        Only a session this start spawned is closed, and only when
        close_session is set (reloads clear it). A session that was already
        running may host a live agent.
        """
        message = str(error)
        session = self._tmux_session
        if close_session and session is not None and session.spawned and session.does_session_exist():
            try:
                session.close()
            except KasmosError as e:
                message = f"{message} (cleanup error: {e})"
        logger.error("%s: start failed: %s", self.title, message)
        wrapped = KasmosError(message)
        wrapped.__cause__ = error
        return wrapped

    def _start_session_in_worktree(self, session: TmuxSession) -> None:
        """Start tmux in the worktree; on failure clean the worktree up."""
        try:
            session.start(self._git_worktree.get_worktree_path())
        except KasmosError as e:
            message = f"failed to start new session: {e}"
            try:
                self._git_worktree.cleanup()
            except KasmosError as ce:
                message = f"{message} (cleanup error: {ce})"
            raise TmuxError(message) from e

    def start(self, first_time_setup: bool) -> None:
        """
        Start the instance.

        Args:
            first_time_setup: True for a new instance (create worktree and
                session); False for one restored from storage (reattach)

        Raises:
            ValidationError: Title is empty
            KasmosError: Any step failed; partial state has been released
        """
        if not self.title:
            raise ValidationError("instance title cannot be empty")

        self._begin_loading(8 if first_time_setup else 6)
        session = self._prepare_tmux_session(3 if first_time_setup else 1)

        if first_time_setup:
            self.set_loading_progress(2, "Creating git worktree...")
            try:
                worktree, branch = GitWorktree.new(self.path, self.title, self.branch_prefix,
                                                   executor=self.executor)
            except KasmosError as e:
                raise ValidationError(f"failed to create git worktree: {e}") from e
            self._git_worktree = worktree
            self.branch = branch

        try:
            if not first_time_setup:
                if self.status == InstanceStatus.PAUSED:
                    # Nothing to reattach; resume() brings it back
                    self._started = True
                    return
                self.set_loading_progress(2, "Restoring session...")
                if not session.does_session_exist():
                    raise TmuxError(f"tmux session {session.sanitized_name} no longer exists")
                session.restore()
            else:
                self.set_loading_progress(3, "Setting up git worktree...")
                self._git_worktree.setup()
                self.set_loading_progress(4, "Starting tmux session...")
                self._start_session_in_worktree(session)
        except KasmosError as e:
            raise self._rollback_start(e, close_session=first_time_setup) from e

        self._started = True
        self.set_loading_progress(self.loading_total, "Ready")
        self.set_status(InstanceStatus.RUNNING)

    def start_on_main_branch(self) -> None:
        """Start in the repository root without a worktree (planner on main)."""
        if not self.title:
            raise ValidationError("instance title cannot be empty")

        self._begin_loading(5)
        session = self._prepare_tmux_session(1)
        try:
            session.start(self.path)
        except KasmosError as e:
            raise self._rollback_start(
                TmuxError(f"failed to start session on main branch: {e}")) from e

        self._started = True
        self.set_loading_progress(self.loading_total, "Ready")
        self.set_status(InstanceStatus.RUNNING)

    def start_on_branch(self, branch: str) -> None:
        """Start in a worktree checked out to an explicit branch, creating it if needed."""
        if not self.title:
            raise ValidationError("instance title cannot be empty")
        if not branch:
            raise ValidationError("branch name cannot be empty")

        self._begin_loading(8)
        session = self._prepare_tmux_session(3)

        self.set_loading_progress(2, "Creating git worktree...")
        self._git_worktree = GitWorktree.on_branch(self.path, self.title, branch, executor=self.executor)
        self.branch = branch

        try:
            self.set_loading_progress(3, "Setting up git worktree...")
            self._git_worktree.setup()
            self.set_loading_progress(4, "Starting tmux session...")
            self._start_session_in_worktree(session)
        except KasmosError as e:
            raise self._rollback_start(e) from e

        self._started = True
        self.set_loading_progress(self.loading_total, "Ready")
        self.set_status(InstanceStatus.RUNNING)

    def start_in_shared_worktree(self, worktree: GitWorktree, branch: str) -> None:
        """
        Start in a worktree owned by a peer group.

        The instance never removes, prunes or cleans up a shared worktree.
        """
        if not self.title:
            raise ValidationError("instance title cannot be empty")

        self.loading_total = 6
        self.set_loading_progress(1, "Connecting to shared worktree...")
        self._git_worktree = worktree
        self.branch = branch
        self._shared_worktree = True

        session = self._prepare_tmux_session(1)
        self.set_loading_progress(2, "Starting tmux session...")
        try:
            session.start(worktree.get_worktree_path())
        except KasmosError as e:
            raise TmuxError(f"failed to start session in shared worktree: {e}") from e

        self._started = True
        self.set_loading_progress(self.loading_total, "Ready")
        self.set_status(InstanceStatus.RUNNING)

    def adopt_orphan_tmux_session(self, tmux_name: str) -> None:
        """Bind to an existing server-side session by its raw name."""
        session = TmuxSession.from_existing(tmux_name, self.program,
                                            pty_factory=self.pty_factory, executor=self.executor)
        self._tmux_session = session
        try:
            session.restore()
        except KasmosError as e:
            raise TmuxError(f"failed to adopt orphan session {tmux_name}: {e}") from e
        self._started = True
        self.set_status(InstanceStatus.READY)

    # Pause / resume / teardown

    def _owns_worktree(self) -> bool:
        return self._git_worktree is not None and not self._shared_worktree

    def pause(self) -> None:
        """
        Commit work in progress, detach tmux and remove the checkout.

        The branch is kept and copied to the clipboard.

        Raises:
            PreconditionError: Not started or already paused
            KasmosError: A commit, remove or prune step failed
        """
        if not self._started:
            raise PreconditionError("cannot pause instance that has not been started")
        if self.status == InstanceStatus.PAUSED:
            raise PreconditionError("instance is already paused")

        errors: List[Exception] = []
        worktree = self._git_worktree

        if self._owns_worktree():
            try:
                dirty = worktree.is_dirty()
            except KasmosError as e:
                logger.error("%s: failed to check if worktree is dirty: %s", self.title, e)
                errors.append(e)
                dirty = False
            if dirty:
                stamp = datetime.now().astimezone().strftime("%d %b %y %H:%M %Z")
                message = f"[kas] update from '{self.title}' on {stamp} (paused)"
                try:
                    worktree.commit_changes(message)
                except KasmosError as e:
                    logger.error("%s: failed to commit changes: %s", self.title, e)
                    errors.append(e)
                    # A checkout removed without its commit would lose work
                    raise join_errors(errors) from e

        if self._tmux_session is not None:
            try:
                self._tmux_session.detach_safely()
            except KasmosError as e:
                logger.error("%s: failed to detach tmux session: %s", self.title, e)
                errors.append(e)

        if self._owns_worktree() and os.path.exists(worktree.get_worktree_path()):
            try:
                worktree.remove()
                worktree.prune()
            except KasmosError as e:
                logger.error("%s: failed to remove git worktree: %s", self.title, e)
                errors.append(e)
                raise join_errors(errors) from e

        error = join_errors(errors)
        if error is not None:
            raise error

        self.set_status(InstanceStatus.PAUSED)
        if worktree is not None and worktree.get_branch_name():
            if not self.clipboard(worktree.get_branch_name()):
                logger.debug("%s: clipboard not available", self.title)
        logger.info("%s: paused on branch %s", self.title, self.branch)

    def resume(self) -> None:
        """
        Recreate the checkout and reconnect or restart the tmux session.

        Raises:
            PreconditionError: Not paused, or the branch is checked out elsewhere
            KasmosError: Worktree setup or session start failed
        """
        if not self._started:
            raise PreconditionError("cannot resume instance that has not been started")
        if self.status != InstanceStatus.PAUSED:
            raise PreconditionError("can only resume paused instances")

        worktree = self._git_worktree
        if self._owns_worktree():
            if worktree.is_branch_checked_out():
                raise PreconditionError(
                    "cannot resume: branch is checked out, please switch to a different branch")
            worktree.setup()

        session = self._prepare_tmux_session(1)
        work_dir = self.get_worktree_path()

        restored = False
        if session.does_session_exist():
            try:
                session.restore()
                restored = True
            except KasmosError as e:
                logger.error("%s: restore failed, starting a new session: %s", self.title, e)

        if not restored:
            try:
                session.start(work_dir)
            except KasmosError as e:
                message = f"failed to start new session: {e}"
                if self._owns_worktree():
                    try:
                        worktree.cleanup()
                    except KasmosError as ce:
                        message = f"{message} (cleanup error: {ce})"
                logger.error("%s: %s", self.title, message)
                raise TmuxError(message) from e

        self.set_status(InstanceStatus.RUNNING)
        logger.info("%s: resumed", self.title)

    def kill(self) -> None:
        """
        Close the tmux session and, unless shared, clean up the worktree.

        Both steps are attempted; failures are joined.
        """
        if not self._started:
            return

        errors: List[Exception] = []
        if self._tmux_session is not None:
            try:
                self._tmux_session.close()
            except KasmosError as e:
                errors.append(TmuxError(f"failed to close tmux session: {e}"))

        if self._owns_worktree():
            try:
                self._git_worktree.cleanup()
            except KasmosError as e:
                errors.append(KasmosError(f"failed to cleanup git worktree: {e}"))

        error = join_errors(errors)
        if error is not None:
            raise error
        logger.info("%s: killed", self.title)

    def stop_tmux(self) -> None:
        """Close only the tmux session; the worktree and model entry stay."""
        if self._tmux_session is None:
            return
        try:
            self._tmux_session.close()
        except KasmosError as e:
            logger.warning("%s: error stopping tmux session: %s", self.title, e)

    # Session I/O

    def tmux_alive(self) -> bool:
        return self._tmux_session is not None and self._tmux_session.does_session_exist()

    def preview(self) -> str:
        if not self._started or self.paused:
            return ""
        return self._tmux_session.capture_pane_content()

    def preview_full_history(self) -> str:
        if not self._started or self.paused:
            return ""
        return self._tmux_session.capture_pane_content_with_options("-", "-")

    def has_updated(self) -> Tuple[bool, bool]:
        if not self._started:
            return False, False
        return self._tmux_session.has_updated()

    def tap_enter(self) -> None:
        """Press Enter in the session; only acts when auto-yes is enabled."""
        if not self._started or not self.auto_yes:
            return
        try:
            self._tmux_session.tap_enter()
        except KasmosError as e:
            logger.error("%s: error tapping enter: %s", self.title, e)

    def send_prompt(self, prompt: str) -> None:
        """Type a prompt into the session and submit it."""
        if not self._started:
            raise PreconditionError("instance not started")
        if self._tmux_session is None:
            raise PreconditionError("tmux session not initialized")
        try:
            self._tmux_session.send_keys(prompt)
        except KasmosError as e:
            raise TmuxError(f"error sending keys to tmux session: {e}") from e
        time.sleep(PROMPT_ENTER_DELAY)
        try:
            self._tmux_session.tap_enter()
        except KasmosError as e:
            raise TmuxError(f"error tapping enter: {e}") from e

    def deliver_queued_prompt(self) -> bool:
        """
        Send a prompt still waiting for a program without CLI prompt support.

        Returns:
            bool: True if a prompt was sent
        """
        if not self.queued_prompt or not self._started or self.paused:
            return False
        if self.status != InstanceStatus.READY and not self.prompt_detected:
            return False
        # Cleared before sending so a failing session is not re-sent every tick
        prompt, self.queued_prompt = self.queued_prompt, ""
        try:
            self.send_prompt(prompt)
        except KasmosError as e:
            logger.warning("%s: could not send queued prompt: %s", self.title, e)
            return False
        logger.info("%s: delivered queued prompt", self.title)
        return True

    def send_keys(self, keys: str) -> None:
        if not self._started or self.paused:
            raise PreconditionError("cannot send keys to instance that has not been started or is paused")
        self._tmux_session.send_keys(keys)

    def send_permission_response(self, choice: PermissionChoice) -> None:
        if not self._started or self.paused:
            raise PreconditionError("cannot respond to instance that has not been started or is paused")
        self._tmux_session.send_permission_response(choice)
        self.permission_prompt = None

    def check_permission_prompt(self) -> Optional[PermissionPrompt]:
        """Capture the pane now and return the permission dialog it shows, if any."""
        if not self._started or self.paused:
            return None
        prompt = parse_permission_prompt(self._tmux_session.capture_pane_content(), self.program)
        self.permission_prompt = prompt
        return prompt

    def attach(self):
        """Hand the terminal to the session; returns an event set on detach."""
        if not self._started:
            raise PreconditionError("cannot attach instance that has not been started")
        return self._tmux_session.attach()

    def set_preview_size(self, width: int, height: int) -> None:
        if not self._started or self.paused:
            raise PreconditionError(
                "cannot set preview size for instance that has not been started or is paused")
        self._tmux_session.set_detached_size(width, height)

    # Metadata

    def _collect_resource_usage(self) -> Tuple[float, float, bool]:
        if not self._started or self._tmux_session is None:
            return 0.0, 0.0, False
        try:
            pid = self._tmux_session.get_pane_pid()
            usage = self.process_inspector.usage(pid)
        except (TmuxError, ResourceError) as e:
            logger.debug("%s: resource usage unavailable: %s", self.title, e)
            return 0.0, 0.0, False
        return usage.cpu_percent, usage.mem_mb, True

    def collect_metadata(self) -> InstanceMetadata:
        """
        Gather everything the UI needs for one tick.

        One capture-pane, one diff, one process-tree inspection and one
        has-session check. Reads external state and the monitor counters
        only; the model is left untouched.
        """
        metadata = InstanceMetadata()
        if not self._started or self.paused:
            return metadata

        (metadata.updated, metadata.has_prompt,
         metadata.content, metadata.content_captured) = self._tmux_session.has_updated_with_content()
        if metadata.content_captured:
            metadata.permission_prompt = parse_permission_prompt(metadata.content, self.program)

        if self._git_worktree is not None:
            stats = self._git_worktree.diff()
            if stats.error is not None:
                if not stats.is_transient():
                    logger.warning("%s: diff stats error: %s", self.title, stats.error)
            else:
                metadata.diff_stats = stats

        (metadata.cpu_percent, metadata.mem_mb,
         metadata.resource_usage_valid) = self._collect_resource_usage()
        metadata.tmux_alive = self._tmux_session.does_session_exist()
        return metadata

    def apply_metadata(self, metadata: InstanceMetadata) -> None:
        """Apply a collect_metadata() result to the model."""
        if not self._started or self.paused:
            return

        # A failed capture says nothing about idle/busy; keep the last status
        if metadata.content_captured:
            self.cached_content = metadata.content
            self.cached_content_set = True
            self.permission_prompt = metadata.permission_prompt

            if metadata.updated:
                self.set_status(InstanceStatus.RUNNING)
                self.prompt_detected = False
            elif metadata.has_prompt:
                self.prompt_detected = True
            else:
                self.set_status(InstanceStatus.READY)

        if metadata.diff_stats is not None:
            self.diff_stats = metadata.diff_stats

        if metadata.resource_usage_valid:
            self.cpu_percent = metadata.cpu_percent
            self.mem_mb = metadata.mem_mb

    def update_diff_stats(self) -> None:
        """Refresh diff stats synchronously; transient conditions clear them."""
        if not self._started:
            self.diff_stats = None
            return
        if self.paused or self._git_worktree is None:
            return

        stats = self._git_worktree.diff()
        if stats.error is not None:
            if stats.is_transient():
                self.diff_stats = None
                return
            raise KasmosError(f"failed to get diff stats: {stats.error}")
        self.diff_stats = stats

    def update_resource_usage(self) -> None:
        cpu, mem, ok = self._collect_resource_usage()
        if ok:
            self.cpu_percent, self.mem_mb = cpu, mem


def new_instance(options: InstanceOptions, **kwargs) -> Instance:
    """Validate options and build an Instance. See Instance.__init__ for kwargs."""
    return Instance(options, **kwargs)
