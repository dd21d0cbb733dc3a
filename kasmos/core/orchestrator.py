"""
Core Orchestrator Module

The Orchestrator owns the in-memory instance model. It is the only place
that mutates instances: lifecycle calls are made from the caller's thread,
and the per-tick metadata poll fans collect_metadata() out to a worker pool
and applies the results back on the caller's thread.
"""

import logging
import os
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, List, Optional, Tuple

from ..git.worktree_manager import cleanup_worktrees
from ..monitoring.resource_monitor import ProcessInspector, create_process_inspector
from ..tmux.discovery import SessionInfo, cleanup_sessions, discover_orphans
from ..tmux.messaging import PermissionChoice
from ..tmux.permission import PermissionPrompt
from ..tmux.pty_factory import PtyFactory
from ..tmux.session_controller import TMUX_PREFIX, to_kas_tmux_name
from ..utils.config_loader import KasmosConfig
from ..utils.executor import Executor
from .errors import KasmosError, PreconditionError, ValidationError, join_errors
from .instance import AgentType, Instance, InstanceMetadata, InstanceOptions
from .session_manager import InstanceStorage

logger = logging.getLogger(__name__)


class Orchestrator:
    """
    Owner of the instance model.

    This class coordinates between the subsystems:
    - Instance creation with session-name collision checks
    - Metadata ticks on a bounded worker pool
    - Pause, resume, kill, stop and permission answers by title
    - Persistence and restore through InstanceStorage
    - Orphan discovery, adoption and full reset
    """

    def __init__(self,
                 config: Optional[KasmosConfig] = None,
                 executor: Optional[Executor] = None,
                 pty_factory: Optional[PtyFactory] = None,
                 process_inspector: Optional[ProcessInspector] = None,
                 storage: Optional[InstanceStorage] = None,
                 clipboard=None):
        """
        Initialize orchestrator with dependency injection.

        Args:
            config: Loaded configuration (defaults apply when omitted)
            executor: Command executor shared by every instance
            pty_factory: PTY allocator shared by every instance
            process_inspector: Resource usage reader
            storage: Instance state store (defaults to the config state file)
            clipboard: Callable used by pause to copy the branch name
        """
        self.config = config or KasmosConfig()
        self.executor = executor or Executor()
        self.pty_factory = pty_factory or PtyFactory()
        self.process_inspector = process_inspector or create_process_inspector(
            self.config.resource_backend, self.executor)
        self.storage = storage or InstanceStorage(self.config.state_file)
        self.clipboard = clipboard
        self.instances: List[Instance] = []

    def _instance_kwargs(self) -> Dict[str, Any]:
        kwargs = {
            "executor": self.executor,
            "pty_factory": self.pty_factory,
            "process_inspector": self.process_inspector,
            "branch_prefix": self.config.branch_prefix,
        }
        if self.clipboard is not None:
            kwargs["clipboard"] = self.clipboard
        return kwargs

    # Model

    def get_instance(self, title: str) -> Optional[Instance]:
        for instance in self.instances:
            if instance.title == title:
                return instance
        return None

    def require_instance(self, title: str) -> Instance:
        instance = self.get_instance(title)
        if instance is None:
            raise ValidationError(f"no instance named {title!r}")
        return instance

    def list_instances(self) -> List[Instance]:
        return list(self.instances)

    def known_session_names(self) -> List[str]:
        """tmux session names owned by the model."""
        names = []
        for instance in self.instances:
            if instance.tmux_session is not None:
                names.append(instance.tmux_session.sanitized_name)
            else:
                names.append(to_kas_tmux_name(instance.title))
        return names

    def _check_title_available(self, title: str) -> None:
        name = to_kas_tmux_name(title)
        if name in self.known_session_names():
            raise ValidationError(
                f"an instance with session name {name} already exists; choose a different title")

    def add_instance(self, instance: Instance) -> Instance:
        self._check_title_available(instance.title)
        self.instances.append(instance)
        return instance

    def remove_instance(self, title: str) -> Optional[Instance]:
        instance = self.get_instance(title)
        if instance is not None:
            self.instances.remove(instance)
        return instance

    def create_instance(self,
                        title: str,
                        path: str = ".",
                        program: Optional[str] = None,
                        agent_type: AgentType = AgentType.UNSPECIFIED,
                        prompt: str = "",
                        auto_yes: Optional[bool] = None,
                        skip_permissions: bool = False,
                        plan_file: str = "",
                        task_number: int = 0,
                        wave_number: int = 0,
                        peer_count: int = 0) -> Instance:
        """
        Build a new instance and add it to the model. Nothing is started.

        Raises:
            ValidationError: Empty title, or another instance already maps
                to the same tmux session name
        """
        options = InstanceOptions(
            title=title,
            path=path,
            program=program or self.config.default_program,
            agent_type=agent_type,
            skip_permissions=skip_permissions,
            auto_yes=self.config.auto_yes if auto_yes is None else auto_yes,
            plan_file=plan_file,
            task_number=task_number,
            wave_number=wave_number,
            peer_count=peer_count,
            prompt=prompt,
        )
        instance = Instance(options, **self._instance_kwargs())
        return self.add_instance(instance)

    # Metadata tick

    def tick(self) -> List[Tuple[Instance, InstanceMetadata]]:
        """
        Run one metadata poll over every active instance.

        collect_metadata() runs on the worker pool; results are applied here,
        followed by auto-yes taps and queued prompt delivery.

        Returns:
            List of (instance, metadata) pairs that were applied
        """
        active = [i for i in self.instances if i.started and not i.paused]
        if not active:
            return []

        results: List[Tuple[Instance, InstanceMetadata]] = []
        with ThreadPoolExecutor(max_workers=self.config.worker_pool_size,
                                thread_name_prefix="kasmos-metadata") as pool:
            futures = [(instance, pool.submit(instance.collect_metadata)) for instance in active]
            for instance, future in futures:
                try:
                    results.append((instance, future.result()))
                except KasmosError as e:
                    logger.warning("%s: metadata collection failed: %s", instance.title, e)

        for instance, metadata in results:
            instance.apply_metadata(metadata)
            if metadata.content_captured and metadata.has_prompt and not metadata.updated:
                instance.tap_enter()
            instance.deliver_queued_prompt()
        return results

    # Lifecycle by title

    def pause(self, title: str) -> Instance:
        instance = self.require_instance(title)
        instance.pause()
        self.save()
        return instance

    def resume(self, title: str) -> Instance:
        instance = self.require_instance(title)
        instance.resume()
        self.save()
        return instance

    def kill(self, title: str) -> Instance:
        """Kill an instance and drop it from the model and the state file."""
        instance = self.require_instance(title)
        try:
            instance.kill()
        finally:
            self.remove_instance(title)
            self.save()
        return instance

    def stop(self, title: str) -> Instance:
        """Close the tmux session only; the entry and its worktree stay."""
        instance = self.require_instance(title)
        instance.stop_tmux()
        return instance

    def respond_permission(self, title: str, choice: PermissionChoice) -> Tuple[Instance, PermissionPrompt]:
        """
        Answer the permission dialog an instance is showing right now.

        Raises:
            PreconditionError: The pane shows no permission dialog
        """
        instance = self.require_instance(title)
        prompt = instance.check_permission_prompt()
        if prompt is None:
            raise PreconditionError(f"{title} is not waiting for a permission answer")
        instance.send_permission_response(choice)
        logger.info("%s: answered %s to %r", title, choice.value, prompt.description)
        return instance, prompt

    # Persistence

    def save(self) -> bool:
        return self.storage.save_instances(self.instances)

    def restore(self) -> List[Instance]:
        """
        Load stored instances and reattach them.

        Instances that cannot be reattached (their tmux session died) are
        logged and left out of the model.

        Returns:
            List[Instance]: Instances now in the model
        """
        for instance in self.storage.load_instances(**self._instance_kwargs()):
            if self.get_instance(instance.title) is not None:
                logger.warning("skipping duplicate stored instance %s", instance.title)
                continue
            try:
                instance.start(False)
            except KasmosError as e:
                logger.error("failed to restore instance %s: %s", instance.title, e)
                continue
            self.instances.append(instance)
        logger.info("restored %d instances", len(self.instances))
        return self.list_instances()

    # Orphans

    def discover_orphans(self) -> List[SessionInfo]:
        return discover_orphans(self.executor, self.known_session_names())

    def adopt_orphan(self, session_name: str, path: str = ".", program: Optional[str] = None) -> Instance:
        """
        Bring an unmanaged kasmos session into the model.

        The title is the session name without the orchestration prefix; the
        adopted instance has no worktree.

        Raises:
            ValidationError: The session is not an orphan kasmos session
        """
        if not session_name.startswith(TMUX_PREFIX):
            raise ValidationError(f"{session_name} is not a kasmos session")
        if session_name in self.known_session_names():
            raise ValidationError(f"{session_name} is already managed")

        title = session_name[len(TMUX_PREFIX):]
        instance = Instance(
            InstanceOptions(title=title, path=path, program=program or self.config.default_program),
            **self._instance_kwargs())
        instance.adopt_orphan_tmux_session(session_name)
        self.instances.append(instance)
        self.save()
        logger.info("adopted orphan session %s as %s", session_name, title)
        return instance

    # Reset

    def reset(self, repo_path: Optional[str] = None) -> Dict[str, List[str]]:
        """
        Kill every kasmos session, remove every worktree and clear storage.

        Args:
            repo_path: Repository whose .worktrees/ to clean in addition to
                the ones known from the model

        Returns:
            Dict with the killed session names and removed worktree paths
        """
        repos = {os.path.abspath(i.git_worktree.get_repo_path())
                 for i in self.instances if i.git_worktree is not None}
        repos.update(os.path.abspath(d.worktree.repo_path)
                     for d in self.storage.load_data() if d.worktree.repo_path)
        if repo_path:
            repos.add(os.path.abspath(repo_path))

        errors: List[Exception] = []
        killed: List[str] = []
        removed: List[str] = []
        try:
            killed = cleanup_sessions(self.executor)
        except KasmosError as e:
            errors.append(e)

        for repo in sorted(repos):
            try:
                removed.extend(cleanup_worktrees(repo, executor=self.executor))
            except KasmosError as e:
                errors.append(e)

        self.instances = []
        if not self.storage.clear():
            errors.append(KasmosError(f"failed to clear {self.storage.state_file}"))

        error = join_errors(errors)
        if error is not None:
            raise error
        logger.info("reset: killed %d sessions, removed %d worktrees", len(killed), len(removed))
        return {"sessions": killed, "worktrees": removed}
