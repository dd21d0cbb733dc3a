"""
Session Persistence Module

Converts Instances to and from a flat InstanceData record and stores the
records in a JSON state file so the model can be rebuilt after a restart.
Restored instances are not started; Instance.start(False) rebinds them to
their (possibly still alive) tmux sessions.
"""

import logging
from dataclasses import dataclass, asdict, field, fields
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..git.worktree_manager import GitWorktree
from ..utils.file_utils import FileUtils
from .errors import ValidationError
from .instance import AgentType, Instance, InstanceOptions, InstanceStatus

logger = logging.getLogger(__name__)

STATE_VERSION = 1


@dataclass
class GitWorktreeData:
    """Persisted form of a worktree controller. All-empty means no worktree."""
    repo_path: str = ""
    worktree_path: str = ""
    session_name: str = ""
    branch_name: str = ""
    base_commit_sha: str = ""

    def is_empty(self) -> bool:
        return not (self.repo_path or self.worktree_path or self.branch_name)


@dataclass
class InstanceData:
    """Persisted form of an Instance."""
    title: str
    path: str
    branch: str = ""
    status: str = InstanceStatus.READY.value
    program: str = ""
    plan_file: str = ""
    agent_type: str = ""
    implementation_complete: bool = False
    wave_number: int = 0
    task_number: int = 0
    peer_count: int = 0
    auto_yes: bool = False
    skip_permissions: bool = False
    shared_worktree: bool = False
    queued_prompt: str = ""
    worktree: GitWorktreeData = field(default_factory=GitWorktreeData)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "InstanceData":
        """Build from a decoded record, ignoring keys this version does not know."""
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known and k != "worktree"}
        worktree_fields = {f.name for f in fields(GitWorktreeData)}
        worktree = {k: v for k, v in (data.get("worktree") or {}).items() if k in worktree_fields}
        return cls(worktree=GitWorktreeData(**worktree), **values)


def instance_to_data(instance: Instance) -> InstanceData:
    """Snapshot an Instance into its persisted form."""
    worktree_data = GitWorktreeData()
    worktree = instance.git_worktree
    if worktree is not None:
        worktree_data = GitWorktreeData(
            repo_path=worktree.get_repo_path(),
            worktree_path=worktree.get_worktree_path(),
            session_name=worktree.session_name,
            branch_name=worktree.get_branch_name(),
            base_commit_sha=worktree.get_base_commit_sha(),
        )

    return InstanceData(
        title=instance.title,
        path=instance.path,
        branch=instance.branch,
        status=instance.status.value,
        program=instance.program,
        plan_file=instance.plan_file,
        agent_type=instance.agent_type.value,
        implementation_complete=instance.implementation_complete,
        wave_number=instance.wave_number,
        task_number=instance.task_number,
        peer_count=instance.peer_count,
        auto_yes=instance.auto_yes,
        skip_permissions=instance.skip_permissions,
        shared_worktree=instance.shared_worktree,
        queued_prompt=instance.queued_prompt,
        worktree=worktree_data,
    )


def instance_from_data(data: InstanceData, **kwargs) -> Instance:
    """
    Rebuild an Instance from its persisted form. The result is not started.

    Args:
        data: Persisted record
        **kwargs: Dependencies forwarded to Instance (executor, pty_factory, ...)

    Raises:
        ValidationError: Title is empty or a field holds an unknown value
    """
    try:
        agent_type = AgentType(data.agent_type)
        status = InstanceStatus(data.status)
    except ValueError as e:
        raise ValidationError(f"invalid stored instance {data.title!r}: {e}") from e

    instance = Instance(
        InstanceOptions(
            title=data.title,
            path=data.path,
            program=data.program,
            agent_type=agent_type,
            skip_permissions=data.skip_permissions,
            auto_yes=data.auto_yes,
            plan_file=data.plan_file,
            task_number=data.task_number,
            wave_number=data.wave_number,
            peer_count=data.peer_count,
            prompt=data.queued_prompt,
        ),
        **kwargs,
    )
    # Keep the stored path verbatim so the round trip is exact
    instance.path = data.path
    instance.branch = data.branch
    instance.status = status
    instance.implementation_complete = data.implementation_complete

    if not data.worktree.is_empty():
        worktree = GitWorktree(
            data.worktree.repo_path,
            data.worktree.worktree_path,
            data.worktree.session_name,
            data.worktree.branch_name,
            data.worktree.base_commit_sha,
            executor=instance.executor,
        )
        instance.set_git_worktree(worktree, shared=data.shared_worktree)
    return instance


class InstanceStorage:
    """
    JSON-backed store of InstanceData records.

    Provides functionality for:
    - Saving the full instance list atomically
    - Loading records, skipping ones that cannot be decoded
    - Clearing the store on reset
    """

    def __init__(self, state_file: Path):
        """
        Initialize instance storage.

        Args:
            state_file: Path of the JSON state file
        """
        self.state_file = Path(state_file)

    def save_instances(self, instances: List[Instance]) -> bool:
        """
        Persist every instance that has been started.

        Returns:
            bool: True if the state file was written
        """
        records = [instance_to_data(i).to_dict() for i in instances if i.started]
        return self.save_data(records)

    def save_data(self, records: List[Dict[str, Any]]) -> bool:
        payload = {
            "version": STATE_VERSION,
            "updated_at": datetime.now().isoformat(),
            "instances": records,
        }
        ok = FileUtils.write_json(self.state_file, payload)
        if ok:
            logger.debug("saved %d instances to %s", len(records), self.state_file)
        return ok

    def load_data(self) -> List[InstanceData]:
        """Stored records; an absent or unreadable file yields an empty list."""
        payload = FileUtils.read_json(self.state_file)
        if not payload:
            return []

        records = payload.get("instances", []) if isinstance(payload, dict) else payload
        result = []
        for record in records:
            try:
                result.append(InstanceData.from_dict(record))
            except (TypeError, AttributeError) as e:
                logger.warning("skipping unreadable instance record: %s", e)
        return result

    def load_instances(self, **kwargs) -> List[Instance]:
        """Rebuild (unstarted) Instances from the state file."""
        instances = []
        for data in self.load_data():
            try:
                instances.append(instance_from_data(data, **kwargs))
            except ValidationError as e:
                logger.warning("skipping stored instance: %s", e)
        return instances

    def delete_instance(self, title: str) -> bool:
        records = [d.to_dict() for d in self.load_data() if d.title != title]
        return self.save_data(records)

    def clear(self) -> bool:
        return self.save_data([])

    def find(self, title: str) -> Optional[InstanceData]:
        for data in self.load_data():
            if data.title == title:
                return data
        return None
