"""
kasmos - Agent Instance Orchestration

Runs several coding agents side by side, each in its own tmux session and
git worktree, and keeps track of whether each one is working or waiting.

This package provides:
- Instance lifecycle: start, pause, resume, kill and orphan adoption
- tmux session control with idle/busy detection and prompt handling
- Git worktree management on per-instance and shared plan branches
- Persistence of the instance model across restarts
- A rich command-line interface

Version: 1.0.0
"""

__version__ = "1.0.0"
__description__ = "Instance lifecycle and orchestration for coding agents in tmux"

from .core.errors import KasmosError, ValidationError, PreconditionError, CommandError, TmuxError, WorktreeError
from .core.instance import Instance, InstanceOptions, InstanceStatus, AgentType, new_instance
from .core.orchestrator import Orchestrator
from .core.session_manager import InstanceStorage, InstanceData

# Infrastructure modules
from .git.worktree_manager import GitWorktree, DiffStats
from .tmux.session_controller import TmuxSession
from .tmux.messaging import PermissionChoice
from .tmux.permission import PermissionPrompt, parse_permission_prompt

# Support modules
from .utils.config_loader import ConfigLoader, KasmosConfig
from .utils.executor import Executor
from .utils.file_utils import FileUtils
from .utils.system_utils import SystemUtils

# CLI module
from .cli.enhanced_cli import EnhancedCLI

__all__ = [
    # Core classes
    'Instance', 'InstanceOptions', 'InstanceStatus', 'AgentType', 'new_instance',
    'Orchestrator',
    'InstanceStorage', 'InstanceData',

    # Errors
    'KasmosError', 'ValidationError', 'PreconditionError',
    'CommandError', 'TmuxError', 'WorktreeError',

    # Infrastructure
    'GitWorktree', 'DiffStats',
    'TmuxSession',
    'PermissionChoice', 'PermissionPrompt', 'parse_permission_prompt',

    # Support modules
    'ConfigLoader', 'KasmosConfig',
    'Executor',
    'FileUtils',
    'SystemUtils',

    # CLI
    'EnhancedCLI',

    # Package metadata
    '__version__',
    '__description__'
]


def get_version():
    """Get the current version of kasmos."""
    return __version__
