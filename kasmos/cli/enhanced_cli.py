"""
Enhanced CLI Module

Command-line interface for managing kasmos agent instances with rich
output: create, list, pause, resume, kill, attach, adopt orphans, answer
permission dialogs, watch status and reset.
"""

import argparse
import os
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from rich.console import Console
from rich.live import Live
from rich.markup import escape
from rich.panel import Panel
from rich.prompt import Confirm
from rich.table import Table

from .. import __version__
from ..core.errors import KasmosError
from ..core.instance import AgentType, Instance, InstanceStatus
from ..core.orchestrator import Orchestrator
from ..git.plan_branches import ensure_plan_branch, new_shared_plan_worktree, plan_branch_from_file
from ..tmux.discovery import discover_all
from ..tmux.messaging import PermissionChoice
from ..tmux.session_controller import to_kas_tmux_name
from ..utils.config_loader import KasmosConfig
from ..utils.system_utils import SystemUtils

console = Console()

STATUS_STYLES = {
    InstanceStatus.RUNNING: "green",
    InstanceStatus.READY: "cyan",
    InstanceStatus.LOADING: "yellow",
    InstanceStatus.PAUSED: "dim",
}


class EnhancedCLI:
    """
    Command-line interface for kasmos.

    Features:
    - Rich console output with colors and formatting
    - Confirmation prompts for destructive operations
    - Tabular instance and session listings
    - Live status view driven by metadata ticks
    """

    def __init__(self,
                 config: Optional[KasmosConfig] = None,
                 orchestrator: Optional[Orchestrator] = None,
                 log_file: Optional[Path] = None):
        """
        Initialize CLI.

        Args:
            config: Loaded configuration (loaded lazily when omitted)
            orchestrator: Model owner (built from config when omitted)
            log_file: Active log file, shown by the debug command
        """
        self._config = config
        self._orchestrator = orchestrator
        self.log_file = log_file
        self.parser = self._create_argument_parser()

    @property
    def config(self) -> KasmosConfig:
        if self._config is None:
            self._config = KasmosConfig.load()
        return self._config

    @property
    def orchestrator(self) -> Orchestrator:
        if self._orchestrator is None:
            self._orchestrator = Orchestrator(self.config)
        return self._orchestrator

    def error(self, message: str) -> None:
        """Display error message."""
        console.print(f"[red]❌ {message}[/red]")

    def success(self, message: str) -> None:
        """Display success message."""
        console.print(f"[green]✅ {message}[/green]")

    def warning(self, message: str) -> None:
        """Display warning message."""
        console.print(f"[yellow]⚠️  {message}[/yellow]")

    def info(self, message: str) -> None:
        """Display info message."""
        console.print(f"[blue]ℹ️  {message}[/blue]")

    def display_results(self, results: Dict[str, Any]) -> None:
        """Display results in a formatted way."""
        for key, value in results.items():
            console.print(f"  [bold]{key}:[/bold] {value}")

    def run(self, args: Optional[List[str]] = None) -> int:
        """
        Run CLI with provided arguments.

        Args:
            args: Command-line arguments (defaults to sys.argv)

        Returns:
            Exit code (0 for success)
        """
        try:
            parsed_args = self.parser.parse_args(args)

            if hasattr(parsed_args, 'func'):
                return parsed_args.func(parsed_args)
            else:
                self.parser.print_help()
                return 1

        except KeyboardInterrupt:
            console.print("\n[yellow]Operation cancelled by user[/yellow]")
            return 130
        except KasmosError as e:
            self.error(str(e))
            return 1

    def _create_argument_parser(self) -> argparse.ArgumentParser:
        """Create argument parser with all commands."""
        parser = argparse.ArgumentParser(
            prog="kasmos",
            description="Run coding agents side by side in tmux sessions and git worktrees",
            epilog="Use 'kasmos <command> --help' for command-specific help"
        )

        parser.add_argument(
            "--version",
            action="version",
            version=f"kasmos v{__version__}"
        )

        subparsers = parser.add_subparsers(
            title="commands",
            description="Available commands",
            dest="command"
        )

        self._add_instance_commands(subparsers)
        self._add_session_commands(subparsers)
        self._add_system_commands(subparsers)

        return parser

    def _add_instance_commands(self, subparsers) -> None:
        """Add instance lifecycle commands."""
        new_parser = subparsers.add_parser(
            "new",
            help="Create and start an instance",
            description="Create a worktree and start an agent in a new tmux session"
        )
        new_parser.add_argument("title", help="Instance title")
        new_parser.add_argument("--path", "-p", default=".", help="Repository path")
        new_parser.add_argument("--program", help="Agent program (defaults to config)")
        new_parser.add_argument("--prompt", default="", help="Initial prompt for the agent")
        new_parser.add_argument(
            "--agent-type",
            choices=[t.value for t in AgentType if t.value],
            help="Agent role passed as --agent"
        )
        new_parser.add_argument("--auto-yes", action="store_true", default=None,
                                help="Automatically accept prompts")
        new_parser.add_argument("--skip-permissions", action="store_true",
                                help="Run claude with --dangerously-skip-permissions")

        placement = new_parser.add_mutually_exclusive_group()
        placement.add_argument("--main", action="store_true",
                               help="Run on the main checkout without a worktree")
        placement.add_argument("--branch", help="Run in a worktree on this branch")
        placement.add_argument("--plan", help="Run in the shared worktree of a plan file")
        new_parser.set_defaults(func=self._cmd_new)

        ls_parser = subparsers.add_parser("ls", help="List instances")
        ls_parser.set_defaults(func=self._cmd_ls)

        for name, help_text, func in (
                ("pause", "Commit work, detach and remove the checkout", self._cmd_pause),
                ("resume", "Recreate the checkout and restart the agent", self._cmd_resume),
                ("kill", "Close the session and delete the worktree", self._cmd_kill),
                ("stop", "Close the tmux session only", self._cmd_stop),
                ("attach", "Attach the terminal to an instance (Ctrl-Q detaches)", self._cmd_attach)):
            sub = subparsers.add_parser(name, help=help_text)
            sub.add_argument("title", help="Instance title")
            sub.set_defaults(func=func)

    def _add_session_commands(self, subparsers) -> None:
        """Add tmux session commands."""
        orphans_parser = subparsers.add_parser("orphans", help="List unmanaged kasmos sessions")
        orphans_parser.set_defaults(func=self._cmd_orphans)

        adopt_parser = subparsers.add_parser("adopt", help="Adopt an orphaned session")
        adopt_parser.add_argument("session", help="tmux session name (kas_...)")
        adopt_parser.add_argument("--path", "-p", default=".", help="Working directory of the session")
        adopt_parser.add_argument("--program", help="Program running in the session")
        adopt_parser.set_defaults(func=self._cmd_adopt)

        watch_parser = subparsers.add_parser("watch", help="Live status of all instances")
        watch_parser.add_argument("--count", "-n", type=int, default=0,
                                  help="Stop after this many ticks (0 runs until interrupted)")
        watch_parser.set_defaults(func=self._cmd_watch)

        permit_parser = subparsers.add_parser("permit", help="Answer an opencode permission dialog")
        permit_parser.add_argument("title", help="Instance title")
        permit_parser.add_argument(
            "choice",
            nargs="?",
            choices=[c.value for c in PermissionChoice],
            default=PermissionChoice.ALLOW_ONCE.value,
            help="Answer to send (default: allow_once)"
        )
        permit_parser.set_defaults(func=self._cmd_permit)

    def _add_system_commands(self, subparsers) -> None:
        """Add system management commands."""
        reset_parser = subparsers.add_parser(
            "reset",
            help="Kill all sessions and remove all worktrees",
            description="Kill every kasmos tmux session, remove worktrees and clear saved state"
        )
        reset_parser.add_argument("--path", "-p", default=".", help="Repository path")
        reset_parser.add_argument("--yes", "-y", action="store_true", help="Do not ask for confirmation")
        reset_parser.set_defaults(func=self._cmd_reset)

        debug_parser = subparsers.add_parser("debug", help="Show configuration and environment")
        debug_parser.set_defaults(func=self._cmd_debug)

    # Instance commands

    def _cmd_new(self, args) -> int:
        """Handle new instance command."""
        orchestrator = self.orchestrator
        orchestrator.restore()

        agent_type = AgentType(args.agent_type) if args.agent_type else AgentType.UNSPECIFIED
        instance = orchestrator.create_instance(
            args.title,
            path=args.path,
            program=args.program,
            agent_type=agent_type,
            prompt=args.prompt,
            auto_yes=args.auto_yes,
            skip_permissions=args.skip_permissions,
            plan_file=args.plan or "",
        )

        with console.status(f"Starting {instance.title}..."):
            try:
                self._start_instance(instance, args)
            except KasmosError as e:
                orchestrator.remove_instance(instance.title)
                self.error(f"Failed to start {instance.title}: {e}")
                return 1

        orchestrator.save()
        location = instance.branch or "main checkout"
        self.success(f"Started {instance.title} on {location}")
        return 0

    def _start_instance(self, instance: Instance, args) -> None:
        """Start with the placement chosen on the command line."""
        if args.main:
            instance.start_on_main_branch()
        elif args.branch:
            instance.start_on_branch(args.branch)
        elif args.plan:
            branch = plan_branch_from_file(args.plan)
            ensure_plan_branch(instance.path, branch, executor=instance.executor)
            worktree = new_shared_plan_worktree(instance.path, branch, executor=instance.executor)
            if not os.path.exists(worktree.get_worktree_path()):
                worktree.setup()
            instance.start_in_shared_worktree(worktree, branch)
        else:
            instance.start(True)

    def _cmd_ls(self, args) -> int:
        """Handle list command."""
        orchestrator = self.orchestrator
        records = orchestrator.storage.load_data()
        if not records:
            self.info("No instances")
            return 0

        try:
            live_names = {s.name for s in discover_all(orchestrator.executor, [])}
        except KasmosError as e:
            self.warning(f"Could not list tmux sessions: {e}")
            live_names = set()

        table = Table(title="Instances")
        table.add_column("Title", style="bold")
        table.add_column("Status", justify="center")
        table.add_column("Branch")
        table.add_column("Program")
        table.add_column("tmux", justify="center")

        for data in records:
            style = STATUS_STYLES.get(InstanceStatus(data.status), "dim")
            alive = to_kas_tmux_name(data.title) in live_names
            table.add_row(
                data.title,
                f"[{style}]{data.status.upper()}[/{style}]",
                data.branch or "-",
                data.program,
                "[green]alive[/green]" if alive else "[red]gone[/red]",
            )
        console.print(table)
        return 0

    def _cmd_pause(self, args) -> int:
        self.orchestrator.restore()
        instance = self.orchestrator.pause(args.title)
        self.success(f"Paused {instance.title}; branch {instance.branch} kept")
        return 0

    def _cmd_resume(self, args) -> int:
        self.orchestrator.restore()
        with console.status(f"Resuming {args.title}..."):
            instance = self.orchestrator.resume(args.title)
        self.success(f"Resumed {instance.title}")
        return 0

    def _cmd_kill(self, args) -> int:
        self.orchestrator.restore()
        instance = self.orchestrator.kill(args.title)
        self.success(f"Killed {instance.title}")
        return 0

    def _cmd_stop(self, args) -> int:
        self.orchestrator.restore()
        instance = self.orchestrator.stop(args.title)
        self.success(f"Stopped tmux session of {instance.title}")
        return 0

    def _cmd_attach(self, args) -> int:
        self.orchestrator.restore()
        instance = self.orchestrator.require_instance(args.title)
        if instance.paused:
            self.error(f"{instance.title} is paused; resume it first")
            return 1
        self.info("Attached. Press Ctrl-Q to detach.")
        detached = instance.attach()
        detached.wait()
        self.success(f"Detached from {instance.title}")
        return 0

    # Session commands

    def _cmd_orphans(self, args) -> int:
        self.orchestrator.restore()
        orphans = self.orchestrator.discover_orphans()
        if not orphans:
            self.info("No orphaned sessions")
            return 0

        table = Table(title="Orphaned Sessions")
        table.add_column("Session", style="bold")
        table.add_column("Created")
        table.add_column("Windows", justify="right")
        table.add_column("Attached", justify="center")
        table.add_column("Size")
        for session in orphans:
            created = datetime.fromtimestamp(session.created).strftime("%Y-%m-%d %H:%M") if session.created else "-"
            table.add_row(session.name, created, str(session.windows),
                          "yes" if session.attached else "no",
                          f"{session.width}x{session.height}")
        console.print(table)
        return 0

    def _cmd_adopt(self, args) -> int:
        self.orchestrator.restore()
        instance = self.orchestrator.adopt_orphan(args.session, path=args.path, program=args.program)
        self.success(f"Adopted {args.session} as {instance.title}")
        return 0

    def _render_status(self, instances: List[Instance]) -> Table:
        table = Table(title=f"kasmos - {datetime.now().strftime('%H:%M:%S')}")
        table.add_column("Title", style="bold")
        table.add_column("Status", justify="center")
        table.add_column("Branch")
        table.add_column("Diff", justify="right")
        table.add_column("CPU", justify="right")
        table.add_column("Mem", justify="right")
        table.add_column("Permission")

        for instance in instances:
            style = STATUS_STYLES.get(instance.status, "dim")
            stats = instance.diff_stats
            diff = f"[green]+{stats.added}[/green] [red]-{stats.removed}[/red]" if stats else "-"
            table.add_row(
                instance.title,
                f"[{style}]{instance.status.value.upper()}[/{style}]",
                instance.branch or "-",
                diff,
                f"{instance.cpu_percent:.1f}%",
                f"{instance.mem_mb:.0f} MB",
                self._permission_cell(instance),
            )
        return table

    @staticmethod
    def _permission_cell(instance: Instance) -> str:
        prompt = instance.permission_prompt
        if prompt is None:
            return "-"
        return f"[magenta]{escape(prompt.pattern or prompt.description or 'pending')}[/magenta]"

    def _cmd_watch(self, args) -> int:
        """Handle watch command: tick metadata and redraw until interrupted."""
        orchestrator = self.orchestrator
        orchestrator.restore()
        if not orchestrator.instances:
            self.info("No instances to watch")
            return 0

        interval = self.config.metadata_tick_ms / 1000.0
        ticks = 0
        try:
            with Live(self._render_status(orchestrator.instances), console=console,
                      refresh_per_second=4) as live:
                while args.count <= 0 or ticks < args.count:
                    orchestrator.tick()
                    live.update(self._render_status(orchestrator.instances))
                    ticks += 1
                    time.sleep(interval)
        finally:
            orchestrator.save()
        return 0

    def _cmd_permit(self, args) -> int:
        """Handle permit command: answer the dialog the agent is showing."""
        self.orchestrator.restore()
        choice = PermissionChoice(args.choice)
        instance, prompt = self.orchestrator.respond_permission(args.title, choice)
        target = f" ({prompt.pattern})" if prompt.pattern else ""
        self.success(f"Sent {choice.value} to {instance.title}: {escape(prompt.description + target)}")
        return 0

    # System commands

    def _cmd_reset(self, args) -> int:
        """Handle reset command."""
        if not args.yes and not Confirm.ask(
                "Kill all kasmos sessions and delete all worktrees?", default=False):
            self.warning("Reset cancelled")
            return 1

        orchestrator = self.orchestrator
        orchestrator.restore()
        with console.status("Resetting..."):
            results = orchestrator.reset(args.path)

        self.success("Reset complete")
        self.display_results({
            "Sessions killed": len(results["sessions"]),
            "Worktrees removed": len(results["worktrees"]),
        })
        return 0

    def _cmd_debug(self, args) -> int:
        """Handle debug command."""
        config = self.config
        console.print(Panel.fit(
            "[bold cyan]kasmos debug information[/bold cyan]",
            border_style="cyan"
        ))

        info = SystemUtils.get_system_info()
        info.update({
            "kasmos_version": __version__,
            "config_dir": config.config_dir,
            "state_file": str(config.state_file),
            "log_file": str(self.log_file) if self.log_file else "-",
            "tmux_version": SystemUtils.get_tool_version(["tmux", "-V"]) or "-",
            "git_version": SystemUtils.get_tool_version(["git", "--version"]) or "-",
        })
        self.display_results(info)
        console.print("\n[bold]Configuration:[/bold]")
        console.print(config.dumps())
        return 0
