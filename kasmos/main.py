"""
Main entry point for kasmos.

Loads configuration, points logging at the kasmos log file and hands the
command line to EnhancedCLI.
"""

import sys
from typing import List, Optional

from rich.console import Console

from .cli.enhanced_cli import EnhancedCLI
from .core.errors import ValidationError
from .utils import log
from .utils.config_loader import KasmosConfig

console = Console()


def main(argv: Optional[List[str]] = None) -> int:
    """
    Run the kasmos command line.

    Args:
        argv: Arguments without the program name (defaults to sys.argv[1:])

    Returns:
        int: Process exit code
    """
    try:
        config = KasmosConfig.load()
    except ValidationError as e:
        console.print(f"[red]❌ {e}[/red]")
        return 1

    log_file = log.initialize(config.log_level, config.log_file or None)
    cli = EnhancedCLI(config=config, log_file=log_file)
    return cli.run(argv)


if __name__ == "__main__":
    sys.exit(main())
