"""
Logging Setup

kasmos shares the terminal with interactive agents, so log records go to a
file (default <tempdir>/kasmos.log) rather than the console.
"""

import logging
import tempfile
from pathlib import Path
from typing import Optional

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
DEFAULT_LOG_NAME = "kasmos.log"


def default_log_file() -> Path:
    return Path(tempfile.gettempdir()) / DEFAULT_LOG_NAME


def initialize(level: str = "INFO", log_file: Optional[str] = None) -> Path:
    """
    Configure root logging to write to the kasmos log file.

    Args:
        level: Level name (DEBUG, INFO, ...)
        log_file: Destination file; empty or None selects the default

    Returns:
        Path: The file records are written to
    """
    path = Path(log_file) if log_file else default_log_file()
    path.parent.mkdir(parents=True, exist_ok=True)

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=[logging.FileHandler(path)],
        force=True,
    )
    logging.getLogger(__name__).debug("logging to %s", path)
    return path
