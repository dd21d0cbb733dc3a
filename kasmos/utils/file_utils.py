"""
File Utilities Module

JSON/YAML helpers for kasmos configuration and state files.
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

logger = logging.getLogger(__name__)


class FileUtils:
    """
    File operations with error handling.

    Readers return None when the file is missing or unreadable; writers
    return False on failure. State files are written atomically.
    """

    @staticmethod
    def read_json(file_path: Path) -> Optional[Any]:
        """
        Safely read JSON file.

        Args:
            file_path: Path to JSON file

        Returns:
            Parsed JSON data or None if missing/invalid
        """
        try:
            if not file_path.exists():
                return None

            with open(file_path, 'r', encoding='utf-8') as f:
                return json.load(f)

        except json.JSONDecodeError as e:
            logger.error("invalid JSON in %s: %s", file_path, e)
            return None
        except OSError as e:
            logger.error("error reading %s: %s", file_path, e)
            return None

    @staticmethod
    def write_json(file_path: Path, data: Any, indent: int = 2) -> bool:
        """
        Write JSON through a temp file and rename so readers never see a
        half-written state file.

        Args:
            file_path: Path to write JSON file
            data: Data to write
            indent: JSON indentation

        Returns:
            bool: True if write succeeded
        """
        tmp_path = None
        try:
            file_path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(prefix=f".{file_path.name}.", dir=str(file_path.parent))
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(data, f, indent=indent, ensure_ascii=False)
            os.replace(tmp_path, file_path)
            return True

        except (OSError, TypeError, ValueError) as e:
            logger.error("error writing JSON to %s: %s", file_path, e)
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            return False

    @staticmethod
    def read_yaml(file_path: Path) -> Optional[Dict[str, Any]]:
        """
        Safely read YAML file.

        Args:
            file_path: Path to YAML file

        Returns:
            Dict containing YAML data or None if error
        """
        try:
            if not file_path.exists():
                return None

            with open(file_path, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f)

            return data or {}

        except yaml.YAMLError as e:
            logger.error("invalid YAML in %s: %s", file_path, e)
            return None
        except OSError as e:
            logger.error("error reading YAML %s: %s", file_path, e)
            return None
