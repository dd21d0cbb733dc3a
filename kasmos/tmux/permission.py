"""
Permission Prompt Detection Module

Recognizes opencode's "Permission required" dialog in captured pane content
and extracts what the agent is asking for, so a caller knows when a
PermissionChoice answer is expected.
"""

from dataclasses import dataclass
from typing import Optional

from .monitor import strip_ansi
from .programs import is_opencode_program

PERMISSION_HEADER = "Permission required"
PATTERNS_HEADER = "Patterns"


@dataclass
class PermissionPrompt:
    """A pending permission request shown by the agent."""
    description: str = ""   # e.g. "Access external directory /opt"
    pattern: str = ""       # e.g. "/opt/*"


def parse_permission_prompt(content: str, program: str) -> Optional[PermissionPrompt]:
    """
    Scan pane content for opencode's permission dialog.

    The description is the first non-empty line after the header, without
    its leading arrow. The pattern is the first "- " item under the
    "Patterns" heading, if the dialog shows one.

    Args:
        content: Captured pane content, escape sequences allowed
        program: Program running in the pane

    Returns:
        PermissionPrompt, or None when no dialog is shown or the program
        is not opencode
    """
    if not is_opencode_program(program):
        return None

    lines = strip_ansi(content).split("\n")
    header = next((i for i, line in enumerate(lines) if PERMISSION_HEADER in line), None)
    if header is None:
        return None

    prompt = PermissionPrompt()
    for line in lines[header + 1:]:
        text = line.strip()
        if text:
            prompt.description = text.lstrip("←").strip()
            break

    for i in range(header, len(lines)):
        if lines[i].strip() != PATTERNS_HEADER:
            continue
        for line in lines[i + 1:]:
            text = line.strip()
            if not text:
                continue
            if text.startswith("- "):
                prompt.pattern = text[2:]
            break
        break

    return prompt
