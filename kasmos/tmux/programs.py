"""
Program Families Module

Describes the interactive agent CLIs kasmos knows how to drive. Each family
carries its capabilities (inline prompt, file-reference prompt style), its
startup marker and acknowledgment keys, and its "waiting for input" heuristic.
Lifecycle code dispatches on the family, never on the raw program string.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

# Prompts longer than this are written to a scratch file instead of the command line
MAX_INLINE_PROMPT_LEN = 8192


class FamilyKind(Enum):
    """Recognized agent program families."""
    CLAUDE = "claude"
    OPENCODE = "opencode"
    AIDER = "aider"
    GEMINI = "gemini"


class PromptFileStyle(Enum):
    """How a family reads a prompt stored in a file."""
    NONE = "none"
    AT_FILE = "at_file"              # claude @path
    CAT_SUBSTITUTION = "cat"         # opencode --prompt "$(cat path)"


@dataclass(frozen=True)
class ProgramFamily:
    """Capabilities and markers of one agent program family."""
    kind: FamilyKind
    inline_prompt: bool
    prompt_file_style: PromptFileStyle
    ready_marker: str
    ready_keys: Tuple[str, ...]
    ready_timeout: float
    prompt_marker: str
    # When True the family is idle while prompt_marker is ABSENT from the pane
    prompt_marker_inverted: bool = False
    inline_flag: Optional[str] = None
    supports_skip_permissions: bool = False

    @property
    def name(self) -> str:
        return self.kind.value

    def has_prompt(self, content: str) -> bool:
        """Return True when stripped pane content shows the program waiting for input."""
        found = self.prompt_marker in content
        return not found if self.prompt_marker_inverted else found

    def is_ready(self, content: str) -> bool:
        return self.ready_marker in content


CLAUDE = ProgramFamily(
    kind=FamilyKind.CLAUDE,
    inline_prompt=True,
    prompt_file_style=PromptFileStyle.AT_FILE,
    ready_marker="Do you trust the files in this folder?",
    ready_keys=("Enter",),
    ready_timeout=30.0,
    prompt_marker="No, and tell Claude what to do differently",
    supports_skip_permissions=True,
)

OPENCODE = ProgramFamily(
    kind=FamilyKind.OPENCODE,
    inline_prompt=True,
    prompt_file_style=PromptFileStyle.CAT_SUBSTITUTION,
    ready_marker="Ask anything",
    ready_keys=(),
    ready_timeout=30.0,
    # The interrupt hint is only drawn while a task runs
    prompt_marker="esc interrupt",
    prompt_marker_inverted=True,
    inline_flag="--prompt",
)

AIDER = ProgramFamily(
    kind=FamilyKind.AIDER,
    inline_prompt=False,
    prompt_file_style=PromptFileStyle.NONE,
    ready_marker="Open documentation url for more info",
    ready_keys=("D", "Enter"),
    ready_timeout=45.0,
    prompt_marker="(Y)es/(N)o/(D)on't ask again",
)

GEMINI = ProgramFamily(
    kind=FamilyKind.GEMINI,
    inline_prompt=False,
    prompt_file_style=PromptFileStyle.NONE,
    ready_marker="Open documentation url for more info",
    ready_keys=("D", "Enter"),
    ready_timeout=45.0,
    prompt_marker="Yes, allow once",
)

FAMILIES = (CLAUDE, OPENCODE, AIDER, GEMINI)


def detect_family(program: str) -> Optional[ProgramFamily]:
    """
    Classify a program command line.

    claude and opencode are matched on the trailing word (they are usually
    launched as a full path); aider and gemini on the leading word because
    they are usually followed by flags.

    Args:
        program: Program command line as configured by the user

    Returns:
        The matching family, or None for unrecognized programs
    """
    program = (program or "").strip()
    if program.endswith("claude"):
        return CLAUDE
    if program.endswith("opencode"):
        return OPENCODE
    if program.startswith("aider"):
        return AIDER
    if program.startswith("gemini"):
        return GEMINI
    return None


def program_supports_cli_prompt(program: str) -> bool:
    """True when the program accepts its initial prompt on the command line."""
    family = detect_family(program)
    return family is not None and family.inline_prompt


def is_claude_program(program: str) -> bool:
    return detect_family(program) is CLAUDE


def is_opencode_program(program: str) -> bool:
    return detect_family(program) is OPENCODE
