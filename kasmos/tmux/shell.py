"""Shell quoting helpers for command lines run inside tmux."""


def shell_escape_single_quote(s: str) -> str:
    """
    Quote a string for a POSIX shell using single quotes.

    Embedded single quotes become '\\'' so the result is safe for newlines,
    dollar signs, backticks and double quotes.
    """
    return "'" + s.replace("'", "'\\''") + "'"
