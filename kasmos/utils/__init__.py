"""Shared utilities: command execution, configuration, files, logging."""
