"""Process-tree resource inspection."""
