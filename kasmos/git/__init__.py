"""Git worktree and plan branch management."""
