"""tmux session management for agent programs."""
