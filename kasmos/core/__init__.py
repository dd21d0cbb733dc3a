"""Instance lifecycle, persistence and the orchestrator model."""
