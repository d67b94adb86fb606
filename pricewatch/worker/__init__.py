"""Queue consumers, digest orchestration and scheduling."""
