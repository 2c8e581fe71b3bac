"""Background worker process."""
