"""Infrastructure adapters (job queue)."""
