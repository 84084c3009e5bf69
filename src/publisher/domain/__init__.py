"""Domain entities of the publish pipeline."""
