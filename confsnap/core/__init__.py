"""Core engine: models, configuration, resolution, execution, persistence."""
