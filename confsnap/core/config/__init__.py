"""Template loading and engine settings."""
