"""Cross-cutting services used by extractors."""
