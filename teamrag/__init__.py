"""Team-scoped retrieval-augmented generation service."""

__version__ = "1.0.0"
