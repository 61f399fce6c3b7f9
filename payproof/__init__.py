"""Payment proof validation pipeline."""

__version__ = "1.0.0"
