"""Post-deployment platform verification."""

__version__ = "0.1.0"
