"""Client for long-running script generation jobs."""

__version__ = "0.1.0"
