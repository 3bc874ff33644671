"""Usage-governance and abuse-detection engine."""

__version__ = "1.0.0"
