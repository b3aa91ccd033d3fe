"""Progressive recommendation unlock engine."""

__version__ = "0.1.0"
