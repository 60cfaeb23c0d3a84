"""Version information for Measure Library."""

__version__ = "1.0.0"
