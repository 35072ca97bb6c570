"""Email relay with exactly-once credit settlement."""

__version__ = "0.1.0"
