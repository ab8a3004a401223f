"""Rate-limit aware access layer for remote key-value stores."""

__version__ = "1.0.0"
