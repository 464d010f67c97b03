"""Credit accounting and subscription lifecycle engine for code execution."""

__version__ = "0.1.0"
