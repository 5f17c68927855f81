"""Multi-provider coding-assistant runtime with parallel specialist agents."""

__version__ = "0.3.0"
