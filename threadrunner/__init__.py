"""threadrunner: per-conversation turn scheduling for sandboxed coding agents."""

__version__ = "0.1.0"
