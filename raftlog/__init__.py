"""Raft replicated log: stable storage view, unstable tail and commit/apply tracking."""

__version__ = "0.1.0"
__all__ = ["log", "log_unstable", "logger"]