"""Supervises a Claude Code session running inside tmux."""

__version__ = "0.1.0"
