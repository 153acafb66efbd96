"""Isolated coding-agent runs on git worktrees with verified merges."""

__version__ = "0.1.0"
