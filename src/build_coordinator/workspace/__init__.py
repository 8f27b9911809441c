"""Isolated git worktrees and resume detection for package builds."""
