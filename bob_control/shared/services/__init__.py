"""Shared services: worktrees, room naming, process cleanup."""
