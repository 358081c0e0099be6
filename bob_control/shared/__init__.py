"""Shared helpers used by the engine and the server."""
