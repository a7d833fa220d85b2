"""Shared services used by the server and the CLI."""
