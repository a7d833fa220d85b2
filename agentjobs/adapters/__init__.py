"""Adapters between the job engine and its consumers (HTTP, CLI)."""
