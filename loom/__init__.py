"""Loom -- conversation runtime for an agentic coding assistant."""
