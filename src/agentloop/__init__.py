"""Parallel checklist-driven loop runner for CLI LLM agents."""

__version__ = "0.1.0"
