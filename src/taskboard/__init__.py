"""Kanban task board backend: positional ordering engine and SSE dirty-event hub."""

__version__ = "1.0.0"
