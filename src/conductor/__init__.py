"""Conductor: decompose a task, dispatch isolated workers, gate every tool call."""

__version__ = "0.1.0"
