"""Autonomous task coordinator with a feedback-driven preference learning loop."""

__version__ = "0.1.0"
