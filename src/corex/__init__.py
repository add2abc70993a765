"""Corex: conversational agent core for AI-assisted code editing."""

__version__ = "0.1.0"
