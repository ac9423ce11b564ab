"""Shellgate · Execution core for a conversational agent gateway."""

__version__ = "0.4.0"
