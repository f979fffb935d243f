"""Murmur - the cognitive loop of a conversational agent runtime."""

__version__ = "0.1.0"
