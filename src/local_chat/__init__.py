"""Conversation orchestration engine for a local-inference chat client."""

__version__ = "0.1.0"
