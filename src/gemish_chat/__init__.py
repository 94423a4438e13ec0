"""Streaming chat-completion relay for the Gemish chat app."""

__version__ = "0.1.0"
