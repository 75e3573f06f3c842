"""chatrelay: streaming chat gateway for chat-completions providers."""

__version__ = "0.1.0"
