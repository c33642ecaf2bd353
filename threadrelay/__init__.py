"""threadrelay: dispatch chat-thread prompts to coding-agent backends."""

__version__ = "0.3.0"
