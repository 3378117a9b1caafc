"""Inline image generation bridge for SillyTavern chats."""

__version__ = "1.0.0"
