"""Termo - drive an AI coding assistant in tmux from Telegram."""

__version__ = "0.3.0"
