"""Telegram bot module for the LeMedia bot."""

from src.bot import handlers, main

__all__ = ["main", "handlers"]
