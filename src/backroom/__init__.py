"""Backroom Press - clustering and article lifecycle for multi-agent research dialogues."""

__version__ = "0.1.0"
