"""
Database storage module for botstore.

This module keeps the bot's users, chats, panel users and settings in
PostgreSQL, migrates the legacy JSON file into it once, and falls back to
that file whenever PostgreSQL is unavailable.
"""

from botstore.database.controller import DatabaseController, ControllerState
from botstore.database.flatfile import FlatFileBackend
from botstore.database.relational import RelationalBackend

__all__ = ["DatabaseController", "ControllerState", "FlatFileBackend", "RelationalBackend"]
