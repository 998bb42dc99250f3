"""
Pack registry and its durable tables.

`PackRegistry` tracks which sticker packs each user created through the bot.
Rows live in a `PackTable`: SQLite for a single host, or one encrypted JSON
object in S3 (Fernet) when the bot runs without local disk.
"""

from .models import PackRecord
from .registry import PackNameConflictError, PackRegistry

__all__ = ["PackNameConflictError", "PackRecord", "PackRegistry"]
