from __future__ import annotations

import logging
from typing import List, Protocol, Tuple

from common.naming import DEFAULT_BOT_USERNAME, generate_pack_id

from .models import PackRecord


logger = logging.getLogger(__name__)


class RegistryError(RuntimeError):
    """Base error for the pack registry."""


class PackNameConflictError(RegistryError):
    """The owner already has a pack with the same generated id."""

    def __init__(self, owner_id: int, generated_id: str) -> None:
        super().__init__(f"Pack {generated_id!r} already registered for owner {owner_id}")
        self.owner_id = owner_id
        self.generated_id = generated_id


class PackTable(Protocol):
    """Durable storage of pack rows keyed by (owner_id, generated_id); each call is atomic."""

    def insert(self, record: PackRecord) -> bool:
        """Insert a row; return False (and change nothing) if the key exists."""

    def select(self, owner_id: int) -> List[PackRecord]:
        """Return the owner's rows in insertion order."""

    def delete(self, owner_id: int, generated_id: str) -> bool:
        """Delete a row; return whether it existed."""


class PackRegistry:
    """
    Per-owner table of sticker packs created through this bot.

    Each operation is one table call, and every table makes its calls atomic
    on its own (SQLite under its connection lock, S3 by compare-and-swap), so
    the registry holds no lock of its own and never waits on the network
    while blocking other owners. Callers register first, call Telegram, then
    `forget` on failure (rollback) or when Telegram reports the set is gone
    (repair).
    """

    def __init__(self, table: PackTable, *, bot_username: str = DEFAULT_BOT_USERNAME) -> None:
        self._table = table
        self._bot_username = bot_username

    @property
    def bot_username(self) -> str:
        return self._bot_username

    def generated_id_for(self, display_name: str) -> str:
        return generate_pack_id(display_name, bot_username=self._bot_username)

    def register_if_absent(self, owner_id: int, display_name: str) -> Tuple[str, bool]:
        """
        Register a new pack for `owner_id`.

        Returns (generated_id, True) when inserted.
        Raises PackNameConflictError if the owner already has that generated id.
        """
        generated_id = self.generated_id_for(display_name)
        record = PackRecord(owner_id=owner_id, display_name=display_name, generated_id=generated_id)
        if not self._table.insert(record):
            raise PackNameConflictError(owner_id, generated_id)
        logger.info("Registered pack %s for owner %s", generated_id, owner_id)
        return generated_id, True

    def list_packs(self, owner_id: int) -> List[str]:
        return [r.generated_id for r in self.records(owner_id)]

    def records(self, owner_id: int) -> List[PackRecord]:
        return list(self._table.select(owner_id))

    def forget(self, owner_id: int, generated_id: str) -> None:
        """Remove a pack; absent rows are not an error."""
        existed = self._table.delete(owner_id, generated_id)
        if existed:
            logger.warning("Forgot pack %s for owner %s", generated_id, owner_id)


__all__ = [
    "PackNameConflictError",
    "PackRegistry",
    "PackTable",
    "RegistryError",
]
