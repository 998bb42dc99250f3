from __future__ import annotations

from typing import List

from pydantic import BaseModel, ConfigDict, Field


class PackRecord(BaseModel):
    """
    One sticker pack this bot created on behalf of a user.

    Fields
    - owner_id: Telegram user id of the pack owner.
    - display_name: title the user typed when creating the pack.
    - generated_id: Telegram set name derived from `display_name`
      (see `common.naming.generate_pack_id`).

    `(owner_id, generated_id)` is unique across the registry.
    """

    model_config = ConfigDict(frozen=True)

    owner_id: int
    display_name: str
    generated_id: str

    @property
    def key(self) -> tuple[int, str]:
        return (self.owner_id, self.generated_id)


class PackTableSnapshot(BaseModel):
    """
    Whole-table snapshot serialized to JSON and encrypted at rest (S3 backend).

    `records` keeps insertion order; list order is the listing order.
    """

    records: List[PackRecord] = Field(default_factory=list, description="Pack rows in insertion order")

    @classmethod
    def empty(cls) -> "PackTableSnapshot":
        return cls()
