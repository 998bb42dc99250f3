from __future__ import annotations

import sqlite3
import threading
from pathlib import Path
from typing import List, Union

from .models import PackRecord


DEFAULT_DB_PATH = "stickers.db"


class SqlitePackTable:
    """
    SQLite-backed pack table.

    Schema: sticker_packs(owner_id, display_name, generated_id) with primary
    key (owner_id, generated_id). Listing order is rowid, i.e. insertion
    order. One connection is shared across threads and guarded by a lock;
    pass ":memory:" for a throwaway table.
    """

    def __init__(self, path: Union[str, Path] = DEFAULT_DB_PATH) -> None:
        if str(path) != ":memory:":
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(path), check_same_thread=False)
        self._lock = threading.Lock()
        self._ensure_table()

    def _ensure_table(self) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS sticker_packs (
                    owner_id INTEGER NOT NULL,
                    display_name TEXT NOT NULL,
                    generated_id TEXT NOT NULL,
                    PRIMARY KEY (owner_id, generated_id)
                )
                """
            )

    def close(self) -> None:
        self._conn.close()

    def insert(self, record: PackRecord) -> bool:
        with self._lock, self._conn:
            cur = self._conn.execute(
                "INSERT OR IGNORE INTO sticker_packs (owner_id, display_name, generated_id) VALUES (?, ?, ?)",
                (record.owner_id, record.display_name, record.generated_id),
            )
            return cur.rowcount == 1

    def select(self, owner_id: int) -> List[PackRecord]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT owner_id, display_name, generated_id FROM sticker_packs WHERE owner_id = ? ORDER BY rowid",
                (owner_id,),
            ).fetchall()
        return [PackRecord(owner_id=o, display_name=d, generated_id=g) for o, d, g in rows]

    def delete(self, owner_id: int, generated_id: str) -> bool:
        with self._lock, self._conn:
            cur = self._conn.execute(
                "DELETE FROM sticker_packs WHERE owner_id = ? AND generated_id = ?",
                (owner_id, generated_id),
            )
            return cur.rowcount > 0
