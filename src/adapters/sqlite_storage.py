"""SQLite cursor store.

Persists the per-subject cursor across restarts and keeps an append-only log
of delivery attempts for auditing.
"""

from __future__ import annotations

import sqlite3
from datetime import datetime, timezone
from typing import Optional

from core.models import Cursor, DeliveryOutcome, Item


class SqliteCursorStore:
    """Thin SQLite wrapper that satisfies the CursorStore contract."""

    def __init__(self, db_path: str, subject_id: str) -> None:
        self._db_path = db_path
        self._subject_id = subject_id
        self._cursor: Cursor = None

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def init_db(self) -> None:
        """Create tables if they do not exist.

        Tables:
        - sources_state: per-subject id of the newest delivered item
        - deliveries: append-only log of delivery attempts
        """

        with self._connect() as conn:
            # Ids are stored as decimal text; upstream ids can exceed 64 bits.
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS sources_state (
                    source_key TEXT PRIMARY KEY,
                    last_item_id TEXT NOT NULL,
                    updated_at TIMESTAMP NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS deliveries (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    source_key TEXT,
                    item_id TEXT,
                    delivered INTEGER,
                    reason TEXT,
                    permalink TEXT,
                    created_at TIMESTAMP
                )
                """
            )

    def get_last_id(self) -> Cursor:
        """Return the persisted cursor for this subject, if any."""

        with self._connect() as conn:
            row = conn.execute(
                "SELECT last_item_id FROM sources_state WHERE source_key = ?",
                (self._subject_id,),
            ).fetchone()
        return int(row["last_item_id"]) if row else None

    def set_last_id(self, item_id: int) -> None:
        """Upsert the cursor for this subject."""

        now = datetime.now(timezone.utc)
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO sources_state (source_key, last_item_id, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(source_key) DO UPDATE SET
                    last_item_id = excluded.last_item_id,
                    updated_at = excluded.updated_at
                """,
                (self._subject_id, str(item_id), now.isoformat()),
            )

    def record_delivery(self, item: Item, outcome: DeliveryOutcome) -> None:
        """Append a delivery attempt to the deliveries log."""

        created_at = datetime.now(timezone.utc)
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO deliveries (
                    source_key,
                    item_id,
                    delivered,
                    reason,
                    permalink,
                    created_at
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    self._subject_id,
                    str(item.id),
                    int(outcome.delivered),
                    outcome.reason,
                    item.permalink,
                    created_at.isoformat(),
                ),
            )

    def list_deliveries(self, limit: Optional[int] = None) -> list[sqlite3.Row]:
        """Return logged deliveries for this subject, oldest first."""

        query = "SELECT * FROM deliveries WHERE source_key = ? ORDER BY id"
        params: tuple = (self._subject_id,)
        if limit is not None:
            query += " LIMIT ?"
            params = (self._subject_id, limit)
        with self._connect() as conn:
            return conn.execute(query, params).fetchall()

    async def load(self) -> Cursor:
        self.init_db()
        self._cursor = self.get_last_id()
        return self._cursor

    async def read(self) -> Cursor:
        return self._cursor

    async def advance(self, item_id: int) -> None:
        if self._cursor is not None and item_id <= self._cursor:
            return
        self.set_last_id(item_id)
        self._cursor = item_id
