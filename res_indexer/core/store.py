"""
Persistence layer for indexed events.

``EventStore`` is the contract the sync engine relies on; ``SQLiteStore`` is
the bundled implementation. Every event table carries a
``UNIQUE(transaction_hash, log_index)`` constraint and rows are written with
``INSERT OR IGNORE``, so re-ingesting a block range is always safe.
"""
from __future__ import annotations

import json
import logging
import os
import pickle
import sqlite3
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Sequence

import pandas as pd

from res_indexer.core.errors import StoreError
from res_indexer.core.types import (
    KYC_FLAGS,
    EventKind,
    EventRecord,
    KYCEventRecord,
    KYCStatus,
    Notification,
    SyncCursor,
)
from res_indexer.core.utils import normalize_address

logger = logging.getLogger(__name__)

_EVENT_COLUMNS = """
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    transaction_hash TEXT NOT NULL,
    block_number INTEGER NOT NULL,
    log_index INTEGER NOT NULL,
    timestamp INTEGER NOT NULL,
"""

SCHEMA: Dict[str, str] = {
    "res_transfers": """
        from_address TEXT NOT NULL,
        to_address TEXT NOT NULL,
        amount TEXT NOT NULL,
    """,
    "property_transfers": """
        from_address TEXT NOT NULL,
        to_address TEXT NOT NULL,
        token_id TEXT NOT NULL,
    """,
    "property_mints": """
        token_id TEXT NOT NULL,
        owner_address TEXT NOT NULL,
        metadata_uri TEXT,
    """,
    "kyc_events": """
        user_address TEXT NOT NULL,
        event_type TEXT NOT NULL,
        is_active INTEGER NOT NULL,
    """,
    "swap_events": """
        pair_address TEXT NOT NULL,
        sender TEXT NOT NULL,
        to_address TEXT NOT NULL,
        amount0_in TEXT NOT NULL,
        amount1_in TEXT NOT NULL,
        amount0_out TEXT NOT NULL,
        amount1_out TEXT NOT NULL,
    """,
    "oracle_prices": """
        token_address TEXT NOT NULL,
        token_symbol TEXT NOT NULL,
        price_usd TEXT NOT NULL,
        source TEXT NOT NULL DEFAULT 'oracle',
    """,
}

# Columns matched by by_address() for each table
ADDRESS_COLUMNS: Dict[str, Sequence[str]] = {
    "res_transfers": ("from_address", "to_address"),
    "property_transfers": ("from_address", "to_address"),
    "property_mints": ("owner_address",),
    "kyc_events": ("user_address",),
    "swap_events": ("sender", "to_address"),
    "oracle_prices": ("token_address",),
}


class EventStore(ABC):
    """Persistence contract consumed by the scanner and the sync manager."""

    @abstractmethod
    def upsert_batch(self, kind: EventKind, records: Sequence[EventRecord]) -> int:
        """Insert records that are not stored yet; returns how many were new.

        The batch is all-or-nothing: on failure nothing from it is kept.
        """

    @abstractmethod
    def get_cursor(self) -> SyncCursor: ...

    @abstractmethod
    def ensure_cursor(self, start_block: int) -> SyncCursor: ...

    @abstractmethod
    def set_cursor(self, block_number: int) -> SyncCursor: ...

    @abstractmethod
    def set_syncing(self, is_syncing: bool) -> None: ...

    @abstractmethod
    def enqueue_notification(self, notification: Notification) -> bool: ...

    @abstractmethod
    def get_kyc_status(self, address: str) -> KYCStatus: ...

    def close(self) -> None:
        pass


class SQLiteStore(EventStore):
    """Thread-safe SQLite implementation of ``EventStore``.

    A single connection is shared between the scan workers, the ticking thread
    and the real-time consumer; access is serialised with a re-entrant lock.
    """

    def __init__(self, db_path: str = "data/res_indexer.db"):
        self.db_path = db_path
        if db_path != ":memory:":
            parent = os.path.dirname(os.path.abspath(db_path))
            os.makedirs(parent, exist_ok=True)
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._create_tables()

    # ---------------- Schema ----------------
    def _create_tables(self) -> None:
        with self._lock, self._conn:
            cur = self._conn.cursor()
            for table, columns in SCHEMA.items():
                cur.execute(
                    f"""
                    CREATE TABLE IF NOT EXISTS {table} (
                        {_EVENT_COLUMNS}
                        {columns}
                        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                        UNIQUE(transaction_hash, log_index)
                    )
                    """
                )
                cur.execute(f"CREATE INDEX IF NOT EXISTS idx_{table}_block ON {table}(block_number)")
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS kyc_status (
                    user_address TEXT PRIMARY KEY,
                    is_whitelisted INTEGER NOT NULL DEFAULT 0,
                    is_blacklisted INTEGER NOT NULL DEFAULT 0,
                    whitelist_block INTEGER,
                    whitelist_log_index INTEGER,
                    blacklist_block INTEGER,
                    blacklist_log_index INTEGER,
                    last_updated_block INTEGER,
                    last_updated_timestamp INTEGER,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS notifications (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    type TEXT NOT NULL,
                    recipient TEXT,
                    title TEXT NOT NULL,
                    message TEXT NOT NULL,
                    data TEXT,
                    transaction_hash TEXT NOT NULL,
                    log_index INTEGER NOT NULL,
                    sent INTEGER NOT NULL DEFAULT 0,
                    sent_at TIMESTAMP,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    UNIQUE(transaction_hash, log_index, type)
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS sync_status (
                    id INTEGER PRIMARY KEY CHECK (id = 1),
                    last_synced_block INTEGER NOT NULL,
                    is_syncing INTEGER NOT NULL DEFAULT 0,
                    last_sync_timestamp INTEGER
                )
                """
            )

    # ---------------- Event records ----------------
    def upsert_batch(self, kind: EventKind, records: Sequence[EventRecord]) -> int:
        if not records:
            return 0
        inserted = 0
        try:
            with self._lock, self._conn:
                cur = self._conn.cursor()
                for record in records:
                    row = record.as_row()
                    columns = ", ".join(row)
                    placeholders = ", ".join("?" for _ in row)
                    cur.execute(
                        f"INSERT OR IGNORE INTO {kind.table} ({columns}) VALUES ({placeholders})",
                        tuple(row.values()),
                    )
                    if cur.rowcount == 1:
                        inserted += 1
                        if isinstance(record, KYCEventRecord):
                            self._apply_kyc_event(cur, record)
        except sqlite3.Error as exc:
            raise StoreError(f"Failed to persist {len(records)} {kind} records: {exc}") from exc
        return inserted

    def _apply_kyc_event(self, cur: sqlite3.Cursor, record: KYCEventRecord) -> None:
        """Project a newly stored KYC event onto kyc_status.

        Whitelist and blacklist flags are tracked independently; each only moves
        forward in ``(block_number, log_index)`` order, so late deliveries of
        older events leave the current status untouched.
        """
        prefix = "whitelist" if record.event_type == "whitelisted" else "blacklist"
        flag = f"is_{record.event_type}"
        position = (record.block_number, record.log_index)

        cur.execute("SELECT * FROM kyc_status WHERE user_address = ?", (record.user_address,))
        row = cur.fetchone()
        if row is None:
            cur.execute(
                f"""
                INSERT INTO kyc_status
                    (user_address, {flag}, {prefix}_block, {prefix}_log_index,
                     last_updated_block, last_updated_timestamp)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    record.user_address,
                    int(record.is_active),
                    record.block_number,
                    record.log_index,
                    record.block_number,
                    record.timestamp,
                ),
            )
            return

        if row[f"{prefix}_block"] is not None and (row[f"{prefix}_block"], row[f"{prefix}_log_index"]) > position:
            return
        last_block = row["last_updated_block"]
        if last_block is None or record.block_number >= last_block:
            last_block, last_ts = record.block_number, record.timestamp
        else:
            last_ts = row["last_updated_timestamp"]
        cur.execute(
            f"""
            UPDATE kyc_status
               SET {flag} = ?, {prefix}_block = ?, {prefix}_log_index = ?,
                   last_updated_block = ?, last_updated_timestamp = ?,
                   updated_at = CURRENT_TIMESTAMP
             WHERE user_address = ?
            """,
            (int(record.is_active), record.block_number, record.log_index, last_block, last_ts, record.user_address),
        )

    def get_kyc_status(self, address: str) -> KYCStatus:
        address = normalize_address(address)
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM kyc_status WHERE user_address = ?", (address,)
            ).fetchone()
        if row is None:
            return KYCStatus(address=address)
        return KYCStatus(
            address=address,
            is_whitelisted=bool(row["is_whitelisted"]),
            is_blacklisted=bool(row["is_blacklisted"]),
            last_updated_block=row["last_updated_block"],
            last_updated_timestamp=row["last_updated_timestamp"],
        )

    # ---------------- Cursor ----------------
    def get_cursor(self) -> SyncCursor:
        with self._lock:
            row = self._conn.execute(
                "SELECT last_synced_block, is_syncing, last_sync_timestamp FROM sync_status WHERE id = 1"
            ).fetchone()
        if row is None:
            return SyncCursor(last_synced_block=0)
        return SyncCursor(
            last_synced_block=int(row["last_synced_block"]),
            is_syncing=bool(row["is_syncing"]),
            last_sync_timestamp=row["last_sync_timestamp"],
        )

    def ensure_cursor(self, start_block: int) -> SyncCursor:
        """Create the cursor row on first run so that the first scan starts at ``start_block``."""
        with self._lock, self._conn:
            self._conn.execute(
                "INSERT OR IGNORE INTO sync_status (id, last_synced_block, is_syncing) VALUES (1, ?, 0)",
                (max(int(start_block) - 1, 0),),
            )
        return self.get_cursor()

    def set_cursor(self, block_number: int) -> SyncCursor:
        with self._lock, self._conn:
            self._conn.execute(
                """
                INSERT INTO sync_status (id, last_synced_block, is_syncing, last_sync_timestamp)
                VALUES (1, ?, 0, ?)
                ON CONFLICT(id) DO UPDATE SET
                    last_synced_block = MAX(sync_status.last_synced_block, excluded.last_synced_block),
                    last_sync_timestamp = excluded.last_sync_timestamp
                """,
                (int(block_number), int(time.time())),
            )
        return self.get_cursor()

    def set_syncing(self, is_syncing: bool) -> None:
        with self._lock, self._conn:
            self._conn.execute("UPDATE sync_status SET is_syncing = ? WHERE id = 1", (int(bool(is_syncing)),))

    # ---------------- Notifications ----------------
    def enqueue_notification(self, notification: Notification) -> bool:
        """Append a notification; returns False when one already exists for the same event and type."""
        with self._lock, self._conn:
            cur = self._conn.execute(
                """
                INSERT OR IGNORE INTO notifications
                    (type, recipient, title, message, data, transaction_hash, log_index)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    notification.type,
                    notification.recipient,
                    notification.title,
                    notification.message,
                    json.dumps(notification.data, default=str) if notification.data else None,
                    notification.transaction_hash,
                    notification.log_index,
                ),
            )
            return cur.rowcount == 1

    def pending_notifications(self, limit: int = 50) -> List[Dict[str, Any]]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM notifications WHERE sent = 0 ORDER BY created_at ASC, id ASC LIMIT ?",
                (limit,),
            ).fetchall()
        out = []
        for row in rows:
            item = dict(row)
            item["data"] = json.loads(item["data"]) if item["data"] else None
            out.append(item)
        return out

    def mark_notification_sent(self, notification_id: int) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                "UPDATE notifications SET sent = 1, sent_at = CURRENT_TIMESTAMP WHERE id = ?",
                (notification_id,),
            )

    # ---------------- Read helpers ----------------
    @staticmethod
    def _kind_filter(kind: EventKind):
        if kind.is_kyc:
            event_type, is_active = KYC_FLAGS[kind]
            return " AND event_type = ? AND is_active = ?", [event_type, int(is_active)]
        return "", []

    def count(self, kind: EventKind) -> int:
        where, params = self._kind_filter(kind)
        with self._lock:
            row = self._conn.execute(
                f"SELECT COUNT(*) AS n FROM {kind.table} WHERE 1 = 1{where}", params
            ).fetchone()
        return int(row["n"])

    def recent(self, kind: EventKind, limit: int = 20) -> List[Dict[str, Any]]:
        where, params = self._kind_filter(kind)
        with self._lock:
            rows = self._conn.execute(
                f"""
                SELECT * FROM {kind.table} WHERE 1 = 1{where}
                ORDER BY block_number DESC, log_index DESC LIMIT ?
                """,
                params + [limit],
            ).fetchall()
        return [dict(row) for row in rows]

    def by_address(self, kind: EventKind, address: str, limit: int = 50, offset: int = 0) -> List[Dict[str, Any]]:
        address = normalize_address(address)
        columns = ADDRESS_COLUMNS[kind.table]
        match = " OR ".join(f"{col} = ?" for col in columns)
        where, params = self._kind_filter(kind)
        with self._lock:
            rows = self._conn.execute(
                f"""
                SELECT * FROM {kind.table} WHERE ({match}){where}
                ORDER BY block_number DESC, log_index DESC LIMIT ? OFFSET ?
                """,
                [address] * len(columns) + params + [limit, offset],
            ).fetchall()
        return [dict(row) for row in rows]

    # ---------------- Export ----------------
    def to_frame(self, kind: EventKind) -> pd.DataFrame:
        """All stored rows of ``kind`` as a DataFrame ordered by block and log index."""
        where, params = self._kind_filter(kind)
        with self._lock:
            return pd.read_sql_query(
                f"SELECT * FROM {kind.table} WHERE 1 = 1{where} ORDER BY block_number, log_index",
                self._conn,
                params=params,
            )

    def export_pickles(self, out_dir: str) -> Dict[str, str]:
        """Write one pickled DataFrame per event table into ``out_dir``; returns table -> path."""
        os.makedirs(out_dir, exist_ok=True)
        written: Dict[str, str] = {}
        for table in SCHEMA:
            with self._lock:
                df = pd.read_sql_query(f"SELECT * FROM {table} ORDER BY block_number, log_index", self._conn)
            out_path = os.path.join(out_dir, f"{table}.pkl")
            if os.path.exists(out_path):
                os.remove(out_path)
            df.to_pickle(out_path, compression=None, protocol=pickle.HIGHEST_PROTOCOL)
            written[table] = out_path
        logger.info("Exported %d tables to %s", len(written), out_dir)
        return written

    def close(self) -> None:
        with self._lock:
            self._conn.close()
