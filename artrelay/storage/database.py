"""Database layer for artrelay using SQLite.

One ``Database`` file backs either the tiered cache (partitions and their
entries) or the favorites store (favorite records and the thumbnail cache).
Every public method runs in a single transaction: it commits fully or rolls
back and raises ``StorageError``.
"""

from __future__ import annotations

import logging
import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Generator, List, Optional

from artrelay.core.data_models import CacheEntry
from artrelay.core.errors import StorageError


class Database:
    """SQLite database manager for artrelay."""

    def __init__(self, db_path: str = "artrelay.db"):
        """
        Initialize database connection.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path
        self.logger = logging.getLogger(self.__class__.__name__)
        self._initialize_schema()

    @contextmanager
    def _get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """
        Context manager for database connections.

        Yields:
            SQLite connection with row factory set
        """
        try:
            conn = sqlite3.connect(self.db_path)
        except sqlite3.Error as e:
            raise StorageError(f"Cannot open database {self.db_path}: {e}") from e
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            self.logger.error("Database error: %s", e)
            raise StorageError(str(e)) from e
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _initialize_schema(self) -> None:
        """Create database tables if they don't exist."""
        if str(self.db_path) != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        with self._get_connection() as conn:
            cursor = conn.cursor()

            # Versioned cache partitions
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS cache_partitions (
                    name TEXT PRIMARY KEY,
                    base TEXT NOT NULL,
                    version TEXT NOT NULL,
                    created_at REAL NOT NULL
                )
            """
            )

            # Cached responses, id gives insertion order
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS cache_entries (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    partition TEXT NOT NULL,
                    cache_key TEXT NOT NULL,
                    payload BLOB NOT NULL,
                    content_type TEXT,
                    stored_at REAL NOT NULL,
                    UNIQUE (partition, cache_key)
                )
            """
            )

            # Favorite artworks
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS favorites (
                    object_id INTEGER PRIMARY KEY,
                    record TEXT NOT NULL,
                    thumbnail TEXT,
                    date_added TEXT NOT NULL,
                    seq INTEGER NOT NULL
                )
            """
            )

            # Thumbnail cache keyed by object id
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS thumbnails (
                    object_id INTEGER PRIMARY KEY,
                    thumbnail TEXT NOT NULL,
                    last_accessed REAL NOT NULL
                )
            """
            )

            cursor.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_cache_partition
                ON cache_entries(partition, id)
            """
            )

            cursor.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_favorites_date_added
                ON favorites(date_added, seq)
            """
            )

            self.logger.debug("Database initialized at %s", self.db_path)

    # ------------------------------------------------------------------
    # Cache partitions
    # ------------------------------------------------------------------

    def register_partition(self, name: str, base: str, version: str) -> None:
        """Record a partition as belonging to the current cache format."""
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO cache_partitions (name, base, version, created_at)
                VALUES (?, ?, ?, ?)
            """,
                (name, base, version, time.time()),
            )

    def list_partitions(self) -> List[Dict[str, Any]]:
        """All partitions known to this file, including ones with only entries."""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT name, base, version, created_at FROM cache_partitions")
            known = {row["name"]: dict(row) for row in cursor.fetchall()}
            cursor.execute("SELECT DISTINCT partition FROM cache_entries")
            for row in cursor.fetchall():
                known.setdefault(
                    row["partition"],
                    {"name": row["partition"], "base": None, "version": None, "created_at": None},
                )
            return list(known.values())

    def drop_partition(self, name: str) -> int:
        """Delete a partition and all of its entries.

        Returns:
            Number of entries deleted
        """
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("DELETE FROM cache_entries WHERE partition = ?", (name,))
            deleted = cursor.rowcount
            cursor.execute("DELETE FROM cache_partitions WHERE name = ?", (name,))
            self.logger.info("Dropped partition %s (%d entries)", name, deleted)
            return deleted

    # ------------------------------------------------------------------
    # Cache entries
    # ------------------------------------------------------------------

    def cache_put(
        self,
        partition: str,
        key: str,
        payload: bytes,
        content_type: Optional[str] = None,
        max_items: Optional[int] = None,
        stored_at: Optional[float] = None,
    ) -> int:
        """
        Store an entry and trim the partition to ``max_items`` in one transaction.

        Overwriting an existing key keeps its insertion position; its
        ``stored_at`` never moves backwards.

        Returns:
            Number of entries evicted
        """
        stored_at = time.time() if stored_at is None else stored_at
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                INSERT INTO cache_entries (partition, cache_key, payload, content_type, stored_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(partition, cache_key) DO UPDATE SET
                    payload = excluded.payload,
                    content_type = excluded.content_type,
                    stored_at = MAX(cache_entries.stored_at, excluded.stored_at)
            """,
                (partition, key, sqlite3.Binary(payload), content_type, stored_at),
            )
            evicted = 0
            if max_items is not None:
                evicted = self._trim(cursor, partition, max_items)
            self.logger.debug("Cached %d bytes in %s for key: %s", len(payload), partition, key)
            return evicted

    def _trim(self, cursor: sqlite3.Cursor, partition: str, max_items: int) -> int:
        cursor.execute("SELECT COUNT(*) AS count FROM cache_entries WHERE partition = ?", (partition,))
        excess = cursor.fetchone()["count"] - max_items
        if excess <= 0:
            return 0
        cursor.execute(
            """
            DELETE FROM cache_entries WHERE id IN (
                SELECT id FROM cache_entries
                WHERE partition = ?
                ORDER BY id ASC
                LIMIT ?
            )
        """,
            (partition, excess),
        )
        return cursor.rowcount

    def cache_trim(self, partition: str, max_items: int) -> int:
        """Evict oldest entries until the partition holds at most ``max_items``."""
        with self._get_connection() as conn:
            return self._trim(conn.cursor(), partition, max_items)

    def cache_get(self, partition: str, key: str) -> Optional[CacheEntry]:
        """
        Retrieve an entry.

        Returns:
            The entry or None if not found
        """
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                SELECT partition, cache_key, payload, content_type, stored_at
                FROM cache_entries
                WHERE partition = ? AND cache_key = ?
            """,
                (partition, key),
            )
            row = cursor.fetchone()
            if not row:
                return None
            return self._row_to_entry(row)

    def cache_entries(self, partition: str, key_like: Optional[str] = None) -> List[CacheEntry]:
        """Entries of a partition in insertion order, optionally filtered by a LIKE pattern."""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            if key_like:
                cursor.execute(
                    """
                    SELECT partition, cache_key, payload, content_type, stored_at
                    FROM cache_entries
                    WHERE partition = ? AND cache_key LIKE ?
                    ORDER BY id ASC
                """,
                    (partition, key_like),
                )
            else:
                cursor.execute(
                    """
                    SELECT partition, cache_key, payload, content_type, stored_at
                    FROM cache_entries
                    WHERE partition = ?
                    ORDER BY id ASC
                """,
                    (partition,),
                )
            return [self._row_to_entry(row) for row in cursor.fetchall()]

    def cache_keys(self, partition: str) -> List[str]:
        """Keys of a partition, oldest first."""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT cache_key FROM cache_entries WHERE partition = ? ORDER BY id ASC",
                (partition,),
            )
            return [row["cache_key"] for row in cursor.fetchall()]

    def cache_count(self, partition: str) -> int:
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT COUNT(*) AS count FROM cache_entries WHERE partition = ?", (partition,)
            )
            return cursor.fetchone()["count"]

    def cache_delete(self, partition: str, key: str) -> bool:
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "DELETE FROM cache_entries WHERE partition = ? AND cache_key = ?",
                (partition, key),
            )
            return cursor.rowcount > 0

    def cache_clear(self, partition: Optional[str] = None) -> int:
        """
        Clear cache entries.

        Args:
            partition: Partition to clear (None = clear all)

        Returns:
            Number of entries deleted
        """
        with self._get_connection() as conn:
            cursor = conn.cursor()
            if partition:
                cursor.execute("DELETE FROM cache_entries WHERE partition = ?", (partition,))
            else:
                cursor.execute("DELETE FROM cache_entries")
            deleted = cursor.rowcount
            self.logger.info("Cleared %d cache entries", deleted)
            return deleted

    @staticmethod
    def _row_to_entry(row: sqlite3.Row) -> CacheEntry:
        return CacheEntry(
            partition=row["partition"],
            key=row["cache_key"],
            payload=bytes(row["payload"]),
            stored_at=row["stored_at"],
            content_type=row["content_type"],
        )

    # ------------------------------------------------------------------
    # Favorites
    # ------------------------------------------------------------------

    def favorite_upsert(
        self,
        object_id: int,
        record: str,
        date_added: str,
        thumbnail: Optional[str],
        max_favorites: int,
        thumbnail_cache_limit: Optional[int] = None,
    ) -> Optional[int]:
        """
        Insert or replace a favorite, evicting the oldest one when a new
        record would exceed ``max_favorites``.  The thumbnail cache is
        updated in the same transaction.

        Returns:
            The evicted object id, if any
        """
        with self._get_connection() as conn:
            cursor = conn.cursor()
            evicted: Optional[int] = None

            cursor.execute("SELECT 1 FROM favorites WHERE object_id = ?", (object_id,))
            exists = cursor.fetchone() is not None

            if not exists:
                cursor.execute("SELECT COUNT(*) AS count FROM favorites")
                if cursor.fetchone()["count"] >= max_favorites:
                    cursor.execute(
                        "SELECT object_id FROM favorites ORDER BY date_added ASC, seq ASC LIMIT 1"
                    )
                    oldest = cursor.fetchone()
                    if oldest is not None:
                        evicted = oldest["object_id"]
                        cursor.execute("DELETE FROM favorites WHERE object_id = ?", (evicted,))

            cursor.execute("SELECT COALESCE(MAX(seq), 0) + 1 AS next FROM favorites")
            seq = cursor.fetchone()["next"]
            cursor.execute(
                """
                INSERT OR REPLACE INTO favorites (object_id, record, thumbnail, date_added, seq)
                VALUES (?, ?, ?, ?, ?)
            """,
                (object_id, record, thumbnail, date_added, seq),
            )

            if thumbnail:
                self._put_thumbnail(cursor, object_id, thumbnail, thumbnail_cache_limit)

            self.logger.debug("Saved favorite %d", object_id)
            return evicted

    def favorite_get(self, object_id: int) -> Optional[Dict[str, Any]]:
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT object_id, record, thumbnail, date_added FROM favorites WHERE object_id = ?",
                (object_id,),
            )
            row = cursor.fetchone()
            return dict(row) if row else None

    def favorite_exists(self, object_id: int) -> bool:
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT 1 FROM favorites WHERE object_id = ?", (object_id,))
            return cursor.fetchone() is not None

    def favorite_list(self) -> List[Dict[str, Any]]:
        """All favorites, newest first."""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                SELECT object_id, record, thumbnail, date_added FROM favorites
                ORDER BY date_added DESC, seq DESC
            """
            )
            return [dict(row) for row in cursor.fetchall()]

    def favorite_count(self) -> int:
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT COUNT(*) AS count FROM favorites")
            return cursor.fetchone()["count"]

    def favorite_delete(self, object_id: int) -> bool:
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("DELETE FROM favorites WHERE object_id = ?", (object_id,))
            return cursor.rowcount > 0

    def favorite_clear(self) -> int:
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("DELETE FROM favorites")
            deleted = cursor.rowcount
            self.logger.info("Cleared %d favorites", deleted)
            return deleted

    # ------------------------------------------------------------------
    # Thumbnail cache
    # ------------------------------------------------------------------

    def _put_thumbnail(
        self,
        cursor: sqlite3.Cursor,
        object_id: int,
        thumbnail: str,
        limit: Optional[int],
    ) -> None:
        cursor.execute(
            """
            INSERT OR REPLACE INTO thumbnails (object_id, thumbnail, last_accessed)
            VALUES (?, ?, ?)
        """,
            (object_id, thumbnail, time.time()),
        )
        if limit is not None:
            cursor.execute(
                """
                DELETE FROM thumbnails WHERE object_id IN (
                    SELECT object_id FROM thumbnails
                    ORDER BY last_accessed DESC
                    LIMIT -1 OFFSET ?
                )
            """,
                (limit,),
            )

    def thumbnail_get(self, object_id: int) -> Optional[str]:
        """Cached thumbnail for ``object_id``; refreshes its access time."""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT thumbnail FROM thumbnails WHERE object_id = ?", (object_id,))
            row = cursor.fetchone()
            if not row:
                return None
            cursor.execute(
                "UPDATE thumbnails SET last_accessed = ? WHERE object_id = ?",
                (time.time(), object_id),
            )
            return row["thumbnail"]

    def thumbnail_count(self) -> int:
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT COUNT(*) AS count FROM thumbnails")
            return cursor.fetchone()["count"]

    def get_statistics(self) -> Dict[str, Any]:
        """
        Get database statistics.

        Returns:
            Dictionary with database statistics
        """
        with self._get_connection() as conn:
            cursor = conn.cursor()
            stats: Dict[str, Any] = {}

            cursor.execute(
                "SELECT partition, COUNT(*) AS count FROM cache_entries GROUP BY partition"
            )
            stats["cache_entries"] = {row["partition"]: row["count"] for row in cursor.fetchall()}

            cursor.execute("SELECT COUNT(*) AS count FROM favorites")
            stats["favorites"] = cursor.fetchone()["count"]

            cursor.execute("SELECT COUNT(*) AS count FROM thumbnails")
            stats["thumbnails"] = cursor.fetchone()["count"]

            if str(self.db_path) != ":memory:":
                stats["database_size_bytes"] = Path(self.db_path).stat().st_size

            return stats
