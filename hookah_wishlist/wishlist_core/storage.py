from __future__ import annotations

import json
import logging
import os
import sqlite3
from pathlib import Path
from typing import Any, Dict, Optional, Protocol

from hookah_wishlist.wishlist_core.config import Settings

logger = logging.getLogger(__name__)

SQLITE_BUSY_TIMEOUT_MS = 5000
SQLITE_CONNECT_TIMEOUT_SECONDS = SQLITE_BUSY_TIMEOUT_MS / 1000


CREATE_TABLE_STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS wishlists (
        user_id TEXT PRIMARY KEY NOT NULL,
        items TEXT NOT NULL,
        updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
        created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
    );
    """,
]

CREATE_INDEX_STATEMENTS = [
    "CREATE INDEX IF NOT EXISTS idx_wishlists_updated_at ON wishlists(updated_at);",
]


class StorageError(RuntimeError):
    """Raised when a storage backend cannot complete an operation."""


class Storage(Protocol):
    def get(self, key: str) -> Optional[Dict[str, Any]]:
        ...

    def set(self, key: str, value: Dict[str, Any]) -> None:
        ...

    def delete(self, key: str) -> None:
        ...

    def exists(self, key: str) -> bool:
        ...

    def clear(self) -> None:
        ...


class FileStorage:
    """One JSON document per key inside ``directory``.

    Reads always go to disk: the bot and the API run as separate processes
    over the same directory.
    """

    def __init__(self, directory: Path) -> None:
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _file_path(self, key: str) -> Path:
        # Keep every key a flat file inside the storage directory.
        sanitized = key.replace("/", "_").replace("\\", "_")
        return self.directory / f"{sanitized}.json"

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        path = self._file_path(key)
        try:
            with path.open("r", encoding="utf-8") as fh:
                return json.load(fh)
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as exc:
            logger.error("Failed to read storage key %s: %s", key, exc)
            raise StorageError(f"Failed to read key {key!r}") from exc

    def set(self, key: str, value: Dict[str, Any]) -> None:
        path = self._file_path(key)
        tmp_path = path.with_name(f"{path.name}.{os.getpid()}.tmp")
        try:
            with tmp_path.open("w", encoding="utf-8") as fh:
                json.dump(value, fh, ensure_ascii=False, indent=2)
            tmp_path.replace(path)
        except (OSError, TypeError, ValueError) as exc:
            logger.error("Failed to write storage key %s: %s", key, exc)
            tmp_path.unlink(missing_ok=True)
            raise StorageError(f"Failed to write key {key!r}") from exc

    def delete(self, key: str) -> None:
        try:
            self._file_path(key).unlink()
        except FileNotFoundError:
            logger.debug("Key not found for deletion: %s", key)
        except OSError as exc:
            raise StorageError(f"Failed to delete key {key!r}") from exc

    def exists(self, key: str) -> bool:
        return self._file_path(key).exists()

    def clear(self) -> None:
        try:
            for path in self.directory.glob("*.json"):
                path.unlink()
        except OSError as exc:
            raise StorageError("Failed to clear storage") from exc
        logger.info("File storage cleared: %s", self.directory)


def _apply_pragmas(conn: sqlite3.Connection) -> None:
    conn.execute(f"PRAGMA busy_timeout = {SQLITE_BUSY_TIMEOUT_MS};")
    conn.execute("PRAGMA journal_mode = WAL;")
    conn.execute("PRAGMA synchronous = NORMAL;")


def init_db(db_path: Path) -> None:
    db_path.parent.mkdir(parents=True, exist_ok=True)
    with sqlite3.connect(db_path) as conn:
        _apply_pragmas(conn)
        for stmt in CREATE_TABLE_STATEMENTS:
            conn.execute(stmt)
        for stmt in CREATE_INDEX_STATEMENTS:
            conn.execute(stmt)
        conn.commit()


def get_connection(db_path: Path) -> sqlite3.Connection:
    conn = sqlite3.connect(
        db_path,
        check_same_thread=False,
        timeout=SQLITE_CONNECT_TIMEOUT_SECONDS,
    )
    _apply_pragmas(conn)
    conn.row_factory = sqlite3.Row
    return conn


class SQLiteStorage:
    """Key-value storage on an SQLite table running in WAL mode.

    Every call opens its own connection and reads the table directly, so
    several processes can share one database file.
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        try:
            init_db(self.db_path)
        except sqlite3.Error as exc:
            raise StorageError(f"Database initialization failed: {exc}") from exc
        logger.info("SQLite storage initialized at %s", self.db_path)

    def journal_mode(self) -> str:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute("PRAGMA journal_mode;").fetchone()
        finally:
            conn.close()
        return str(row[0]).lower() if row else ""

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute("SELECT items FROM wishlists WHERE user_id = ?", (key,)).fetchone()
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to read key {key!r}") from exc
        finally:
            conn.close()
        if row is None:
            return None

        try:
            return json.loads(row["items"])
        except ValueError as exc:
            raise StorageError(f"Stored value for key {key!r} is not valid JSON") from exc

    def set(self, key: str, value: Dict[str, Any]) -> None:
        try:
            items_json = json.dumps(value, ensure_ascii=False)
        except (TypeError, ValueError) as exc:
            raise StorageError(f"Value for key {key!r} is not JSON serialisable") from exc

        conn = get_connection(self.db_path)
        try:
            conn.execute(
                """
                INSERT INTO wishlists (user_id, items, updated_at, created_at)
                VALUES (?, ?, CURRENT_TIMESTAMP, CURRENT_TIMESTAMP)
                ON CONFLICT(user_id) DO UPDATE SET
                    items = excluded.items,
                    updated_at = CURRENT_TIMESTAMP
                """,
                (key, items_json),
            )
            conn.commit()
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to write key {key!r}") from exc
        finally:
            conn.close()

    def delete(self, key: str) -> None:
        conn = get_connection(self.db_path)
        try:
            deleted = conn.execute("DELETE FROM wishlists WHERE user_id = ?", (key,)).rowcount
            conn.commit()
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to delete key {key!r}") from exc
        finally:
            conn.close()
        if deleted == 0:
            logger.debug("Key not found for deletion: %s", key)

    def exists(self, key: str) -> bool:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute("SELECT 1 FROM wishlists WHERE user_id = ? LIMIT 1", (key,)).fetchone()
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to check key {key!r}") from exc
        finally:
            conn.close()
        return row is not None

    def clear(self) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute("DELETE FROM wishlists")
            conn.commit()
        except sqlite3.Error as exc:
            raise StorageError("Failed to clear storage") from exc
        finally:
            conn.close()
        logger.info("SQLite storage cleared: %s", self.db_path)


def build_storage(settings: Settings) -> Storage:
    if settings.storage_type == "file":
        logger.info("Using file-based storage at %s", settings.storage_path)
        return FileStorage(settings.storage_path)
    logger.info("Using SQLite storage with WAL mode at %s", settings.database_path)
    return SQLiteStorage(settings.database_path)
