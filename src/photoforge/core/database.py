"""SQLite database bootstrap shared by the user, quota and generation stores."""

import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from photoforge.core.errors import PersistenceError

logger = logging.getLogger(__name__)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS users (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        display_name TEXT,
        tier TEXT NOT NULL DEFAULT 'free' CHECK (tier IN ('free', 'paid')),
        is_active INTEGER NOT NULL DEFAULT 1,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS quotas (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT NOT NULL,
        day TEXT NOT NULL,
        generations_used INTEGER NOT NULL DEFAULT 0 CHECK (generations_used >= 0),
        generations_limit INTEGER NOT NULL CHECK (generations_limit >= 1),
        reset_at TEXT NOT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        UNIQUE (user_id, day)
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_quotas_reset_at ON quotas(reset_at)
    """,
    """
    CREATE TABLE IF NOT EXISTS generations (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        original_image_url TEXT,
        original_image_path TEXT,
        generated_image_url TEXT,
        prompt TEXT NOT NULL,
        user_prompt TEXT,
        preset_used TEXT NOT NULL DEFAULT 'custom',
        parameters TEXT NOT NULL DEFAULT '{}',
        status TEXT NOT NULL DEFAULT 'processing'
            CHECK (status IN ('processing', 'completed', 'failed')),
        error_message TEXT,
        error_code TEXT,
        is_placeholder INTEGER NOT NULL DEFAULT 0,
        ai_provider TEXT,
        processing_start_time TEXT NOT NULL,
        processing_end_time TEXT,
        metadata TEXT NOT NULL DEFAULT '{}',
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_generations_user_created
    ON generations(user_id, created_at DESC)
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_generations_user_status
    ON generations(user_id, status)
    """,
)


class Database:
    """Owns the SQLite file and hands out short-lived connections.

    Each store operation opens its own connection, which keeps the stores safe
    to call from worker threads.  Rows are returned as :class:`sqlite3.Row`.
    """

    def __init__(self, db_path: Path, timeout: float = 30.0):
        """Initialize the database and create the schema if needed.

        Args:
            db_path: Path to SQLite database file
            timeout: Seconds a writer waits for a competing lock
        """
        self.db_path = Path(db_path)
        self.timeout = timeout
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._initialize_db()
        logger.info(f"Initialized database at {self.db_path}")

    def _initialize_db(self) -> None:
        with self.connect() as conn:
            # WAL lets readers proceed while a quota increment holds the write lock.
            conn.execute("PRAGMA journal_mode=WAL")
            for statement in _SCHEMA:
                conn.execute(statement)

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        """Open a connection, commit on success and always close it.

        Raises:
            PersistenceError: If SQLite reports an error
        """
        conn = sqlite3.connect(self.db_path, timeout=self.timeout)
        conn.row_factory = sqlite3.Row
        try:
            with conn:
                yield conn
        except sqlite3.Error as e:
            logger.error(f"Database error on {self.db_path}: {e}")
            raise PersistenceError(f"Database error: {e}") from e
        finally:
            conn.close()
