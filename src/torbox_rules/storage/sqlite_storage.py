"""
SQLite Rule Storage

File-based rule storage using SQLite with:
- Persistent storage
- ACID transactions (the whole list is replaced atomically)
- Automatic schema migration
"""

import sqlite3
import json
import logging
import threading
from pathlib import Path
from typing import Any, Dict, List
from contextlib import contextmanager

from torbox_rules.errors import StorageError
from torbox_rules.storage.base import RuleStorage

logger = logging.getLogger(__name__)


class SQLiteRuleStorage(RuleStorage):
    """
    SQLite-based rule storage

    One table, rules, holding each rule document as JSON with its position in
    the list. Thread safety via connection-per-thread pattern.
    """

    SCHEMA_VERSION = 1
    backend_name = 'sqlite'

    def __init__(self, db_path: str = '/config/torbox-rules.db'):
        self.db_path = Path(db_path)
        self.local = threading.local()

        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._init_database()

        logger.info(f"SQLite rule storage initialized: {self.db_path}")

    def _get_connection(self) -> sqlite3.Connection:
        """Get thread-local database connection"""
        if not hasattr(self.local, 'conn'):
            conn = sqlite3.connect(
                str(self.db_path),
                check_same_thread=False,
                isolation_level=None  # Autocommit mode
            )
            conn.row_factory = sqlite3.Row
            conn.execute('PRAGMA journal_mode=WAL')
            self.local.conn = conn

        return self.local.conn

    @contextmanager
    def _transaction(self):
        """
        Context manager for database transactions

        Usage:
            with self._transaction() as conn:
                conn.execute(...)
        """
        conn = self._get_connection()
        try:
            conn.execute('BEGIN')
            yield conn
            conn.execute('COMMIT')
        except Exception:
            conn.execute('ROLLBACK')
            raise

    def _init_database(self):
        """Create the schema on first open"""
        conn = self._get_connection()

        conn.execute('''
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
            )
        ''')

        cursor = conn.execute('SELECT MAX(version) FROM schema_version')
        current_version = cursor.fetchone()[0]

        if current_version is None:
            self._create_schema_v1(conn)
            conn.execute('INSERT INTO schema_version (version) VALUES (?)', (self.SCHEMA_VERSION,))
            logger.info(f"Created database schema v{self.SCHEMA_VERSION}")

    def _create_schema_v1(self, conn: sqlite3.Connection):
        """Create initial database schema (version 1)"""
        conn.execute('''
            CREATE TABLE IF NOT EXISTS rules (
                position INTEGER PRIMARY KEY,
                id TEXT NOT NULL UNIQUE,
                document TEXT NOT NULL
            )
        ''')

    def load_rules(self) -> List[Dict[str, Any]]:
        try:
            cursor = self._get_connection().execute('SELECT id, document FROM rules ORDER BY position')
            rows = cursor.fetchall()
        except sqlite3.Error as e:
            raise StorageError('sqlite', f"Cannot read rules from {self.db_path}: {e}")

        rules = []
        for row in rows:
            try:
                rules.append(json.loads(row['document']))
            except ValueError as e:
                logger.warning(f"Skipping undecodable rule {row['id']}: {e}")
        return rules

    def save_rules(self, rules: List[Dict[str, Any]]) -> None:
        try:
            with self._transaction() as conn:
                conn.execute('DELETE FROM rules')
                conn.executemany(
                    'INSERT INTO rules (position, id, document) VALUES (?, ?, ?)',
                    [(position, str(rule['id']), json.dumps(rule)) for position, rule in enumerate(rules)]
                )
        except sqlite3.Error as e:
            raise StorageError('sqlite', f"Cannot write rules to {self.db_path}: {e}")

        logger.debug(f"Saved {len(rules)} rules to {self.db_path}")

    def health_check(self) -> bool:
        try:
            self._get_connection().execute('SELECT 1')
            return True
        except sqlite3.Error as e:
            logger.error(f"Health check failed: {e}")
            return False

    def close(self):
        """Close connection for the current thread"""
        if hasattr(self.local, 'conn'):
            self.local.conn.close()
            del self.local.conn
