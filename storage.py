# storage.py
import os
import sqlite3
from datetime import datetime, timezone

DEFAULT_DB_PATH = "dbfan.db"


class Storage:
    """Key/value config store. Dispatch results are never persisted."""

    def __init__(self, db_path=None):
        self.db_path = db_path or os.environ.get("DBFAN_DB", DEFAULT_DB_PATH)
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._init_schema()

    def _init_schema(self):
        self.conn.execute("""
        CREATE TABLE IF NOT EXISTS config (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """)
        self.conn.commit()

    def close(self):
        self.conn.close()

    # ---------------- Config helpers ----------------
    def get_config(self, key, default=None):
        cur = self.conn.cursor()
        cur.execute("SELECT value FROM config WHERE key=?", (key,))
        row = cur.fetchone()
        return row["value"] if row else default

    def get_config_row(self, key):
        cur = self.conn.cursor()
        cur.execute("SELECT key, value, updated_at FROM config WHERE key=?", (key,))
        return cur.fetchone()

    def set_config(self, key, value):
        now = datetime.now(timezone.utc).isoformat()
        self.conn.execute("""
            INSERT INTO config (key, value, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_at=excluded.updated_at
        """, (key, str(value), now))
        self.conn.commit()

    def unset_config(self, key):
        deleted = self.conn.execute("DELETE FROM config WHERE key=?", (key,)).rowcount
        self.conn.commit()
        return deleted == 1

    def list_config(self):
        cur = self.conn.cursor()
        cur.execute("SELECT key, value, updated_at FROM config ORDER BY key")
        return cur.fetchall()

    def lookup(self, command, key, default=None):
        """'<command>.<key>' wins over plain '<key>'; both fall back to default."""
        value = self.get_config(f"{command}.{key}")
        if value is None:
            value = self.get_config(key)
        return default if value is None else value
