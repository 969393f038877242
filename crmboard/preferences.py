"""
Persisted UI preferences (last-chosen task view).

Stored in a small ``system_state`` key/value table next to the local data.
"""
import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

TASK_VIEW_KEY = "task_view"
TASK_VIEWS = ("list", "kanban")
DEFAULT_TASK_VIEW = "kanban"


class PreferenceStore:
    """Key/value preferences in SQLite."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        with sqlite3.connect(db_path) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS system_state (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            conn.commit()

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        try:
            with sqlite3.connect(self.db_path) as conn:
                row = conn.execute(
                    "SELECT value FROM system_state WHERE key = ? LIMIT 1", (key,)
                ).fetchone()
        except sqlite3.Error as e:
            logger.warning(f"Could not read preference {key}: {e}")
            return default
        return row[0] if row else default

    def set(self, key: str, value: str) -> dict:
        now = datetime.now(timezone.utc).isoformat()
        with sqlite3.connect(self.db_path) as conn:
            conn.execute("""
                INSERT INTO system_state (key, value, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_at=excluded.updated_at
            """, (key, value, now))
            conn.commit()
        return {key: value, "changed_at": now}

    def get_task_view(self) -> str:
        view = self.get(TASK_VIEW_KEY, DEFAULT_TASK_VIEW)
        return view if view in TASK_VIEWS else DEFAULT_TASK_VIEW

    def set_task_view(self, view: str) -> dict:
        if view not in TASK_VIEWS:
            raise ValueError(f"Invalid task view: {view}")
        return self.set(TASK_VIEW_KEY, view)
