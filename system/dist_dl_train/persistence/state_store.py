import json
import sqlite3
import threading
import time
from typing import Any, Dict, List, Optional, Tuple


class TrainingHistoryStore:
    """
    Training history in sqlite, keyed by (name, version).

    Recording the same key twice replaces the earlier payload. One connection
    is held until ``close()``; use as a context manager to close automatically.
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        self.lock = threading.Lock()
        self._con: Optional[sqlite3.Connection] = sqlite3.connect(db_path, check_same_thread=False)
        self._ensure_tables()

    def _ensure_tables(self):
        cur = self._con.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS training_history (
                name TEXT NOT NULL,
                version INTEGER NOT NULL,
                ts REAL NOT NULL,
                payload_json TEXT NOT NULL,
                PRIMARY KEY (name, version)
            )
            """
        )
        self._con.commit()

    def _connection(self) -> sqlite3.Connection:
        if self._con is None:
            raise RuntimeError(f"TrainingHistoryStore({self.db_path}) is closed")
        return self._con

    def record(self, name: str, version: int, payload: Dict[str, Any]) -> None:
        with self.lock:
            con = self._connection()
            con.execute(
                "INSERT OR REPLACE INTO training_history (name, version, ts, payload_json) VALUES (?, ?, ?, ?)",
                (name, int(version), time.time(), json.dumps(payload)),
            )
            con.commit()

    def get(self, name: str, version: int) -> Optional[Dict[str, Any]]:
        with self.lock:
            row = self._connection().execute(
                "SELECT payload_json FROM training_history WHERE name = ? AND version = ?",
                (name, int(version)),
            ).fetchone()
        if not row:
            return None
        return json.loads(row[0])

    def latest(self, name: str) -> Optional[Tuple[int, Dict[str, Any]]]:
        """Highest version recorded under ``name`` and its payload."""
        with self.lock:
            row = self._connection().execute(
                "SELECT version, payload_json FROM training_history WHERE name = ? ORDER BY version DESC LIMIT 1",
                (name,),
            ).fetchone()
        if not row:
            return None
        return row[0], json.loads(row[1])

    def versions(self, name: str) -> List[int]:
        with self.lock:
            rows = self._connection().execute(
                "SELECT version FROM training_history WHERE name = ? ORDER BY version",
                (name,),
            ).fetchall()
        return [row[0] for row in rows]

    def names(self) -> List[str]:
        with self.lock:
            rows = self._connection().execute(
                "SELECT DISTINCT name FROM training_history ORDER BY name"
            ).fetchall()
        return [row[0] for row in rows]

    def close(self) -> None:
        with self.lock:
            if self._con is not None:
                self._con.close()
                self._con = None

    def __enter__(self) -> 'TrainingHistoryStore':
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
