"""
SQLite run journal.
Records every run and every remediation/unblock action taken against the
tenant, so operators can see what a scheduled job did and when.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import time
from pathlib import Path
from typing import Any, Optional

logger = logging.getLogger("forwarding_guard.journal")


class RunJournal:
    """
    Append-only journal backed by SQLite.
    Uses a connection per call so it can be shared across coroutines.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self):
        with sqlite3.connect(str(self.db_path)) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS run_log (
                    run_id TEXT PRIMARY KEY,
                    command TEXT NOT NULL,
                    started_at REAL NOT NULL,
                    completed_at REAL,
                    status TEXT DEFAULT 'running',
                    metadata TEXT
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS action_log (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    run_id TEXT NOT NULL,
                    identity TEXT NOT NULL,
                    action TEXT NOT NULL,
                    status TEXT NOT NULL,
                    detail TEXT,
                    timestamp REAL NOT NULL
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_action_identity
                ON action_log(identity)
            """)
            conn.commit()

    def start_run(self, run_id: str, command: str, metadata: Optional[dict] = None):
        with sqlite3.connect(str(self.db_path)) as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO run_log (run_id, command, started_at, status, metadata)
                VALUES (?, ?, ?, 'running', ?)
                """,
                (run_id, command, time.time(), json.dumps(metadata or {}, default=str)),
            )
            conn.commit()

    def complete_run(self, run_id: str, status: str = "completed", metadata: Optional[dict] = None):
        with sqlite3.connect(str(self.db_path)) as conn:
            if metadata is None:
                conn.execute(
                    "UPDATE run_log SET completed_at = ?, status = ? WHERE run_id = ?",
                    (time.time(), status, run_id),
                )
            else:
                conn.execute(
                    """
                    UPDATE run_log SET completed_at = ?, status = ?, metadata = ?
                    WHERE run_id = ?
                    """,
                    (time.time(), status, json.dumps(metadata, default=str), run_id),
                )
            conn.commit()

    def record_action(self, run_id: str, identity: str, action: str, status: str, detail: Any = None):
        with sqlite3.connect(str(self.db_path)) as conn:
            conn.execute(
                """
                INSERT INTO action_log (run_id, identity, action, status, detail, timestamp)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (run_id, identity, action, status, json.dumps(detail, default=str), time.time()),
            )
            conn.commit()
        logger.debug(f"[{run_id}] {identity}: {action} -> {status}")

    def get_run_history(self, limit: int = 10) -> list[dict]:
        with sqlite3.connect(str(self.db_path)) as conn:
            rows = conn.execute(
                """
                SELECT run_id, command, started_at, completed_at, status, metadata
                FROM run_log ORDER BY started_at DESC LIMIT ?
                """,
                (limit,),
            ).fetchall()

        return [
            {
                "run_id": r[0],
                "command": r[1],
                "started_at": r[2],
                "completed_at": r[3],
                "status": r[4],
                "metadata": json.loads(r[5]) if r[5] else {},
            }
            for r in rows
        ]

    def get_actions(self, identity: Optional[str] = None, run_id: Optional[str] = None) -> list[dict]:
        sql = "SELECT run_id, identity, action, status, detail, timestamp FROM action_log"
        clauses, args = [], []
        if identity:
            clauses.append("identity = ?")
            args.append(identity)
        if run_id:
            clauses.append("run_id = ?")
            args.append(run_id)
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY id"

        with sqlite3.connect(str(self.db_path)) as conn:
            rows = conn.execute(sql, args).fetchall()

        return [
            {
                "run_id": r[0],
                "identity": r[1],
                "action": r[2],
                "status": r[3],
                "detail": json.loads(r[4]) if r[4] else None,
                "timestamp": r[5],
            }
            for r in rows
        ]
