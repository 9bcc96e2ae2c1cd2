"""
Memory and persistence for Browser Operator.

Provides SQLite-based storage of runs, step logs, events and per-domain
selector statistics shared across runs.
"""

import json
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from .config import get_store_path
from .types import Run, StepRecord


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class RunStore:
    """SQLite-based store shared by all runs.

    Enables:
    - Run history and statistics
    - Step logs queryable after the fact
    - Learning which selectors work on which domains

    Every row is keyed by run id; writes are serialized by a lock.
    """

    def __init__(self, db_path: Optional[Path] = None):
        """Initialize the run store.

        Args:
            db_path: Path to SQLite database (default: ~/.browser_operator/operator.db)
        """
        if db_path is None:
            db_path = get_store_path()

        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._local = threading.local()
        self._write_lock = threading.Lock()
        self._connections: list[sqlite3.Connection] = []
        self._init_db()

    def _get_conn(self) -> sqlite3.Connection:
        """Get thread-local database connection."""
        if getattr(self._local, "conn", None) is None:
            conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            conn.row_factory = sqlite3.Row
            self._local.conn = conn
            self._connections.append(conn)
        return self._local.conn

    def close(self) -> None:
        """Close all connections opened by this store."""
        for conn in self._connections:
            conn.close()
        self._connections.clear()
        self._local = threading.local()

    def _init_db(self) -> None:
        """Initialize database schema."""
        conn = self._get_conn()
        conn.execute("""
            CREATE TABLE IF NOT EXISTS runs (
                id TEXT PRIMARY KEY,
                goal TEXT NOT NULL,
                start_url TEXT,
                status TEXT NOT NULL,
                success BOOLEAN DEFAULT FALSE,
                steps INTEGER DEFAULT 0,
                final_result TEXT,
                error TEXT,
                goal_json TEXT NOT NULL,
                started_at REAL NOT NULL,
                ended_at REAL,
                updated_at TEXT NOT NULL
            )
        """)

        conn.execute("""
            CREATE TABLE IF NOT EXISTS steps (
                run_id TEXT NOT NULL,
                step_index INTEGER NOT NULL,
                action TEXT NOT NULL,
                url TEXT,
                success BOOLEAN NOT NULL,
                error TEXT,
                duration_ms INTEGER,
                record_json TEXT NOT NULL,
                PRIMARY KEY (run_id, step_index),
                FOREIGN KEY (run_id) REFERENCES runs(id)
            )
        """)

        conn.execute("""
            CREATE TABLE IF NOT EXISTS events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                run_id TEXT NOT NULL,
                event TEXT NOT NULL,
                data_json TEXT,
                created_at TEXT NOT NULL,
                FOREIGN KEY (run_id) REFERENCES runs(id)
            )
        """)

        conn.execute("""
            CREATE TABLE IF NOT EXISTS selector_stats (
                domain TEXT NOT NULL,
                selector TEXT NOT NULL,
                success_count INTEGER DEFAULT 0,
                failure_count INTEGER DEFAULT 0,
                last_used TEXT NOT NULL,
                PRIMARY KEY (domain, selector)
            )
        """)

        conn.execute("CREATE INDEX IF NOT EXISTS idx_runs_status ON runs(status)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_events_run ON events(run_id)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_selector_domain ON selector_stats(domain)")
        conn.commit()

    # =========================================================================
    # Writes
    # =========================================================================

    def save_run(self, run: Run) -> None:
        """Insert or update a run row."""
        with self._write_lock:
            conn = self._get_conn()
            conn.execute("""
                INSERT INTO runs (id, goal, start_url, status, success, steps, final_result,
                                  error, goal_json, started_at, ended_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    status = excluded.status,
                    success = excluded.success,
                    steps = excluded.steps,
                    final_result = excluded.final_result,
                    error = excluded.error,
                    ended_at = excluded.ended_at,
                    updated_at = excluded.updated_at
            """, (
                run.id,
                run.goal.user_prompt,
                run.goal.start_url,
                run.status.value,
                run.success,
                len(run.steps),
                run.final_result,
                run.error,
                json.dumps(run.goal.to_dict()),
                run.start_time,
                run.end_time,
                _now(),
            ))
            conn.commit()

    def append_step(self, run_id: str, record: StepRecord) -> None:
        """Store one step record."""
        with self._write_lock:
            conn = self._get_conn()
            conn.execute("""
                INSERT INTO steps (run_id, step_index, action, url, success, error, duration_ms, record_json)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                run_id,
                record.step_index,
                record.action,
                record.url,
                record.success,
                record.error,
                record.duration_ms,
                json.dumps(record.to_dict(), default=str),
            ))
            conn.commit()

    def append_event(self, run_id: str, event: str, data: Optional[dict[str, Any]] = None) -> None:
        """Store one lifecycle or retry event."""
        with self._write_lock:
            conn = self._get_conn()
            conn.execute(
                "INSERT INTO events (run_id, event, data_json, created_at) VALUES (?, ?, ?, ?)",
                (run_id, event, json.dumps(data or {}, default=str), _now()),
            )
            conn.commit()

    def record_selector_outcome(self, domain: str, selector: str, success: bool) -> None:
        """Count a success or failure for a selector on a domain."""
        with self._write_lock:
            conn = self._get_conn()
            conn.execute("""
                INSERT INTO selector_stats (domain, selector, success_count, failure_count, last_used)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(domain, selector) DO UPDATE SET
                    success_count = success_count + excluded.success_count,
                    failure_count = failure_count + excluded.failure_count,
                    last_used = excluded.last_used
            """, (domain, selector, 1 if success else 0, 0 if success else 1, _now()))
            conn.commit()

    # =========================================================================
    # Queries
    # =========================================================================

    def best_selectors(self, domain: str, limit: int = 10) -> list[dict[str, Any]]:
        """Selectors that worked on a domain, best success rate first."""
        rows = self._get_conn().execute("""
            SELECT
                selector,
                success_count,
                failure_count,
                (CAST(success_count AS REAL) / (success_count + failure_count + 1)) AS success_rate
            FROM selector_stats
            WHERE domain = ? AND success_count > 0
            ORDER BY success_rate DESC, success_count DESC, selector ASC
            LIMIT ?
        """, (domain, limit)).fetchall()
        return [dict(row) for row in rows]

    def get_run(self, run_id: str) -> Optional[dict[str, Any]]:
        row = self._get_conn().execute("SELECT * FROM runs WHERE id = ?", (run_id,)).fetchone()
        return dict(row) if row else None

    def steps_for(self, run_id: str) -> list[dict[str, Any]]:
        """Step records of a run in execution order."""
        rows = self._get_conn().execute(
            "SELECT record_json FROM steps WHERE run_id = ? ORDER BY step_index",
            (run_id,),
        ).fetchall()
        return [json.loads(row["record_json"]) for row in rows]

    def events_for(self, run_id: str, event: Optional[str] = None) -> list[dict[str, Any]]:
        sql = "SELECT event, data_json, created_at FROM events WHERE run_id = ?"
        params: list[Any] = [run_id]
        if event:
            sql += " AND event = ?"
            params.append(event)
        rows = self._get_conn().execute(sql + " ORDER BY id", params).fetchall()
        return [
            {"event": row["event"], "data": json.loads(row["data_json"] or "{}"), "created_at": row["created_at"]}
            for row in rows
        ]

    def list_runs(self, limit: int = 20, status: Optional[str] = None) -> list[dict[str, Any]]:
        """Most recent runs first."""
        sql = "SELECT id, goal, status, success, steps, started_at, ended_at FROM runs"
        params: list[Any] = []
        if status:
            sql += " WHERE status = ?"
            params.append(status)
        sql += " ORDER BY started_at DESC LIMIT ?"
        params.append(limit)
        return [dict(row) for row in self._get_conn().execute(sql, params).fetchall()]

    def stats(self) -> dict[str, Any]:
        """Aggregate run statistics."""
        row = self._get_conn().execute("""
            SELECT
                COUNT(*) AS total,
                COALESCE(SUM(CASE WHEN success THEN 1 ELSE 0 END), 0) AS successful,
                COALESCE(AVG(steps), 0) AS avg_steps
            FROM runs
            WHERE status != 'running'
        """).fetchone()
        total = row["total"]
        successful = row["successful"]
        return {
            "total_runs": total,
            "successful_runs": successful,
            "avg_steps": float(row["avg_steps"]),
            "success_rate": successful / total if total else 0.0,
        }
