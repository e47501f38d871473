"""SQLite-based run history tracker.

Tracks runs through their lifecycle (queued, downloading-images, running,
terminal). Survives restarts so interrupted runs can be reported and runs
learned from the remote channel land in the same history.
"""

import json
import sqlite3
import logging
import threading
from pathlib import Path
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

from fedrun.models import Run, RunStatus

logger = logging.getLogger(__name__)

# Status -> timestamp column set when a run enters it
STATUS_TIMESTAMPS = {
    RunStatus.QUEUED.value: "queued_at",
    RunStatus.DOWNLOADING_IMAGES.value: "downloading_at",
    RunStatus.RUNNING.value: "running_at",
    RunStatus.COMPLETE.value: "ended_at",
    RunStatus.ERROR.value: "ended_at",
    RunStatus.STOPPED.value: "ended_at",
}

TERMINAL_STATUSES = tuple(s.value for s in RunStatus if s.is_terminal)


class RunTracker:
    """Tracks run state and history.

    **Database Schema:**

    SQLite table `run_history`:

    - run_id: Run id (primary key)
    - consortium_id, pipeline_name, run_type
    - status: one of the RunStatus values
    - Timestamps: queued_at, downloading_at, running_at, ended_at (ISO format)
    - error_message: message of the run's structured error, if any
    - record: last known run document (JSON)

    **Recovery:**

    A process that dies mid-run leaves its runs in a non-terminal status.
    `fail_interrupted()` moves them to ``error`` on the next start.

    **Thread Safety:**

    All methods are thread-safe via internal locking.

    **Typical Usage:**

        tracker = RunTracker(dirs["base"] / "run_history.db")
        tracker.register_run(run)
        tracker.mark_status(run.id, "running")
        stats = tracker.get_statistics()
        tracker.close()
    """

    def __init__(self, db_path):
        """Initialize tracker.

        Parameters
        ----------
        db_path : Path or str
            Path to SQLite database file. Created if doesn't exist.
        """
        self.db_path = db_path if str(db_path) == ":memory:" else Path(db_path)
        if isinstance(self.db_path, Path):
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn = None
        self._lock = threading.Lock()

        self._init_database()
        logger.info("Run tracker initialized: %s", self.db_path)

    def _get_connection(self) -> sqlite3.Connection:
        """Get the shared database connection."""
        if self._conn is None:
            self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
        return self._conn

    def _init_database(self):
        """Create database schema if it doesn't exist."""
        conn = self._get_connection()

        with self._lock:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS run_history (
                    run_id TEXT PRIMARY KEY,
                    consortium_id TEXT,
                    pipeline_name TEXT,
                    run_type TEXT,

                    status TEXT NOT NULL DEFAULT 'queued',
                    error_message TEXT,

                    queued_at TEXT,
                    downloading_at TEXT,
                    running_at TEXT,
                    ended_at TEXT,

                    record TEXT,

                    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
            """)

            conn.execute("CREATE INDEX IF NOT EXISTS idx_run_status ON run_history(status)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_run_consortium ON run_history(consortium_id)")

            conn.commit()

    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).isoformat()

    def register_run(self, run: Run) -> bool:
        """Register a run for tracking.

        Parameters
        ----------
        run : Run
            Run record, typically freshly queued.

        Returns
        -------
        bool
            True if newly registered, False if already in the database.

        Notes
        -----
        Safe to call multiple times with the same run id.
        """
        conn = self._get_connection()
        status = RunStatus(run.status).value

        with self._lock:
            cursor = conn.execute("SELECT run_id FROM run_history WHERE run_id = ?", (run.id,))
            if cursor.fetchone():
                return False

            conn.execute("""
                INSERT INTO run_history
                (run_id, consortium_id, pipeline_name, run_type, status, queued_at, record)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (
                run.id,
                run.consortium_id,
                run.pipeline_snapshot.name,
                run.type,
                status,
                self._now(),
                json.dumps(run.to_document(), default=str),
            ))
            conn.commit()

            logger.debug("Registered run: %s", run.id)
            return True

    def mark_status(self, run_id: str, status: str,
                    error: Optional[str] = None,
                    run: Optional[Run] = None):
        """Record a status change for a run.

        Parameters
        ----------
        run_id : str
            Run identifier (must be pre-registered via register_run).
        status : str
            New RunStatus value.
        error : str, optional
            Error message for ``error`` / ``stopped`` runs.
        run : Run, optional
            Current run record, stored as the last known document.

        Raises
        ------
        ValueError
            If status is not a RunStatus value.
        """
        status = RunStatus(status).value
        conn = self._get_connection()
        now = self._now()

        assignments = ["status = ?", "error_message = ?", "updated_at = ?"]
        params = [status, error, now]

        timestamp_col = STATUS_TIMESTAMPS.get(status)
        if timestamp_col:
            assignments.append(f"{timestamp_col} = ?")
            params.append(now)
        if run is not None:
            assignments.append("record = ?")
            params.append(json.dumps(run.to_document(), default=str))

        params.append(run_id)

        with self._lock:
            conn.execute(
                f"UPDATE run_history SET {', '.join(assignments)} WHERE run_id = ?",
                params
            )
            conn.commit()

        logger.debug("Run %s -> %s", run_id, status)

    def get_run_status(self, run_id: str) -> Optional[Dict]:
        """Get the history row of a run, or None if unknown."""
        conn = self._get_connection()

        with self._lock:
            row = conn.execute("SELECT * FROM run_history WHERE run_id = ?", (run_id,)).fetchone()
            return dict(row) if row else None

    def get_runs(self, status: Optional[str] = None,
                 consortium_id: Optional[str] = None) -> List[Dict]:
        """List history rows, oldest first.

        Parameters
        ----------
        status : str, optional
            Filter by status.
        consortium_id : str, optional
            Filter by consortium.
        """
        query = "SELECT * FROM run_history WHERE 1 = 1"
        params = []

        if status:
            query += " AND status = ?"
            params.append(RunStatus(status).value)
        if consortium_id:
            query += " AND consortium_id = ?"
            params.append(consortium_id)

        query += " ORDER BY created_at, run_id"

        conn = self._get_connection()
        with self._lock:
            return [dict(row) for row in conn.execute(query, params).fetchall()]

    def get_statistics(self, consortium_id: Optional[str] = None) -> Dict:
        """Get summary counts per status.

        Returns
        -------
        dict
            ``total`` plus one count per status (``downloading_images`` for
            ``downloading-images``).
        """
        conn = self._get_connection()

        where_clause = "WHERE consortium_id = ?" if consortium_id else ""
        params = (consortium_id,) if consortium_id else ()

        with self._lock:
            row = conn.execute(f"""
                SELECT
                    COUNT(*) as total,
                    SUM(CASE WHEN status = 'queued' THEN 1 ELSE 0 END) as queued,
                    SUM(CASE WHEN status = 'downloading-images' THEN 1 ELSE 0 END) as downloading_images,
                    SUM(CASE WHEN status = 'running' THEN 1 ELSE 0 END) as running,
                    SUM(CASE WHEN status = 'suspended' THEN 1 ELSE 0 END) as suspended,
                    SUM(CASE WHEN status = 'complete' THEN 1 ELSE 0 END) as complete,
                    SUM(CASE WHEN status = 'error' THEN 1 ELSE 0 END) as error,
                    SUM(CASE WHEN status = 'stopped' THEN 1 ELSE 0 END) as stopped
                FROM run_history
                {where_clause}
            """, params).fetchone()

        stats = dict(row) if row else {}
        # SUM over no rows is NULL
        return {key: (value or 0) for key, value in stats.items()}

    def fail_interrupted(self) -> List[str]:
        """Mark runs left mid-flight by a previous process as ``error``.

        Suspended runs are left alone; they can be resumed.

        Returns
        -------
        list of str
            Ids of the runs that were failed.
        """
        conn = self._get_connection()
        active = ("queued", "downloading-images", "running")

        with self._lock:
            rows = conn.execute(
                "SELECT run_id FROM run_history WHERE status IN (?, ?, ?)", active
            ).fetchall()
            run_ids = [row["run_id"] for row in rows]

            if run_ids:
                now = self._now()
                placeholders = ','.join('?' * len(run_ids))
                conn.execute(f"""
                    UPDATE run_history
                    SET status = 'error', error_message = ?, ended_at = ?, updated_at = ?
                    WHERE run_id IN ({placeholders})
                """, ["Run interrupted by client shutdown", now, now, *run_ids])
                conn.commit()

        if run_ids:
            logger.warning("Marked %d interrupted run(s) as error", len(run_ids))
        return run_ids

    def apply_remote_update(self, remote_run: dict, suspended_ids: Iterable[str] = ()) -> Optional[str]:
        """Fold a run document from the remote channel into the history.

        Status is derived from the document: ``results`` means complete,
        ``error`` means error, otherwise ``suspended`` if the run id is
        locally suspended. A document flagged ``delete`` removes the run.

        Returns
        -------
        str or None
            The derived status, or None when the run was deleted or nothing
            could be derived.
        """
        run_id = remote_run["id"]

        if remote_run.get("delete"):
            conn = self._get_connection()
            with self._lock:
                conn.execute("DELETE FROM run_history WHERE run_id = ?", (run_id,))
                conn.commit()
            logger.info("Run %s deleted remotely", run_id)
            return None

        if remote_run.get("results"):
            status = RunStatus.COMPLETE.value
        elif remote_run.get("error"):
            status = RunStatus.ERROR.value
        elif run_id in set(suspended_ids):
            status = RunStatus.SUSPENDED.value
        else:
            status = None

        document = dict(remote_run)
        if status is not None:
            document["status"] = status
        run = Run.model_validate(document)

        self.register_run(run)
        if status is not None:
            error = run.error.message if run.error is not None else None
            self.mark_status(run_id, status, error=error, run=run)
        return status

    def close(self):
        """Close database connection. Safe to call multiple times."""
        if self._conn:
            self._conn.close()
            self._conn = None

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()
