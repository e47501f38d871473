"""SQLite-backed document store for collections, consortia and runs.

Each table holds JSON documents keyed by id. This is the client's local
persistent key-value store: simple get/put/update/iterate, nothing more.
"""

import json
import sqlite3
import logging
import threading
from pathlib import Path
from typing import Iterator, Optional

from fedrun.models import Collection, Consortium

logger = logging.getLogger(__name__)

TABLES = ("collections", "consortia", "runs")


class LocalStore:
    """Local document store for the records a client keeps between sessions.

    **Tables:**

    - `collections`: the user's file collections
    - `consortia`: consortia the user has joined, with their ``stepIO`` mapping
    - `runs`: last known document of each run

    Every table has the same shape: ``id TEXT PRIMARY KEY, doc TEXT``
    where ``doc`` is the camelCase JSON of the record.

    **Thread Safety:**

    All methods are thread-safe via internal locking, so blocking calls can
    be pushed to worker threads with ``asyncio.to_thread``.

    **Typical Usage:**

        with LocalStore(dirs["base"] / "fedrun.db") as store:
            store.put_consortium(consortium)
            consortium = store.get_consortium(consortium.id)
    """

    def __init__(self, db_path):
        """Initialize store.

        Parameters
        ----------
        db_path : Path or str
            Path to SQLite database file. Created if it doesn't exist.
            ``":memory:"`` gives a throwaway store.
        """
        self.db_path = db_path if str(db_path) == ":memory:" else Path(db_path)
        if isinstance(self.db_path, Path):
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn = None
        self._lock = threading.Lock()

        self._init_database()
        logger.info("Local store initialized: %s", self.db_path)

    def _get_connection(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
        return self._conn

    def _init_database(self):
        conn = self._get_connection()

        with self._lock:
            for table in TABLES:
                conn.execute(f"""
                    CREATE TABLE IF NOT EXISTS {table} (
                        id TEXT PRIMARY KEY,
                        doc TEXT NOT NULL,
                        updated_at TEXT DEFAULT CURRENT_TIMESTAMP
                    )
                """)
            conn.commit()

    @staticmethod
    def _check_table(table: str):
        if table not in TABLES:
            raise ValueError(f"Invalid table: {table}. Must be one of {list(TABLES)}")

    # ------------------------------------------------------------------
    # Generic document access
    # ------------------------------------------------------------------

    def get(self, table: str, doc_id: str) -> Optional[dict]:
        """Return the document stored under ``doc_id``, or None."""
        self._check_table(table)
        conn = self._get_connection()

        with self._lock:
            row = conn.execute(f"SELECT doc FROM {table} WHERE id = ?", (doc_id,)).fetchone()

        return json.loads(row["doc"]) if row else None

    def put(self, table: str, doc: dict) -> None:
        """Insert or replace a document. ``doc["id"]`` is the key."""
        self._check_table(table)
        if not doc.get("id"):
            raise ValueError(f"Document for table '{table}' has no id")
        conn = self._get_connection()

        with self._lock:
            conn.execute(f"""
                INSERT INTO {table} (id, doc, updated_at) VALUES (?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(id) DO UPDATE SET doc = excluded.doc, updated_at = excluded.updated_at
            """, (doc["id"], json.dumps(doc, default=str)))
            conn.commit()

    def update(self, table: str, doc_id: str, changes: dict) -> bool:
        """Shallow-merge ``changes`` into an existing document.

        Returns
        -------
        bool
            False if no document exists under ``doc_id``.
        """
        self._check_table(table)
        conn = self._get_connection()

        with self._lock:
            row = conn.execute(f"SELECT doc FROM {table} WHERE id = ?", (doc_id,)).fetchone()
            if row is None:
                return False
            doc = json.loads(row["doc"])
            doc.update(changes)
            conn.execute(
                f"UPDATE {table} SET doc = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                (json.dumps(doc, default=str), doc_id)
            )
            conn.commit()
        return True

    def delete(self, table: str, doc_id: str) -> bool:
        """Delete a document. Returns False if it did not exist."""
        self._check_table(table)
        conn = self._get_connection()

        with self._lock:
            cursor = conn.execute(f"DELETE FROM {table} WHERE id = ?", (doc_id,))
            conn.commit()
            return cursor.rowcount > 0

    def iterate(self, table: str) -> Iterator[dict]:
        """Yield every document of a table, ordered by id."""
        self._check_table(table)
        conn = self._get_connection()

        with self._lock:
            rows = conn.execute(f"SELECT doc FROM {table} ORDER BY id").fetchall()

        for row in rows:
            yield json.loads(row["doc"])

    # ------------------------------------------------------------------
    # Typed helpers
    # ------------------------------------------------------------------

    def get_consortium(self, consortium_id: str) -> Optional[Consortium]:
        doc = self.get("consortia", consortium_id)
        return Consortium.model_validate(doc) if doc is not None else None

    def put_consortium(self, consortium: Consortium) -> None:
        self.put("consortia", consortium.to_document())

    def get_collection(self, collection_id: str) -> Optional[Collection]:
        doc = self.get("collections", collection_id)
        return Collection.model_validate(doc) if doc is not None else None

    def put_collection(self, collection: Collection) -> None:
        self.put("collections", collection.to_document())

    def iter_collections(self) -> Iterator[Collection]:
        for doc in self.iterate("collections"):
            yield Collection.model_validate(doc)

    def iter_consortia(self) -> Iterator[Consortium]:
        for doc in self.iterate("consortia"):
            yield Consortium.model_validate(doc)

    def close(self):
        """Close database connection. Safe to call multiple times."""
        if self._conn:
            self._conn.close()
            self._conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
