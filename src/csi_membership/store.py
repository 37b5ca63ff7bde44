"""Document store for user records and processed-payment markers.

Documents are JSON objects addressed by ``(collection, doc_id)``. Both
backends offer the same three primitives the membership pipeline depends on:
``create`` (insert only when absent, atomically), ``merge`` (shallow
top-level merge, creating the document when missing) and ``transaction``
(several reads and writes committed or rolled back together).
"""

from __future__ import annotations

import json
import sqlite3
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterator, Protocol

from .errors import StoreError


_TABLE_NAME = "csi_documents"

DocumentFilter = Callable[[dict[str, Any]], bool]


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")


def _dumps(data: dict[str, Any]) -> str:
    return json.dumps(data, separators=(",", ":"), sort_keys=True)


def _normalize_loaded(raw: Any) -> dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, str):
        try:
            parsed = json.loads(raw)
        except Exception:
            return {}
        if isinstance(parsed, dict):
            return parsed
    return {}


class StoreTransaction(Protocol):
    def get(self, collection: str, doc_id: str) -> dict[str, Any] | None: ...

    def create(self, collection: str, doc_id: str, data: dict[str, Any]) -> bool: ...

    def merge(self, collection: str, doc_id: str, fields: dict[str, Any]) -> None: ...

    def query(self, collection: str, where: DocumentFilter | None = None) -> list[tuple[str, dict[str, Any]]]: ...


class DocumentStore(ABC):
    """Single-operation helpers, each run in its own transaction."""

    @abstractmethod
    def transaction(self):
        """Context manager yielding a StoreTransaction; commits on success, rolls back on error."""

    def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        with self.transaction() as txn:
            return txn.get(collection, doc_id)

    def create(self, collection: str, doc_id: str, data: dict[str, Any]) -> bool:
        with self.transaction() as txn:
            return txn.create(collection, doc_id, data)

    def merge(self, collection: str, doc_id: str, fields: dict[str, Any]):
        with self.transaction() as txn:
            txn.merge(collection, doc_id, fields)

    def query(self, collection: str, where: DocumentFilter | None = None) -> list[tuple[str, dict[str, Any]]]:
        with self.transaction() as txn:
            return txn.query(collection, where)


class _SqliteTransaction:
    def __init__(self, conn: sqlite3.Connection):
        self._conn = conn

    def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        row = self._conn.execute(
            f"SELECT data_json FROM {_TABLE_NAME} WHERE collection = ? AND doc_id = ?",
            (collection, doc_id),
        ).fetchone()
        if row is None:
            return None
        return _normalize_loaded(row["data_json"])

    def create(self, collection: str, doc_id: str, data: dict[str, Any]) -> bool:
        now = _now_iso()
        cursor = self._conn.execute(
            f"""
            INSERT INTO {_TABLE_NAME} (collection, doc_id, data_json, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(collection, doc_id) DO NOTHING
            """,
            (collection, doc_id, _dumps(data), now, now),
        )
        return cursor.rowcount == 1

    def merge(self, collection: str, doc_id: str, fields: dict[str, Any]):
        existing = self.get(collection, doc_id) or {}
        merged = {**existing, **fields}
        now = _now_iso()
        self._conn.execute(
            f"""
            INSERT INTO {_TABLE_NAME} (collection, doc_id, data_json, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(collection, doc_id) DO UPDATE SET
              data_json = excluded.data_json,
              updated_at = excluded.updated_at
            """,
            (collection, doc_id, _dumps(merged), now, now),
        )

    def query(self, collection: str, where: DocumentFilter | None = None) -> list[tuple[str, dict[str, Any]]]:
        rows = self._conn.execute(
            f"SELECT doc_id, data_json FROM {_TABLE_NAME} WHERE collection = ? ORDER BY doc_id",
            (collection,),
        ).fetchall()
        results: list[tuple[str, dict[str, Any]]] = []
        for row in rows:
            data = _normalize_loaded(row["data_json"])
            if where is None or where(data):
                results.append((str(row["doc_id"]), data))
        return results


def _sqlite_path(database_url: str) -> str:
    raw_path = database_url[len("sqlite:///"):]
    if not raw_path:
        raise RuntimeError("CSI_DATABASE_URL sqlite path is empty")
    if raw_path == ":memory:":
        raise RuntimeError("CSI_DATABASE_URL must point at a sqlite file, not :memory:")
    path = Path(raw_path).expanduser()
    if not path.is_absolute():
        path = (Path.cwd() / path).resolve()
    path.parent.mkdir(parents=True, exist_ok=True)
    return str(path)


class SqliteDocumentStore(DocumentStore):
    def __init__(self, path: str | Path):
        self.path = str(path)
        self._schema_ready = False

    def _connect(self) -> sqlite3.Connection:
        # Autocommit mode so BEGIN IMMEDIATE below controls the transaction.
        conn = sqlite3.connect(self.path, timeout=30, isolation_level=None)
        conn.row_factory = sqlite3.Row
        if not self._schema_ready:
            conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {_TABLE_NAME} (
                  collection TEXT NOT NULL,
                  doc_id TEXT NOT NULL,
                  data_json TEXT NOT NULL,
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL,
                  PRIMARY KEY (collection, doc_id)
                )
                """
            )
            self._schema_ready = True
        return conn

    @contextmanager
    def transaction(self) -> Iterator[_SqliteTransaction]:
        try:
            conn = self._connect()
        except sqlite3.Error as exc:
            raise StoreError(f"sqlite connect failed: {exc}") from exc
        try:
            # Take the write lock up front; concurrent writers queue here.
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield _SqliteTransaction(conn)
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        except sqlite3.Error as exc:
            raise StoreError(f"sqlite operation failed: {exc}") from exc
        finally:
            conn.close()


class _PostgresTransaction:
    def __init__(self, conn: Any):
        self._conn = conn

    def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        with self._conn.cursor() as cur:
            cur.execute(
                f"SELECT data_json FROM {_TABLE_NAME} WHERE collection = %s AND doc_id = %s FOR UPDATE",
                (collection, doc_id),
            )
            row = cur.fetchone()
        if row is None:
            return None
        return _normalize_loaded(row[0])

    def create(self, collection: str, doc_id: str, data: dict[str, Any]) -> bool:
        now = _now_iso()
        with self._conn.cursor() as cur:
            cur.execute(
                f"""
                INSERT INTO {_TABLE_NAME} (collection, doc_id, data_json, created_at, updated_at)
                VALUES (%s, %s, %s::jsonb, %s::timestamptz, %s::timestamptz)
                ON CONFLICT(collection, doc_id) DO NOTHING
                """,
                (collection, doc_id, _dumps(data), now, now),
            )
            return cur.rowcount == 1

    def merge(self, collection: str, doc_id: str, fields: dict[str, Any]):
        now = _now_iso()
        with self._conn.cursor() as cur:
            cur.execute(
                f"""
                INSERT INTO {_TABLE_NAME} (collection, doc_id, data_json, created_at, updated_at)
                VALUES (%s, %s, %s::jsonb, %s::timestamptz, %s::timestamptz)
                ON CONFLICT(collection, doc_id) DO UPDATE SET
                  data_json = {_TABLE_NAME}.data_json || excluded.data_json,
                  updated_at = excluded.updated_at
                """,
                (collection, doc_id, _dumps(fields), now, now),
            )

    def query(self, collection: str, where: DocumentFilter | None = None) -> list[tuple[str, dict[str, Any]]]:
        with self._conn.cursor() as cur:
            cur.execute(
                f"SELECT doc_id, data_json FROM {_TABLE_NAME} WHERE collection = %s ORDER BY doc_id",
                (collection,),
            )
            rows = cur.fetchall()
        results: list[tuple[str, dict[str, Any]]] = []
        for doc_id, raw in rows:
            data = _normalize_loaded(raw)
            if where is None or where(data):
                results.append((str(doc_id), data))
        return results


class PostgresDocumentStore(DocumentStore):
    def __init__(self, database_url: str):
        self.database_url = database_url
        self._schema_ready = False

    @contextmanager
    def transaction(self) -> Iterator[_PostgresTransaction]:
        try:
            import psycopg
        except Exception as exc:
            raise RuntimeError("psycopg is required for PostgreSQL CSI_DATABASE_URL") from exc

        try:
            with psycopg.connect(self.database_url) as conn:
                if not self._schema_ready:
                    with conn.cursor() as cur:
                        cur.execute(
                            f"""
                            CREATE TABLE IF NOT EXISTS {_TABLE_NAME} (
                              collection TEXT NOT NULL,
                              doc_id TEXT NOT NULL,
                              data_json JSONB NOT NULL,
                              created_at TIMESTAMPTZ NOT NULL,
                              updated_at TIMESTAMPTZ NOT NULL,
                              PRIMARY KEY (collection, doc_id)
                            )
                            """
                        )
                    conn.commit()
                    self._schema_ready = True
                with conn.transaction():
                    yield _PostgresTransaction(conn)
        except psycopg.Error as exc:
            raise StoreError(f"postgres operation failed: {exc}") from exc


def open_store(database_url: str) -> DocumentStore:
    url = (database_url or "").strip()
    if url.startswith("sqlite:///"):
        return SqliteDocumentStore(_sqlite_path(url))
    if url.startswith("postgres://") or url.startswith("postgresql://"):
        return PostgresDocumentStore(url)

    raise RuntimeError(
        "Unsupported CSI_DATABASE_URL scheme. Use sqlite:///... or postgresql://..."
    )
