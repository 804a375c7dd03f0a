"""SQLite vector store for file records, chunks and their embeddings."""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Sequence

import numpy as np

from filechat.errors import StorageError
from filechat.models import ChunkRecord, DocumentKind, FileIndexRecord, IndexTarget, TargetKind

LOGGER = logging.getLogger(__name__)


class SQLiteVectorStore:
    """Persistence layer for file records and chunk embeddings.

    One connection is shared between the indexing worker and query threads;
    every use of it goes through ``_lock`` so a reader never sees a file whose
    chunks are half replaced.
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        self._lock = threading.RLock()
        self._generation = 0
        self._matrix_cache: tuple[int, np.ndarray, np.ndarray] | None = None
        self._fts = False
        try:
            self._conn = sqlite3.connect(self.db_path, check_same_thread=False, timeout=10)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL;")
            self._conn.execute("PRAGMA synchronous=NORMAL;")
            self._conn.execute("PRAGMA foreign_keys=ON;")
        except sqlite3.Error as exc:
            raise StorageError(f"Cannot open database {self.db_path}: {exc}") from exc
        self._ensure_schema()

    @property
    def connection(self) -> sqlite3.Connection:
        return self._conn

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                yield self._conn
                self._conn.commit()
            except sqlite3.Error as exc:
                self._conn.rollback()
                raise StorageError(str(exc)) from exc
            except BaseException:
                self._conn.rollback()
                raise
            finally:
                self._generation += 1

    @contextmanager
    def _reading(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                yield self._conn
            except sqlite3.Error as exc:
                raise StorageError(str(exc)) from exc

    def _ensure_schema(self) -> None:
        with self.transaction() as conn:
            conn.execute("CREATE TABLE IF NOT EXISTS meta(key TEXT PRIMARY KEY, value TEXT)")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS files (
                    path TEXT PRIMARY KEY,
                    kind TEXT NOT NULL,
                    fingerprint TEXT NOT NULL,
                    embedding_model TEXT NOT NULL,
                    page_count INTEGER NOT NULL DEFAULT 0,
                    chunk_count INTEGER NOT NULL DEFAULT 0,
                    size INTEGER NOT NULL DEFAULT 0,
                    mtime INTEGER NOT NULL DEFAULT 0,
                    indexed_at INTEGER NOT NULL DEFAULT 0
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS chunks (
                    id INTEGER PRIMARY KEY,
                    file_path TEXT NOT NULL,
                    page INTEGER NOT NULL,
                    ordinal INTEGER NOT NULL,
                    text TEXT NOT NULL,
                    embedding BLOB NOT NULL,
                    lang TEXT,
                    FOREIGN KEY(file_path) REFERENCES files(path) ON DELETE CASCADE
                )
                """
            )
            conn.execute(
                """CREATE INDEX IF NOT EXISTS idx_chunks_file_path
                    ON chunks(file_path)
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS targets (
                    path TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    include_subfolders INTEGER NOT NULL,
                    added_at INTEGER NOT NULL,
                    PRIMARY KEY(path, kind)
                )
                """
            )
            columns = {row["name"] for row in conn.execute("PRAGMA table_info(chunks)")}
            if "lang" not in columns:
                conn.execute("ALTER TABLE chunks ADD COLUMN lang TEXT")
            self._fts = self._ensure_fts(conn)

    @staticmethod
    def _ensure_fts(conn: sqlite3.Connection) -> bool:
        """Create the FTS5 mirror of chunk text; False when SQLite lacks FTS5."""
        exists = conn.execute(
            "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = 'chunks_fts'"
        ).fetchone()
        if exists:
            return True
        try:
            conn.execute("CREATE VIRTUAL TABLE chunks_fts USING fts5(text)")
        except sqlite3.OperationalError as exc:
            LOGGER.warning("Full-text search disabled: %s", exc)
            return False
        conn.execute("INSERT INTO chunks_fts(rowid, text) SELECT id, text FROM chunks")
        return True

    # -- meta -------------------------------------------------------------

    def _get_meta(self, key: str) -> str | None:
        with self._reading() as conn:
            row = conn.execute("SELECT value FROM meta WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    def embedding_model(self) -> str | None:
        return self._get_meta("embedding_model")

    def embedding_dim(self) -> int | None:
        value = self._get_meta("embedding_dim")
        return int(value) if value is not None else None

    def ensure_embedding_model(self, model: str, dimension: int) -> bool:
        """Bind the store to ``model``/``dimension``, clearing it on a change.

        Returns True when existing chunks were dropped.
        """
        with self.transaction() as conn:
            old_model = self._get_meta("embedding_model")
            old_dim = self._get_meta("embedding_dim")
            stale = conn.execute(
                "SELECT COUNT(*) FROM files WHERE embedding_model != ?", (model,)
            ).fetchone()[0]
            changed = (
                (old_model is not None and old_model != model)
                or (old_dim is not None and int(old_dim) != dimension)
                or stale > 0
            )
            if changed:
                LOGGER.info(
                    "Embedding model changed (%s/%s -> %s/%s), clearing index",
                    old_model,
                    old_dim,
                    model,
                    dimension,
                )
                self._clear(conn)
            conn.execute(
                "INSERT OR REPLACE INTO meta(key, value) VALUES('embedding_model', ?)", (model,)
            )
            conn.execute(
                "INSERT OR REPLACE INTO meta(key, value) VALUES('embedding_dim', ?)", (str(dimension),)
            )
        return changed

    # -- files and chunks -------------------------------------------------

    def _delete_chunks(self, conn: sqlite3.Connection, path: str) -> None:
        if self._fts:
            conn.execute(
                "DELETE FROM chunks_fts WHERE rowid IN (SELECT id FROM chunks WHERE file_path = ?)", (path,)
            )
        conn.execute("DELETE FROM chunks WHERE file_path = ?", (path,))

    def _delete_file(self, conn: sqlite3.Connection, path: str) -> int:
        self._delete_chunks(conn, path)
        return conn.execute("DELETE FROM files WHERE path = ?", (path,)).rowcount

    def _clear(self, conn: sqlite3.Connection) -> None:
        if self._fts:
            conn.execute("DELETE FROM chunks_fts")
        conn.execute("DELETE FROM chunks")
        conn.execute("DELETE FROM files")
        conn.execute("DELETE FROM meta WHERE key IN ('embedding_model', 'embedding_dim')")

    def clear(self) -> None:
        """Drop every chunk and file record."""
        with self.transaction() as conn:
            self._clear(conn)

    def upsert_file(
        self,
        record: FileIndexRecord,
        chunks: Sequence[ChunkRecord],
        embeddings: np.ndarray,
    ) -> None:
        """Replace all chunks of ``record.path`` and write the record, atomically."""
        embeddings = np.asarray(embeddings, dtype="float32")
        rows = embeddings.shape[0] if embeddings.size else 0
        if rows != len(chunks):
            raise ValueError("Embeddings and chunks length mismatch")
        if rows:
            embeddings = embeddings.reshape(rows, -1)

        path = str(record.path)
        with self.transaction() as conn:
            if len(chunks):
                dim = self.embedding_dim()
                if dim is None:
                    conn.execute(
                        "INSERT OR REPLACE INTO meta(key, value) VALUES('embedding_dim', ?)",
                        (str(embeddings.shape[1]),),
                    )
                elif embeddings.shape[1] != dim:
                    raise StorageError(
                        f"Vector dimension {embeddings.shape[1]} does not match store dimension {dim}"
                    )
            self._delete_chunks(conn, path)
            conn.execute(
                """
                INSERT INTO files(path, kind, fingerprint, embedding_model, page_count,
                                  chunk_count, size, mtime, indexed_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(path) DO UPDATE SET
                    kind = excluded.kind,
                    fingerprint = excluded.fingerprint,
                    embedding_model = excluded.embedding_model,
                    page_count = excluded.page_count,
                    chunk_count = excluded.chunk_count,
                    size = excluded.size,
                    mtime = excluded.mtime,
                    indexed_at = excluded.indexed_at
                """,
                (
                    path,
                    DocumentKind(record.kind).value,
                    record.fingerprint,
                    record.embedding_model,
                    record.page_count,
                    len(chunks),
                    record.size,
                    record.mtime,
                    record.last_indexed_at or int(time.time()),
                ),
            )
            conn.executemany(
                """
                INSERT INTO chunks(file_path, page, ordinal, text, embedding, lang)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        path,
                        chunk.page,
                        chunk.ordinal,
                        chunk.text,
                        sqlite3.Binary(vector.tobytes()),
                        chunk.lang,
                    )
                    for chunk, vector in zip(chunks, embeddings)
                ],
            )
            if self._fts:
                conn.execute(
                    "INSERT INTO chunks_fts(rowid, text) SELECT id, text FROM chunks WHERE file_path = ?",
                    (path,),
                )

    def remove_file(self, path: Path | str) -> bool:
        """Delete a file record and all of its chunks."""
        with self.transaction() as conn:
            removed = self._delete_file(conn, str(path))
        return removed > 0

    def remove_files(self, paths: Iterable[Path | str]) -> int:
        keys = [str(path) for path in paths]
        with self.transaction() as conn:
            removed = 0
            for key in keys:
                removed += self._delete_file(conn, key)
        return removed

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> FileIndexRecord:
        return FileIndexRecord(
            path=Path(row["path"]),
            kind=DocumentKind(row["kind"]),
            fingerprint=row["fingerprint"],
            embedding_model=row["embedding_model"],
            page_count=row["page_count"],
            chunk_count=row["chunk_count"],
            size=row["size"],
            mtime=row["mtime"],
            last_indexed_at=row["indexed_at"],
        )

    def get_record(self, path: Path | str) -> FileIndexRecord | None:
        with self._reading() as conn:
            row = conn.execute("SELECT * FROM files WHERE path = ?", (str(path),)).fetchone()
        return self._row_to_record(row) if row else None

    def list_files(self) -> List[FileIndexRecord]:
        with self._reading() as conn:
            rows = conn.execute("SELECT * FROM files ORDER BY path").fetchall()
        return [self._row_to_record(row) for row in rows]

    def records_by_path(self) -> Dict[Path, FileIndexRecord]:
        return {record.path: record for record in self.list_files()}

    def chunks_for(self, path: Path | str) -> List[ChunkRecord]:
        with self._reading() as conn:
            rows = conn.execute(
                "SELECT id, file_path, page, ordinal, text, lang FROM chunks WHERE file_path = ? "
                "ORDER BY page, ordinal",
                (str(path),),
            ).fetchall()
        return [
            ChunkRecord(
                id=row["id"],
                file_path=Path(row["file_path"]),
                page=row["page"],
                ordinal=row["ordinal"],
                text=row["text"],
                lang=row["lang"],
            )
            for row in rows
        ]

    # -- search -----------------------------------------------------------

    def _vector_matrix(self) -> tuple[np.ndarray, np.ndarray]:
        cache = self._matrix_cache
        if cache is not None and cache[0] == self._generation:
            return cache[1], cache[2]
        rows = self._conn.execute("SELECT id, embedding FROM chunks ORDER BY id").fetchall()
        ids = np.fromiter((row["id"] for row in rows), dtype=np.int64, count=len(rows))
        if rows:
            matrix = np.vstack([np.frombuffer(row["embedding"], dtype="float32") for row in rows])
            norms = np.linalg.norm(matrix, axis=1, keepdims=True)
            matrix = matrix / np.where(norms == 0, 1.0, norms)
        else:
            matrix = np.zeros((0, 0), dtype="float32")
        self._matrix_cache = (self._generation, ids, matrix)
        return ids, matrix

    def search(self, embedding: np.ndarray, *, top_k: int = 10, with_vectors: bool = False) -> List[dict]:
        """Return the ``top_k`` chunks closest to ``embedding`` by cosine distance.

        Results are ordered by ascending distance, ties by chunk id.
        """
        if top_k <= 0:
            return []
        query = np.asarray(embedding, dtype="float32").ravel()
        with self._reading() as conn:
            ids, matrix = self._vector_matrix()
            if ids.size == 0:
                return []
            if matrix.shape[1] != query.shape[0]:
                raise StorageError(
                    f"Query dimension {query.shape[0]} does not match store dimension {matrix.shape[1]}"
                )
            norm = float(np.linalg.norm(query))
            sims = matrix @ (query / norm) if norm else np.zeros(ids.shape[0], dtype="float32")
            distances = 1.0 - sims.astype("float64")
            order = np.lexsort((ids, distances))[:top_k]

            picked = [int(ids[i]) for i in order]
            placeholders = ",".join("?" for _ in picked)
            rows = conn.execute(
                f"SELECT id, file_path, page, ordinal, text, lang, embedding FROM chunks "
                f"WHERE id IN ({placeholders})",
                picked,
            ).fetchall()

        by_id = {row["id"]: row for row in rows}
        results: List[dict] = []
        for idx in order:
            row = by_id[int(ids[idx])]
            result = {
                "id": row["id"],
                "file_path": row["file_path"],
                "page": row["page"],
                "ordinal": row["ordinal"],
                "text": row["text"],
                "lang": row["lang"],
                "distance": float(distances[idx]),
            }
            if with_vectors:
                result["embedding"] = np.frombuffer(row["embedding"], dtype="float32")
            results.append(result)
        return results

    def text_search(self, query: str, *, limit: int = 10) -> List[int]:
        """Chunk ids matching an FTS5 ``query``, best BM25 score first.

        Returns nothing when full-text search is unavailable or the query
        does not parse.
        """
        if not self._fts or not query or limit <= 0:
            return []
        with self._reading() as conn:
            try:
                rows = conn.execute(
                    "SELECT rowid FROM chunks_fts WHERE chunks_fts MATCH ? "
                    "ORDER BY bm25(chunks_fts), rowid LIMIT ?",
                    (query, limit),
                ).fetchall()
            except sqlite3.OperationalError as exc:
                LOGGER.debug("Full-text query %r failed: %s", query, exc)
                return []
        return [row["rowid"] for row in rows]

    # -- targets and pruning ----------------------------------------------

    def list_targets(self) -> List[IndexTarget]:
        with self._reading() as conn:
            rows = conn.execute(
                "SELECT path, kind, include_subfolders FROM targets ORDER BY added_at, rowid"
            ).fetchall()
        return [
            IndexTarget(
                path=Path(row["path"]),
                kind=TargetKind(row["kind"]),
                include_subfolders=bool(row["include_subfolders"]),
            )
            for row in rows
        ]

    def save_targets(self, targets: Sequence[IndexTarget]) -> None:
        """Replace the registered targets."""
        now = int(time.time())
        with self.transaction() as conn:
            conn.execute("DELETE FROM targets")
            conn.executemany(
                """
                INSERT OR REPLACE INTO targets(path, kind, include_subfolders, added_at)
                VALUES (?, ?, ?, ?)
                """,
                [
                    (str(t.path), TargetKind(t.kind).value, int(t.include_subfolders), now)
                    for t in targets
                ],
            )

    def prune(self, targets: Sequence[IndexTarget]) -> int:
        """Remove records not covered by any of ``targets`` (all of them if empty)."""
        with self.transaction() as conn:
            rows = conn.execute("SELECT path FROM files").fetchall()
            doomed = [
                row["path"]
                for row in rows
                if not any(target.covers(Path(row["path"])) for target in targets)
            ]
            for path in doomed:
                self._delete_file(conn, path)
        if doomed:
            LOGGER.info("Pruned %s files from the index", len(doomed))
        return len(doomed)

    def remove_missing_files(self) -> int:
        """Remove records whose files no longer exist."""
        with self.transaction() as conn:
            rows = conn.execute("SELECT path FROM files").fetchall()
            missing = [row["path"] for row in rows if not Path(row["path"]).exists()]
            for path in missing:
                self._delete_file(conn, path)
        return len(missing)

    def get_stats(self) -> dict:
        with self._reading() as conn:
            files = conn.execute("SELECT COUNT(*) FROM files").fetchone()[0]
            chunks = conn.execute("SELECT COUNT(*) FROM chunks").fetchone()[0]
            size = conn.execute("SELECT COALESCE(SUM(size), 0) FROM files").fetchone()[0]
        return {
            "file_count": files,
            "chunk_count": chunks,
            "total_size_bytes": size,
            "embedding_model": self.embedding_model(),
            "embedding_dim": self.embedding_dim(),
        }
