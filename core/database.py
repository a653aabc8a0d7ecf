# core/database.py

import json
import logging
import sqlite3
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

import numpy as np

from core.errors import NotFound, ValidationError
from core.models import ExtractionResult, ImageRecord, ProcessingStatus, normalize_tags, utcnow

logger = logging.getLogger(__name__)


def _timestamp(value: datetime) -> str:
    # Fixed-width ISO strings sort chronologically
    return value.isoformat(timespec='microseconds')


class FeatureStore:
    """
    SQLite store for image records, tags and feature vectors.

    This is the authoritative copy of every record; the vector and color
    indexes are derived from it and can be rebuilt at any time. Each thread
    gets its own connection, and every mutation runs in a single transaction
    so a record is never observed half-written.
    """

    def __init__(self, db_path: str = "data/images.db", dimension: int = 128):
        self.db_path = db_path
        self.dimension = dimension
        self._local = threading.local()
        self._connections: List[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()
        self._initialize_database()

    def _connection(self) -> sqlite3.Connection:
        conn = getattr(self._local, 'conn', None)
        if conn is None:
            conn = sqlite3.connect(self.db_path, timeout=30.0, check_same_thread=False)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys = ON")
            conn.execute("PRAGMA journal_mode = WAL")
            # Unicode-aware lower() for text search
            conn.create_function("py_lower", 1, lambda s: s.lower() if s else s,
                                 deterministic=True)
            self._local.conn = conn
            with self._connections_lock:
                self._connections.append(conn)
        return conn

    def _initialize_database(self):
        """Create database schema"""
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        conn = self._connection()

        with conn:
            # Main images table
            conn.execute("""
                CREATE TABLE IF NOT EXISTS images (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    filename TEXT NOT NULL,
                    original_path TEXT NOT NULL DEFAULT '',
                    thumbnail_path TEXT NOT NULL DEFAULT '',
                    uploaded_at TEXT NOT NULL,
                    uploaded_by TEXT,
                    description TEXT,
                    colors TEXT NOT NULL DEFAULT '[]',
                    status TEXT NOT NULL,
                    error TEXT,
                    updated_at TEXT
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS image_tags (
                    image_id INTEGER NOT NULL,
                    tag TEXT NOT NULL,
                    PRIMARY KEY (image_id, tag),
                    FOREIGN KEY (image_id) REFERENCES images(id) ON DELETE CASCADE
                )
            """)

            # Feature vectors, one per completed image
            conn.execute("""
                CREATE TABLE IF NOT EXISTS features (
                    image_id INTEGER PRIMARY KEY,
                    feature_vector BLOB NOT NULL,
                    dimension INTEGER NOT NULL,
                    extraction_date TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    FOREIGN KEY (image_id) REFERENCES images(id) ON DELETE CASCADE
                )
            """)

            # Indexing for faster queries
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_images_uploaded
                ON images(uploaded_at DESC, id DESC)
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_images_status ON images(status)
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_tags_tag ON image_tags(tag)
            """)

    # Validation

    def _check_vector(self, vector) -> np.ndarray:
        array = np.asarray(vector, dtype=np.float32).reshape(-1)
        if array.shape[0] != self.dimension:
            raise ValidationError(
                f"Vector dimension {array.shape[0]} does not match configured {self.dimension}"
            )
        if not np.all(np.isfinite(array)):
            raise ValidationError("Vector contains non-finite values")
        return array

    def _check_record(self, record: ImageRecord) -> Optional[np.ndarray]:
        if not record.filename or not record.filename.strip():
            raise ValidationError("filename is required")
        vector = None
        if record.vector is not None:
            vector = self._check_vector(record.vector)
        if record.status == ProcessingStatus.COMPLETED and vector is None:
            raise ValidationError("A completed record requires a feature vector")
        return vector

    # Writes

    def put(self, record: ImageRecord) -> ImageRecord:
        """Insert a record, or replace the existing one with the same id"""
        vector = self._check_record(record)
        conn = self._connection()
        values = (
            record.filename,
            record.original_path or '',
            record.thumbnail_path or '',
            _timestamp(record.uploaded_at),
            record.uploaded_by,
            record.description,
            json.dumps([list(c) for c in record.colors]),
            record.status.value,
            record.error,
            _timestamp(utcnow()),
        )

        with conn:
            if record.id is None:
                cursor = conn.execute("""
                    INSERT INTO images
                    (filename, original_path, thumbnail_path, uploaded_at, uploaded_by,
                     description, colors, status, error, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, values)
                image_id = cursor.lastrowid
            else:
                image_id = record.id
                conn.execute("""
                    INSERT INTO images
                    (id, filename, original_path, thumbnail_path, uploaded_at, uploaded_by,
                     description, colors, status, error, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        filename = excluded.filename,
                        original_path = excluded.original_path,
                        thumbnail_path = excluded.thumbnail_path,
                        uploaded_at = excluded.uploaded_at,
                        uploaded_by = excluded.uploaded_by,
                        description = excluded.description,
                        colors = excluded.colors,
                        status = excluded.status,
                        error = excluded.error,
                        updated_at = excluded.updated_at
                """, (image_id,) + values)

            self._replace_tags(conn, image_id, record.tags)
            if vector is not None:
                self._write_vector(conn, image_id, vector)
            else:
                conn.execute("DELETE FROM features WHERE image_id = ?", (image_id,))

        return replace(record, id=image_id)

    def create_pending(self, filename: str, original_path: str = "",
                       thumbnail_path: str = "",
                       uploaded_by: Optional[str] = None) -> ImageRecord:
        """Persist a freshly uploaded image in the pending state"""
        return self.put(ImageRecord(
            filename=filename,
            original_path=original_path,
            thumbnail_path=thumbnail_path,
            uploaded_by=uploaded_by,
        ))

    def mark_completed(self, image_id: int, result: ExtractionResult) -> bool:
        """
        Move a pending record to completed with its extracted metadata.

        Returns False, and changes nothing, if the record no longer exists or
        is not pending (deleted or reset while extraction was running).
        """
        vector = self._check_vector(result.vector)
        conn = self._connection()

        with conn:
            cursor = conn.execute("""
                UPDATE images
                SET status = ?, description = ?, colors = ?, error = NULL, updated_at = ?
                WHERE id = ? AND status = ?
            """, (
                ProcessingStatus.COMPLETED.value,
                result.description,
                json.dumps([[int(c) for c in color] for color in result.colors]),
                _timestamp(utcnow()),
                image_id,
                ProcessingStatus.PENDING.value,
            ))
            if cursor.rowcount == 0:
                return False
            self._replace_tags(conn, image_id, result.tags)
            self._write_vector(conn, image_id, vector)

        return True

    def mark_failed(self, image_id: int, error: str) -> bool:
        """Record an extraction failure; never recreates a deleted record"""
        conn = self._connection()
        with conn:
            cursor = conn.execute("""
                UPDATE images SET status = ?, error = ?, updated_at = ?
                WHERE id = ? AND status = ?
            """, (
                ProcessingStatus.FAILED.value,
                error,
                _timestamp(utcnow()),
                image_id,
                ProcessingStatus.PENDING.value,
            ))
        return cursor.rowcount > 0

    def reset_pending(self, image_id: int) -> ImageRecord:
        """Return a record to pending and drop its vector, for reprocessing"""
        conn = self._connection()
        with conn:
            cursor = conn.execute("""
                UPDATE images SET status = ?, error = NULL, updated_at = ?
                WHERE id = ?
            """, (ProcessingStatus.PENDING.value, _timestamp(utcnow()), image_id))
            if cursor.rowcount == 0:
                raise NotFound(image_id)
            conn.execute("DELETE FROM features WHERE image_id = ?", (image_id,))
        return self.get(image_id)

    def delete(self, image_id: int) -> bool:
        """Remove a record with its tags and vector; absent ids are fine"""
        conn = self._connection()
        with conn:
            cursor = conn.execute("DELETE FROM images WHERE id = ?", (image_id,))
        return cursor.rowcount > 0

    @staticmethod
    def _replace_tags(conn: sqlite3.Connection, image_id: int, tags: Iterable[str]):
        conn.execute("DELETE FROM image_tags WHERE image_id = ?", (image_id,))
        conn.executemany(
            "INSERT INTO image_tags (image_id, tag) VALUES (?, ?)",
            [(image_id, tag) for tag in normalize_tags(tags)]
        )

    @staticmethod
    def _write_vector(conn: sqlite3.Connection, image_id: int, vector: np.ndarray):
        conn.execute("""
            INSERT OR REPLACE INTO features (image_id, feature_vector, dimension)
            VALUES (?, ?, ?)
        """, (image_id, vector.astype(np.float32).tobytes(), int(vector.shape[0])))

    # Reads

    def get(self, image_id: int) -> ImageRecord:
        """Fetch one record or raise NotFound"""
        records = self.get_many([image_id])
        if image_id not in records:
            raise NotFound(image_id)
        return records[image_id]

    def get_many(self, image_ids: Iterable[int]) -> Dict[int, ImageRecord]:
        """Fetch records by id; ids without a record are skipped"""
        ids = list(dict.fromkeys(int(i) for i in image_ids))
        if not ids:
            return {}
        placeholders = ','.join('?' * len(ids))
        rows = self._connection().execute(
            f"SELECT * FROM images WHERE id IN ({placeholders})", ids
        ).fetchall()
        return {record.id: record for record in self._hydrate(rows)}

    def list(self, page: int = 1, page_size: int = 20) -> List[ImageRecord]:
        """Records newest first, 1-based pages"""
        offset = self._offset(page, page_size)
        rows = self._connection().execute("""
            SELECT * FROM images
            ORDER BY uploaded_at DESC, id DESC
            LIMIT ? OFFSET ?
        """, (page_size, offset)).fetchall()
        return self._hydrate(rows)

    def count(self, status: Optional[ProcessingStatus] = None) -> int:
        if status is None:
            row = self._connection().execute("SELECT COUNT(*) FROM images").fetchone()
        else:
            row = self._connection().execute(
                "SELECT COUNT(*) FROM images WHERE status = ?",
                (ProcessingStatus(status).value,)
            ).fetchone()
        return row[0]

    def status_counts(self) -> Dict[str, int]:
        rows = self._connection().execute(
            "SELECT status, COUNT(*) FROM images GROUP BY status"
        ).fetchall()
        counts = {status.value: 0 for status in ProcessingStatus}
        counts.update({row[0]: row[1] for row in rows})
        return counts

    def search_text(self, query: str, page: int = 1,
                    page_size: int = 20) -> Tuple[List[ImageRecord], int]:
        """
        Case-insensitive token search over filename, description and tags.

        Every whitespace-separated token has to occur as a substring of at
        least one of those fields. An empty query matches every record.

        Returns:
            (records for the requested page, total number of matches)
        """
        offset = self._offset(page, page_size)
        tokens = [token.lower() for token in (query or '').split()]

        conditions = []
        params: List = []
        for token in tokens:
            conditions.append("""(
                instr(py_lower(i.filename), ?) > 0
                OR instr(py_lower(coalesce(i.description, '')), ?) > 0
                OR EXISTS (
                    SELECT 1 FROM image_tags t
                    WHERE t.image_id = i.id AND instr(t.tag, ?) > 0
                )
            )""")
            params.extend([token, token, token])
        where = " AND ".join(conditions) if conditions else "1 = 1"

        conn = self._connection()
        total = conn.execute(
            f"SELECT COUNT(*) FROM images i WHERE {where}", params
        ).fetchone()[0]
        rows = conn.execute(f"""
            SELECT i.* FROM images i
            WHERE {where}
            ORDER BY i.uploaded_at DESC, i.id DESC
            LIMIT ? OFFSET ?
        """, params + [page_size, offset]).fetchall()

        return self._hydrate(rows), total

    def iter_by_status(self, status: ProcessingStatus,
                       batch_size: int = 500) -> Iterator[ImageRecord]:
        """Yield records with the given status in id order, a batch at a time"""
        last_id = 0
        conn = self._connection()
        while True:
            rows = conn.execute("""
                SELECT * FROM images
                WHERE status = ? AND id > ?
                ORDER BY id
                LIMIT ?
            """, (ProcessingStatus(status).value, last_id, batch_size)).fetchall()
            if not rows:
                return
            yield from self._hydrate(rows)
            last_id = rows[-1]['id']

    def iter_completed(self, batch_size: int = 500) -> Iterator[ImageRecord]:
        """Yield every completed record with its vector, in id order"""
        for record in self.iter_by_status(ProcessingStatus.COMPLETED, batch_size):
            if record.vector is None:
                logger.warning("Completed image %s has no stored vector", record.id)
                continue
            yield record

    @staticmethod
    def _offset(page: int, page_size: int) -> int:
        if page < 1:
            raise ValidationError("page must be >= 1")
        if page_size < 1:
            raise ValidationError("page_size must be >= 1")
        return (page - 1) * page_size

    def _hydrate(self, rows: List[sqlite3.Row]) -> List[ImageRecord]:
        """Turn image rows into records, attaching tags and vectors"""
        if not rows:
            return []
        ids = [row['id'] for row in rows]
        placeholders = ','.join('?' * len(ids))
        conn = self._connection()

        tags: Dict[int, List[str]] = {image_id: [] for image_id in ids}
        for tag_row in conn.execute(
            f"SELECT image_id, tag FROM image_tags WHERE image_id IN ({placeholders})", ids
        ):
            tags[tag_row['image_id']].append(tag_row['tag'])

        vectors: Dict[int, np.ndarray] = {}
        for feature_row in conn.execute(
            f"SELECT image_id, feature_vector FROM features WHERE image_id IN ({placeholders})",
            ids
        ):
            vectors[feature_row['image_id']] = np.frombuffer(
                feature_row['feature_vector'], dtype=np.float32
            ).copy()

        records = []
        for row in rows:
            records.append(ImageRecord(
                id=row['id'],
                filename=row['filename'],
                original_path=row['original_path'],
                thumbnail_path=row['thumbnail_path'],
                uploaded_at=datetime.fromisoformat(row['uploaded_at']),
                uploaded_by=row['uploaded_by'],
                description=row['description'],
                tags=tags[row['id']],
                colors=[tuple(c) for c in json.loads(row['colors'])],
                vector=vectors.get(row['id']),
                status=ProcessingStatus(row['status']),
                error=row['error'],
            ))
        return records

    def backup(self, backup_path: str):
        """Copy a consistent snapshot of the database, WAL contents included"""
        target = sqlite3.connect(backup_path)
        try:
            self._connection().backup(target)
        finally:
            target.close()

    def vacuum(self):
        """Reclaim space after many deletions"""
        self._connection().execute("VACUUM")

    def close(self):
        """Close every connection opened by this store"""
        with self._connections_lock:
            for conn in self._connections:
                conn.close()
            self._connections.clear()
        self._local = threading.local()
