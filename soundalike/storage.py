"""
Storage module for the SQLite feature store.

Schema:
    schema_version:  Single row holding DATABASE_VERSION
    track:           One row per analyzed track, keyed by (path, sub_index),
                     with the feature vector stored as a float64 BLOB
    analysis_error:  One row per track whose analysis failed, same key

``sub_index`` is 0 for plain files; container tracks use their 1-based
track number.
"""

import logging
import os
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Generator, Iterable, List, Optional, Tuple

import numpy as np
import pandas as pd

from soundalike.config import Config
from soundalike.exceptions import NotFound, StoreError
from soundalike.models import (
    FEATURES_VERSION,
    METADATA_FIELDS,
    TrackKey,
    TrackRecord,
    make_reference,
    parse_reference,
)


logger = logging.getLogger(__name__)


DATABASE_VERSION = 1
_NO_SUB_INDEX = 0
_VECTOR_DTYPE = "<f8"

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS track (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    path TEXT NOT NULL,
    sub_index INTEGER NOT NULL DEFAULT 0,
    title TEXT,
    artist TEXT,
    album TEXT,
    album_artist TEXT,
    genre TEXT,
    track_number INTEGER,
    disc_number INTEGER,
    mtime REAL,
    features_version INTEGER NOT NULL,
    dimension INTEGER NOT NULL,
    vector BLOB NOT NULL,
    updated_at TEXT,
    UNIQUE(path, sub_index)
);

CREATE TABLE IF NOT EXISTS analysis_error (
    path TEXT NOT NULL,
    sub_index INTEGER NOT NULL DEFAULT 0,
    reason TEXT NOT NULL,
    mtime REAL,
    features_version INTEGER,
    recorded_at TEXT,
    PRIMARY KEY (path, sub_index)
);

CREATE INDEX IF NOT EXISTS idx_track_album ON track(album, album_artist);
"""

_UPSERT_SQL = f"""
    INSERT INTO track (
        path, sub_index, {", ".join(METADATA_FIELDS)},
        mtime, features_version, dimension, vector, updated_at
    )
    VALUES ({", ".join("?" * (len(METADATA_FIELDS) + 7))})
    ON CONFLICT(path, sub_index) DO UPDATE SET
        {", ".join(f"{name} = excluded.{name}" for name in METADATA_FIELDS)},
        mtime = excluded.mtime,
        features_version = excluded.features_version,
        dimension = excluded.dimension,
        vector = excluded.vector,
        updated_at = excluded.updated_at
"""


def _db_sub_index(sub_index: Optional[int]) -> int:
    return _NO_SUB_INDEX if sub_index is None else int(sub_index)


def _py_sub_index(value: int) -> Optional[int]:
    return None if value == _NO_SUB_INDEX else int(value)


def encode_vector(vector: np.ndarray) -> bytes:
    return np.ascontiguousarray(vector, dtype=_VECTOR_DTYPE).tobytes()


def decode_vector(blob: bytes) -> np.ndarray:
    return np.frombuffer(blob, dtype=_VECTOR_DTYPE)


@dataclass
class BatchResult:
    """Outcome of ``FeatureStore.upsert_batch``."""

    written: List[str] = field(default_factory=list)
    rejected: List[Tuple[TrackRecord, str]] = field(default_factory=list)


class FeatureStore:
    """SQLite-backed store of per-track feature vectors.

    Uses a single persistent connection guarded by a lock. Every write goes
    through an explicit transaction, so a batch is either fully visible or
    not at all.
    """

    def __init__(self, config: Optional[Config] = None, db_path: Optional[str] = None):
        """Initialize the feature store.

        Args:
            config: Configuration object.
            db_path: Database file. Defaults to ``store.path`` from config.
        """
        self.config = config or Config()
        self.db_path = db_path or self.config.store_path
        self._lock = threading.Lock()
        self._conn: Optional[sqlite3.Connection] = None

        try:
            directory = os.path.dirname(os.path.abspath(self.db_path))
            os.makedirs(directory, exist_ok=True)
            self._init_database()
        except (OSError, sqlite3.Error) as e:
            raise StoreError(
                f"Failed to open feature store at {self.db_path}: {e}",
                details={"path": self.db_path},
            ) from e

    def _connect(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(
                self.db_path,
                timeout=30.0,
                isolation_level=None,
                check_same_thread=False,
            )
            self._conn.row_factory = sqlite3.Row
        return self._conn

    def _init_database(self) -> None:
        conn = self._connect()
        conn.executescript(_SCHEMA_SQL)

        row = conn.execute("SELECT version FROM schema_version LIMIT 1").fetchone()
        if row is None:
            conn.execute(
                "INSERT INTO schema_version (version) VALUES (?)", (DATABASE_VERSION,)
            )
        elif row[0] != DATABASE_VERSION:
            raise StoreError(
                f"Database version mismatch: expected {DATABASE_VERSION}, got {row[0]}",
                details={"expected": DATABASE_VERSION, "actual": row[0], "path": self.db_path},
            )

    @contextmanager
    def _transaction(self) -> Generator[sqlite3.Connection, None, None]:
        """Run the enclosed statements as one atomic transaction."""
        with self._lock:
            conn = self._connect()
            try:
                conn.execute("BEGIN IMMEDIATE")
                yield conn
                conn.execute("COMMIT")
            except sqlite3.Error as e:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise StoreError(
                    f"Feature store transaction failed: {e}",
                    details={"path": self.db_path},
                ) from e
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise

    def _query(self, sql: str, params: Tuple[Any, ...] = ()) -> List[sqlite3.Row]:
        with self._lock:
            try:
                return self._connect().execute(sql, params).fetchall()
            except sqlite3.Error as e:
                raise StoreError(
                    f"Feature store query failed: {e}",
                    details={"path": self.db_path},
                ) from e

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def __enter__(self) -> "FeatureStore":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    @staticmethod
    def _now_iso() -> str:
        return datetime.now(timezone.utc).isoformat()

    # =========================================================================
    # Row conversion
    # =========================================================================

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> TrackRecord:
        return TrackRecord(
            path=row["path"],
            sub_index=_py_sub_index(row["sub_index"]),
            vector=decode_vector(row["vector"]),
            features_version=row["features_version"],
            mtime=row["mtime"],
            **{name: row[name] for name in METADATA_FIELDS},
        )

    @staticmethod
    def _error_row_to_record(row: sqlite3.Row) -> TrackRecord:
        return TrackRecord(
            path=row["path"],
            sub_index=_py_sub_index(row["sub_index"]),
            vector=None,
            features_version=row["features_version"] or 0,
            mtime=row["mtime"],
            error=row["reason"],
        )

    # =========================================================================
    # Writes
    # =========================================================================

    @staticmethod
    def _validate(record: TrackRecord, dimension: Optional[int]) -> Optional[str]:
        """Return why ``record`` cannot be stored, or None if it can."""
        if record.error is not None:
            return f"record carries an analysis error: {record.error}"
        if record.vector is None:
            return "record has no feature vector"

        vector = np.asarray(record.vector)
        if vector.ndim != 1 or vector.size == 0:
            return f"feature vector must be a non-empty 1-D array, got shape {vector.shape}"
        if dimension is not None and vector.shape[0] != dimension:
            return f"dimension mismatch: expected {dimension} features, got {vector.shape[0]}"
        if not np.all(np.isfinite(vector)):
            return "feature vector contains non-finite values"
        return None

    def upsert_batch(self, records: Iterable[TrackRecord]) -> BatchResult:
        """Insert or replace a batch of analyzed records atomically.

        Records that fail validation are rejected and reported; they do
        not prevent the rest of the batch from being written.

        A vector must match the dimension of the stored rows sharing its
        features version. Rows of other versions whose dimension differs
        from a written vector are dropped in the same transaction, so the
        store never holds vectors of two sizes.

        Args:
            records: Records with a feature vector.

        Returns:
            BatchResult listing written references and rejected records.
        """
        result = BatchResult()
        records = list(records)
        if not records:
            return result

        now = self._now_iso()
        dimensions: Dict[int, Optional[int]] = {}
        written: Dict[int, int] = {}
        with self._transaction() as conn:
            for record in records:
                version = record.features_version
                if version not in dimensions:
                    row = conn.execute(
                        "SELECT dimension FROM track WHERE features_version = ? LIMIT 1",
                        (version,),
                    ).fetchone()
                    dimensions[version] = row[0] if row else None

                reason = self._validate(record, dimensions[version])
                if reason is not None:
                    logger.warning(f"Rejected '{record.reference}': {reason}")
                    result.rejected.append((record, reason))
                    continue

                vector = np.asarray(record.vector, dtype=np.float64)
                if dimensions[version] is None:
                    dimensions[version] = vector.shape[0]
                written[version] = vector.shape[0]

                sub_index = _db_sub_index(record.sub_index)
                conn.execute(
                    _UPSERT_SQL,
                    (
                        record.path,
                        sub_index,
                        *(getattr(record, name) for name in METADATA_FIELDS),
                        record.mtime,
                        record.features_version,
                        vector.shape[0],
                        encode_vector(vector),
                        now,
                    ),
                )
                conn.execute(
                    "DELETE FROM analysis_error WHERE path = ? AND sub_index = ?",
                    (record.path, sub_index),
                )
                result.written.append(record.reference)

            for version, dimension in written.items():
                purged = conn.execute(
                    "DELETE FROM track WHERE features_version != ? AND dimension != ?",
                    (version, dimension),
                ).rowcount
                if purged:
                    logger.info(
                        f"Dropped {purged} stale feature vectors that do not have "
                        f"{dimension} features"
                    )

        logger.debug(
            f"Committed batch: {len(result.written)} written, "
            f"{len(result.rejected)} rejected"
        )
        return result

    def update_metadata(self, records: Iterable[TrackRecord]) -> int:
        """Rewrite the tags and mtime of stored records, keeping their vectors.

        Returns:
            Number of rows updated.
        """
        assignments = ", ".join(f"{name} = ?" for name in METADATA_FIELDS)
        count = 0
        with self._transaction() as conn:
            for record in records:
                cursor = conn.execute(
                    f"UPDATE track SET {assignments}, mtime = ?, updated_at = ? "
                    "WHERE path = ? AND sub_index = ?",
                    (
                        *(getattr(record, name) for name in METADATA_FIELDS),
                        record.mtime,
                        self._now_iso(),
                        record.path,
                        _db_sub_index(record.sub_index),
                    ),
                )
                count += cursor.rowcount
        return count

    def record_error(
        self,
        path: str,
        reason: str,
        sub_index: Optional[int] = None,
        mtime: Optional[float] = None,
        features_version: Optional[int] = FEATURES_VERSION,
    ) -> None:
        """Store an analysis failure for a track.

        Any feature vector previously stored for the track is dropped, so
        the track leaves playlist candidate pools.
        """
        db_sub_index = _db_sub_index(sub_index)
        with self._transaction() as conn:
            conn.execute(
                "DELETE FROM track WHERE path = ? AND sub_index = ?",
                (path, db_sub_index),
            )
            conn.execute(
                """
                INSERT INTO analysis_error (path, sub_index, reason, mtime, features_version, recorded_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(path, sub_index) DO UPDATE SET
                    reason = excluded.reason,
                    mtime = excluded.mtime,
                    features_version = excluded.features_version,
                    recorded_at = excluded.recorded_at
                """,
                (path, db_sub_index, reason, mtime, features_version, self._now_iso()),
            )
        logger.error(
            f"Analysis of '{make_reference(path, sub_index)}' failed: {reason} "
            "The error has been stored."
        )

    def remove(self, keys: Iterable[TrackKey]) -> int:
        """Remove tracks, analyzed or errored, in a single transaction.

        Args:
            keys: ``(path, sub_index)`` pairs.

        Returns:
            Number of keys that were present.
        """
        count = 0
        with self._transaction() as conn:
            for path, sub_index in keys:
                params = (path, _db_sub_index(sub_index))
                removed = conn.execute(
                    "DELETE FROM track WHERE path = ? AND sub_index = ?", params
                ).rowcount
                removed += conn.execute(
                    "DELETE FROM analysis_error WHERE path = ? AND sub_index = ?", params
                ).rowcount
                if removed:
                    count += 1
        logger.info(f"Removed {count} old songs from the feature store.")
        return count

    def clear(self) -> None:
        """Drop every stored track and error."""
        with self._transaction() as conn:
            conn.execute("DELETE FROM track")
            conn.execute("DELETE FROM analysis_error")
        logger.info("Feature store cleared")

    # =========================================================================
    # Reads
    # =========================================================================

    def get(self, path: str, sub_index: Optional[int] = None) -> TrackRecord:
        """Get a stored track.

        Raises:
            NotFound: If the track was never stored.
        """
        params = (path, _db_sub_index(sub_index))
        rows = self._query("SELECT * FROM track WHERE path = ? AND sub_index = ?", params)
        if rows:
            return self._row_to_record(rows[0])

        rows = self._query(
            "SELECT * FROM analysis_error WHERE path = ? AND sub_index = ?", params
        )
        if rows:
            return self._error_row_to_record(rows[0])

        reference = make_reference(path, sub_index)
        raise NotFound(
            f"Song '{reference}' has not been analyzed.",
            details={"path": path, "sub_index": sub_index},
        )

    def get_reference(self, reference: str) -> TrackRecord:
        """Get a stored track by its reference string."""
        path, sub_index = parse_reference(reference)
        return self.get(path, sub_index)

    def list_analyzed(self) -> List[TrackRecord]:
        """List tracks that have a feature vector, ordered by path."""
        rows = self._query("SELECT * FROM track ORDER BY path, sub_index")
        return [self._row_to_record(row) for row in rows]

    def list_errors(self) -> List[TrackRecord]:
        """List tracks whose analysis failed, ordered by path."""
        rows = self._query("SELECT * FROM analysis_error ORDER BY path, sub_index")
        return [self._error_row_to_record(row) for row in rows]

    def list_all(self) -> List[TrackRecord]:
        """List every stored track, analyzed or errored."""
        records = self.list_analyzed() + self.list_errors()
        records.sort(key=lambda r: r.sort_key)
        return records

    @property
    def dimension(self) -> Optional[int]:
        """Dimension shared by all stored vectors, or None if empty."""
        rows = self._query("SELECT dimension FROM track LIMIT 1")
        return rows[0][0] if rows else None

    def count(self) -> int:
        """Get number of analyzed tracks."""
        return self._query("SELECT COUNT(*) FROM track")[0][0]

    def error_count(self) -> int:
        """Get number of tracks whose analysis failed."""
        return self._query("SELECT COUNT(*) FROM analysis_error")[0][0]

    def to_dataframe(self, include_vectors: bool = False) -> pd.DataFrame:
        """Export the store as a DataFrame, one row per track.

        Args:
            include_vectors: Whether to add a ``vector`` column.

        Returns:
            DataFrame ordered by path.
        """
        rows: List[Dict[str, Any]] = []
        for record in self.list_all():
            row = {
                "reference": record.reference,
                "path": record.path,
                "sub_index": record.sub_index,
            }
            row.update(record.metadata())
            row["features_version"] = record.features_version
            row["dimension"] = None if record.vector is None else len(record.vector)
            row["error"] = record.error
            if include_vectors:
                row["vector"] = None if record.vector is None else record.vector.tolist()
            rows.append(row)

        columns = ["reference", "path", "sub_index", *METADATA_FIELDS,
                   "features_version", "dimension", "error"]
        if include_vectors:
            columns.append("vector")
        return pd.DataFrame(rows, columns=columns)
