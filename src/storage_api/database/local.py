"""
SQLite-backed metadata store for file records.

Each call opens its own short-lived connection with a busy timeout, so the
API process and worker processes can share one database file.
"""

import json
import logging
import sqlite3
from contextlib import closing
from typing import List, Optional

from storage_api.errors import (
    DuplicateKey,
    MetadataReadFailed,
    MetadataWriteFailed,
    NotFound,
)
from storage_api.schemas import FileRecord, NewFileRecord
from storage_api.settings import Settings, get_settings

logger = logging.getLogger(__name__)

CREATE_FILES_TABLE = '''
    CREATE TABLE IF NOT EXISTS files (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        storage_key VARCHAR(512) NOT NULL UNIQUE,
        original_name VARCHAR(255) NOT NULL,
        mime_type VARCHAR(100) NOT NULL,
        size_bytes BIGINT NOT NULL CHECK (size_bytes >= 0),
        created_at TIMESTAMP NOT NULL,
        public_ref TEXT NULL,
        tags TEXT NULL                 -- JSON list, written once by the enrichment worker
    )
'''

CREATE_CREATED_AT_INDEX = '''
    CREATE INDEX IF NOT EXISTS idx_files_created_at ON files (created_at)
'''


def _row_to_record(row: sqlite3.Row) -> FileRecord:
    data = dict(row)
    data["tags"] = json.loads(data["tags"]) if data["tags"] is not None else None
    return FileRecord(**data)


class MetadataStore:
    """Durable table of file records keyed by storage key."""

    def __init__(self, db_path: str = "files.db", timeout: float = 5.0):
        self.db_path = db_path
        self.timeout = timeout

    def _get_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=self.timeout)
        conn.row_factory = sqlite3.Row
        return conn

    def init_db(self) -> None:
        """Create the files table and its indexes if missing."""
        with closing(self._get_connection()) as conn:
            conn.execute(CREATE_FILES_TABLE)
            conn.execute(CREATE_CREATED_AT_INDEX)
            conn.commit()
        logger.info("Metadata store initialized at %s", self.db_path)

    def insert(self, record: NewFileRecord) -> FileRecord:
        """Insert a record and return it with its assigned id."""
        try:
            with closing(self._get_connection()) as conn:
                cursor = conn.execute('''
                    INSERT INTO files
                    (storage_key, original_name, mime_type, size_bytes, created_at, public_ref)
                    VALUES (?, ?, ?, ?, ?, ?)
                ''', (
                    record.storage_key,
                    record.original_name,
                    record.mime_type,
                    record.size_bytes,
                    record.created_at.isoformat(),
                    record.public_ref,
                ))
                conn.commit()
                record_id = cursor.lastrowid
        except sqlite3.IntegrityError as e:
            if "UNIQUE" in str(e).upper():
                raise DuplicateKey(
                    f"A record already exists for storage key {record.storage_key}",
                    storage_key=record.storage_key,
                ) from e
            raise MetadataWriteFailed(f"Record rejected: {e}", storage_key=record.storage_key) from e
        except sqlite3.OperationalError as e:
            raise MetadataWriteFailed(
                f"Could not insert record: {e}", storage_key=record.storage_key, retryable=True
            ) from e
        except sqlite3.Error as e:
            raise MetadataWriteFailed(f"Could not insert record: {e}", storage_key=record.storage_key) from e

        logger.info("Inserted file record %d for %s", record_id, record.storage_key)
        return FileRecord(id=record_id, tags=None, **record.model_dump())

    def list(self) -> List[FileRecord]:
        """All records, newest first."""
        try:
            with closing(self._get_connection()) as conn:
                rows = conn.execute(
                    'SELECT * FROM files ORDER BY created_at DESC, id DESC'
                ).fetchall()
        except sqlite3.Error as e:
            raise MetadataReadFailed(f"Could not list records: {e}", retryable=True) from e
        return [_row_to_record(row) for row in rows]

    def count(self) -> int:
        try:
            with closing(self._get_connection()) as conn:
                return conn.execute('SELECT COUNT(*) FROM files').fetchone()[0]
        except sqlite3.Error as e:
            raise MetadataReadFailed(f"Could not count records: {e}", retryable=True) from e

    def _fetch_one(self, query: str, param, description: str, storage_key: Optional[str] = None) -> FileRecord:
        try:
            with closing(self._get_connection()) as conn:
                row = conn.execute(query, (param,)).fetchone()
        except sqlite3.Error as e:
            raise MetadataReadFailed(
                f"Could not look up {description}: {e}", storage_key=storage_key, retryable=True
            ) from e
        if row is None:
            raise NotFound(f"No file record for {description}", storage_key=storage_key)
        return _row_to_record(row)

    def find_by_storage_key(self, storage_key: str) -> FileRecord:
        return self._fetch_one(
            'SELECT * FROM files WHERE storage_key = ?', storage_key,
            f"storage key {storage_key}", storage_key=storage_key,
        )

    def get_by_id(self, record_id: int) -> FileRecord:
        return self._fetch_one('SELECT * FROM files WHERE id = ?', record_id, f"id {record_id}")

    def _execute_write(self, query: str, params: tuple, description: str) -> int:
        try:
            with closing(self._get_connection()) as conn:
                cursor = conn.execute(query, params)
                conn.commit()
                return cursor.rowcount
        except sqlite3.OperationalError as e:
            raise MetadataWriteFailed(f"Could not {description}: {e}", retryable=True) from e
        except sqlite3.Error as e:
            raise MetadataWriteFailed(f"Could not {description}: {e}") from e

    def update_tags(self, record_id: int, tags: List[str]) -> None:
        """Set the record's tags. Re-applying the same tags is harmless."""
        updated = self._execute_write(
            'UPDATE files SET tags = ? WHERE id = ?',
            (json.dumps(list(tags)), record_id),
            f"update tags of record {record_id}",
        )
        if updated == 0:
            raise NotFound(f"No file record with id {record_id}")
        logger.info("Updated tags of record %d: %s", record_id, tags)

    def delete_by_id(self, record_id: int) -> None:
        deleted = self._execute_write(
            'DELETE FROM files WHERE id = ?', (record_id,), f"delete record {record_id}",
        )
        if deleted == 0:
            raise NotFound(f"No file record with id {record_id}")
        logger.info("Deleted file record %d", record_id)

    def ping(self) -> None:
        try:
            with closing(self._get_connection()) as conn:
                conn.execute('SELECT 1 FROM files LIMIT 1')
        except sqlite3.Error as e:
            raise MetadataReadFailed(f"Metadata store unavailable: {e}", retryable=True) from e


def get_metadata_store(settings: Optional[Settings] = None) -> MetadataStore:
    """Build the metadata store from settings and make sure its schema exists."""
    settings = settings or get_settings()
    store = MetadataStore(settings.database_path, timeout=settings.metadata_timeout_seconds)
    store.init_db()
    return store
