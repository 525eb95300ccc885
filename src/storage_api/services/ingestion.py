"""
Ingestion coordinator: store bytes, record metadata, queue enrichment.

Writes go object first, metadata second. A failure between the two can leave
an orphaned object but never a record pointing at missing bytes; the orphan is
removed on a best-effort basis before the error is reported.

A generated key that is already taken, in the object store or the metadata
store, is never written over or cleaned up; a fresh key is tried instead.
"""

import asyncio
import logging
import re
import secrets
import time
from datetime import datetime, timezone
from pathlib import PurePosixPath, PureWindowsPath
from typing import Awaitable, Callable, Optional

from storage_api.adapters.queue import BaseQueue
from storage_api.adapters.storage import BaseStorage
from storage_api.database.local import MetadataStore
from storage_api.errors import (
    DuplicateKey,
    EnqueueFailed,
    MetadataWriteFailed,
    ObjectExists,
    StorageApiError,
    StorageWriteFailed,
    UploadCancelled,
)
from storage_api.schemas import (
    EnrichmentJob,
    FileRecord,
    NewFileRecord,
    is_image_mime_type,
)
from storage_api.utils.decorators import async_log_execution_time

logger = logging.getLogger(__name__)

_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9._-]")
MAX_NAME_LENGTH = 200
# Fresh keys tried when a generated key is already taken
MAX_KEY_ATTEMPTS = 3

CancelCheck = Callable[[], Awaitable[bool]]


def sanitize_filename(original_name: str) -> str:
    """Reduce a user-supplied name to something safe inside a storage key."""
    # Browsers on Windows may send full paths
    name = PurePosixPath(PureWindowsPath(original_name or "").name).name
    name = _UNSAFE_NAME_CHARS.sub("_", name).lstrip(".")
    return name[-MAX_NAME_LENGTH:] or "file"


def generate_storage_key(original_name: str) -> str:
    """Time-based prefix, random segment, then the sanitised original name."""
    return f"{int(time.time() * 1000)}-{secrets.token_hex(4)}-{sanitize_filename(original_name)}"


class IngestionService:
    """Coordinates object store, metadata store and job queue for one upload."""

    def __init__(self, storage: BaseStorage, metadata_store: MetadataStore, queue: BaseQueue):
        self.storage = storage
        self.metadata_store = metadata_store
        self.queue = queue

    @async_log_execution_time
    async def ingest(
        self,
        data: bytes,
        original_name: str,
        mime_type: Optional[str],
        size_bytes: Optional[int] = None,
        is_cancelled: Optional[CancelCheck] = None,
    ) -> FileRecord:
        """
        Store an upload and return its file record.

        :param data: The uploaded bytes.
        :param original_name: Display name supplied by the client.
        :param mime_type: Declared content type; image types are queued for tagging.
        :param size_bytes: Declared length. The stored length is always len(data).
        :param is_cancelled: Awaitable check for a client abort, consulted before the object write.
        :raises UploadCancelled: The client went away before any bytes were written.
        :raises StorageWriteFailed: The object write failed; nothing was recorded.
        :raises ObjectExists: Every generated key was already taken.
        :raises MetadataWriteFailed: The record could not be inserted; the object was cleaned up if possible.
        """
        mime_type = mime_type or "application/octet-stream"
        if size_bytes is not None and size_bytes != len(data):
            logger.warning(
                "Declared size %d for %s does not match received %d bytes; using received length",
                size_bytes, original_name, len(data),
            )

        for attempt in range(1, MAX_KEY_ATTEMPTS + 1):
            storage_key = generate_storage_key(original_name)
            logger.info("Ingesting %s (%s, %d bytes) as %s", original_name, mime_type, len(data), storage_key)

            if is_cancelled is not None and await is_cancelled():
                raise UploadCancelled("Client aborted the upload", storage_key=storage_key)

            # Step 1: object bytes. The store refuses keys that already hold an object.
            try:
                access_ref = await asyncio.to_thread(self.storage.put, data, storage_key, content_type=mime_type)
            except ObjectExists:
                if attempt == MAX_KEY_ATTEMPTS:
                    raise
                logger.warning("Storage key %s is taken, generating another (attempt %d)", storage_key, attempt)
                continue
            except StorageWriteFailed:
                raise
            except Exception as e:
                raise StorageWriteFailed(f"Could not write object: {e}", storage_key=storage_key) from e

            # Step 2: metadata row. From here on the pipeline runs to completion.
            new_record = NewFileRecord(
                storage_key=storage_key,
                original_name=original_name,
                mime_type=mime_type,
                size_bytes=len(data),
                created_at=datetime.now(timezone.utc),
                public_ref=self.storage.public_ref(storage_key),
            )
            try:
                record = await asyncio.to_thread(self.metadata_store.insert, new_record)
            except DuplicateKey as e:
                # Another record owns this key, so the object behind it is not ours to remove
                if attempt == MAX_KEY_ATTEMPTS:
                    raise MetadataWriteFailed(
                        f"No free storage key for {original_name} after {attempt} attempts",
                        storage_key=storage_key,
                    ) from e
                logger.warning("Storage key %s already recorded, generating another (attempt %d)",
                               storage_key, attempt)
                continue
            except Exception as e:
                logger.error("Metadata insert failed for %s, rolling back object: %s", storage_key, e)
                await self._discard_orphan(storage_key)
                retryable = isinstance(e, StorageApiError) and e.retryable
                raise MetadataWriteFailed(
                    f"Could not record metadata for {storage_key}: {e}",
                    storage_key=storage_key,
                    retryable=retryable,
                ) from e
            break

        # Step 3: enrichment, images only. Failure leaves an untagged record.
        if is_image_mime_type(mime_type):
            await self._enqueue_enrichment(record, access_ref)

        return record

    async def _discard_orphan(self, storage_key: str) -> None:
        """Best-effort, single attempt. Failure is logged, never raised."""
        try:
            await asyncio.to_thread(self.storage.delete, storage_key)
            logger.info("Rolled back object after failed insert: %s", storage_key)
        except Exception:
            logger.exception("Failed to roll back upload, orphaned object: %s", storage_key)

    async def _enqueue_enrichment(self, record: FileRecord, access_ref: str) -> bool:
        job = EnrichmentJob(storage_ref=access_ref, record_id=record.id)
        try:
            message_id = await self.queue.add_task(job.model_dump())
        except EnqueueFailed as e:
            logger.warning("Enrichment skipped for record %d (%s): %s", record.id, record.storage_key, e)
            return False
        except Exception as e:
            logger.warning("Enrichment skipped for record %d (%s): unexpected queue error: %s",
                           record.id, record.storage_key, e)
            return False
        logger.info("Queued enrichment job %s for record %d", message_id, record.id)
        return True
