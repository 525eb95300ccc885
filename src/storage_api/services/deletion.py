"""Deletion coordinator: metadata row first, object bytes second."""

import logging
from dataclasses import dataclass

from storage_api.adapters.storage import BaseStorage
from storage_api.database.local import MetadataStore
from storage_api.errors import OrphanedObject, StorageDeleteFailed
from storage_api.schemas import FileRecord

logger = logging.getLogger(__name__)


@dataclass
class DeletionResult:
    record: FileRecord
    object_existed: bool


class DeletionService:

    def __init__(self, storage: BaseStorage, metadata_store: MetadataStore):
        self.storage = storage
        self.metadata_store = metadata_store

    def delete_by_storage_key(self, storage_key: str) -> DeletionResult:
        """
        Remove a file's record and bytes.

        Once the row is gone the file is invisible to listing and download, so a
        failure removing the bytes afterwards leaves a harmless orphan. That case
        is reported as OrphanedObject rather than swallowed.

        :raises NotFound: No record for this key. The object store is not touched.
        :raises OrphanedObject: The record was deleted but the bytes were not.
        """
        record = self.metadata_store.find_by_storage_key(storage_key)
        self.metadata_store.delete_by_id(record.id)

        try:
            object_existed = self.storage.delete(storage_key)
        except StorageDeleteFailed as e:
            logger.error("Record %d deleted but object remains, orphaned object: %s (%s)",
                         record.id, storage_key, e)
            raise OrphanedObject(
                f"Metadata for {storage_key} was deleted but the object could not be removed: {e.message}",
                storage_key=storage_key,
                retryable=e.retryable,
            ) from e

        if not object_existed:
            logger.warning("Record %d referenced a missing object: %s", record.id, storage_key)
        logger.info("Deleted file %s (record %d)", storage_key, record.id)
        return DeletionResult(record=record, object_existed=object_existed)
