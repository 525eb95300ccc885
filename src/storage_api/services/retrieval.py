"""Retrieval service: list records with fresh access URLs, resolve downloads."""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from storage_api.adapters.storage import BaseStorage
from storage_api.database.local import MetadataStore
from storage_api.errors import ObjectNotFound
from storage_api.schemas import FileListItem, FileRecord

logger = logging.getLogger(__name__)


@dataclass
class DownloadTarget:
    """Where a download should be served from: a local file or a redirect."""
    record: FileRecord
    local_path: Optional[Path] = None
    redirect_url: Optional[str] = None


class RetrievalService:

    def __init__(self, storage: BaseStorage, metadata_store: MetadataStore, signed_url_ttl_seconds: int = 3600):
        self.storage = storage
        self.metadata_store = metadata_store
        self.signed_url_ttl_seconds = signed_url_ttl_seconds

    def _access_url(self, record: FileRecord) -> Optional[str]:
        # Signed URLs expire, so they are generated per request and never stored
        try:
            return self.storage.signed_url(record.storage_key, self.signed_url_ttl_seconds)
        except Exception as e:
            logger.warning("Could not sign URL for %s, falling back to public reference: %s",
                           record.storage_key, e)
            return record.public_ref

    def list_all(self) -> List[FileListItem]:
        records = self.metadata_store.list()
        return [
            FileListItem(**record.model_dump(), url=self._access_url(record))
            for record in records
        ]

    def get_record(self, storage_key: str) -> FileRecord:
        return self.metadata_store.find_by_storage_key(storage_key)

    def download_by_storage_key(self, storage_key: str) -> DownloadTarget:
        """
        Resolve where the bytes of a file can be fetched.

        Raises NotFound when no record exists for the key.
        """
        record = self.metadata_store.find_by_storage_key(storage_key)
        local_path = self.storage.local_path(storage_key)
        if local_path is not None:
            if not local_path.is_file():
                raise ObjectNotFound(f"Record exists but object is missing: {storage_key}", storage_key=storage_key)
            return DownloadTarget(record=record, local_path=local_path)
        return DownloadTarget(
            record=record,
            redirect_url=self.storage.signed_url(storage_key, self.signed_url_ttl_seconds),
        )
