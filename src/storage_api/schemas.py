####################################
# --- Request/response schemas --- #
####################################

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

IMAGE_MIME_PREFIX = "image/"
TAG_IMAGE_TASK = "tag_image"


def is_image_mime_type(mime_type: Optional[str]) -> bool:
    """Whether content of this type gets enriched with tags."""
    return bool(mime_type) and mime_type.lower().startswith(IMAGE_MIME_PREFIX)


class NewFileRecord(BaseModel):
    """A file record before the metadata store has assigned it an id."""
    storage_key: str = Field(min_length=1)
    original_name: str
    mime_type: str
    size_bytes: int = Field(ge=0)
    created_at: datetime
    public_ref: Optional[str] = None


class FileRecord(NewFileRecord):
    """Metadata of a stored file."""
    id: int
    tags: Optional[List[str]] = Field(
        default=None,
        description="Machine-generated tags; null until the file has been analyzed.",
    )

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "id": 1,
                "storage_key": "1718000000000-9f2c4a1b-holiday.png",
                "original_name": "holiday.png",
                "mime_type": "image/png",
                "size_bytes": 20480,
                "created_at": "2024-06-10T06:13:20Z",
                "public_ref": "https://ai-cloud-storage-files.s3.amazonaws.com/1718000000000-9f2c4a1b-holiday.png",
                "tags": ["Beach", "Sea", "Sky"],
            }
        }
    )


class FileListItem(FileRecord):
    """A file record plus a freshly generated access URL."""
    url: Optional[str] = Field(
        default=None,
        description="Signed URL, or the static public reference when signing failed.",
    )


class EnrichmentJob(BaseModel):
    """Message placed on the enrichment queue."""
    task_type: str = TAG_IMAGE_TASK
    storage_ref: str = Field(min_length=1, description="Local path or remote locator of the object")
    record_id: int


class UploadResponse(BaseModel):
    """Response model for `POST /v1/files`."""
    message: str
    file: FileRecord


class ListFilesResponse(BaseModel):
    """Response model for `GET /v1/files`."""
    files: List[FileListItem]
    total_count: int


class DeleteFileResponse(BaseModel):
    """Response model for `DELETE /v1/files/:storage_key`."""
    message: str
    storage_key: str
    object_existed: bool
