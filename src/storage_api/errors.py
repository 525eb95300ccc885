"""
Error taxonomy for the ingestion, retrieval, deletion and enrichment pipeline.

Every failure that crosses a component boundary is one of these types so that
callers can tell a missing record from a broken store, and a broken store from
a partially completed delete. The FastAPI handlers at the bottom map them to
JSON responses.
"""

import logging
from typing import Any, Dict, Optional

import pydantic
from fastapi import Request, status
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class StorageApiError(Exception):
    """Base class for all pipeline errors."""

    code = "internal_error"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, storage_key: Optional[str] = None, retryable: bool = False):
        super().__init__(message)
        self.message = message
        self.storage_key = storage_key
        self.retryable = retryable

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.code,
            "detail": self.message,
            "storage_key": self.storage_key,
            "retryable": self.retryable,
        }


# --- Object store ---

class StorageWriteFailed(StorageApiError):
    code = "storage_write_failed"
    status_code = status.HTTP_502_BAD_GATEWAY


class ObjectExists(StorageWriteFailed):
    """The key already holds an object; `put` never replaces one."""

    code = "object_exists"
    status_code = status.HTTP_409_CONFLICT


class StorageReadFailed(StorageApiError):
    code = "storage_read_failed"
    status_code = status.HTTP_502_BAD_GATEWAY


class ObjectNotFound(StorageReadFailed):
    """The key has no object behind it."""

    code = "object_not_found"
    status_code = status.HTTP_404_NOT_FOUND


class BackendMismatch(StorageReadFailed):
    """An access reference produced by a different storage backend."""

    code = "backend_mismatch"


class StorageDeleteFailed(StorageApiError):
    code = "storage_delete_failed"
    status_code = status.HTTP_502_BAD_GATEWAY


class InvalidSignature(StorageApiError):
    code = "invalid_signature"
    status_code = status.HTTP_403_FORBIDDEN


# --- Metadata store ---

class NotFound(StorageApiError):
    code = "not_found"
    status_code = status.HTTP_404_NOT_FOUND


class DuplicateKey(StorageApiError):
    code = "duplicate_key"
    status_code = status.HTTP_409_CONFLICT


class MetadataReadFailed(StorageApiError):
    code = "metadata_read_failed"


class MetadataWriteFailed(StorageApiError):
    code = "metadata_write_failed"


# --- Queue and worker ---

class EnqueueFailed(StorageApiError):
    code = "enqueue_failed"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


class AnalysisFailed(StorageApiError):
    code = "analysis_failed"


# --- Coordinators ---

class OrphanedObject(StorageApiError):
    """Metadata row deleted but the object bytes could not be removed."""

    code = "orphaned_object"

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        body["metadata_deleted"] = True
        return body


class UploadCancelled(StorageApiError):
    code = "upload_cancelled"
    status_code = 499


############################
# --- Exception handlers --- #
############################

async def handle_storage_api_errors(request: Request, exc: StorageApiError) -> JSONResponse:
    """Render a pipeline error with its machine-readable code."""
    status_code = exc.status_code
    if exc.retryable and status_code >= 500:
        status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    if status_code >= 500:
        logger.error("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.message)
    else:
        logger.info("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.message)
    return JSONResponse(status_code=status_code, content=exc.to_dict())


async def handle_pydantic_validation_errors(request: Request, exc: pydantic.ValidationError) -> JSONResponse:
    errors = exc.errors()
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "detail": [
                {
                    "msg": error["msg"],
                    "input": error.get("input"),
                }
                for error in errors
            ]
        },
    )


async def handle_broad_exceptions(request: Request, call_next):
    """Handle any exception that propagates during the request."""
    try:
        return await call_next(request)
    except Exception:
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(status_code=500, content={"detail": "Internal server error"})
