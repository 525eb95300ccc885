from fastapi import (
    APIRouter,
    Depends,
    File,
    HTTPException,
    Path,
    Query,
    Request,
    UploadFile,
    status
)
from fastapi.responses import FileResponse, RedirectResponse, Response

from storage_api.dependencies import (
    get_deletion_service,
    get_ingestion_service,
    get_retrieval_service,
)
from storage_api.errors import ObjectNotFound
from storage_api.schemas import (
    DeleteFileResponse,
    FileRecord,
    ListFilesResponse,
    UploadResponse,
)
from storage_api.services import DeletionService, IngestionService, RetrievalService

router = APIRouter()

_NOT_FOUND_RESPONSE = {
    status.HTTP_404_NOT_FOUND: {"description": "No file record exists for the given `storage_key`."},
}


@router.post(
    "/files",
    status_code=status.HTTP_201_CREATED,
    response_model=UploadResponse,
    responses={
        status.HTTP_502_BAD_GATEWAY: {"description": "The object store rejected the write."},
        status.HTTP_500_INTERNAL_SERVER_ERROR: {"description": "The metadata record could not be written."},
    },
)
async def upload_file(
    request: Request,
    file: UploadFile = File(..., description="The file to upload"),
    ingestion: IngestionService = Depends(get_ingestion_service),
) -> UploadResponse:
    """
    Upload a file.

    The bytes are stored, a metadata record is created and, for images, a
    tagging job is queued. Tags appear on the record once the worker is done.
    """
    if not file.filename:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No file uploaded.")

    file_bytes = await file.read()
    record = await ingestion.ingest(
        data=file_bytes,
        original_name=file.filename,
        mime_type=file.content_type,
        size_bytes=file.size,
        is_cancelled=request.is_disconnected,
    )
    return UploadResponse(message="File uploaded successfully!", file=record)


@router.get("/files", response_model=ListFilesResponse)
def list_files(retrieval: RetrievalService = Depends(get_retrieval_service)) -> ListFilesResponse:
    """List all files, newest first, each with a freshly signed access URL."""
    files = retrieval.list_all()
    return ListFilesResponse(files=files, total_count=len(files))


@router.get(
    "/files/{storage_key}/metadata",
    response_model=FileRecord,
    responses=_NOT_FOUND_RESPONSE,
)
def get_file_metadata(
    storage_key: str = Path(..., description="The storage key of the file"),
    retrieval: RetrievalService = Depends(get_retrieval_service),
) -> FileRecord:
    """Retrieve one file's metadata, including its tags."""
    return retrieval.get_record(storage_key)


@router.get(
    "/files/{storage_key}/content",
    responses={
        status.HTTP_403_FORBIDDEN: {"description": "Signature invalid or expired."},
        status.HTTP_404_NOT_FOUND: {"description": "The object does not exist."},
    },
)
def get_signed_content(
    request: Request,
    storage_key: str = Path(..., description="The storage key of the file"),
    expires: int = Query(..., description="Unix time the URL expires at"),
    signature: str = Query(..., description="URL signature"),
) -> FileResponse:
    """Serve bytes behind a locally signed URL."""
    storage = request.app.state.storage
    verify_signature = getattr(storage, "verify_signature", None)
    if verify_signature is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Signed content is served by the object store")

    verify_signature(storage_key, expires, signature)
    local_path = storage.local_path(storage_key)
    if local_path is None or not local_path.is_file():
        raise ObjectNotFound(f"Object not found: {storage_key}", storage_key=storage_key)
    return FileResponse(local_path)


@router.get(
    "/files/{storage_key}",
    responses={
        **_NOT_FOUND_RESPONSE,
        status.HTTP_200_OK: {
            "description": "The file content (local storage).",
            "content": {"application/octet-stream": {"schema": {"type": "string", "format": "binary"}}},
        },
        status.HTTP_307_TEMPORARY_REDIRECT: {"description": "Redirect to a signed object store URL."},
    },
)
def download_file(
    storage_key: str = Path(..., description="The storage key of the file"),
    retrieval: RetrievalService = Depends(get_retrieval_service),
) -> Response:
    """Download a file, streamed locally or redirected to the object store."""
    target = retrieval.download_by_storage_key(storage_key)
    if target.local_path is not None:
        return FileResponse(
            target.local_path,
            media_type=target.record.mime_type,
            filename=target.record.original_name,
        )
    return RedirectResponse(target.redirect_url, status_code=status.HTTP_307_TEMPORARY_REDIRECT)


@router.delete(
    "/files/{storage_key}",
    response_model=DeleteFileResponse,
    responses={
        **_NOT_FOUND_RESPONSE,
        status.HTTP_500_INTERNAL_SERVER_ERROR: {
            "description": "Metadata removed but the object could not be deleted (`orphaned_object`).",
        },
    },
)
def delete_file(
    storage_key: str = Path(..., description="The storage key of the file"),
    deletion: DeletionService = Depends(get_deletion_service),
) -> DeleteFileResponse:
    """Delete a file's metadata and bytes."""
    result = deletion.delete_by_storage_key(storage_key)
    return DeleteFileResponse(
        message=f"File '{storage_key}' deleted successfully.",
        storage_key=storage_key,
        object_existed=result.object_existed,
    )
