"""Request-scoped access to the components created in `create_app`."""
from fastapi import Request

from storage_api.services import DeletionService, IngestionService, RetrievalService


def get_ingestion_service(request: Request) -> IngestionService:
    state = request.app.state
    return IngestionService(state.storage, state.metadata_store, state.queue)


def get_retrieval_service(request: Request) -> RetrievalService:
    state = request.app.state
    return RetrievalService(state.storage, state.metadata_store, state.settings.signed_url_ttl_seconds)


def get_deletion_service(request: Request) -> DeletionService:
    state = request.app.state
    return DeletionService(state.storage, state.metadata_store)
