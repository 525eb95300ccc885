"""Coordinators for the three synchronous boundaries: ingestion, retrieval and deletion."""

from .deletion import DeletionResult, DeletionService
from .ingestion import IngestionService, generate_storage_key
from .retrieval import DownloadTarget, RetrievalService

__all__ = [
    'IngestionService', 'generate_storage_key',
    'RetrievalService', 'DownloadTarget',
    'DeletionService', 'DeletionResult',
]
