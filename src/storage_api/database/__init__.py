"""Metadata store for file records."""

from .local import MetadataStore, get_metadata_store

__all__ = ['MetadataStore', 'get_metadata_store']
