"""
Storage API: upload, list, download and delete files.

Uploaded bytes go to the object store, their metadata to the metadata store,
and image uploads are queued for tagging by `tagging_workers`.
"""
