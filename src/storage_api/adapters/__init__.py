"""
Adapter layer for the storage API.

Contains abstraction adapters for object storage (local/S3) and queuing (local/SQS).
Provides mode-aware implementations that work across deployment environments.
"""
