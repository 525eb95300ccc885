"""AWS client construction for the storage and queue adapters."""
import logging
from typing import Any, Dict, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import (
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from storage_api.settings import Settings, get_settings

logger = logging.getLogger(__name__)

# Failures that mean "the call stalled or never reached AWS"; safe to retry later.
TRANSIENT_AWS_ERRORS = (
    ConnectTimeoutError,
    ReadTimeoutError,
    EndpointConnectionError,
    ConnectionClosedError,
)


class AWSClientManager:
    """Creates and caches boto3 clients configured from settings."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self._clients: Dict[str, Any] = {}

    def _client_config(self) -> Config:
        """Bound every call so a stalled request surfaces as an error."""
        return Config(
            connect_timeout=self.settings.storage_timeout_seconds,
            read_timeout=self.settings.storage_timeout_seconds,
            retries={"max_attempts": self.settings.storage_max_attempts, "mode": "standard"},
        )

    def get_client(self, service_name: str) -> Any:
        """Get or create an AWS service client."""
        if service_name in self._clients:
            return self._clients[service_name]

        client_kwargs = {
            'region_name': self.settings.aws_region,
            'config': self._client_config(),
        }
        if self.settings.aws_access_key_id:
            client_kwargs['aws_access_key_id'] = self.settings.aws_access_key_id
        if self.settings.aws_secret_access_key:
            client_kwargs['aws_secret_access_key'] = self.settings.aws_secret_access_key
        if self.settings.aws_endpoint_url:
            client_kwargs['endpoint_url'] = self.settings.aws_endpoint_url

        client = boto3.client(service_name, **client_kwargs)
        self._clients[service_name] = client
        logger.debug("Created %s client (region=%s, endpoint=%s)",
                     service_name, self.settings.aws_region, self.settings.aws_endpoint_url)
        return client

    def clear_clients(self) -> None:
        self._clients.clear()


# One manager per Settings instance; the manager holds its settings, so an id
# cannot be reused while its entry is alive.
_managers: Dict[int, AWSClientManager] = {}


def get_client_manager(settings: Optional[Settings] = None) -> AWSClientManager:
    """Return the shared client manager for these settings."""
    settings = settings or get_settings()
    manager = _managers.get(id(settings))
    if manager is None:
        manager = AWSClientManager(settings)
        _managers[id(settings)] = manager
    return manager


def clear_client_cache() -> None:
    """Drop every cached client, e.g. after credentials or endpoints change."""
    for manager in _managers.values():
        manager.clear_clients()
    _managers.clear()


def get_s3_client(settings: Optional[Settings] = None):
    """Get an S3 client."""
    return get_client_manager(settings).get_client('s3')


def get_sqs_client(settings: Optional[Settings] = None):
    """Get an SQS client."""
    return get_client_manager(settings).get_client('sqs')


def get_rekognition_client(settings: Optional[Settings] = None):
    """Get a Rekognition client."""
    return get_client_manager(settings).get_client('rekognition')
