# src/storage_api/settings.py
from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

VALID_DEPLOYMENT_MODES = ["local-dev", "aws-mock", "aws-prod"]
VALID_TAGGER_BACKENDS = ["pillow", "rekognition"]


class Settings(BaseSettings):
    """
    Single source of truth for all application settings.

    Configuration precedence:
    1. Environment variables (highest priority)
    2. .env file (if exists)
    3. Default values in this class (lowest priority)

    Usage:
        from storage_api.settings import get_settings
        settings = get_settings()
        bucket_name = settings.s3_bucket_name
    """

    # Application Settings
    app_name: str = Field(
        default="ai-cloud-storage",
        description="Application name"
    )

    # Deployment Mode
    deployment_mode: str = Field(
        default="local-dev",
        description="Deployment mode: local-dev, aws-mock, or aws-prod"
    )

    # AWS Core Settings
    aws_region: str = Field(
        default="us-east-1",
        alias="AWS_DEFAULT_REGION"
    )

    aws_access_key_id: Optional[str] = Field(
        default=None,
        alias="AWS_ACCESS_KEY_ID"
    )

    aws_secret_access_key: Optional[str] = Field(
        default=None,
        alias="AWS_SECRET_ACCESS_KEY"
    )

    aws_endpoint_url: Optional[str] = Field(
        default=None,
        alias="AWS_ENDPOINT_URL"
    )

    # S3 Configuration
    s3_bucket_name: str = Field(
        default="ai-cloud-storage-files",
        description="S3 bucket for uploaded files"
    )

    s3_cache_control: str = Field(
        default="public, max-age=31536000",
        description="Cache-Control header stored with uploaded objects"
    )

    # SQS Configuration
    sqs_queue_name: str = Field(
        default="file-analysis",
        description="Name of the enrichment queue"
    )

    sqs_queue_url: Optional[str] = Field(
        default=None,
        alias="SQS_QUEUE_URL",
        description="Full SQS queue URL (resolved from the name when unset)"
    )

    sqs_wait_time_seconds: int = Field(
        default=5,
        ge=0,
        le=20,
        description="Long-poll wait time for receive calls"
    )

    queue_visibility_timeout_seconds: int = Field(
        default=300,
        ge=0,
        description="Seconds a received job stays invisible before redelivery"
    )

    queue_max_receive_count: int = Field(
        default=5,
        ge=1,
        description="Local queue: receives before a job is moved to errors/"
    )

    # Storage Configuration
    storage_dir: str = Field(
        default="storage",
        description="Local storage directory"
    )

    storage_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        description="Connect/read timeout for object store calls"
    )

    storage_max_attempts: int = Field(
        default=3,
        ge=1,
        description="Transport-level retry attempts for object store calls"
    )

    # Metadata store
    database_path: str = Field(
        default="files.db",
        description="SQLite database holding file records"
    )

    metadata_timeout_seconds: float = Field(
        default=5.0,
        gt=0,
        description="SQLite busy timeout"
    )

    # Access URLs
    signed_url_ttl_seconds: int = Field(
        default=3600,
        gt=0,
        description="Validity of signed URLs handed out by the list endpoint"
    )

    url_signing_secret: str = Field(
        default="local-dev-secret",
        description="HMAC key used by the local backend to sign URLs"
    )

    public_base_url: str = Field(
        default="http://localhost:8000",
        description="Base URL the API is reachable at"
    )

    # Worker Configuration
    worker_concurrency: int = Field(
        default=4,
        ge=1,
        description="Maximum enrichment jobs processed at once"
    )

    worker_poll_interval_seconds: float = Field(
        default=1.0,
        ge=0,
        description="Sleep between polls when the queue is empty"
    )

    analysis_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Upper bound for a single tagging call"
    )

    tagger_backend: Optional[str] = Field(
        default=None,
        description="pillow or rekognition (derived from deployment mode when unset)"
    )

    rekognition_max_labels: int = Field(default=10, ge=1)

    rekognition_min_confidence: float = Field(default=70.0, ge=0, le=100)

    # HTTP
    cors_origins: List[str] = Field(
        default=["http://localhost:3000"],
        description="Origins allowed to call the API"
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level"
    )

    @field_validator('deployment_mode', mode='before')
    @classmethod
    def normalize_deployment_mode(cls, v):
        """Map legacy mode names and reject unknown ones."""
        mode_mapping = {
            "local": "local-dev",
            "local-mock": "local-dev",
            "cloud": "aws-prod",
        }
        v = mode_mapping.get(v, v)
        if v not in VALID_DEPLOYMENT_MODES:
            raise ValueError(f"Invalid deployment_mode: {v}. Must be one of {VALID_DEPLOYMENT_MODES}")
        return v

    @field_validator('aws_endpoint_url', mode='after')
    @classmethod
    def set_endpoint_url_based_on_mode(cls, v, info):
        """Point aws-mock at the local moto server unless told otherwise."""
        if v is None and info.data.get('deployment_mode') == "aws-mock":
            return "http://localhost:5000"
        return v

    @field_validator('aws_access_key_id', 'aws_secret_access_key', mode='after')
    @classmethod
    def set_mock_credentials_for_mock_mode(cls, v, info):
        """aws-mock needs dummy credentials; aws-prod relies on the IAM role."""
        if v is None and info.data.get('deployment_mode') == "aws-mock":
            return "mock"
        return v

    @field_validator('tagger_backend', mode='after')
    @classmethod
    def validate_tagger_backend(cls, v):
        if v is not None and v not in VALID_TAGGER_BACKENDS:
            raise ValueError(f"Invalid tagger_backend: {v}. Must be one of {VALID_TAGGER_BACKENDS}")
        return v

    @property
    def uses_aws(self) -> bool:
        return self.deployment_mode in ["aws-mock", "aws-prod"]

    @property
    def resolved_tagger_backend(self) -> str:
        if self.tagger_backend:
            return self.tagger_backend
        return "rekognition" if self.uses_aws else "pillow"

    model_config = SettingsConfigDict(
        case_sensitive=False,
        env_file=(".env", ".env.local-dev", ".env.aws-mock", ".env.aws-prod"),
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    This ensures we only create one Settings instance per process.
    """
    return Settings()
