import pytest
from pydantic import ValidationError

from storage_api.errors import OrphanedObject, StorageWriteFailed
from storage_api.settings import Settings


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("DEPLOYMENT_MODE", "AWS_ENDPOINT_URL", "AWS_ACCESS_KEY_ID", "AWS_SECRET_ACCESS_KEY", "TAGGER_BACKEND"):
        monkeypatch.delenv(name, raising=False)


@pytest.mark.parametrize(
    "given, expected",
    [("local", "local-dev"), ("local-mock", "local-dev"), ("cloud", "aws-prod"), ("aws-mock", "aws-mock")],
)
def test_deployment_mode_aliases(given, expected):
    assert Settings(deployment_mode=given).deployment_mode == expected


def test_invalid_deployment_mode():
    with pytest.raises(ValidationError):
        Settings(deployment_mode="on-prem")


def test_aws_mock_defaults():
    settings = Settings(deployment_mode="aws-mock")

    assert settings.aws_endpoint_url == "http://localhost:5000"
    assert settings.aws_access_key_id == "mock"
    assert settings.uses_aws
    assert settings.resolved_tagger_backend == "rekognition"


def test_local_dev_defaults():
    settings = Settings(deployment_mode="local-dev")

    assert settings.aws_endpoint_url is None
    assert not settings.uses_aws
    assert settings.resolved_tagger_backend == "pillow"


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("DEPLOYMENT_MODE", "aws-prod")
    monkeypatch.setenv("WORKER_CONCURRENCY", "8")

    settings = Settings()

    assert settings.deployment_mode == "aws-prod"
    assert settings.worker_concurrency == 8


def test_invalid_tagger_backend():
    with pytest.raises(ValidationError):
        Settings(tagger_backend="clip")


def test_error_payloads():
    error = StorageWriteFailed("timed out", storage_key="k", retryable=True)
    assert error.to_dict() == {
        "error": "storage_write_failed",
        "detail": "timed out",
        "storage_key": "k",
        "retryable": True,
    }
    assert OrphanedObject("left behind", storage_key="k").to_dict()["metadata_deleted"] is True
