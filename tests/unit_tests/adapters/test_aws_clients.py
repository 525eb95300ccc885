from storage_api.adapters.aws_clients import (
    clear_client_cache,
    get_client_manager,
    get_s3_client,
    get_sqs_client,
)
from storage_api.settings import Settings
from tests.consts import TEST_REGION


def test_clients_are_reused_per_settings(aws_settings):
    assert get_client_manager(aws_settings) is get_client_manager(aws_settings)
    assert get_s3_client(aws_settings) is get_s3_client(aws_settings)
    assert get_sqs_client(aws_settings) is get_sqs_client(aws_settings)
    assert get_s3_client(aws_settings) is not get_sqs_client(aws_settings)


def test_other_settings_get_their_own_clients(aws_settings):
    other = aws_settings.model_copy(update={"storage_timeout_seconds": 1})

    assert get_s3_client(other) is not get_s3_client(aws_settings)


def test_client_honours_settings(aws_settings):
    client = get_s3_client(aws_settings)

    assert client.meta.region_name == TEST_REGION
    assert client.meta.config.connect_timeout == aws_settings.storage_timeout_seconds
    assert client.meta.config.read_timeout == aws_settings.storage_timeout_seconds


def test_clear_client_cache_builds_new_clients(aws_settings):
    first = get_s3_client(aws_settings)

    clear_client_cache()

    assert get_s3_client(aws_settings) is not first


def test_default_settings_share_one_manager(aws_credentials, monkeypatch):
    settings = Settings(deployment_mode="aws-prod")
    monkeypatch.setattr("storage_api.adapters.aws_clients.get_settings", lambda: settings)

    assert get_client_manager() is get_client_manager(settings)
