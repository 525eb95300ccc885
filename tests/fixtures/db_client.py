"""Database fixtures for tests."""
import pytest

from storage_api.database.local import MetadataStore

TEST_DB = "test_files.db"


@pytest.fixture
def metadata_store(tmp_path):
    store = MetadataStore(str(tmp_path / TEST_DB))
    store.init_db()
    return store
