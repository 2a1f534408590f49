import pytest
from fastapi.testclient import TestClient

from zaynix.app.services.object_store import InMemoryObjectStore
from zaynix.config import Settings
from zaynix.main import create_app

TEST_DELETE_TOKEN = "test-delete-token"
TEST_MAX_FILE_SIZE = 1024


@pytest.fixture
def settings():
    return Settings(
        bucket="test-bucket",
        max_file_size=TEST_MAX_FILE_SIZE,
        delete_token=TEST_DELETE_TOKEN,
        storage_backend="memory",
    )


@pytest.fixture
def store():
    return InMemoryObjectStore(chunk_size=256)


@pytest.fixture
def app(settings, store):
    return create_app(settings=settings, store=store)


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def upload(client):
    """Upload ``content`` as ``filename`` and return the JSON response."""
    def _upload(filename="hello.txt", content=b"Hello, world!", content_type="text/plain"):
        response = client.post("/api/upload", files={"file": (filename, content, content_type)})
        assert response.status_code == 200, response.text
        return response.json()
    return _upload
