import asyncio
import logging
from logging.handlers import RotatingFileHandler
from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient

from zaynix.app.errors import ConfigurationError
from zaynix.app.services.object_store import InMemoryObjectStore, ObjectStoreError
from zaynix.config import DEFAULT_DELETE_TOKEN, MAX_FILE_SIZE, MULTIPART_OVERHEAD, Settings
from zaynix.logger_config import console_level, setup_logger
from zaynix.main import create_app, warn_on_settings
from tests.conftest import TEST_DELETE_TOKEN


def test_upload_get_delete_round_trip(client, upload):
    """Upload, fetch through the proxy, delete, and confirm the object is gone."""
    content = b"\x00\x01binary\xff" * 100
    body = upload("data file.BIN", content, "application/octet-stream")

    response = client.get(body["url"])
    assert response.status_code == 200
    assert response.content == content

    response = client.post("/api/delete", json={"filename": body["filename"], "token": TEST_DELETE_TOKEN})
    assert response.status_code == 200

    response = client.get(body["url"])
    assert response.status_code == 404


def test_listing_shows_uploads(client, upload):
    first = upload("first.txt", b"1")
    second = upload("second.txt", b"22")

    response = client.get("/files")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/html")
    assert "<h1>Uploaded files</h1>" in response.text
    assert f'<a href="{first["url"]}">{first["filename"]}</a> - 1 bytes' in response.text
    assert f'<a href="{second["url"]}">{second["filename"]}</a> - 2 bytes' in response.text
    assert '<a href="/">Upload more</a>' in response.text


def test_listing_escapes_names(settings):
    store = InMemoryObjectStore()
    asyncio.run(store.put("<script>.txt", b"x"))
    app = create_app(settings=settings, store=store)

    with TestClient(app) as client:
        response = client.get("/files")

    assert "&lt;script&gt;.txt" in response.text
    assert "<script>" not in response.text


def test_listing_failure(client, store):
    with patch.object(store, "list", new=AsyncMock(side_effect=ObjectStoreError("down"))):
        response = client.get("/files")

    assert response.status_code == 500
    assert response.text == "Failed to list files"


def test_security_headers(client):
    response = client.get("/files")

    assert response.headers["x-content-type-options"] == "nosniff"
    assert response.headers["x-frame-options"] == "SAMEORIGIN"
    assert response.headers["referrer-policy"] == "no-referrer"


def test_cors_allows_any_origin(client):
    response = client.get("/files", headers={"Origin": "https://somewhere.example"})
    assert response.headers["access-control-allow-origin"] == "*"


def test_settings_defaults():
    settings = Settings.from_env({})

    assert settings.bucket == "zaynix-files"
    assert settings.max_file_size == MAX_FILE_SIZE == 209715200
    assert settings.delete_token == DEFAULT_DELETE_TOKEN
    assert settings.storage_backend == "supabase"
    assert settings.port == 3000
    assert not settings.has_store_credentials
    assert settings.upload_ceiling == MAX_FILE_SIZE + MULTIPART_OVERHEAD


def test_settings_from_env():
    settings = Settings.from_env({
        "SUPABASE_URL": "https://project.supabase.co",
        "SUPABASE_KEY": "key",
        "SUPABASE_BUCKET": "media",
        "MAX_FILE_SIZE": "1048576",
        "DELETE_TOKEN": "s3cret",
        "STORAGE_BACKEND": "Memory",
        "PORT": "8080",
        "UPSTREAM_CONNECT_TIMEOUT": "2.5",
    })

    assert settings.has_store_credentials
    assert settings.bucket == "media"
    assert settings.max_file_size == 1048576
    assert settings.delete_token == "s3cret"
    assert settings.storage_backend == "memory"
    assert settings.port == 8080
    assert settings.connect_timeout == 2.5


def test_settings_are_immutable():
    settings = Settings()
    with pytest.raises(AttributeError):
        settings.delete_token = "changed"


@pytest.mark.parametrize("env", [
    {"MAX_FILE_SIZE": "200MB"},
    {"MAX_FILE_SIZE": "0"},
    {"PORT": "http"},
    {"UPSTREAM_CONNECT_TIMEOUT": "soon"},
    {"STORAGE_BACKEND": "s3"},
])
def test_invalid_settings(env):
    with pytest.raises(ConfigurationError):
        Settings.from_env(env)


def test_missing_credentials_warn_loudly(caplog):
    with caplog.at_level(logging.WARNING, logger="zaynix"):
        warn_on_settings(Settings())

    messages = [record.getMessage() for record in caplog.records if record.levelno == logging.WARNING]
    assert any("Supabase credentials missing" in message for message in messages)
    assert any("DELETE_TOKEN" in message for message in messages)


def test_configured_settings_do_not_warn(caplog):
    settings = Settings(supabase_url="https://project.supabase.co", supabase_key="key", delete_token="s3cret")
    with caplog.at_level(logging.WARNING, logger="zaynix"):
        warn_on_settings(settings)

    assert not [record for record in caplog.records if record.levelno >= logging.WARNING]


def test_lifespan_builds_store_from_settings():
    app = create_app(settings=Settings(storage_backend="memory"))

    with TestClient(app):
        assert isinstance(app.state.object_store, InMemoryObjectStore)
        assert not app.state.http_client.is_closed
    assert app.state.http_client.is_closed


def test_logger_is_configured_once():
    logger = setup_logger()
    handlers = list(logger.handlers)

    assert setup_logger() is logger
    assert logger.handlers == handlers
    assert any(isinstance(handler, RotatingFileHandler) for handler in handlers)


@pytest.mark.parametrize("value, expected", [
    ("debug", logging.DEBUG),
    ("WARNING", logging.WARNING),
    ("chatty", logging.INFO),
])
def test_console_level_from_env(monkeypatch, value, expected):
    monkeypatch.setenv("LOG_LEVEL", value)
    assert console_level() == expected
