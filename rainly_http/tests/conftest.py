import os
import sys
import pytest
from fastapi.testclient import TestClient

# Add the parent directory to sys.path so we can import main
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from config import ServerConfig
from main import create_app

TEST_PASSWORD = "test-secret"
MAX_TEST_UPLOAD = 64 * 1024  # 64KB


def make_config(storage_dir, **overrides) -> ServerConfig:
    settings = dict(
        host="127.0.0.1",
        port=8080,
        download_dir=str(storage_dir),
        max_upload_size=MAX_TEST_UPLOAD,
        upload_password=TEST_PASSWORD,
    )
    settings.update(overrides)
    return ServerConfig(**settings)


@pytest.fixture
def storage_dir(tmp_path):
    return tmp_path / "download"


@pytest.fixture
def server_config(storage_dir):
    return make_config(storage_dir)


@pytest.fixture
def client(server_config):
    """A client for a fresh app; entering it runs the lifespan (creates the storage dir)."""
    with TestClient(create_app(server_config)) as test_client:
        yield test_client


def stored_files(storage_dir):
    return sorted(os.listdir(storage_dir))
