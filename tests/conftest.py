"""
Root pytest configuration and fixtures for cubechat.

Provides common fixtures and test utilities for the test suite.
"""

import os
from pathlib import Path
import sys

import pytest
import responses

# Add the project root to the Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from cubechat.config import CubeConfig  # noqa: E402
from cubechat.store import InMemoryConversationStore, reset_store  # noqa: E402

CUBE_API_BASE = "https://cube.test"
CUBE_CHAT_PATH = "/api/v1/embed/chat/stream"
CUBE_CHAT_URL = CUBE_API_BASE + CUBE_CHAT_PATH


@pytest.fixture
def api_key():
    """Test API key."""
    return "test-api-key-12345"


@pytest.fixture
def chat_url():
    """Absolute URL of the upstream chat endpoint."""
    return CUBE_CHAT_URL


@pytest.fixture
def cube_config(api_key):
    """Fully configured upstream settings."""
    return CubeConfig(api_base=CUBE_API_BASE, chat_path=CUBE_CHAT_PATH, api_key=api_key)


@pytest.fixture
def cube_env(monkeypatch, api_key):
    """Export the upstream configuration through the environment."""
    monkeypatch.setenv("CUBE_API_BASE", CUBE_API_BASE)
    monkeypatch.setenv("CUBE_CHAT_PATH", CUBE_CHAT_PATH)
    monkeypatch.setenv("CUBE_API_KEY", api_key)


@pytest.fixture
def memory_store():
    return InMemoryConversationStore()


@pytest.fixture(autouse=True)
def clean_environment():
    """Clean environment variables before each test."""
    original_env = os.environ.copy()

    # Remove cubechat environment variables
    for key in list(os.environ.keys()):
        if key.startswith(("CUBE_", "CUBECHAT_")):
            del os.environ[key]

    reset_store()
    yield
    reset_store()

    # Restore original environment
    os.environ.clear()
    os.environ.update(original_env)


@pytest.fixture(autouse=True)
def no_backoff(monkeypatch):
    """Skip retry sleeps."""
    monkeypatch.setattr("cubechat._http.time.sleep", lambda _s: None)


@pytest.fixture
def mock_requests():
    """Mock HTTP requests using responses library."""
    with responses.RequestsMock() as rsps:
        yield rsps
