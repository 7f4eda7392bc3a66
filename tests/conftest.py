"""
Shared test fixtures and configuration for pytest
"""
import asyncio
import logging
from unittest.mock import MagicMock

import pytest

from mailwatch.core.imap.events import Credentials
from mailwatch.utils.config import ENV_VARS, load_config

from .test_helpers import FakeClock, TimingTestHelper


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep the developer's IMAP_* settings out of every test"""
    for var in ENV_VARS.values():
        monkeypatch.delenv(var, raising=False)


@pytest.fixture(autouse=True)
def reset_logging():
    """Drop handlers a test installed on the mailwatch logger"""
    yield
    root = logging.getLogger("mailwatch")
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()


@pytest.fixture
def imap_env(tmp_path):
    """Minimal valid environment for load_config"""
    return {
        "IMAP_HOST": "imap.example.com",
        "IMAP_PORT": "993",
        "IMAP_USER": "me@example.com",
        "IMAP_PASSCMD": "echo hunter2",
        "IMAP_MAILDIR": str(tmp_path / "Maildir"),
        "IMAP_LOG_DIR": str(tmp_path / "logs"),
    }


@pytest.fixture
def watcher_config(imap_env):
    return load_config(imap_env)


@pytest.fixture
def timing():
    return TimingTestHelper.fast()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def shutdown():
    return asyncio.Event()


@pytest.fixture
def credentials():
    return Credentials(username="me@example.com", password="hunter2")


@pytest.fixture
def credentials_provider(credentials):
    async def provider():
        return credentials

    return provider


@pytest.fixture
def sink():
    return MagicMock()
