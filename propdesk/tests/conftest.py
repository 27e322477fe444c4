from __future__ import annotations

import pytest

from propdesk.core.config import get_settings
from propdesk.tests.utils.builders import make_client
from propdesk.tests.utils.fakes import FakeDataClient, FakeStorageClient


@pytest.fixture(autouse=True)
def reset_settings_cache():
    # Settings are cached per process; tests that patch the environment need a fresh read.
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def client() -> FakeDataClient:
    return make_client()


@pytest.fixture
def storage() -> FakeStorageClient:
    return FakeStorageClient()
