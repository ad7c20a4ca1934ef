"""Pytest configuration shared by the import pipeline tests.

Every test gets its own SQLite files under ``tmp_path``; database engines are
bound to the event loop that created them, so async tests build their
DatabaseRouter inside the ``asyncio.run`` call that uses it.
"""
import pytest

from packages.common.config import get_settings
from tests.helpers.factories import make_settings


@pytest.fixture(autouse=True)
def _isolate_environment(tmp_path, monkeypatch):
    """Keep real credentials and the cached settings out of tests"""
    for name in ("CLAUDE_API_KEY", "NOTION_API_TOKEN", "DATABASE_URL", "ENV_DB_DIR"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def settings(tmp_path):
    return make_settings(tmp_path)
