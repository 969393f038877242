"""Shared test fixtures for crmboard tests."""

import sys
from pathlib import Path

import pytest

# Ensure the package is importable without installing
sys.path.insert(0, str(Path(__file__).parent.parent))

from crmboard.backends import SqliteTableBackend  # noqa: E402
from crmboard.config import CRMConfig, build_services  # noqa: E402
from crmboard.server import create_app  # noqa: E402

API_SECRET = "test-secret"


@pytest.fixture
def backend(tmp_path):
    return SqliteTableBackend(str(tmp_path / "crm.db"), user_id="user-1")


@pytest.fixture
def config(tmp_path):
    return CRMConfig(
        db_path=str(tmp_path / "crm.db"),
        storage_dir=str(tmp_path / "files"),
        prefs_path=str(tmp_path / "prefs.db"),
        user_id="user-1",
    )


@pytest.fixture
def services(config):
    return build_services(config)


@pytest.fixture
def api_client(services, monkeypatch):
    monkeypatch.setenv("CRMBOARD_API_SECRET", API_SECRET)
    app = create_app(services)
    app.config["TESTING"] = True
    yield app.test_client()
    app.extensions["crmboard_loop"].stop()


@pytest.fixture
def auth():
    return {"X-API-Key": API_SECRET}
