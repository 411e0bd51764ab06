from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

REPO_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = REPO_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))


@pytest.fixture()
def settings():
    from config.settings import Settings

    return Settings(
        _env_file=None,
        agent_connect_timeout_seconds=0.5,
        close_timeout_seconds=0.2,
        pending_audio_capacity=50,
    )


@pytest.fixture(scope="session")
def app():
    os.environ["PUBLIC_BASE_URL"] = "https://relay.example.com"
    os.environ.pop("OUTBOUND_CALL_API_KEY", None)

    import importlib

    from config.settings import get_settings

    # Settings are cached; make sure the test environment is picked up.
    get_settings.cache_clear()

    main = importlib.import_module("main")
    return main.app


@pytest.fixture()
def client(app):
    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
