# The sandbox runs as a script directory (``uvicorn main:app``); make
# ``main`` and ``repo`` importable and keep its DB in memory for tests.
import os
import sys
from pathlib import Path

import pytest

BASE_DIR = Path(__file__).resolve().parent
if str(BASE_DIR) not in sys.path:
    sys.path.insert(0, str(BASE_DIR))

os.environ.setdefault("SANDBOX_DATABASE_URL", "sqlite://")


@pytest.fixture
def sandbox(monkeypatch):
    from fastapi.testclient import TestClient

    import main

    monkeypatch.setenv("SANDBOX_SETTLE_SECS", "0")
    monkeypatch.delenv("SANDBOX_API_KEY", raising=False)
    monkeypatch.delenv("SANDBOX_WEBHOOK_SECRET", raising=False)
    with TestClient(main.app) as client:
        yield client
