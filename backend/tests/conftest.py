from __future__ import annotations

import importlib
import sys
from pathlib import Path
from typing import Callable

import pytest
from fastapi.testclient import TestClient

BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from fakes import FakeGateway  # noqa: E402


@pytest.fixture
def backend_module(tmp_path, monkeypatch):
    db_path = tmp_path / "symptom-checker-test.sqlite"
    monkeypatch.setenv("SYMPTOM_CHECKER_DB_PATH", str(db_path))
    monkeypatch.setenv("ALLOW_ANON", "false")
    # No real provider calls from the suite; tests install a fake gateway.
    monkeypatch.setenv("OPENAI_API_KEY", "")

    if "main" in sys.modules:
        module = importlib.reload(sys.modules["main"])
    else:
        module = importlib.import_module("main")
    return module


@pytest.fixture
def fake_gateway(backend_module, monkeypatch) -> FakeGateway:
    gateway = FakeGateway()
    monkeypatch.setattr(backend_module.container, "gateway", gateway)
    return gateway


@pytest.fixture
def client(backend_module):
    with TestClient(backend_module.app) as test_client:
        yield test_client


@pytest.fixture
def auth_headers() -> Callable[[str], dict[str, str]]:
    def _make(user_id: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {user_id}"}

    return _make
