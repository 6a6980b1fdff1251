# root/csp-ledger/tests/conftest.py

import pytest
from fastapi.testclient import TestClient

import app


@pytest.fixture
def reports_path(tmp_path):
    return tmp_path / "csp-reports.json"


@pytest.fixture(autouse=True)
def _isolated_settings(monkeypatch, reports_path):
    """
    Every test gets its own JSON document (never touch the real csp-reports.json)
    and a fresh settings load.
    """
    monkeypatch.setenv("MODE", "local")
    monkeypatch.setenv("REPORTS_PATH", str(reports_path))
    monkeypatch.delenv("CSP_REPORT_MAX_BYTES", raising=False)

    app._SETTINGS = None  # type: ignore[attr-defined]
    yield
    app._SETTINGS = None  # type: ignore[attr-defined]


@pytest.fixture
def client():
    # `with` runs lifespan: settings + store.load()
    with TestClient(app.app) as c:
        yield c
