# tests/test_settings.py
from __future__ import annotations

from pathlib import Path

import pytest
from fastapi.testclient import TestClient

import app


def test_local_defaults(monkeypatch):
    monkeypatch.delenv("MODE", raising=False)
    monkeypatch.delenv("REPORTS_PATH", raising=False)

    s = app.load_settings()

    assert s.mode == "local"
    assert s.reports_path == app.DEFAULT_REPORTS_PATH
    assert s.max_report_bytes == app.DEFAULT_MAX_REPORT_BYTES


def test_reports_path_from_env(monkeypatch, tmp_path):
    monkeypatch.setenv("REPORTS_PATH", str(tmp_path / "x.json"))
    assert app.load_settings().reports_path == Path(tmp_path / "x.json")


def test_invalid_mode(monkeypatch):
    monkeypatch.setenv("MODE", "staging")
    with pytest.raises(RuntimeError, match="MODE must be"):
        app.load_settings()


def test_prod_requires_reports_path(monkeypatch):
    monkeypatch.setenv("MODE", "prod")
    monkeypatch.delenv("REPORTS_PATH", raising=False)
    with pytest.raises(RuntimeError, match="REPORTS_PATH must be set"):
        app.load_settings()


def test_prod_with_reports_path(monkeypatch, reports_path):
    monkeypatch.setenv("MODE", "prod")
    s = app.load_settings()
    assert s.mode == "prod"
    assert s.reports_path == reports_path


@pytest.mark.parametrize("value", ["abc", "0", "-5"])
def test_invalid_max_bytes(monkeypatch, value):
    monkeypatch.setenv("CSP_REPORT_MAX_BYTES", value)
    with pytest.raises(RuntimeError, match="CSP_REPORT_MAX_BYTES"):
        app.load_settings()


def test_max_bytes_from_env(monkeypatch):
    monkeypatch.setenv("CSP_REPORT_MAX_BYTES", "1024")
    assert app.load_settings().max_report_bytes == 1024


def test_get_settings_before_init():
    with pytest.raises(RuntimeError, match="not loaded"):
        app.get_settings()


def test_bad_env_blocks_startup(monkeypatch):
    monkeypatch.setenv("MODE", "prod")
    monkeypatch.delenv("REPORTS_PATH", raising=False)

    with pytest.raises(RuntimeError):
        with TestClient(app.app):
            pass


def test_cors_origins_parsing(monkeypatch):
    monkeypatch.setenv("CORS_ORIGINS", "https://a.example, https://b.example,,")
    assert app._cors_origins() == ["https://a.example", "https://b.example"]
