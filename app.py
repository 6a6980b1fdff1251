# root/csp-ledger/app.py
from __future__ import annotations

# pyright: reportMissingImports=false
from dotenv import load_dotenv

load_dotenv()

import logging
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Literal, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from reports import (
    CLASSIFICATIONS,
    Classification,
    ReportStore,
    StorageError,
    aggregate,
    classify,
    filter_by_classification,
    parse_report,
)
from render import render_metrics, render_reports_table


# ============================================================
# Logging
# ============================================================

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s"
)
logger = logging.getLogger(__name__)


# ============================================================
# Config
# ============================================================

APP_DIR = Path(__file__).resolve().parent
DEFAULT_REPORTS_PATH = APP_DIR / "csp-reports.json"
DEFAULT_MAX_REPORT_BYTES = 32_768

# Content types a browser uses for report-uri delivery (plus plain JSON for tools).
ACCEPTED_CONTENT_TYPES = {"", "application/json", "application/csp-report"}

INVALID_REPORT_BODY = {"error": "Invalid CSP report"}


@dataclass
class Settings:
    mode: Literal["local", "prod"]
    reports_path: Path
    max_report_bytes: int


_SETTINGS: Optional[Settings] = None


def load_settings() -> Settings:
    """Load and validate settings from environment exactly once."""
    mode = (os.getenv("MODE") or "local").strip().lower()
    if mode not in {"local", "prod"}:
        raise RuntimeError(f"MODE must be 'local' or 'prod' (got {mode!r})")

    reports_path_raw = (os.getenv("REPORTS_PATH") or "").strip()
    if mode == "prod" and not reports_path_raw:
        # prod must say where reports live; never fall back to the source tree
        raise RuntimeError("REPORTS_PATH must be set in MODE=prod")
    reports_path = Path(reports_path_raw) if reports_path_raw else DEFAULT_REPORTS_PATH

    max_raw = (os.getenv("CSP_REPORT_MAX_BYTES") or str(DEFAULT_MAX_REPORT_BYTES)).strip()
    try:
        max_report_bytes = int(max_raw)
    except ValueError:
        raise RuntimeError(f"CSP_REPORT_MAX_BYTES must be an integer (got {max_raw!r})") from None
    if max_report_bytes <= 0:
        raise RuntimeError(f"CSP_REPORT_MAX_BYTES must be positive (got {max_report_bytes})")

    return Settings(
        mode=mode,  # type: ignore[arg-type]
        reports_path=reports_path,
        max_report_bytes=max_report_bytes,
    )


def get_settings() -> Settings:
    if _SETTINGS is None:
        raise RuntimeError("Settings not loaded yet")
    return _SETTINGS


def init_settings() -> None:
    global _SETTINGS
    _SETTINGS = load_settings()


def _cors_origins() -> list[str]:
    raw = os.getenv("CORS_ORIGINS", "http://localhost:5173")
    return [o.strip() for o in raw.split(",") if o.strip()]


# ============================================================
# Helpers
# ============================================================

def _clean_for_log(value: str | None, limit: int) -> str:
    # report fields are attacker-controlled: no CR/LF, bounded length
    return (value or "").replace("\n", "").replace("\r", "")[:limit]


def _wants_html(request: Request) -> bool:
    """
    Content negotiation policy:
    - Accept mentions application/json => JSON
    - Accept mentions text/html (browser navigation) => HTML
    - anything else (*/*, missing) => JSON
    """
    accept = (request.headers.get("accept") or "").lower()
    if "application/json" in accept:
        return False
    return ("text/html" in accept) or ("application/xhtml+xml" in accept)


def _get_store(request: Request) -> ReportStore:
    return request.app.state.store


# ============================================================
# FastAPI App
# ============================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup/shutdown lifecycle.

    Order:
    1. Load settings (RuntimeError on bad env)
    2. Load the report store (StorageError on a corrupt document => no start)
    3. Only then accept requests
    """
    init_settings()
    settings = get_settings()

    store = ReportStore(settings.reports_path)
    store.load()
    app.state.store = store

    logger.info(f"CSP report collector ready (mode={settings.mode}, reports={len(store)})")

    yield


app = FastAPI(lifespan=lifespan)

# Middleware is installed at import time, before lifespan runs.
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_credentials=True,
)


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    return _apply_security_headers_to_response(response)


def _apply_security_headers_to_response(response: Response) -> Response:
    # Shared by the middleware and the exception handlers.
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    response.headers["X-Frame-Options"] = "DENY"
    return response


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    response = JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail}
    )
    return _apply_security_headers_to_response(response)


@app.exception_handler(StorageError)
async def storage_exception_handler(request: Request, exc: StorageError):
    """An accepted report that could not be persisted is a failed request, never a 204."""
    logger.error(f"CSP report storage failure: {exc}", exc_info=exc)
    response = JSONResponse(
        status_code=500,
        content={"error": "Failed to store CSP report"}
    )
    return _apply_security_headers_to_response(response)


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    response = JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"}
    )
    return _apply_security_headers_to_response(response)


# ============================================================
# CSP Report Endpoint
# ============================================================

@app.post("/csp-report")
async def csp_report(request: Request):
    """
    CSP violation report endpoint (no-auth).

    Contract:
    - 204 only after the report is on disk
    - 400 {"error": "Invalid CSP report"} for non-JSON / wrong shape
      (details go to the log, never back to the client)
    - 413 oversized, 415 unexpected Content-Type
    """
    settings = get_settings()

    content_type = (request.headers.get("content-type") or "").split(";")[0].strip().lower()
    if content_type not in ACCEPTED_CONTENT_TYPES:
        logger.warning(f"CSP report: unsupported content type {_clean_for_log(content_type, 100)!r}")
        return JSONResponse(status_code=415, content={"error": "Unsupported content type"})

    # Content-Length first (cheap), then the real size
    try:
        declared = int(request.headers.get("content-length") or 0)
    except ValueError:
        declared = 0
    if declared > settings.max_report_bytes:
        logger.warning(f"CSP report: oversized payload ({declared} bytes, limit {settings.max_report_bytes})")
        return JSONResponse(status_code=413, content={"error": "Payload too large"})

    body_bytes = await request.body()
    if len(body_bytes) > settings.max_report_bytes:
        logger.warning(f"CSP report: oversized payload ({len(body_bytes)} bytes, limit {settings.max_report_bytes})")
        return JSONResponse(status_code=413, content={"error": "Payload too large"})

    result = parse_report(body_bytes)
    if not result.ok:
        logger.warning(f"CSP report rejected: {type(result.error).__name__}: {result.error}")
        return JSONResponse(status_code=400, content=INVALID_REPORT_BODY)

    report = result.report
    await _get_store(request).append(report, user_agent=request.headers.get("user-agent"))

    logger.info(
        f"CSP report stored: blocked-uri={_clean_for_log(report.blocked_uri, 200)}, "
        f"violated-directive={_clean_for_log(report.violated_directive, 100)}, "
        f"status={classify(report)}"
    )

    return Response(status_code=204)


# ============================================================
# Read Endpoints
# ============================================================

def _reports_response(request: Request, title: str, label: Optional[Classification] = None):
    reports = _get_store(request).all()
    if label is not None:
        reports = filter_by_classification(reports, label)

    if _wants_html(request):
        rows = [{"status": classify(r), **r.to_wire()} for r in reports]
        return HTMLResponse(render_reports_table(rows, title=title))

    return [r.to_wire() for r in reports]


@app.get("/csp-reports")
def list_reports(request: Request):
    return _reports_response(request, title="CSP Reports")


@app.get("/csp-reports/pending")
def list_pending_reports(request: Request):
    return _reports_response(request, title="Pending CSP Reports", label="pending")


@app.get("/csp-reports/resolved")
def list_resolved_reports(request: Request):
    return _reports_response(request, title="Resolved CSP Reports", label="resolved")


@app.get("/csp-metrics")
def csp_metrics(request: Request):
    data = aggregate(_get_store(request).all())

    if _wants_html(request):
        return HTMLResponse(render_metrics(data, labels=CLASSIFICATIONS))

    return data
