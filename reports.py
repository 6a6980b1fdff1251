# root/csp-ledger/reports.py
from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Literal, Optional, Union

import anyio.to_thread
from pydantic import (
    AnyUrl,
    BaseModel,
    ConfigDict,
    Field,
    StrictFloat,
    StrictInt,
    StrictStr,
    TypeAdapter,
    ValidationError,
    field_validator,
)

logger = logging.getLogger(__name__)


# ============================================================
# Errors
# ============================================================

class InvalidReportError(Exception):
    """Inbound payload rejected before it reached the store."""


class ReportDecodeError(InvalidReportError):
    """Body is empty, not UTF-8, or not JSON."""


class ReportValidationError(InvalidReportError):
    """
    Payload is JSON but does not match the CSP report shape.

    `errors` keeps pydantic's error list (without input values) for
    operator logs. It is never sent back to the reporting client.
    """

    def __init__(self, errors: Iterable[dict[str, Any]]):
        self.errors = list(errors)
        super().__init__(self.summary())

    def summary(self, limit: int = 5) -> str:
        parts = []
        for err in self.errors[:limit]:
            loc = ".".join(str(p) for p in err.get("loc", ())) or "<root>"
            parts.append(f"{loc}: {err.get('msg', 'invalid')}")
        if len(self.errors) > limit:
            parts.append(f"(+{len(self.errors) - limit} more)")
        return "; ".join(parts)


class StorageError(Exception):
    """The JSON document backing the store could not be read or written."""


# ============================================================
# Schema
# ============================================================

_URL = TypeAdapter(AnyUrl)


class CspReport(BaseModel):
    """
    One browser CSP violation (the body of `{"csp-report": {...}}`).

    Field names on the wire are the browser's hyphenated keys.
    Unknown keys are dropped.
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True, allow_inf_nan=False)

    document_uri: StrictStr = Field(alias="document-uri")
    referrer: Optional[StrictStr] = None
    violated_directive: StrictStr = Field(alias="violated-directive")
    effective_directive: Optional[StrictStr] = Field(default=None, alias="effective-directive")
    original_policy: StrictStr = Field(alias="original-policy")
    blocked_uri: StrictStr = Field(alias="blocked-uri")
    status_code: Optional[Union[StrictInt, StrictFloat]] = Field(default=None, alias="status-code")
    script_sample: Optional[StrictStr] = Field(default=None, alias="script-sample")

    @field_validator("document_uri")
    @classmethod
    def _document_uri_is_url(cls, value: str) -> str:
        # Validate only; keep the original string (AnyUrl normalizes).
        try:
            _URL.validate_python(value)
        except ValidationError:
            raise ValueError("document-uri must be a valid URL") from None
        return value


class CspReportEnvelope(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    csp_report: CspReport = Field(alias="csp-report")


@dataclass(frozen=True)
class ValidationResult:
    report: Optional[CspReport] = None
    error: Optional[InvalidReportError] = None

    @property
    def ok(self) -> bool:
        return self.report is not None


def validate_report(payload: Any) -> ValidationResult:
    """
    Validate an already-decoded JSON value.

    Contract:
    - never raises; failure is returned as `ValidationResult.error`
    - no side effects
    """
    try:
        envelope = CspReportEnvelope.model_validate(payload)
    except ValidationError as e:
        return ValidationResult(error=ReportValidationError(e.errors(include_input=False, include_url=False)))
    return ValidationResult(report=envelope.csp_report)


def _reject_constant(token: str) -> Any:
    # NaN / Infinity are not JSON and cannot be served back by JSONResponse
    raise ReportDecodeError(f"body contains non-JSON constant {token}")


def decode_payload(body: Union[bytes, str]) -> Any:
    if isinstance(body, bytes):
        try:
            body = body.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ReportDecodeError("body is not valid UTF-8") from e

    if not body.strip():
        raise ReportDecodeError("empty body")

    try:
        return json.loads(body, parse_constant=_reject_constant)
    except json.JSONDecodeError as e:
        raise ReportDecodeError(f"body is not JSON ({e.msg} at pos {e.pos})") from e
    except RecursionError as e:
        raise ReportDecodeError("body is nested too deeply") from e


def parse_report(body: Union[bytes, str]) -> ValidationResult:
    """Decode + validate. A decode failure becomes a failed result."""
    try:
        payload = decode_payload(body)
    except ReportDecodeError as e:
        return ValidationResult(error=e)
    return validate_report(payload)


# ============================================================
# Stored reports
# ============================================================

class StoredReport(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    timestamp: StrictStr
    user_agent: Optional[StrictStr] = Field(default=None, alias="userAgent")
    report: CspReportEnvelope

    @property
    def csp_report(self) -> CspReport:
        return self.report.csp_report

    def to_wire(self) -> dict[str, Any]:
        """JSON shape used both on disk and in API responses."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


_COLLECTION = TypeAdapter(list[StoredReport])


def _utc_timestamp(now: Optional[datetime] = None) -> str:
    # 2024-05-01T12:00:00.123Z (millisecond precision, fixed width)
    now = now or datetime.now(timezone.utc)
    return now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"


# ============================================================
# Store
# ============================================================

class ReportStore:
    """
    Append-only collection of accepted reports backed by one JSON document.

    Contract:
    - load(): once, at startup. Missing document => empty. Unreadable or
      malformed document => StorageError (the app must not start).
    - append(): serialized by a lock. The whole collection is rewritten
      (temp file + os.replace) BEFORE the new snapshot is published, so a
      caller that got a StoredReport back will see it after a restart.
    - all(): immutable snapshot; never the structure append() works on.

    Whole-document rewrite is O(n) per report. Report volume is low; do not
    switch to incremental appends without a crash-atomicity story.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self._reports: Optional[tuple[StoredReport, ...]] = None
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._snapshot())

    @property
    def loaded(self) -> bool:
        return self._reports is not None

    def load(self) -> tuple[StoredReport, ...]:
        if not self.path.exists():
            logger.info(f"Report store: {self.path} not found, starting empty")
            self._reports = ()
            return self._reports

        try:
            raw = self.path.read_bytes()
        except OSError as e:
            raise StorageError(f"cannot read {self.path}: {e}") from e

        try:
            items = _COLLECTION.validate_json(raw)
        except ValidationError as e:
            raise StorageError(
                f"{self.path} is not a valid report collection ({e.error_count()} errors)"
            ) from e

        self._reports = tuple(items)
        logger.info(f"Report store: loaded {len(self._reports)} reports from {self.path}")
        return self._reports

    def all(self) -> tuple[StoredReport, ...]:
        return self._snapshot()

    async def append(self, report: CspReport, user_agent: Optional[str] = None) -> StoredReport:
        async with self._lock:
            current = self._snapshot()

            # timestamps never go backwards, even if the wall clock does
            timestamp = _utc_timestamp()
            if current and current[-1].timestamp > timestamp:
                timestamp = current[-1].timestamp

            stored = StoredReport(
                timestamp=timestamp,
                user_agent=user_agent,
                report=CspReportEnvelope(csp_report=report),
            )
            updated = current + (stored,)

            await anyio.to_thread.run_sync(self._write, updated)
            self._reports = updated

        return stored

    def _snapshot(self) -> tuple[StoredReport, ...]:
        if self._reports is None:
            raise StorageError("report store used before load()")
        return self._reports

    def _write(self, reports: tuple[StoredReport, ...]) -> None:
        payload = json.dumps([r.to_wire() for r in reports], indent=2, ensure_ascii=False)
        tmp = self.path.with_name(f".{self.path.name}.tmp")

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self.path)
        except OSError as e:
            with contextlib.suppress(OSError):
                tmp.unlink()
            raise StorageError(f"cannot write {self.path}: {e}") from e


# ============================================================
# Classifier
# ============================================================

Classification = Literal["pending", "resolved"]
CLASSIFICATIONS: tuple[Classification, ...] = ("pending", "resolved")


def classify(report: Union[CspReport, StoredReport]) -> Classification:
    """
    pending  = inline, http*-prefixed, or empty blocked-uri
    resolved = anything else (data:, eval, blob:, ...)

    "http" is a plain case-sensitive prefix, so https:// matches too.
    """
    if isinstance(report, StoredReport):
        report = report.csp_report

    blocked_uri = report.blocked_uri
    if blocked_uri == "inline":
        return "pending"
    if blocked_uri.startswith("http") or blocked_uri == "":
        return "pending"
    return "resolved"


def filter_by_classification(
    reports: Iterable[StoredReport],
    label: Classification,
) -> list[StoredReport]:
    return [r for r in reports if classify(r) == label]


# ============================================================
# Aggregator
# ============================================================

def aggregate(reports: Iterable[StoredReport]) -> dict[str, Any]:
    """
    Single pass over the collection.

    Returns:
        {
          "summary": {totalReports, pending, resolved, byDirective,
                      uniqueBlockedUris, uniqueScriptSamples},
          "violationsBreakdown": {directive: {pendingCount, resolvedCount,
                      totalViolations, uniqueBlockedUris, uniqueScriptSamples}},
        }

    Unique sets are emitted sorted. Every blocked-uri counts (including "");
    empty script-sample values are skipped.
    """
    total = 0
    counts: dict[str, int] = {"pending": 0, "resolved": 0}
    blocked_uris: set[str] = set()
    script_samples: set[str] = set()
    directives: dict[str, dict[str, Any]] = {}

    for item in reports:
        report = item.csp_report
        status = classify(report)

        d = directives.get(report.violated_directive)
        if d is None:
            d = directives[report.violated_directive] = {
                "pending": 0,
                "resolved": 0,
                "blocked_uris": set(),
                "script_samples": set(),
            }

        total += 1
        counts[status] += 1
        d[status] += 1

        blocked_uris.add(report.blocked_uri)
        d["blocked_uris"].add(report.blocked_uri)

        if report.script_sample:
            script_samples.add(report.script_sample)
            d["script_samples"].add(report.script_sample)

    breakdown = {
        name: {
            "pendingCount": d["pending"],
            "resolvedCount": d["resolved"],
            "totalViolations": d["pending"] + d["resolved"],
            "uniqueBlockedUris": sorted(d["blocked_uris"]),
            "uniqueScriptSamples": sorted(d["script_samples"]),
        }
        for name, d in sorted(directives.items())
    }

    summary = {
        "totalReports": total,
        "pending": counts["pending"],
        "resolved": counts["resolved"],
        "byDirective": {
            name: {"pending": d["pending"], "resolved": d["resolved"]}
            for name, d in sorted(directives.items())
        },
        "uniqueBlockedUris": sorted(blocked_uris),
        "uniqueScriptSamples": sorted(script_samples),
    }

    return {"summary": summary, "violationsBreakdown": breakdown}
