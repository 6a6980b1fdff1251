# tests/test_aggregator.py
from __future__ import annotations

import reports
from tests.helpers.payloads import DROP, make_stored


def _collection():
    return [
        make_stored(violated_directive="script-src", blocked_uri="inline", script_sample="alert(1)"),
        make_stored(violated_directive="script-src", blocked_uri="https://evil.example/x.js", script_sample=""),
        make_stored(violated_directive="script-src", blocked_uri="inline", script_sample="alert(1)"),
        make_stored(violated_directive="img-src", blocked_uri="data:", script_sample=DROP),
        make_stored(violated_directive="img-src", blocked_uri="", script_sample=DROP),
        make_stored(violated_directive="style-src", blocked_uri="eval", script_sample="color:red"),
    ]


def test_empty_collection():
    data = reports.aggregate([])

    assert data["summary"] == {
        "totalReports": 0,
        "pending": 0,
        "resolved": 0,
        "byDirective": {},
        "uniqueBlockedUris": [],
        "uniqueScriptSamples": [],
    }
    assert data["violationsBreakdown"] == {}


def test_summary_counts():
    summary = reports.aggregate(_collection())["summary"]

    assert summary["totalReports"] == 6
    assert summary["pending"] == 4
    assert summary["resolved"] == 2
    assert summary["byDirective"] == {
        "script-src": {"pending": 3, "resolved": 0},
        "img-src": {"pending": 1, "resolved": 1},
        "style-src": {"pending": 0, "resolved": 1},
    }


def test_breakdown_per_directive():
    breakdown = reports.aggregate(_collection())["violationsBreakdown"]

    script = breakdown["script-src"]
    assert script["pendingCount"] == 3
    assert script["resolvedCount"] == 0
    assert script["totalViolations"] == 3
    assert set(script["uniqueBlockedUris"]) == {"inline", "https://evil.example/x.js"}
    assert set(script["uniqueScriptSamples"]) == {"alert(1)"}

    img = breakdown["img-src"]
    assert img["totalViolations"] == 2
    # empty blocked-uri is a real value
    assert set(img["uniqueBlockedUris"]) == {"data:", ""}
    assert img["uniqueScriptSamples"] == []


def test_unique_sets_across_directives():
    summary = reports.aggregate(_collection())["summary"]

    assert set(summary["uniqueBlockedUris"]) == {"inline", "https://evil.example/x.js", "data:", "", "eval"}
    assert len(summary["uniqueBlockedUris"]) == 5
    # empty script-sample never appears
    assert set(summary["uniqueScriptSamples"]) == {"alert(1)", "color:red"}
    assert "" not in summary["uniqueScriptSamples"]


def test_counts_are_consistent():
    data = reports.aggregate(_collection())
    summary = data["summary"]
    breakdown = data["violationsBreakdown"]

    assert summary["pending"] + summary["resolved"] == summary["totalReports"]
    assert sum(d["pendingCount"] for d in breakdown.values()) == summary["pending"]
    assert sum(d["resolvedCount"] for d in breakdown.values()) == summary["resolved"]
    for d in breakdown.values():
        assert d["totalViolations"] == d["pendingCount"] + d["resolvedCount"]


def test_aggregate_is_idempotent():
    items = _collection()
    assert reports.aggregate(items) == reports.aggregate(items)


def test_aggregate_accepts_a_generator():
    data = reports.aggregate(r for r in _collection())
    assert data["summary"]["totalReports"] == 6
