# render.py
import html


def esc(s: str | None) -> str:
    """
    HTML escape for any report-derived text inserted into HTML strings.
    Always escape (including quotes).
    """
    return html.escape(s or "", quote=True)


def render_reports_table(reports: list[dict], title: str) -> str:
    rows = []
    for r in reports:
        body = r["report"]["csp-report"]
        status = esc(r["status"])
        status_class = {
            "pending": "status-pending",
            "resolved": "status-resolved",
        }.get(r["status"], "")

        rows.append(
            f"""
            <tr>
                <td>{esc(r["timestamp"])}</td>
                <td><span class="{status_class}">{status}</span></td>
                <td>{esc(body["violated-directive"])}</td>
                <td><code>{esc(body["blocked-uri"])}</code></td>
                <td>{esc(body["document-uri"])}</td>
                <td><code>{esc(body.get("script-sample"))}</code></td>
            </tr>
            """
        )

    if not rows:
        rows.append("<tr><td colspan='6'>No reports</td></tr>")

    return f"""
    <!DOCTYPE html>
    <html>
    <head><title>{esc(title)}</title></head>
    <body>
    <h1>{esc(title)}</h1>
    <p><strong>Count:</strong> {len(reports)}</p>
    <table border="1">
        <thead>
            <tr>
                <th>Received</th>
                <th>Status</th>
                <th>Directive</th>
                <th>Blocked URI</th>
                <th>Document URI</th>
                <th>Script Sample</th>
            </tr>
        </thead>
        <tbody>
            {"".join(rows)}
        </tbody>
    </table>
    </body>
    </html>
    """


def _render_values(values: list[str]) -> str:
    if not values:
        return "-"
    # blocked-uri may legitimately be ""
    return "<br>".join(f"<code>{esc(v) or '&quot;&quot;'}</code>" for v in values)


def render_metrics(data: dict, labels: tuple[str, ...] = ("pending", "resolved")) -> str:
    summary = data["summary"]
    breakdown = data["violationsBreakdown"]

    label_rows = "".join(
        f"<tr><td>{esc(label)}</td><td>{summary[label]}</td></tr>" for label in labels
    )

    directive_rows = []
    for directive, d in breakdown.items():
        directive_rows.append(
            f"""
            <tr>
                <td>{esc(directive)}</td>
                <td>{d["pendingCount"]}</td>
                <td>{d["resolvedCount"]}</td>
                <td>{d["totalViolations"]}</td>
                <td>{_render_values(d["uniqueBlockedUris"])}</td>
                <td>{_render_values(d["uniqueScriptSamples"])}</td>
            </tr>
            """
        )

    if not directive_rows:
        directive_rows.append("<tr><td colspan='6'>No reports</td></tr>")

    return f"""
    <!DOCTYPE html>
    <html>
    <head><title>CSP Metrics</title></head>
    <body>
    <h1>CSP Metrics</h1>
    <p><strong>Total Reports:</strong> {summary["totalReports"]}</p>

    <h2>By Status</h2>
    <table border="1">
        <thead>
            <tr><th>Status</th><th>Count</th></tr>
        </thead>
        <tbody>
            {label_rows}
        </tbody>
    </table>

    <h2>By Directive</h2>
    <table border="1">
        <thead>
            <tr>
                <th>Directive</th>
                <th>Pending</th>
                <th>Resolved</th>
                <th>Total</th>
                <th>Blocked URIs</th>
                <th>Script Samples</th>
            </tr>
        </thead>
        <tbody>
            {"".join(directive_rows)}
        </tbody>
    </table>
    </body>
    </html>
    """
