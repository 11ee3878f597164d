"""Local read-only dashboard over a usage log database."""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
import html
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
import json
from pathlib import Path
import threading
from typing import Any, Iterator
from urllib.parse import parse_qs, quote, unquote, urlparse

from usagelog.storage.encoding import safe_parse_json
from usagelog.storage.sqlite import LogReader

PLACEHOLDER = "—"
DEFAULT_PORT = 4545


@dataclass(slots=True)
class DashboardConfig:
    db_path: Path
    host: str = "127.0.0.1"
    port: int = DEFAULT_PORT


@dataclass(frozen=True, slots=True)
class ColumnSpec:
    key: str
    label: str
    description: str
    kind: str = "text"


COLUMN_SPECS: tuple[ColumnSpec, ...] = (
    ColumnSpec("id", "Entry ID", "Unique identifier generated for the logged call."),
    ColumnSpec("timestamp", "Timestamp", "When the call completed.", "datetime"),
    ColumnSpec("model_id", "Model ID", "Model identifier supplied with the request."),
    ColumnSpec("tags_json", "Tags", "Tags forwarded through provider options.", "json"),
    ColumnSpec("input_text", "Input Text", "Human-readable prompt sent to the provider.", "multiline"),
    ColumnSpec("input_json", "Input JSON", "Raw request payload.", "json"),
    ColumnSpec("prompt_json", "Prompt Structure", "Structured prompt or messages in the request.", "json"),
    ColumnSpec("output_text", "Output Text", "Primary textual output returned by the model.", "multiline"),
    ColumnSpec("output_json", "Output JSON", "Complete response body from the provider.", "json"),
    ColumnSpec("content_json", "Content JSON", "Structured content parts of the result.", "json"),
    ColumnSpec("reasoning_text", "Reasoning Text", "Reasoning returned by the model.", "multiline"),
    ColumnSpec("reasoning_json", "Reasoning JSON", "Structured reasoning parts.", "json"),
    ColumnSpec("input_tokens", "Input Tokens", "Tokens consumed by the prompt.", "number"),
    ColumnSpec("output_tokens", "Output Tokens", "Tokens produced in the response.", "number"),
    ColumnSpec("total_tokens", "Total Tokens", "Combined input and output token usage.", "number"),
    ColumnSpec("cached_input_tokens", "Cached Input Tokens", "Tokens served from prompt cache.", "number"),
    ColumnSpec("reasoning_tokens", "Reasoning Tokens", "Reasoning tokens reported by the provider.", "number"),
    ColumnSpec(
        "output_reasoning_tokens",
        "Output Reasoning Tokens",
        "Reasoning tokens counted within output usage.",
        "number",
    ),
    ColumnSpec("request_tools_json", "Requested Tools", "Tools declared with the request.", "json"),
    ColumnSpec("response_tools_json", "Tool Calls Returned", "Tool calls in the response.", "json"),
    ColumnSpec("tool_count", "Tool Count", "Number of tool calls (or declared tools).", "number"),
    ColumnSpec("tool_names_json", "Tool Names", "Names of the tools referenced by the call.", "json"),
    ColumnSpec("parallel_tool_calls", "Parallel Tool Calls", "Whether parallel tool calls were enabled.", "boolean"),
    ColumnSpec("temperature", "Temperature", "Sampling temperature.", "number"),
    ColumnSpec("top_p", "Top P", "Nucleus sampling parameter.", "number"),
    ColumnSpec("max_output_tokens", "Max Output Tokens", "Output token limit for the call.", "number"),
    ColumnSpec("finish_reason", "Finish Reason", "Why the response finished."),
    ColumnSpec("latency_ms", "Latency", "Time from request to completion.", "duration"),
    ColumnSpec("warnings_json", "Warnings", "Warnings returned alongside the response.", "json"),
    ColumnSpec("request_id", "Request ID", "Upstream request identifier."),
    ColumnSpec("response_id", "Response ID", "Upstream response identifier."),
    ColumnSpec("headers_json", "Response Headers", "Response headers (sensitive values masked).", "json"),
    ColumnSpec("meta_json", "Provider Metadata", "Additional metadata forwarded by the provider.", "json"),
    ColumnSpec("error_json", "Error", "Error payload stored when the call failed.", "json"),
)


class DashboardHTTPServer(ThreadingHTTPServer):
    """HTTP server that owns the reader it serves from."""

    daemon_threads = True
    reader: LogReader

    def server_close(self) -> None:
        super().server_close()
        self.reader.close()


def build_dashboard_url(host: str, port: int, *, entry_id: str | None = None) -> str:
    public_host = "127.0.0.1" if host in ("", "0.0.0.0", "::") else host
    if ":" in public_host and not public_host.startswith("["):
        public_host = f"[{public_host}]"
    suffix = f"/entries/{quote(entry_id, safe='')}" if entry_id else "/"
    return f"http://{public_host}:{port}{suffix}"


def create_dashboard_server(config: DashboardConfig) -> DashboardHTTPServer:
    """Open the database read-only and bind the dashboard; raises ``DashboardError``."""
    reader = LogReader(config.db_path)

    class Handler(BaseHTTPRequestHandler):
        def do_GET(self) -> None:  # noqa: N802
            parsed = urlparse(self.path)
            route = parsed.path.rstrip("/") or "/"
            query = parse_qs(parsed.query)

            if route == "/":
                entries = reader.list_entries()
                self._write_html(200, render_index_html(entries, db_path=reader.db_path))
                return

            if route == "/api/entries":
                self._handle_api_list(query)
                return

            if route.startswith("/api/entries/"):
                self._handle_api_entry(unquote(route[len("/api/entries/") :]))
                return

            if route.startswith("/entries/"):
                entry_id = unquote(route[len("/entries/") :])
                entry = reader.get_entry(entry_id, decode_json=False)
                if entry is None:
                    self._write_html(404, render_not_found_html(entry_id))
                    return
                self._write_html(200, render_detail_html(entry))
                return

            self._write_json(404, {"error": "Not found"})

        def _handle_api_list(self, query: dict[str, list[str]]) -> None:
            raw_limit = _first(query.get("limit"))
            limit: int | None = None
            if raw_limit is not None:
                try:
                    limit = int(raw_limit)
                except ValueError:
                    self._write_json(400, {"error": "limit must be an integer"})
                    return
                if limit < 0:
                    self._write_json(400, {"error": "limit must be an integer"})
                    return
            entries = reader.list_entries(limit=limit)
            self._write_json(200, {"entries": entries, "count": len(entries)})

        def _handle_api_entry(self, entry_id: str) -> None:
            entry = reader.get_entry(entry_id)
            if entry is None:
                self._write_json(404, {"error": f"No entry with id {entry_id}"})
                return
            self._write_json(200, {"entry": entry})

        def _write_html(self, status_code: int, markup: str) -> None:
            body = markup.encode("utf-8")
            self.send_response(status_code)
            self.send_header("Content-Type", "text/html; charset=utf-8")
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)

        def _write_json(self, status_code: int, payload: dict) -> None:
            body = json.dumps(payload, ensure_ascii=True, sort_keys=True).encode("utf-8")
            self.send_response(status_code)
            self.send_header("Content-Type", "application/json; charset=utf-8")
            self.send_header("Cache-Control", "no-store")
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)

        def log_message(self, _format: str, *_args: object) -> None:
            return

    try:
        server = DashboardHTTPServer((config.host, config.port), Handler)
    except OSError:
        reader.close()
        raise
    server.reader = reader
    return server


@contextmanager
def start_dashboard_server(
    config: DashboardConfig,
) -> Iterator[tuple[DashboardHTTPServer, threading.Thread]]:
    server = create_dashboard_server(config)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    try:
        yield server, thread
    finally:
        server.shutdown()
        server.server_close()
        thread.join(timeout=2)


def format_datetime(value: Any) -> str:
    if not value:
        return PLACEHOLDER
    text = str(value)
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return text
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")


def format_field_value(value: Any, kind: str) -> tuple[str, bool]:
    """Return ``(display_value, is_preformatted)`` for one stored column value."""
    if value is None:
        return PLACEHOLDER, False
    if kind == "datetime":
        return format_datetime(value), False
    if kind == "json":
        parsed = safe_parse_json(value) if isinstance(value, str) else value
        return json.dumps(parsed, indent=2, ensure_ascii=False), True
    if kind == "multiline":
        return str(value), True
    if kind == "boolean":
        try:
            numeric = float(value)
        except (TypeError, ValueError):
            return str(value), False
        return ("Yes" if numeric else "No"), False
    if kind == "duration":
        return f"{value} ms", False
    return str(value), False


def render_index_html(entries: list[dict[str, Any]], *, db_path: Path) -> str:
    rows: list[str] = []
    for entry in entries:
        entry_url = f"/entries/{quote(str(entry['id']), safe='')}"
        tags = "".join(f'<span class="tag">{_esc(tag)}</span>' for tag in entry.get("tags") or [])
        rows.append(
            "<tr>"
            f'<td><a href="{entry_url}">{_esc(format_datetime(entry.get("timestamp")))}</a></td>'
            f"<td>{_esc(entry.get('model_id') or PLACEHOLDER)}</td>"
            f"<td>{tags or PLACEHOLDER}</td>"
            f"<td class=\"preview\">{_esc(entry.get('input_preview') or PLACEHOLDER)}</td>"
            f"<td class=\"preview\">{_esc(entry.get('output_preview') or PLACEHOLDER)}</td>"
            f"<td>{_esc(_or_placeholder(entry.get('total_tokens')))}</td>"
            f"<td>{_esc(format_field_value(entry.get('latency_ms'), 'duration')[0])}</td>"
            f"<td>{_esc(entry.get('finish_reason') or PLACEHOLDER)}</td>"
            "</tr>"
        )
    if rows:
        table = (
            "<table><thead><tr>"
            "<th>Timestamp</th><th>Model</th><th>Tags</th><th>Input</th><th>Output</th>"
            "<th>Total Tokens</th><th>Latency</th><th>Finish</th>"
            "</tr></thead><tbody>" + "".join(rows) + "</tbody></table>"
        )
    else:
        table = '<p class="empty">No calls have been logged yet.</p>'
    body = (
        f"<h1>LLM Usage Log</h1><p class=\"muted\">{_esc(str(db_path))} &middot; "
        f"{len(entries)} entries</p>{table}"
    )
    return _page("LLM Usage Log", body)


def render_detail_html(entry: dict[str, Any]) -> str:
    items: list[str] = []
    for spec in COLUMN_SPECS:
        display, preformatted = format_field_value(entry.get(spec.key), spec.kind)
        value_markup = f"<pre>{_esc(display)}</pre>" if preformatted else f"<span>{_esc(display)}</span>"
        items.append(
            f'<div class="field" id="field-{spec.key}">'
            f"<dt>{_esc(spec.label)}</dt>"
            f'<dd><p class="muted">{_esc(spec.description)}</p>{value_markup}</dd>'
            "</div>"
        )
    body = (
        '<p><a href="/">&larr; All calls</a></p>'
        f"<h1>Call {_esc(entry.get('id'))}</h1>"
        f"<p class=\"muted\">{_esc(format_datetime(entry.get('timestamp')))}</p>"
        f"<dl>{''.join(items)}</dl>"
    )
    return _page(f"Call {entry.get('id')}", body)


def render_not_found_html(entry_id: str) -> str:
    body = (
        '<p><a href="/">&larr; All calls</a></p>'
        "<h1>Entry not found</h1>"
        f"<p>No logged call with id <code>{_esc(entry_id)}</code>.</p>"
    )
    return _page("Entry not found", body)


def _page(title: str, body: str) -> str:
    return f"""<!doctype html>
<html lang="en">
<head>
  <meta charset="utf-8" />
  <meta name="viewport" content="width=device-width, initial-scale=1" />
  <title>{_esc(title)}</title>
  <style>
    :root {{
      --bg: #f7f4ed;
      --panel: #fffdfa;
      --ink: #1f2933;
      --accent: #0f766e;
      --muted: #6b7280;
      --border: #d6d3d1;
    }}
    body {{ background: var(--bg); color: var(--ink); font-family: system-ui, sans-serif; margin: 2rem; }}
    a {{ color: var(--accent); }}
    table {{ border-collapse: collapse; width: 100%; background: var(--panel); }}
    th, td {{ border: 1px solid var(--border); padding: 0.4rem 0.6rem; text-align: left; vertical-align: top; }}
    td.preview {{ max-width: 28rem; }}
    .muted {{ color: var(--muted); }}
    .tag {{ border: 1px solid var(--accent); border-radius: 999px; padding: 0 0.4rem; margin-right: 0.25rem; }}
    .field {{ background: var(--panel); border: 1px solid var(--border); margin-bottom: 0.75rem; padding: 0.5rem 0.75rem; }}
    dt {{ font-weight: 600; }}
    dd {{ margin: 0; }}
    pre {{ white-space: pre-wrap; word-break: break-word; margin: 0; }}
  </style>
</head>
<body>
{body}
</body>
</html>
"""


def _esc(value: Any) -> str:
    return html.escape("" if value is None else str(value), quote=True)


def _or_placeholder(value: Any) -> Any:
    return PLACEHOLDER if value is None else value


def _first(values: list[str] | None) -> str | None:
    if not values:
        return None
    return values[0]
