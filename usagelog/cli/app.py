import asyncio
from dataclasses import dataclass
from importlib.metadata import PackageNotFoundError, version as package_version
import json
from pathlib import Path
import time
from typing import Any
import webbrowser

import typer

from usagelog.capture import ConfigError, DashboardError, SinkError, wrap_language_model
from usagelog.config import LoggerOptions
from usagelog.middleware import create_usage_logger_middleware
from usagelog.providers import FakeLanguageModel
from usagelog.storage import LogReader
from usagelog.ui import DashboardConfig, build_dashboard_url, start_dashboard_server
from usagelog.ui.server import COLUMN_SPECS, DEFAULT_PORT, format_field_value

app = typer.Typer(help="LLM usage logger CLI")


@dataclass(slots=True)
class _OutputOptions:
    quiet: bool = False
    stable_json: bool = True


_OUTPUT_OPTIONS = _OutputOptions()


def _resolve_cli_version() -> str:
    try:
        return package_version("llm-usage-logger")
    except PackageNotFoundError:
        from usagelog import __version__ as local_version

        return local_version


def _version_callback(value: bool) -> None:
    if not value:
        return
    typer.echo(_resolve_cli_version())
    raise typer.Exit()


@app.callback()
def app_options(
    version: bool = typer.Option(
        False,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="Show the usage logger version and exit.",
    ),
    quiet: bool = typer.Option(
        False,
        "--quiet",
        help="Suppress non-error text output.",
    ),
    stable_json: bool = typer.Option(
        True,
        "--stable-json/--pretty-json",
        help="Emit stable compact JSON (or pretty JSON).",
    ),
) -> None:
    """Global output controls for all CLI commands."""
    _OUTPUT_OPTIONS.quiet = quiet
    _OUTPUT_OPTIONS.stable_json = stable_json


def _echo(message: str, *, err: bool = False) -> None:
    if _OUTPUT_OPTIONS.quiet and not err:
        return
    typer.echo(message, err=err)


def _echo_json(payload: dict[str, Any], *, err: bool = False) -> None:
    if _OUTPUT_OPTIONS.stable_json:
        rendered = json.dumps(payload, ensure_ascii=True, sort_keys=True, separators=(",", ":"))
    else:
        rendered = json.dumps(payload, ensure_ascii=True, sort_keys=True, indent=2)
    typer.echo(rendered, err=err)


def _fail(command: str, error: Exception | str, *, json_output: bool, exit_code: int = 1) -> typer.Exit:
    message = f"{command} failed: {error}"
    if json_output:
        _echo_json({"status": "error", "exit_code": exit_code, "message": message})
    else:
        _echo(message, err=True)
    return typer.Exit(code=exit_code)


def _resolve_db_path(db: Path | None, *, command: str, json_output: bool = False) -> Path:
    if db is not None:
        return db
    try:
        return LoggerOptions.from_env().db_path
    except ConfigError as error:
        raise _fail(command, error, json_output=json_output, exit_code=2) from error


def _open_reader(db_path: Path, *, command: str, json_output: bool) -> LogReader:
    try:
        return LogReader(db_path)
    except DashboardError as error:
        raise _fail(command, error, json_output=json_output) from error


@app.command()
def dashboard(
    db: Path | None = typer.Option(
        None,
        "--db",
        help="SQLite database to inspect (defaults to USAGELOG_DIR/USAGELOG_FILE).",
    ),
    host: str = typer.Option(
        "127.0.0.1",
        "--host",
        help="Host interface to bind the dashboard server.",
    ),
    port: int = typer.Option(
        DEFAULT_PORT,
        "--port",
        help="Port for the dashboard server (0 selects an ephemeral port).",
    ),
    browser: bool = typer.Option(
        False,
        "--browser/--no-browser",
        help="Open the dashboard URL in the default browser.",
    ),
    check: bool = typer.Option(
        False,
        "--check",
        help="Start server, verify startup path, then exit.",
    ),
) -> None:
    """Serve a read-only dashboard over a usage log database."""
    db_path = _resolve_db_path(db, command="dashboard")
    effective_port = 0 if check else port
    config = DashboardConfig(db_path=db_path, host=host, port=effective_port)

    try:
        with start_dashboard_server(config) as (server, _thread):
            bound_host, bound_port = server.server_address[:2]
            url = build_dashboard_url(str(bound_host), int(bound_port))
            if check:
                _echo(f"dashboard check ok: {url}")
                return

            _echo(f"dashboard running: {url}")
            if browser:
                webbrowser.open(url)
            try:
                while True:
                    time.sleep(0.25)
            except KeyboardInterrupt:
                _echo("dashboard stopped")
    except (DashboardError, OSError) as error:
        raise _fail("dashboard", error, json_output=False) from error


@app.command(name="list")
def list_entries(
    db: Path | None = typer.Option(None, "--db", help="SQLite database to read."),
    limit: int = typer.Option(20, "--limit", min=0, help="Maximum number of entries, newest first."),
    json_output: bool = typer.Option(False, "--json", help="Emit machine-readable output."),
) -> None:
    """List logged calls, newest first."""
    db_path = _resolve_db_path(db, command="list", json_output=json_output)
    reader = _open_reader(db_path, command="list", json_output=json_output)
    try:
        entries = reader.list_entries(limit=limit)
        total = reader.count()
    finally:
        reader.close()

    if json_output:
        _echo_json({"status": "ok", "db": str(db_path), "total": total, "entries": entries})
        return

    if not entries:
        _echo(f"no entries in {db_path}")
        return
    for entry in entries:
        tokens = "-" if entry["total_tokens"] is None else entry["total_tokens"]
        latency = "-" if entry["latency_ms"] is None else f"{entry['latency_ms']}ms"
        preview = (entry["input_preview"] or "").replace("\n", " ")
        _echo(
            f"{entry['id']}  {entry['timestamp']}  {entry['model_id'] or '-'}  "
            f"tokens={tokens}  latency={latency}  finish={entry['finish_reason'] or '-'}  {preview}"
        )
    _echo(f"{len(entries)} of {total} entries")


@app.command()
def show(
    entry_id: str = typer.Argument(..., help="Entry id to display."),
    db: Path | None = typer.Option(None, "--db", help="SQLite database to read."),
    json_output: bool = typer.Option(False, "--json", help="Emit machine-readable output."),
) -> None:
    """Show every stored column of one logged call."""
    db_path = _resolve_db_path(db, command="show", json_output=json_output)
    reader = _open_reader(db_path, command="show", json_output=json_output)
    try:
        entry = reader.get_entry(entry_id, decode_json=json_output)
    finally:
        reader.close()

    if entry is None:
        raise _fail("show", f"no entry with id {entry_id}", json_output=json_output)

    if json_output:
        _echo_json({"status": "ok", "entry": entry})
        return

    for spec in COLUMN_SPECS:
        display, preformatted = format_field_value(entry.get(spec.key), spec.kind)
        if preformatted and "\n" in display:
            _echo(f"{spec.label}:")
            for line in display.splitlines():
                _echo(f"  {line}")
        else:
            _echo(f"{spec.label}: {display}")


@app.command()
def demo(
    directory: Path | None = typer.Option(
        None,
        "--dir",
        help="Directory for the database (defaults to USAGELOG_DIR or .usagelog).",
    ),
    file_name: str | None = typer.Option(None, "--file", help="Database file name."),
    stream: bool = typer.Option(
        False,
        "--stream/--no-stream",
        help="Log a streamed call instead of a one-shot call.",
    ),
    prompt: str = typer.Option("Say hello.", "--prompt", help="Prompt sent to the fake model."),
    tags: list[str] | None = typer.Option(None, "--tag", help="Tag recorded with the call (repeatable)."),
    json_output: bool = typer.Option(False, "--json", help="Emit machine-readable output."),
) -> None:
    """Log one fake-model call through the middleware."""
    try:
        env_options = LoggerOptions.from_env()
        options = LoggerOptions(
            dir_path=directory or env_options.dir_path,
            file_name=file_name or env_options.file_name,
            sqlite_wal=env_options.sqlite_wal,
            persist_incomplete_streams=env_options.persist_incomplete_streams,
        )
    except ConfigError as error:
        raise _fail("demo", error, json_output=json_output, exit_code=2) from error

    try:
        text = asyncio.run(_run_demo(options, prompt=prompt, stream=stream, tags=tags or []))
    except SinkError as error:
        raise _fail("demo", error, json_output=json_output) from error

    reader = LogReader(options.db_path)
    try:
        latest = reader.list_entries(limit=1)
        total = reader.count()
    finally:
        reader.close()

    payload = {
        "status": "ok",
        "exit_code": 0,
        "stream": stream,
        "db": str(options.db_path),
        "entry_id": latest[0]["id"] if latest else None,
        "total": total,
        "output": text,
    }
    if json_output:
        _echo_json(payload)
    else:
        _echo(f"demo call logged: {payload['entry_id']} -> {options.db_path}")


async def _run_demo(options: LoggerOptions, *, prompt: str, stream: bool, tags: list[str]) -> str:
    middleware = create_usage_logger_middleware(options)
    model = wrap_language_model(FakeLanguageModel(), middleware)
    params: dict[str, Any] = {
        "prompt": [{"role": "user", "content": [{"type": "text", "text": prompt}]}],
        "temperature": 0.2,
    }
    if tags:
        params["providerOptions"] = {"usageLogger": {"tags": tags}}

    try:
        if stream:
            result = await model.do_stream(params)
            parts = [chunk["delta"] async for chunk in result["stream"] if chunk.get("type") == "text-delta"]
            text = "".join(parts)
        else:
            result = await model.do_generate(params)
            text = "".join(part["text"] for part in result["content"] if part["type"] == "text")
        await middleware.flush()
    finally:
        middleware.sink.close()
    return text


def main() -> None:
    app()
