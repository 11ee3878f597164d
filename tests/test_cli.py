import json
from pathlib import Path

from typer.testing import CliRunner

from usagelog import __version__
from usagelog.cli.app import app


def _demo(runner: CliRunner, directory: Path, *extra: str) -> dict:
    result = runner.invoke(app, ["demo", "--dir", str(directory), "--json", *extra])
    assert result.exit_code == 0, result.output
    return json.loads(result.stdout)


def test_version_flag() -> None:
    result = CliRunner().invoke(app, ["--version"])

    assert result.exit_code == 0
    assert result.stdout.strip() == __version__


def test_demo_logs_one_shot_and_streamed_calls(tmp_path: Path) -> None:
    runner = CliRunner()

    first = _demo(runner, tmp_path, "--tag", "demo", "--tag", "cli")
    second = _demo(runner, tmp_path, "--stream", "--prompt", "Stream please.")

    assert first["status"] == "ok"
    assert first["stream"] is False
    assert first["total"] == 1
    assert first["output"] == "Hello from the fake model."
    assert second["stream"] is True
    assert second["total"] == 2
    assert second["output"] == "Hello from the fake model."
    assert Path(second["db"]) == tmp_path / "llm-usage.db"

    listed = runner.invoke(app, ["list", "--db", str(tmp_path / "llm-usage.db"), "--json"])
    assert listed.exit_code == 0, listed.output
    payload = json.loads(listed.stdout)
    assert payload["total"] == 2
    by_id = {entry["id"]: entry for entry in payload["entries"]}
    assert by_id[first["entry_id"]]["tags"] == ["demo", "cli"]
    assert by_id[second["entry_id"]]["input_preview"] == "[USER] Stream please."


def test_list_text_output_and_limit(tmp_path: Path) -> None:
    runner = CliRunner()
    _demo(runner, tmp_path)
    _demo(runner, tmp_path)

    result = runner.invoke(app, ["list", "--db", str(tmp_path / "llm-usage.db"), "--limit", "1"])

    assert result.exit_code == 0, result.output
    assert "tokens=19" in result.stdout
    assert "finish=stop" in result.stdout
    assert "1 of 2 entries" in result.stdout


def test_show_renders_every_column(tmp_path: Path) -> None:
    runner = CliRunner()
    entry_id = _demo(runner, tmp_path)["entry_id"]
    db = str(tmp_path / "llm-usage.db")

    text = runner.invoke(app, ["show", entry_id, "--db", db])
    as_json = runner.invoke(app, ["--pretty-json", "show", entry_id, "--db", db, "--json"])

    assert text.exit_code == 0, text.output
    assert f"Entry ID: {entry_id}" in text.stdout
    assert "Total Tokens: 19" in text.stdout
    assert "Latency: " in text.stdout
    assert "Error: —" in text.stdout
    assert as_json.exit_code == 0, as_json.output
    assert as_json.stdout.startswith("{\n")
    entry = json.loads(as_json.stdout)["entry"]
    assert entry["id"] == entry_id
    assert entry["headers_json"] == {"x-request-id": "req_fake"}


def test_show_unknown_id_fails(tmp_path: Path) -> None:
    runner = CliRunner()
    _demo(runner, tmp_path)

    result = runner.invoke(app, ["show", "nope", "--db", str(tmp_path / "llm-usage.db"), "--json"])

    assert result.exit_code == 1
    assert json.loads(result.stdout)["message"] == "show failed: no entry with id nope"


def test_list_uses_environment_location(tmp_path: Path) -> None:
    runner = CliRunner()
    _demo(runner, tmp_path)

    result = runner.invoke(app, ["list", "--json"], env={"USAGELOG_DIR": str(tmp_path)})

    assert result.exit_code == 0, result.output
    assert json.loads(result.stdout)["total"] == 1


def test_missing_database_is_reported(tmp_path: Path) -> None:
    runner = CliRunner()

    listed = runner.invoke(app, ["list", "--db", str(tmp_path / "absent.db")])
    dashboard = runner.invoke(app, ["dashboard", "--db", str(tmp_path / "absent.db"), "--check"])

    assert listed.exit_code == 1
    assert "No SQLite database found" in listed.output
    assert dashboard.exit_code == 1
    assert "dashboard failed" in dashboard.output


def test_invalid_environment_flag_exits_with_usage_error(tmp_path: Path) -> None:
    result = CliRunner().invoke(
        app,
        ["demo", "--dir", str(tmp_path), "--json"],
        env={"USAGELOG_WAL": "maybe"},
    )

    assert result.exit_code == 2
    assert "USAGELOG_WAL" in json.loads(result.stdout)["message"]


def test_dashboard_check_starts_and_stops_server(tmp_path: Path) -> None:
    runner = CliRunner()
    _demo(runner, tmp_path)

    result = runner.invoke(app, ["dashboard", "--db", str(tmp_path / "llm-usage.db"), "--check"])

    assert result.exit_code == 0, result.output
    assert "dashboard check ok: http://127.0.0.1:" in result.stdout
