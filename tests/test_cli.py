from __future__ import annotations

import json
from pathlib import Path
import sys

import pytest
from typer.testing import CliRunner

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from cli import app


@pytest.fixture
def cli_runner() -> CliRunner:
    return CliRunner()


def _stream_bytes(*, model: str = "qwen3-8b", timings: bool = True) -> bytes:
    def event(delta: dict[str, object], finish_reason: str | None, with_timings: bool) -> str:
        chunk: dict[str, object] = {
            "object": "chat.completion.chunk",
            "id": "chatcmpl-1",
            "model": model,
            "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
        }
        if with_timings:
            chunk["timings"] = {
                "cache_n": 2,
                "prompt_n": 8,
                "prompt_ms": 40.0,
                "predicted_n": 20,
                "predicted_ms": 200.0,
                "predicted_per_second": 100.0,
            }
        return f"data: {json.dumps(chunk)}\n\n"

    frames = [
        event({"reasoning_content": "thinking"}, None, timings),
        event({"content": "answer"}, None, False),
        event({}, "stop", timings),
        "data: [DONE]\n\n",
    ]
    return "".join(frames).encode("utf-8")


def _write_exchange(
    tmp_path: Path, name: str, *, model: str = "qwen3-8b", timings: bool = True
) -> tuple[Path, Path]:
    request_path = tmp_path / f"{name}.request.json"
    stream_path = tmp_path / f"{name}.sse"
    request_path.write_text(
        json.dumps(
            {
                "model": model,
                "stream": True,
                "messages": [{"role": "user", "content": f"prompt {name}"}],
            }
        ),
        encoding="utf-8",
    )
    stream_path.write_bytes(_stream_bytes(model=model, timings=timings))
    return request_path, stream_path


def _ingest(
    cli_runner: CliRunner,
    tmp_path: Path,
    db_path: Path,
    name: str,
    *extra: str,
    model: str = "qwen3-8b",
):
    request_path, stream_path = _write_exchange(tmp_path, name, model=model)
    return cli_runner.invoke(
        app,
        [
            "ingest",
            "--request",
            str(request_path),
            "--stream",
            str(stream_path),
            "--config",
            str(tmp_path / "missing.toml"),
            "--db",
            str(db_path),
            *extra,
        ],
    )


def test_ingest_prints_summary(cli_runner: CliRunner, tmp_path: Path) -> None:
    db_path = tmp_path / "metrics.duckdb"

    result = _ingest(cli_runner, tmp_path, db_path, "one", "--context", "tab-1")

    assert result.exit_code == 0, result.output
    assert "Completion recorded" in result.output
    assert "Model     : qwen3-8b" in result.output
    assert "(turn 1)" in result.output
    assert "tok/s" in result.output
    assert "Reasoning : n=" in result.output


def test_ingest_json_output_and_attachment(cli_runner: CliRunner, tmp_path: Path) -> None:
    db_path = tmp_path / "metrics.duckdb"
    attachment = tmp_path / "report.pdf"
    attachment.write_bytes(b"%PDF-" + b"0" * 95)

    result = _ingest(
        cli_runner,
        tmp_path,
        db_path,
        "doc",
        "--file",
        str(attachment),
        "--request-start-ms",
        "1000",
        "--json",
    )

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["request"]["has_document"] is True
    assert payload["request"]["files_total_bytes"] == 100
    assert payload["response"]["finish_reason"] == "stop"
    assert payload["response"]["client_timing"]["request_start_ms"] == 1000


def test_ingest_reports_missing_file(cli_runner: CliRunner, tmp_path: Path) -> None:
    result = cli_runner.invoke(
        app,
        [
            "ingest",
            "--request",
            str(tmp_path / "nope.json"),
            "--stream",
            str(tmp_path / "nope.sse"),
            "--db",
            str(tmp_path / "metrics.duckdb"),
        ],
    )

    assert result.exit_code == 1
    assert "File not found" in result.output


def test_ingest_without_timings_records_nothing(cli_runner: CliRunner, tmp_path: Path) -> None:
    db_path = tmp_path / "metrics.duckdb"
    request_path, stream_path = _write_exchange(tmp_path, "bare", timings=False)

    result = cli_runner.invoke(
        app,
        [
            "ingest",
            "--request",
            str(request_path),
            "--stream",
            str(stream_path),
            "--config",
            str(tmp_path / "missing.toml"),
            "--db",
            str(db_path),
        ],
    )

    assert result.exit_code == 1
    assert "No completion recorded" in result.output
    status = cli_runner.invoke(app, ["status", "--json", "--db", str(db_path)])
    assert json.loads(status.output)["record_count"] == 0


def test_ingest_rejects_invalid_settings(cli_runner: CliRunner, tmp_path: Path) -> None:
    config_path = tmp_path / "bad.toml"
    config_path.write_text("[capture]\nmax_captured_text_chars = 0\n", encoding="utf-8")
    request_path, stream_path = _write_exchange(tmp_path, "cfg")

    result = cli_runner.invoke(
        app,
        [
            "ingest",
            "--request",
            str(request_path),
            "--stream",
            str(stream_path),
            "--config",
            str(config_path),
            "--db",
            str(tmp_path / "metrics.duckdb"),
        ],
    )

    assert result.exit_code == 1
    assert "Failed to load settings" in result.output


def test_status_stats_and_records(cli_runner: CliRunner, tmp_path: Path) -> None:
    db_path = tmp_path / "metrics.duckdb"
    for name in ("a", "b"):
        assert _ingest(cli_runner, tmp_path, db_path, name).exit_code == 0
    assert _ingest(cli_runner, tmp_path, db_path, "c", model="llama-3").exit_code == 0

    status = cli_runner.invoke(app, ["status", "--json", "--db", str(db_path)])
    assert status.exit_code == 0, status.output
    status_payload = json.loads(status.output)
    assert status_payload["record_count"] == 3
    assert status_payload["session_size_bytes"] > 0

    stats = cli_runner.invoke(app, ["stats", "--json", "--db", str(db_path)])
    assert stats.exit_code == 0, stats.output
    dashboard = json.loads(stats.output)
    assert dashboard["summary"]["total_completions"] == 3
    assert dashboard["summary"]["distinct_models"] == 2
    assert dashboard["models"][0]["model"] == "qwen3-8b"

    text_stats = cli_runner.invoke(app, ["stats", "--db", str(db_path)])
    assert "Completions : 3" in text_stats.output
    assert "- qwen3-8b completions=2" in text_stats.output

    rows = cli_runner.invoke(app, ["records", "--json", "--db", str(db_path)])
    assert rows.exit_code == 0, rows.output
    assert len(json.loads(rows.output)) == 3


def test_scenarios_and_latency(cli_runner: CliRunner, tmp_path: Path) -> None:
    db_path = tmp_path / "metrics.duckdb"
    assert _ingest(cli_runner, tmp_path, db_path, "a").exit_code == 0
    assert _ingest(cli_runner, tmp_path, db_path, "b", model="llama-3").exit_code == 0

    scenarios = cli_runner.invoke(
        app, ["scenarios", "--model", "llama-3", "--json", "--db", str(db_path)]
    )
    assert scenarios.exit_code == 0, scenarios.output
    comparison = json.loads(scenarios.output)
    assert comparison["selected_model"] == "llama-3"
    assert comparison["selected_model_record_count"] == 1
    assert comparison["breakdowns"]["input_mode"][0]["label"] == "text_only"

    text = cli_runner.invoke(app, ["scenarios", "--db", str(db_path)])
    assert "Scenario comparison" in text.output
    assert "Output length:" in text.output

    latency = cli_runner.invoke(app, ["latency", "--json", "--db", str(db_path)])
    assert latency.exit_code == 0, latency.output
    distribution = json.loads(latency.output)
    assert sorted(distribution) == ["llama-3", "qwen3-8b"]
    assert distribution["qwen3-8b"]["predicted_tps"]["p50"] == pytest.approx(100.0)

    missing = cli_runner.invoke(app, ["latency", "--model", "gpt-x", "--db", str(db_path)])
    assert missing.exit_code == 1
    assert "Model not found: gpt-x" in missing.output


def test_views_on_empty_database(cli_runner: CliRunner, tmp_path: Path) -> None:
    db_path = tmp_path / "metrics.duckdb"

    scenarios = cli_runner.invoke(app, ["scenarios", "--db", str(db_path)])
    assert scenarios.exit_code == 1
    assert "No completions recorded." in scenarios.output

    latency = cli_runner.invoke(app, ["latency", "--db", str(db_path)])
    assert latency.exit_code == 1

    rows = cli_runner.invoke(app, ["records", "--db", str(db_path)])
    assert rows.exit_code == 0
    assert "No completions recorded." in rows.output


def test_export_import_round_trip(cli_runner: CliRunner, tmp_path: Path) -> None:
    db_path = tmp_path / "metrics.duckdb"
    assert _ingest(cli_runner, tmp_path, db_path, "a", "--context", "tab-1").exit_code == 0
    assert _ingest(cli_runner, tmp_path, db_path, "b", "--context", "tab-1").exit_code == 0
    export_path = tmp_path / "out" / "records.jsonl"

    exported = cli_runner.invoke(
        app, ["export", "--output", str(export_path), "--db", str(db_path)]
    )
    assert exported.exit_code == 0, exported.output
    assert "Exported 2 record(s)" in exported.output
    assert len(export_path.read_text(encoding="utf-8").splitlines()) == 2

    other_db = tmp_path / "other.duckdb"
    imported = cli_runner.invoke(app, ["import", str(export_path), "--db", str(other_db)])
    assert imported.exit_code == 0, imported.output
    assert "Imported 2 record(s)" in imported.output

    status = cli_runner.invoke(app, ["status", "--json", "--db", str(other_db)])
    assert json.loads(status.output)["record_count"] == 2


def test_import_rejects_invalid_jsonl(cli_runner: CliRunner, tmp_path: Path) -> None:
    bad_path = tmp_path / "bad.jsonl"
    bad_path.write_text('{"trace_id": "x"}\n', encoding="utf-8")

    result = cli_runner.invoke(
        app, ["import", str(bad_path), "--db", str(tmp_path / "metrics.duckdb")]
    )

    assert result.exit_code == 1
    assert "Import failed" in result.output


def test_clear_and_sessions(cli_runner: CliRunner, tmp_path: Path) -> None:
    db_path = tmp_path / "metrics.duckdb"
    assert _ingest(cli_runner, tmp_path, db_path, "a").exit_code == 0

    started = cli_runner.invoke(app, ["session", "new", "--db", str(db_path)])
    assert started.exit_code == 0, started.output
    assert "Session started:" in started.output

    listed = cli_runner.invoke(app, ["session", "list", "--json", "--db", str(db_path)])
    sessions = json.loads(listed.output)["sessions"]
    assert len(sessions) == 2
    assert sum(1 for session in sessions if session["active"]) == 1
    assert sorted(session["record_count"] for session in sessions) == [0, 1]

    cleared = cli_runner.invoke(app, ["clear", "--db", str(db_path)])
    assert cleared.exit_code == 0, cleared.output
    assert "All data cleared. New session:" in cleared.output

    listed = cli_runner.invoke(app, ["session", "list", "--json", "--db", str(db_path)])
    sessions = json.loads(listed.output)["sessions"]
    assert len(sessions) == 1
    assert sessions[0]["record_count"] == 0


def test_settings_init_and_show(cli_runner: CliRunner, tmp_path: Path) -> None:
    config_path = tmp_path / "completion-metrics.toml"

    created = cli_runner.invoke(app, ["settings", "init", "--config", str(config_path)])
    assert created.exit_code == 0, created.output
    assert config_path.exists()

    again = cli_runner.invoke(app, ["settings", "init", "--config", str(config_path)])
    assert again.exit_code == 1
    assert "Use --force to overwrite" in again.output

    forced = cli_runner.invoke(
        app, ["settings", "init", "--config", str(config_path), "--force"]
    )
    assert forced.exit_code == 0

    shown = cli_runner.invoke(app, ["settings", "show", "--config", str(config_path)])
    assert shown.exit_code == 0, shown.output
    payload = json.loads(shown.output)
    assert payload["correlation"]["idle_reset_ms"] == 30 * 60 * 1000
    assert payload["capture"]["max_captured_text_chars"] > 0
