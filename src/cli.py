from __future__ import annotations

from collections.abc import Iterator
from datetime import datetime
import json
import logging
import mimetypes
import os
from pathlib import Path
import sys

import typer

from aggregation import (
    build_compact_records,
    build_dashboard_stats,
    build_latency_distribution,
    build_scenario_comparisons,
)
from records import DEFAULT_ENDPOINT, CompletionRecord, parse_jsonl_records
from recorder import CapturedExchange, CompletionRecorder
from request_meta import make_attachment
from settings import DEFAULT_CONFIG_PATH, MetricsSettings, load_settings, write_settings
from storage import MetricsStorage


logger = logging.getLogger(__name__)


def _setup_logging() -> None:
    """Configure root logger from COMPLETION_METRICS_LOG_LEVEL env var (default: WARNING)."""
    level_name = os.environ.get("COMPLETION_METRICS_LOG_LEVEL", "WARNING").upper()
    level = getattr(logging, level_name, logging.WARNING)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stderr,
    )


app = typer.Typer(no_args_is_help=True, help="Chat-completion stream metrics CLI")
session_app = typer.Typer(no_args_is_help=True, help="Capture session commands")
settings_app = typer.Typer(no_args_is_help=True, help="Settings file commands")
app.add_typer(session_app, name="session")
app.add_typer(settings_app, name="settings")


DEFAULT_METRICS_DB = Path("metrics.duckdb")
STREAM_READ_SIZE = 8192
QUANTILE_KEYS = ("p50", "p90", "p95", "p99")
BREAKDOWN_TITLES = {
    "input_mode": "Input mode",
    "file_size_bucket": "File size",
    "file_kind_set": "File kinds",
    "image_size_bucket": "Image size",
    "image_count_bucket": "Image count",
    "current_user_text_size_bucket": "User text size",
    "runtime_bucket": "Runtime",
    "stop_reason_category": "Stop reason",
    "output_length_bucket": "Output length",
}


def _read_stream(path: Path) -> Iterator[bytes]:
    with path.open("rb") as handle:
        while True:
            block = handle.read(STREAM_READ_SIZE)
            if not block:
                return
            yield block


def _format_number(value: object, digits: int = 2) -> str:
    if value is None:
        return "-"
    if isinstance(value, bool):
        return "yes" if value else "no"
    if isinstance(value, int):
        return str(value)
    try:
        return f"{float(value):.{digits}f}"
    except (TypeError, ValueError):
        return str(value)


def _format_timestamp_ms(value: object) -> str:
    if value is None:
        return "-"
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return "-"
    return datetime.fromtimestamp(numeric / 1000).astimezone().isoformat(timespec="seconds")


def _format_bytes(value: object) -> str:
    size = float(value or 0)
    if size < 1024:
        return f"{size:.0f} B"
    if size < 1024 * 1024:
        return f"{size / 1024:.1f} KB"
    return f"{size / (1024 * 1024):.1f} MB"


def _load_settings_or_exit(config: Path) -> MetricsSettings:
    try:
        return load_settings(config)
    except (OSError, ValueError) as exc:
        typer.echo(f"Failed to load settings: {exc}")
        raise typer.Exit(1)


def _render_record_summary(record: CompletionRecord) -> str:
    response = record.response
    timings = response.timings if response is not None else None
    derived = response.derived if response is not None else None
    return "\n".join(
        [
            "Completion recorded",
            f"Trace     : {record.trace_id}",
            f"Model     : {record.model}",
            f"Chain     : {record.chain_id or '-'} (turn {record.turn_number or '-'})",
            f"Finish    : {response.finish_reason if response else '-'}",
            f"Tokens    : prompt={_format_number(timings.prompt_n if timings else None)} "
            f"predicted={_format_number(timings.predicted_n if timings else None)}",
            f"Speed     : {_format_number(timings.predicted_tps if timings else None)} tok/s",
            f"Reasoning : n={_format_number(derived.reasoning_n if derived else None)} "
            f"ms={_format_number(derived.reasoning_ms if derived else None)}",
        ]
    )


def _render_dashboard(stats: dict[str, object], db: Path) -> str:
    summary = stats["summary"]
    lines = [
        "Completion summary",
        f"Completions : {summary['total_completions']}",
        f"Models      : {summary['distinct_models']}",
        f"Avg tok/s   : {_format_number(summary['avg_predicted_tps'])}",
        f"Avg TTFT    : {_format_number(summary['avg_ttft_ms'])} ms",
        f"Avg cache_n : {_format_number(summary['avg_cache_n'])}",
        f"Docs        : {_format_number(summary['document_attached_requests_pct'])}%",
        f"Images      : {_format_number(summary['image_attached_requests_pct'])}%",
        f"Last seen   : {_format_timestamp_ms(summary['last_completion_at_ms'])}",
        f"DB          : {db}",
    ]
    models = stats["models"]
    if models:
        lines.extend(["", "Models:"])
    for row in models:
        lines.append(
            (
                f"- {row['model']} completions={row['completions']} "
                f"tps={_format_number(row['avg_predicted_tps'])} "
                f"ttft_ms={_format_number(row['avg_ttft_ms'])} "
                f"reasoning_ms={_format_number(row['avg_reasoning_ms'])} "
                f"content_ms={_format_number(row['avg_content_ms'])} "
                f"docs={_format_number(row['doc_request_pct'])}% "
                f"images={_format_number(row['image_request_pct'])}%"
            )
        )
    return "\n".join(lines)


def _render_scenarios(comparison: dict[str, object]) -> str:
    lines = [
        "Scenario comparison",
        f"Model   : {comparison['selected_model'] or '-'}",
        f"Records : {comparison['selected_model_record_count']}",
    ]
    for name, rows in comparison["breakdowns"].items():
        lines.extend(["", f"{BREAKDOWN_TITLES.get(name, name)}:"])
        for row in rows:
            line = (
                f"- {row['label']:<20} count={row['count']:<5} "
                f"tps={_format_number(row['avg_predicted_tps'])} "
                f"ttft_ms={_format_number(row['avg_ttft_ms'])} "
                f"stop_ms={_format_number(row['avg_request_to_stop_ms'])}"
            )
            if "avg_ms_per_1k_output_tokens" in row:
                line += f" ms_per_1k={_format_number(row['avg_ms_per_1k_output_tokens'])}"
            lines.append(line)

    controls = comparison["comparisons"]["prompt_hash_controls"]
    if controls:
        lines.extend(["", "Same prompt across scenarios:"])
        for row in controls:
            lines.append(
                (
                    f"- {row['prompt_hash_prefix']} requests={row['requests']} "
                    f"scenarios={row['scenarios']} "
                    f"tps={_format_number(row['avg_predicted_tps'])}"
                )
            )
    return "\n".join(lines)


def _render_quantile_line(label: str, quantiles: dict[str, object], unit: str) -> str:
    count = int(quantiles.get("count") or 0)
    values = " ".join(
        f"{key}={_format_number(quantiles.get(key))}" for key in QUANTILE_KEYS
    )
    return f"- {label + ' (' + unit + ')':<24} count={count:<5} {values}"


def _render_latency(distribution: dict[str, dict[str, object]]) -> str:
    lines = ["Latency distribution"]
    for model, metrics in distribution.items():
        lines.extend(
            [
                "",
                f"[{model}]",
                _render_quantile_line("ttft", metrics["ttft_ms"], "ms"),
                _render_quantile_line("predicted", metrics["predicted_tps"], "tok/s"),
                _render_quantile_line("request_to_stop", metrics["request_to_stop_ms"], "ms"),
            ]
        )
    return "\n".join(lines)


@app.command("ingest")
def ingest(
    request: Path = typer.Option(..., "--request", help="Request body JSON file"),
    stream: Path = typer.Option(..., "--stream", help="Captured SSE response body"),
    context: str | None = typer.Option(
        None, "--context", help="Originating context (tab) identifier for chain correlation"
    ),
    ui_origin: str | None = typer.Option(None, "--ui-origin", help="Calling page origin"),
    endpoint: str = typer.Option(DEFAULT_ENDPOINT, "--endpoint", help="API path"),
    attachments: list[Path] | None = typer.Option(
        None, "--file", help="Attached file sent with the request (repeatable)"
    ),
    request_start_ms: float | None = typer.Option(
        None, "--request-start-ms", help="Epoch ms when the request was sent"
    ),
    headers_ms: float | None = typer.Option(
        None, "--headers-ms", help="Epoch ms when response headers arrived"
    ),
    config: Path = typer.Option(DEFAULT_CONFIG_PATH, "--config", help="Settings TOML path"),
    json_output: bool = typer.Option(False, "--json", help="Output machine-readable JSON"),
    db: Path = typer.Option(DEFAULT_METRICS_DB, "--db", "-d", help="DuckDB metrics file"),
) -> None:
    for path in (request, stream, *(attachments or [])):
        if not path.exists():
            typer.echo(f"File not found: {path}")
            raise typer.Exit(1)

    settings = _load_settings_or_exit(config)
    exchange = CapturedExchange(
        request_body=request.read_bytes(),
        chunks=_read_stream(stream),
        context_id=context,
        ui_origin=ui_origin,
        endpoint=endpoint,
        attachments=tuple(
            make_attachment(path.name, mimetypes.guess_type(path.name)[0], path.stat().st_size)
            for path in attachments or []
        ),
        request_start_ms=request_start_ms,
        response_headers_ms=headers_ms,
    )

    storage = MetricsStorage(db)
    try:
        record = CompletionRecorder(storage, settings).record_exchange(exchange)
    finally:
        storage.close()

    if record is None:
        typer.echo("No completion recorded: stream ended without a timed terminal chunk.")
        raise typer.Exit(1)
    if json_output:
        typer.echo(record.to_json())
        return
    typer.echo(_render_record_summary(record))


@app.command("status")
def status(
    json_output: bool = typer.Option(False, "--json", help="Output machine-readable JSON"),
    db: Path = typer.Option(DEFAULT_METRICS_DB, "--db", "-d", help="DuckDB metrics file"),
) -> None:
    storage = MetricsStorage(db)
    try:
        session_id = storage.get_active_session_id()
        payload = {
            "session_id": session_id,
            "record_count": storage.count_records(session_id),
            "session_size_bytes": storage.estimate_session_size_bytes(session_id),
        }
    finally:
        storage.close()

    if json_output:
        typer.echo(json.dumps(payload, ensure_ascii=False))
        return
    typer.echo(
        "\n".join(
            [
                f"Session : {payload['session_id']}",
                f"Records : {payload['record_count']}",
                f"Size    : {_format_bytes(payload['session_size_bytes'])}",
                f"DB      : {db}",
            ]
        )
    )


@app.command("stats")
def stats(
    json_output: bool = typer.Option(False, "--json", help="Output machine-readable JSON"),
    db: Path = typer.Option(DEFAULT_METRICS_DB, "--db", "-d", help="DuckDB metrics file"),
) -> None:
    storage = MetricsStorage(db)
    try:
        dashboard = build_dashboard_stats(storage.list_records())
    finally:
        storage.close()

    if json_output:
        typer.echo(json.dumps(dashboard, ensure_ascii=False))
        return
    typer.echo(_render_dashboard(dashboard, db=db))


@app.command("scenarios")
def scenarios(
    model: str | None = typer.Option(
        None, "--model", help="Model to compare. Defaults to the most frequent model."
    ),
    json_output: bool = typer.Option(False, "--json", help="Output machine-readable JSON"),
    db: Path = typer.Option(DEFAULT_METRICS_DB, "--db", "-d", help="DuckDB metrics file"),
) -> None:
    storage = MetricsStorage(db)
    try:
        comparison = build_scenario_comparisons(storage.list_records(), selected_model=model)
    finally:
        storage.close()

    if comparison["selected_model"] is None:
        typer.echo("No completions recorded.")
        raise typer.Exit(1)
    if json_output:
        typer.echo(json.dumps(comparison, ensure_ascii=False))
        return
    typer.echo(_render_scenarios(comparison))


@app.command("latency")
def latency(
    model: str | None = typer.Option(None, "--model", help="Restrict to one model"),
    json_output: bool = typer.Option(False, "--json", help="Output machine-readable JSON"),
    db: Path = typer.Option(DEFAULT_METRICS_DB, "--db", "-d", help="DuckDB metrics file"),
) -> None:
    storage = MetricsStorage(db)
    try:
        distribution = build_latency_distribution(storage.list_records(), selected_model=model)
    finally:
        storage.close()

    if not distribution:
        typer.echo(f"Model not found: {model}" if model else "No completions recorded.")
        raise typer.Exit(1)
    if json_output:
        typer.echo(json.dumps(distribution, ensure_ascii=False))
        return
    typer.echo(_render_latency(distribution))


@app.command("records")
def records(
    json_output: bool = typer.Option(False, "--json", help="Output machine-readable JSON"),
    db: Path = typer.Option(DEFAULT_METRICS_DB, "--db", "-d", help="DuckDB metrics file"),
) -> None:
    storage = MetricsStorage(db)
    try:
        rows = build_compact_records(storage.list_records())
    finally:
        storage.close()

    if json_output:
        typer.echo(json.dumps(rows, ensure_ascii=False))
        return
    if not rows:
        typer.echo("No completions recorded.")
        return
    for row in rows:
        typer.echo(
            (
                f"{_format_timestamp_ms(row['captured_at_ms'])}\t{row['model']}\t"
                f"{row['chain_id'] or '-'}#{row['turn_number'] or '-'}\t"
                f"{row['input_mode']}\t{_format_number(row['predicted_tps'])} tok/s\t"
                f"ttft={_format_number(row['ttft_ms'])}ms\t{row['finish_reason'] or '-'}"
            )
        )


@app.command("export")
def export(
    output: Path = typer.Option(..., "--output", "-o", help="Destination JSONL file"),
    db: Path = typer.Option(DEFAULT_METRICS_DB, "--db", "-d", help="DuckDB metrics file"),
) -> None:
    storage = MetricsStorage(db)
    try:
        session_id = storage.get_active_session_id()
        content = storage.export_jsonl(session_id)
    finally:
        storage.close()

    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_text(content, encoding="utf-8")
    line_count = content.count("\n")
    typer.echo(f"Exported {line_count} record(s) from session {session_id} to {output}")


@app.command("import")
def import_records(
    file: Path = typer.Argument(..., help="JSONL file produced by export"),
    db: Path = typer.Option(DEFAULT_METRICS_DB, "--db", "-d", help="DuckDB metrics file"),
) -> None:
    if not file.exists():
        typer.echo(f"File not found: {file}")
        raise typer.Exit(1)
    try:
        rows = parse_jsonl_records(file.read_text(encoding="utf-8"))
    except ValueError as exc:
        typer.echo(f"Import failed: {exc}")
        raise typer.Exit(1)

    storage = MetricsStorage(db)
    try:
        result = storage.import_records(rows)
    except ValueError as exc:
        typer.echo(f"Import failed: {exc}")
        raise typer.Exit(1)
    finally:
        storage.close()
    typer.echo(f"Imported {result['imported']} record(s) into session {result['session_id']}")


@app.command("clear")
def clear(
    db: Path = typer.Option(DEFAULT_METRICS_DB, "--db", "-d", help="DuckDB metrics file"),
) -> None:
    storage = MetricsStorage(db)
    try:
        storage.clear_all()
        session_id = storage.start_new_session()
    finally:
        storage.close()
    typer.echo(f"All data cleared. New session: {session_id}")


@session_app.command("new")
def session_new(
    db: Path = typer.Option(DEFAULT_METRICS_DB, "--db", "-d", help="DuckDB metrics file"),
) -> None:
    storage = MetricsStorage(db)
    try:
        session_id = storage.start_new_session()
    finally:
        storage.close()
    typer.echo(f"Session started: {session_id}")


@session_app.command("list")
def session_list(
    json_output: bool = typer.Option(False, "--json", help="Output machine-readable JSON"),
    db: Path = typer.Option(DEFAULT_METRICS_DB, "--db", "-d", help="DuckDB metrics file"),
) -> None:
    storage = MetricsStorage(db)
    try:
        sessions = storage.list_sessions_with_stats()
    finally:
        storage.close()

    if json_output:
        typer.echo(json.dumps({"db": str(db), "sessions": sessions}, ensure_ascii=False))
        return
    for session in sessions:
        marker = "*" if session["active"] else " "
        typer.echo(
            (
                f"{marker} {session['session_id']} "
                f"created={_format_timestamp_ms(session['created_at_ms'])} "
                f"records={session['record_count']} "
                f"last={_format_timestamp_ms(session['last_captured_at_ms'])}"
            )
        )


@settings_app.command("init")
def settings_init(
    config: Path = typer.Option(DEFAULT_CONFIG_PATH, "--config", help="Settings TOML path"),
    force: bool = typer.Option(False, "--force", help="Overwrite an existing file"),
) -> None:
    if config.exists() and not force:
        typer.echo(f"Settings file already exists: {config}. Use --force to overwrite.")
        raise typer.Exit(1)
    write_settings(MetricsSettings(), config)
    typer.echo(f"Settings written: {config}")


@settings_app.command("show")
def settings_show(
    config: Path = typer.Option(DEFAULT_CONFIG_PATH, "--config", help="Settings TOML path"),
) -> None:
    settings = _load_settings_or_exit(config)
    typer.echo(json.dumps(settings.to_dict(), ensure_ascii=False, indent=2))


def main() -> None:
    _setup_logging()
    app()


if __name__ == "__main__":
    main()
