from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from metrics import RunningMean, quantile_summary, round2, safe_pct, to_finite_number
from records import CompletionRecord


FILE_VS_TEXT_LIMIT = 50
PROMPT_HASH_CONTROL_LIMIT = 30
PROMPT_HASH_PREFIX_CHARS = 12

DashboardStats = dict[str, Any]
ScenarioComparison = dict[str, Any]


def _clean(records: Iterable[CompletionRecord | None]) -> list[CompletionRecord]:
    return [record for record in records if record is not None and record.is_complete]


def _sort_number(value: float | None) -> float:
    return value if value is not None else 0.0


@dataclass(slots=True)
class _ModelAccumulator:
    model: str
    completions: int = 0
    prompt_n: RunningMean = field(default_factory=RunningMean)
    predicted_n: RunningMean = field(default_factory=RunningMean)
    prompt_ms: RunningMean = field(default_factory=RunningMean)
    predicted_ms: RunningMean = field(default_factory=RunningMean)
    prompt_tps: RunningMean = field(default_factory=RunningMean)
    predicted_tps: RunningMean = field(default_factory=RunningMean)
    reasoning_ms: RunningMean = field(default_factory=RunningMean)
    content_ms: RunningMean = field(default_factory=RunningMean)
    cache_n: RunningMean = field(default_factory=RunningMean)
    doc_count: int = 0
    image_count: int = 0
    last_seen_at_ms: float | None = None

    def add(self, record: CompletionRecord) -> None:
        request, response = record.request, record.response
        timings = response.timings
        self.completions += 1
        self.prompt_n.add(timings.prompt_n)
        self.predicted_n.add(timings.predicted_n)
        self.prompt_ms.add(timings.prompt_ms)
        self.predicted_ms.add(timings.predicted_ms)
        self.prompt_tps.add(timings.prompt_tps)
        self.predicted_tps.add(timings.predicted_tps)
        self.reasoning_ms.add(response.derived.reasoning_ms)
        self.content_ms.add(response.derived.content_ms)
        self.cache_n.add(timings.cache_n)
        if request.has_document:
            self.doc_count += 1
        if request.has_images is True:
            self.image_count += 1
        captured_at = to_finite_number(record.captured_at_ms)
        if captured_at is not None and (
            self.last_seen_at_ms is None or captured_at > self.last_seen_at_ms
        ):
            self.last_seen_at_ms = captured_at

    def to_row(self) -> dict[str, Any]:
        return {
            "model": self.model,
            "completions": self.completions,
            "avg_prompt_n": self.prompt_n.rounded(),
            "avg_predicted_n": self.predicted_n.rounded(),
            "avg_ttft_ms": self.prompt_ms.rounded(),
            "avg_predicted_ms": self.predicted_ms.rounded(),
            "avg_prompt_tps": self.prompt_tps.rounded(),
            "avg_predicted_tps": self.predicted_tps.rounded(),
            "avg_reasoning_ms": self.reasoning_ms.rounded(),
            "avg_content_ms": self.content_ms.rounded(),
            "avg_cache_n": self.cache_n.rounded(),
            "doc_request_pct": round2(safe_pct(self.doc_count, self.completions)),
            "image_request_pct": round2(safe_pct(self.image_count, self.completions)),
            "last_seen_at_ms": self.last_seen_at_ms,
        }


def build_dashboard_stats(records: Iterable[CompletionRecord | None]) -> DashboardStats:
    clean_records = _clean(records)
    total = len(clean_records)
    overall = _ModelAccumulator(model="*")
    per_model: dict[str, _ModelAccumulator] = {}

    for record in clean_records:
        overall.add(record)
        model = record.model
        if model not in per_model:
            per_model[model] = _ModelAccumulator(model=model)
        per_model[model].add(record)

    models = sorted(
        (accumulator.to_row() for accumulator in per_model.values()),
        key=lambda row: (
            -row["completions"],
            -_sort_number(row["avg_predicted_tps"]),
            row["model"],
        ),
    )
    return {
        "summary": {
            "total_completions": total,
            "distinct_models": len(models),
            "avg_predicted_tps": overall.predicted_tps.rounded(),
            "avg_ttft_ms": overall.prompt_ms.rounded(),
            "avg_cache_n": overall.cache_n.rounded(),
            "last_completion_at_ms": overall.last_seen_at_ms,
            "document_attached_requests_pct": round2(safe_pct(overall.doc_count, total)),
            "image_attached_requests_pct": round2(safe_pct(overall.image_count, total)),
        },
        "models": models,
    }


@dataclass(slots=True)
class ScenarioBucket:
    label: str
    count: int = 0
    predicted_tps: RunningMean = field(default_factory=RunningMean)
    ttft_ms: RunningMean = field(default_factory=RunningMean)
    predicted_ms: RunningMean = field(default_factory=RunningMean)
    request_to_stop_ms: RunningMean = field(default_factory=RunningMean)
    reasoning_ms: RunningMean = field(default_factory=RunningMean)
    content_ms: RunningMean = field(default_factory=RunningMean)
    output_tokens: RunningMean = field(default_factory=RunningMean)
    output_chars: RunningMean = field(default_factory=RunningMean)
    file_bytes: RunningMean = field(default_factory=RunningMean)
    user_text_bytes: RunningMean = field(default_factory=RunningMean)
    cache_n: RunningMean = field(default_factory=RunningMean)

    def add(self, record: CompletionRecord) -> None:
        response = record.response
        payload = record.request.payload_signals
        self.count += 1
        self.predicted_tps.add(response.timings.predicted_tps)
        self.ttft_ms.add(response.timings.prompt_ms)
        self.predicted_ms.add(response.timings.predicted_ms)
        self.request_to_stop_ms.add(response.client_timing.duration_request_to_stop_ms)
        self.reasoning_ms.add(response.derived.reasoning_ms)
        self.content_ms.add(response.derived.content_ms)
        self.output_tokens.add(response.output_length.output_tokens_estimate)
        self.output_chars.add(response.output_length.output_chars_estimate)
        self.file_bytes.add(payload.file_bytes_total)
        self.user_text_bytes.add(payload.current_user_text_bytes)
        self.cache_n.add(response.timings.cache_n)

    def to_row(self) -> dict[str, Any]:
        return {
            "label": self.label,
            "count": self.count,
            "avg_predicted_tps": self.predicted_tps.rounded(),
            "avg_ttft_ms": self.ttft_ms.rounded(),
            "avg_predicted_ms": self.predicted_ms.rounded(),
            "avg_request_to_stop_ms": self.request_to_stop_ms.rounded(),
            "avg_reasoning_ms": self.reasoning_ms.rounded(),
            "avg_content_ms": self.content_ms.rounded(),
            "avg_output_tokens": self.output_tokens.rounded(),
            "avg_output_chars": self.output_chars.rounded(),
            "avg_file_bytes": self.file_bytes.rounded(),
            "avg_user_text_bytes": self.user_text_bytes.rounded(),
            "avg_cache_n": self.cache_n.rounded(),
        }


class SortPolicy(Enum):
    COUNT = "count"
    LABEL = "label"


@dataclass(frozen=True, slots=True)
class ScenarioDimension:
    name: str
    key: Callable[[CompletionRecord], str | None]
    sort: SortPolicy = SortPolicy.COUNT
    fallback: str = "unknown"
    finalize: Callable[[dict[str, Any]], dict[str, Any]] | None = None

    def sort_key(self, row: dict[str, Any]) -> tuple[Any, ...]:
        label = row["label"]
        if self.sort is SortPolicy.LABEL:
            return (label,)
        return (-row["count"], -_sort_number(row["avg_predicted_tps"]), label)


def image_count_bucket(record: CompletionRecord) -> str:
    count = to_finite_number(record.request.input_composition.image_count)
    if count is None:
        return "unknown"
    if count <= 0:
        return "0"
    if count == 1:
        return "1"
    if count == 2:
        return "2"
    if count <= 4:
        return "3-4"
    return "5+"


def output_length_bucket(record: CompletionRecord) -> str:
    tokens = to_finite_number(record.response.output_length.output_tokens_estimate)
    if tokens is None:
        return "unknown"
    if tokens <= 128:
        return "0-128"
    if tokens <= 512:
        return "129-512"
    if tokens <= 1024:
        return "513-1024"
    return "1025+"


def _with_ms_per_1k_tokens(row: dict[str, Any]) -> dict[str, Any]:
    predicted_ms = row["avg_predicted_ms"]
    output_tokens = row["avg_output_tokens"]
    ms_per_1k = None
    if predicted_ms is not None and output_tokens is not None and output_tokens > 0:
        ms_per_1k = (predicted_ms / output_tokens) * 1000
    return {**row, "avg_ms_per_1k_output_tokens": round2(ms_per_1k)}


SCENARIO_DIMENSIONS: tuple[ScenarioDimension, ...] = (
    ScenarioDimension("input_mode", lambda r: r.request.scenario_labels.input_mode),
    ScenarioDimension(
        "file_size_bucket",
        lambda r: r.request.scenario_labels.file_size_bucket,
        sort=SortPolicy.LABEL,
    ),
    ScenarioDimension(
        "file_kind_set", lambda r: r.request.scenario_labels.file_kind_set, fallback="none"
    ),
    ScenarioDimension(
        "image_size_bucket",
        lambda r: r.request.scenario_labels.image_size_bucket,
        sort=SortPolicy.LABEL,
    ),
    ScenarioDimension("image_count_bucket", image_count_bucket),
    ScenarioDimension(
        "current_user_text_size_bucket",
        lambda r: r.request.scenario_labels.current_user_text_size_bucket,
        sort=SortPolicy.LABEL,
    ),
    ScenarioDimension(
        "runtime_bucket",
        lambda r: r.request.scenario_labels.runtime_bucket,
        fallback="default_or_unknown",
    ),
    ScenarioDimension("stop_reason_category", lambda r: r.response.stop_reason_category),
    ScenarioDimension(
        "output_length_bucket",
        output_length_bucket,
        finalize=_with_ms_per_1k_tokens,
    ),
)


def group_by_dimension(
    records: Iterable[CompletionRecord], dimension: ScenarioDimension
) -> list[dict[str, Any]]:
    buckets: dict[str, ScenarioBucket] = {}
    for record in records:
        label = dimension.key(record) or dimension.fallback
        if label not in buckets:
            buckets[label] = ScenarioBucket(label=label)
        buckets[label].add(record)

    rows = [bucket.to_row() for bucket in buckets.values()]
    if dimension.finalize is not None:
        rows = [dimension.finalize(row) for row in rows]
    return sorted(rows, key=dimension.sort_key)


def _input_mode(record: CompletionRecord) -> str:
    return record.request.scenario_labels.input_mode or "unknown"


def _file_vs_text_rows(records: list[CompletionRecord]) -> list[dict[str, Any]]:
    rows: list[dict[str, Any]] = []
    for record in records:
        payload = record.request.payload_signals
        file_bytes = to_finite_number(payload.file_bytes_total)
        user_text_bytes = to_finite_number(payload.current_user_text_bytes)
        if file_bytes is None and user_text_bytes is None:
            continue
        rows.append(
            {
                "trace_id": record.trace_id,
                "captured_at_ms": to_finite_number(record.captured_at_ms),
                "input_mode": _input_mode(record),
                "file_kind_set": record.request.scenario_labels.file_kind_set or "none",
                "file_bytes_total": file_bytes,
                "current_user_text_bytes": user_text_bytes,
                "predicted_tps": record.response.timings.predicted_tps,
                "predicted_ms": record.response.timings.predicted_ms,
                "request_to_stop_ms": record.response.client_timing.duration_request_to_stop_ms,
            }
        )
    rows.sort(
        key=lambda row: (
            -_sort_number(row["file_bytes_total"]),
            _sort_number(row["captured_at_ms"]),
            row["trace_id"],
        )
    )
    return rows[:FILE_VS_TEXT_LIMIT]


@dataclass(slots=True)
class _PromptHashGroup:
    prompt_hash: str
    count: int = 0
    input_modes: set[str] = field(default_factory=set)
    predicted_tps: RunningMean = field(default_factory=RunningMean)


def _prompt_hash_controls(records: list[CompletionRecord]) -> list[dict[str, Any]]:
    groups: dict[str, _PromptHashGroup] = {}
    for record in records:
        prompt_hash = record.request.prompt_identity.prompt_hash
        if not prompt_hash:
            continue
        if prompt_hash not in groups:
            groups[prompt_hash] = _PromptHashGroup(prompt_hash=prompt_hash)
        group = groups[prompt_hash]
        group.count += 1
        group.input_modes.add(_input_mode(record))
        group.predicted_tps.add(record.response.timings.predicted_tps)

    controls = [
        {
            "prompt_hash_prefix": group.prompt_hash[:PROMPT_HASH_PREFIX_CHARS],
            "requests": group.count,
            "scenario_count": len(group.input_modes),
            "scenarios": ", ".join(sorted(group.input_modes)),
            "avg_predicted_tps": group.predicted_tps.rounded(),
            "_hash": group.prompt_hash,
        }
        for group in groups.values()
        if len(group.input_modes) > 1
    ]
    controls.sort(key=lambda row: (-row["requests"], row["_hash"]))
    return [
        {key: value for key, value in row.items() if key != "_hash"}
        for row in controls[:PROMPT_HASH_CONTROL_LIMIT]
    ]


def model_options(records: Iterable[CompletionRecord | None]) -> list[dict[str, Any]]:
    counts: dict[str, int] = {}
    for record in _clean(records):
        counts[record.model] = counts.get(record.model, 0) + 1
    return [
        {"model": model, "count": count}
        for model, count in sorted(counts.items(), key=lambda item: (-item[1], item[0]))
    ]


def build_scenario_comparisons(
    records: Iterable[CompletionRecord | None], selected_model: str | None = None
) -> ScenarioComparison:
    clean_records = _clean(records)
    options = model_options(clean_records)
    known_models = {option["model"] for option in options}
    if selected_model and selected_model in known_models:
        effective_model = selected_model
    else:
        effective_model = options[0]["model"] if options else None

    model_records = [record for record in clean_records if record.model == effective_model]
    return {
        "selected_model": effective_model,
        "model_options": options,
        "selected_model_record_count": len(model_records),
        "breakdowns": {
            dimension.name: group_by_dimension(model_records, dimension)
            for dimension in SCENARIO_DIMENSIONS
        },
        "comparisons": {
            "file_vs_text": _file_vs_text_rows(model_records),
            "prompt_hash_controls": _prompt_hash_controls(model_records),
        },
    }


def build_compact_records(records: Iterable[CompletionRecord | None]) -> list[dict[str, Any]]:
    rows: list[dict[str, Any]] = []
    for record in _clean(records):
        request, response = record.request, record.response
        client_timing = response.client_timing
        ttft_ms = client_timing.duration_request_to_first_stream_chunk_ms
        if ttft_ms is None:
            ttft_ms = response.timings.prompt_ms
        rows.append(
            {
                "trace_id": record.trace_id,
                "captured_at_ms": to_finite_number(record.captured_at_ms),
                "chain_id": record.chain_id,
                "turn_number": record.turn_number,
                "model": record.model,
                "input_mode": _input_mode(record),
                "has_images": request.has_images is True,
                "has_files": request.has_files,
                "has_document": request.has_document,
                "file_kind_set": request.scenario_labels.file_kind_set or "none",
                "finish_reason": response.finish_reason,
                "prompt_n": response.timings.prompt_n,
                "predicted_n": response.timings.predicted_n,
                "prompt_ms": response.timings.prompt_ms,
                "predicted_ms": response.timings.predicted_ms,
                "prompt_tps": response.timings.prompt_tps,
                "predicted_tps": response.timings.predicted_tps,
                "cache_n": response.timings.cache_n,
                "ttft_ms": ttft_ms,
                "request_to_headers_ms": client_timing.duration_request_to_headers_ms,
                "headers_to_first_stream_chunk_ms": (
                    client_timing.duration_headers_to_first_stream_chunk_ms
                ),
                "first_stream_chunk_to_stop_ms": client_timing.duration_first_stream_chunk_to_stop_ms,
                "request_to_stop_ms": client_timing.duration_request_to_stop_ms,
                "reasoning_n": response.derived.reasoning_n,
                "reasoning_ms": response.derived.reasoning_ms,
                "content_n": response.derived.content_n,
                "content_ms": response.derived.content_ms,
                "text_bytes_total": request.input_composition.text_bytes_total,
                "file_bytes_total": request.input_composition.file_bytes_total,
                "output_tokens_estimate": response.output_length.output_tokens_estimate,
                "output_chars_estimate": response.output_length.output_chars_estimate,
                "prompt_hash": request.prompt_identity.prompt_hash,
            }
        )
    rows.sort(key=lambda row: (_sort_number(row["captured_at_ms"]), row["trace_id"]))
    return rows


def build_latency_distribution(
    records: Iterable[CompletionRecord | None], selected_model: str | None = None
) -> dict[str, dict[str, Any]]:
    samples: dict[str, dict[str, list[float]]] = {}
    for row in build_compact_records(records):
        if selected_model and row["model"] != selected_model:
            continue
        model_samples = samples.setdefault(
            row["model"], {"ttft_ms": [], "predicted_tps": [], "request_to_stop_ms": []}
        )
        for metric, values in model_samples.items():
            value = to_finite_number(row[metric])
            if value is not None:
                values.append(value)

    return {
        model: {metric: quantile_summary(values) for metric, values in model_samples.items()}
        for model, model_samples in sorted(samples.items())
    }
