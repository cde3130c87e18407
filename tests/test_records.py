from __future__ import annotations

import json
from pathlib import Path
import sys

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from records import (
    ClientTiming,
    CompletionRecord,
    RequestMeta,
    ResponseMeta,
    Timings,
    has_record_sections,
    parse_jsonl_records,
)


def _record(**overrides: object) -> CompletionRecord:
    values: dict[str, object] = {
        "trace_id": "t-1",
        "captured_at_ms": 1000,
        "ui_origin": "http://localhost:8080",
        "endpoint": "/v1/chat/completions",
        "request": RequestMeta(model="model-a"),
        "response": ResponseMeta(id="cmpl-1", timings=Timings(predicted_n=10)),
    }
    values.update(overrides)
    return CompletionRecord(**values)


def test_client_timing_from_marks_computes_six_deltas() -> None:
    timing = ClientTiming.from_marks(1000, 1050, 1200, 2000)
    assert timing.duration_request_to_headers_ms == 50
    assert timing.duration_request_to_first_stream_chunk_ms == 200
    assert timing.duration_headers_to_first_stream_chunk_ms == 150
    assert timing.duration_first_stream_chunk_to_stop_ms == 800
    assert timing.duration_headers_to_stop_ms == 950
    assert timing.duration_request_to_stop_ms == 1000


def test_client_timing_missing_mark_nulls_only_its_deltas() -> None:
    timing = ClientTiming.from_marks(1000, None, 1200, 2000)
    assert timing.duration_request_to_headers_ms is None
    assert timing.duration_headers_to_first_stream_chunk_ms is None
    assert timing.duration_headers_to_stop_ms is None
    assert timing.duration_request_to_first_stream_chunk_ms == 200
    assert timing.duration_first_stream_chunk_to_stop_ms == 800
    assert timing.duration_request_to_stop_ms == 1000


def test_client_timing_floors_negative_deltas_at_zero() -> None:
    timing = ClientTiming.from_marks(2000, 1000, None, None)
    assert timing.duration_request_to_headers_ms == 0


def test_timings_from_server_maps_per_second_fields() -> None:
    timings = Timings.from_server(
        {
            "cache_n": 4,
            "prompt_n": 12,
            "prompt_ms": 55.12345,
            "predicted_n": 100,
            "predicted_ms": 1000.0,
            "prompt_per_second": 217.7,
            "predicted_per_second": 100.0,
        }
    )
    assert timings.prompt_ms == pytest.approx(55.123)
    assert timings.prompt_tps == pytest.approx(217.7)
    assert timings.predicted_tps == pytest.approx(100.0)
    assert timings.cache_n == 4


def test_record_model_falls_back_to_response_then_unknown() -> None:
    assert _record().model == "model-a"
    assert _record(request=RequestMeta(), response=ResponseMeta(model="served")).model == "served"
    assert _record(request=None, response=None).model == "unknown"


def test_assign_chain_is_write_once() -> None:
    record = _record()
    assert not record.is_correlated

    record.assign_chain("c-1-abcdef12", 1)
    assert record.chain_id == "c-1-abcdef12"
    assert record.turn_number == 1
    assert record.is_correlated

    with pytest.raises(ValueError, match="already belongs to chain"):
        record.assign_chain("c-2-abcdef12", 2)


def test_record_json_round_trip_preserves_nested_sections() -> None:
    record = _record(reasoning_text="thinking", response_text="answer")
    record.assign_chain("c-1-abcdef12", 3)

    restored = CompletionRecord.from_json(record.to_json())

    assert restored == record
    assert json.loads(record.to_json())["v"] == 1


def test_from_dict_accepts_legacy_keys() -> None:
    restored = CompletionRecord.from_dict(
        {
            "trace_id": "t-legacy",
            "captured_at_ms": 5,
            "req": {"model": "legacy-model", "has_images": True},
            "resp": {
                "id": "cmpl-9",
                "timings": {"predicted_n": 20, "predicted_per_second": 42.0},
                "guardrails": {
                    "stop_reason_category": "completed",
                    "output_length_estimate": {
                        "output_tokens_estimate": 20,
                        "output_chars_estimate": 80,
                    },
                },
            },
            "ReasoningText": "legacy thoughts",
        }
    )

    assert restored.model == "legacy-model"
    assert restored.request.has_images is True
    assert restored.response.timings.predicted_tps == pytest.approx(42.0)
    assert restored.response.stop_reason_category == "completed"
    assert restored.response.output_length.output_chars_estimate == 80
    assert restored.reasoning_text == "legacy thoughts"


def test_from_dict_normalizes_odd_typed_fields() -> None:
    restored = CompletionRecord.from_dict(
        {
            "captured_at_ms": "yesterday",
            "request": {"model": 42, "messages_count": True},
            "response": {"timings": {"predicted_tps": "fast"}},
        }
    )
    assert restored.trace_id == "no-trace"
    assert restored.captured_at_ms is None
    assert restored.request.model is None
    assert restored.request.messages_count is None
    assert restored.response.timings.predicted_tps is None


def test_has_record_sections() -> None:
    assert has_record_sections({"request": {}, "response": {}})
    assert has_record_sections({"req": {}, "resp": {}})
    assert not has_record_sections({"request": {}})
    assert not has_record_sections(["request", "response"])


def test_parse_jsonl_records_skips_blank_lines() -> None:
    text = '\n{"request": {}, "response": {}}\n\n{"req": {}, "resp": {}}\n'
    rows = parse_jsonl_records(text)
    assert len(rows) == 2


@pytest.mark.parametrize(
    ("text", "message"),
    [
        ("", "JSONL input is empty"),
        ("   \n\n", "JSONL input is empty"),
        ('{"request": {}, "response": {}}\n{bad json', "Invalid JSON at line 2"),
        ('{"request": {}}', "Record at line 1 does not match the record schema"),
    ],
)
def test_parse_jsonl_records_errors(text: str, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        parse_jsonl_records(text)
