from __future__ import annotations

import json
from pathlib import Path
import sys

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from recorder import CapturedExchange, CompletionRecorder, make_trace_id
from settings import MetricsSettings
from storage import MetricsStorage


class StepClock:
    def __init__(self, start: int = 1000, step: int = 100) -> None:
        self.current = start - step
        self.step = step

    def __call__(self) -> int:
        self.current += self.step
        return self.current


class FailingCorrelator:
    def assign(self, record, context_id, *, sender_origin=None):  # noqa: ANN001
        raise RuntimeError("chain store unavailable")


def _stream(text: str, predicted_n: int = 10) -> list[bytes]:
    def event(delta: dict[str, object], finish_reason: str | None, timings: bool) -> bytes:
        chunk: dict[str, object] = {
            "object": "chat.completion.chunk",
            "id": "chatcmpl-1",
            "model": "qwen3-8b",
            "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
        }
        if timings:
            chunk["timings"] = {
                "prompt_n": 8,
                "prompt_ms": 40.0,
                "predicted_n": predicted_n,
                "predicted_ms": predicted_n * 10.0,
                "predicted_per_second": 100.0,
            }
        return f"data: {json.dumps(chunk)}\n\n".encode("utf-8")

    return [
        event({"content": text}, None, False),
        event({}, "stop", True),
        b"data: [DONE]\n\n",
    ]


def _body(*turns: str) -> bytes:
    messages: list[dict[str, str]] = []
    for index, text in enumerate(turns):
        if index:
            messages.append({"role": "assistant", "content": f"reply {index}"})
        messages.append({"role": "user", "content": text})
    return json.dumps({"model": "qwen3-8b", "stream": True, "messages": messages}).encode("utf-8")


def _exchange(*turns: str, **overrides: object) -> CapturedExchange:
    options: dict[str, object] = {
        "request_body": _body(*turns),
        "chunks": _stream("answer"),
        "context_id": "tab-1",
        "ui_origin": "http://localhost:8080",
    }
    options.update(overrides)
    return CapturedExchange(**options)


@pytest.fixture
def storage(tmp_path: Path):
    metrics_storage = MetricsStorage(tmp_path / "metrics.duckdb")
    yield metrics_storage
    metrics_storage.close()


@pytest.fixture
def recorder(storage: MetricsStorage) -> CompletionRecorder:
    return CompletionRecorder(storage, clock=StepClock())


def test_make_trace_id_format() -> None:
    trace_id = make_trace_id(1_700_000_000_000)
    prefix, timestamp, suffix = trace_id.split("-")
    assert (prefix, timestamp) == ("t", "1700000000000")
    assert len(suffix) == 6


def test_record_exchange_parses_and_persists(
    recorder: CompletionRecorder, storage: MetricsStorage
) -> None:
    record = recorder.record_exchange(_exchange("hello", trace_id="t-fixed"))

    assert record is not None
    assert record.trace_id == "t-fixed"
    assert record.model == "qwen3-8b"
    assert record.response_text == "answer"
    assert record.prompt_text == "hello"
    assert record.turn_number == 1
    assert record.chain_id is not None
    stored = storage.list_records()
    assert [r.trace_id for r in stored] == ["t-fixed"]
    assert stored[0].chain_id == record.chain_id


def test_follow_up_exchange_continues_chain(recorder: CompletionRecorder) -> None:
    first = recorder.record_exchange(_exchange("hello"))
    second = recorder.record_exchange(_exchange("hello", "and then?"))
    other_tab = recorder.record_exchange(_exchange("hi", context_id="tab-2"))

    assert second.chain_id == first.chain_id
    assert second.turn_number == 2
    assert other_tab.chain_id != first.chain_id
    assert other_tab.turn_number == 1


def test_non_streaming_response_is_skipped(
    recorder: CompletionRecorder, storage: MetricsStorage
) -> None:
    record = recorder.record_exchange(_exchange("hello", content_type="application/json"))

    assert record is None
    assert storage.count_records() == 0


def test_stream_without_timings_is_not_stored(
    recorder: CompletionRecorder, storage: MetricsStorage
) -> None:
    chunks = [b'data: {"object": "chat.completion.chunk", "choices": []}\n\n', b"data: [DONE]\n\n"]

    assert recorder.record_exchange(_exchange("hello", chunks=chunks)) is None
    assert storage.count_records() == 0


def test_settings_limit_captured_text(storage: MetricsStorage) -> None:
    recorder = CompletionRecorder(
        storage, MetricsSettings(max_captured_text_chars=3), clock=StepClock()
    )

    record = recorder.record_exchange(_exchange("hello"))

    assert record.prompt_text == "hel"
    assert record.response_text == "ans"


def test_relay_forwards_chunks_and_resolves_future(
    recorder: CompletionRecorder, storage: MetricsStorage
) -> None:
    chunks = _stream("relayed")
    exchange = _exchange("hello")

    forwarded, future = recorder.relay(exchange, iter(chunks))

    assert list(forwarded) == chunks
    record = future.result(timeout=5)
    assert record is not None
    assert record.response_text == "relayed"
    assert storage.count_records() == 1


def test_relay_passes_non_streaming_body_through(recorder: CompletionRecorder) -> None:
    body = [b'{"choices": []}']

    forwarded, future = recorder.relay(_exchange("hello", content_type="application/json"), body)

    assert list(forwarded) == body
    assert future.result(timeout=5) is None


def test_record_many_preserves_input_order(
    recorder: CompletionRecorder, storage: MetricsStorage
) -> None:
    exchanges = [
        _exchange(f"prompt {index}", trace_id=f"t-{index}", context_id=None, chunks=_stream(f"a{index}"))
        for index in range(6)
    ]

    results = recorder.record_many(exchanges, concurrency=3)

    assert [record.trace_id for record in results] == [f"t-{index}" for index in range(6)]
    assert [record.response_text for record in results] == [f"a{index}" for index in range(6)]
    assert storage.count_records() == 6


def test_record_many_keeps_slots_for_dropped_exchanges(recorder: CompletionRecorder) -> None:
    results = recorder.record_many(
        [_exchange("hello"), _exchange("skip", content_type="text/html")]
    )

    assert results[0] is not None
    assert results[1] is None


def test_record_many_rejects_invalid_concurrency(recorder: CompletionRecorder) -> None:
    with pytest.raises(ValueError, match="concurrency"):
        recorder.record_many([], concurrency=0)


def test_listener_errors_do_not_block_recording(storage: MetricsStorage) -> None:
    seen = []

    def listener(record):  # noqa: ANN001
        seen.append(record.trace_id)
        raise RuntimeError("listener crashed")

    recorder = CompletionRecorder(storage, clock=StepClock(), on_record=listener)

    record = recorder.record_exchange(_exchange("hello", trace_id="t-1"))

    assert record is not None
    assert seen == ["t-1"]
    assert storage.count_records() == 1


def test_correlation_failure_still_stores_record(storage: MetricsStorage) -> None:
    recorder = CompletionRecorder(storage, correlator=FailingCorrelator(), clock=StepClock())

    record = recorder.record_exchange(_exchange("hello"))

    assert record is not None
    assert record.chain_id is None
    assert storage.list_records()[0].chain_id is None


def test_mapping_body_with_unserializable_extras_is_recorded(
    recorder: CompletionRecorder, storage: MetricsStorage
) -> None:
    body = {
        "model": "qwen3-8b",
        "messages": [{"role": "user", "content": "hello"}],
        "metadata": {"tags": {"a", "b"}},
    }

    record = recorder.record_exchange(_exchange("hello", request_body=body))

    assert record is not None
    assert record.request.body_bytes is None
    assert storage.count_records() == 1


def test_relay_ignores_chunks_after_terminal_event(
    recorder: CompletionRecorder, storage: MetricsStorage
) -> None:
    chunks = _stream("relayed") + [b": trailing\n\n"] * 5

    forwarded, future = recorder.relay(_exchange("hello"), iter(chunks))

    assert list(forwarded) == chunks
    assert future.result(timeout=5).response_text == "relayed"
    assert storage.count_records() == 1
