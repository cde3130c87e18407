from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
import json
from typing import Any

from metrics import round_ms, to_finite_number


RECORD_VERSION = 1
DEFAULT_ENDPOINT = "/v1/chat/completions"

Number = int | float


def _opt_str(value: object) -> str | None:
    return value if isinstance(value, str) else None


def _opt_bool(value: object) -> bool | None:
    return value if isinstance(value, bool) else None


def _opt_int(value: object) -> int | None:
    number = to_finite_number(value)
    if number is None:
        return None
    return int(number)


def _mapping(value: object) -> Mapping[str, Any]:
    return value if isinstance(value, Mapping) else {}


def _count_map(value: object) -> dict[str, Number]:
    counts: dict[str, Number] = {}
    for key, raw in _mapping(value).items():
        number = to_finite_number(raw)
        if number is not None:
            counts[str(key)] = number
    return counts


def _section(data: Mapping[str, Any], *names: str) -> Mapping[str, Any] | None:
    for name in names:
        value = data.get(name)
        if isinstance(value, Mapping):
            return value
    return None


def _delta(later: Number | None, earlier: Number | None) -> Number | None:
    if later is None or earlier is None:
        return None
    return max(0, later - earlier)


@dataclass(frozen=True, slots=True)
class AttachmentInfo:
    name: str | None
    mime: str | None
    size_bytes: Number | None
    kind: str

    def to_dict(self) -> dict[str, object]:
        return {
            "name": self.name,
            "type": self.mime,
            "size": self.size_bytes,
            "kind": self.kind,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AttachmentInfo":
        return cls(
            name=_opt_str(data.get("name")),
            mime=_opt_str(data.get("type", data.get("mime"))),
            size_bytes=to_finite_number(data.get("size", data.get("size_bytes"))),
            kind=_opt_str(data.get("kind")) or "other",
        )


@dataclass(frozen=True, slots=True)
class PromptIdentity:
    prompt_hash: str | None = None
    message_structure_hash: str | None = None
    hash_algorithm: str = "SHA-256"
    version: str = "v1"

    def to_dict(self) -> dict[str, object]:
        return {
            "hash_algorithm": self.hash_algorithm,
            "prompt_hash": self.prompt_hash,
            "message_structure_hash": self.message_structure_hash,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PromptIdentity":
        return cls(
            prompt_hash=_opt_str(data.get("prompt_hash")),
            message_structure_hash=_opt_str(data.get("message_structure_hash")),
            hash_algorithm=_opt_str(data.get("hash_algorithm")) or "SHA-256",
            version=_opt_str(data.get("version")) or "v1",
        )


@dataclass(frozen=True, slots=True)
class InputComposition:
    text_bytes_total: Number | None = None
    current_user_text_bytes: Number | None = None
    history_text_bytes: Number | None = None
    system_text_bytes: Number | None = None
    assistant_text_bytes: Number | None = None
    tool_text_bytes: Number | None = None
    messages_by_role_count: dict[str, Number] = field(default_factory=dict)
    messages_by_role_text_bytes: dict[str, Number] = field(default_factory=dict)
    image_count: Number | None = None
    image_bytes_total: Number | None = None
    image_mimes: tuple[str, ...] = ()
    image_mimes_by_part: tuple[str | None, ...] = ()
    image_bytes_by_part: tuple[Number | None, ...] = ()
    file_count: Number | None = None
    file_bytes_total: Number | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "text_bytes_total": self.text_bytes_total,
            "current_user_text_bytes": self.current_user_text_bytes,
            "history_text_bytes": self.history_text_bytes,
            "system_text_bytes": self.system_text_bytes,
            "assistant_text_bytes": self.assistant_text_bytes,
            "tool_text_bytes": self.tool_text_bytes,
            "messages_by_role_count": dict(self.messages_by_role_count),
            "messages_by_role_text_bytes": dict(self.messages_by_role_text_bytes),
            "image_parts_count": self.image_count,
            "image_count": self.image_count,
            "image_bytes_total": self.image_bytes_total,
            "image_mimes": list(self.image_mimes),
            "image_mimes_by_part": list(self.image_mimes_by_part),
            "image_bytes_by_part": list(self.image_bytes_by_part),
            "file_count": self.file_count,
            "file_bytes_total": self.file_bytes_total,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "InputComposition":
        image_count = to_finite_number(data.get("image_count"))
        if image_count is None:
            image_count = to_finite_number(data.get("image_parts_count"))
        mimes_by_part = data.get("image_mimes_by_part")
        bytes_by_part = data.get("image_bytes_by_part")
        mimes = data.get("image_mimes")
        return cls(
            text_bytes_total=to_finite_number(data.get("text_bytes_total")),
            current_user_text_bytes=to_finite_number(data.get("current_user_text_bytes")),
            history_text_bytes=to_finite_number(data.get("history_text_bytes")),
            system_text_bytes=to_finite_number(data.get("system_text_bytes")),
            assistant_text_bytes=to_finite_number(data.get("assistant_text_bytes")),
            tool_text_bytes=to_finite_number(data.get("tool_text_bytes")),
            messages_by_role_count=_count_map(data.get("messages_by_role_count")),
            messages_by_role_text_bytes=_count_map(
                data.get("messages_by_role_text_bytes")
            ),
            image_count=image_count,
            image_bytes_total=to_finite_number(data.get("image_bytes_total")),
            image_mimes=tuple(
                item for item in (mimes if isinstance(mimes, list) else []) if isinstance(item, str)
            ),
            image_mimes_by_part=tuple(
                _opt_str(item) for item in (mimes_by_part if isinstance(mimes_by_part, list) else [])
            ),
            image_bytes_by_part=tuple(
                to_finite_number(item)
                for item in (bytes_by_part if isinstance(bytes_by_part, list) else [])
            ),
            file_count=to_finite_number(data.get("file_count")),
            file_bytes_total=to_finite_number(data.get("file_bytes_total")),
        )


@dataclass(frozen=True, slots=True)
class PayloadSignals:
    current_user_text_bytes: Number | None = None
    file_bytes_total: Number | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "current_user_text_bytes": self.current_user_text_bytes,
            "file_bytes_total": self.file_bytes_total,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PayloadSignals":
        return cls(
            current_user_text_bytes=to_finite_number(data.get("current_user_text_bytes")),
            file_bytes_total=to_finite_number(data.get("file_bytes_total")),
        )


@dataclass(frozen=True, slots=True)
class ScenarioLabels:
    input_mode: str | None = None
    current_user_text_size_bucket: str | None = None
    file_size_bucket: str | None = None
    image_size_bucket: str | None = None
    file_kind_set: str | None = None
    runtime_bucket: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "input_mode": self.input_mode,
            "current_user_text_size_bucket": self.current_user_text_size_bucket,
            "file_size_bucket": self.file_size_bucket,
            "image_size_bucket": self.image_size_bucket,
            "file_kind_set": self.file_kind_set,
            "runtime_bucket": self.runtime_bucket,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ScenarioLabels":
        return cls(
            input_mode=_opt_str(data.get("input_mode")),
            current_user_text_size_bucket=_opt_str(
                data.get("current_user_text_size_bucket")
            ),
            file_size_bucket=_opt_str(data.get("file_size_bucket")),
            image_size_bucket=_opt_str(data.get("image_size_bucket")),
            file_kind_set=_opt_str(data.get("file_kind_set")),
            runtime_bucket=_opt_str(data.get("runtime_bucket")),
        )


@dataclass(frozen=True, slots=True)
class RequestMeta:
    model: str | None = None
    body_bytes: Number | None = None
    messages_count: Number | None = None
    messages_bytes: Number | None = None
    images_bytes: Number | None = None
    has_images: bool | None = None
    has_files: bool = False
    has_document: bool = False
    files_count: Number = 0
    files_total_bytes: Number = 0
    files: tuple[AttachmentInfo, ...] = ()
    params: dict[str, Any] | None = None
    runtime_context: dict[str, Any] | None = None
    prompt_identity: PromptIdentity = field(default_factory=PromptIdentity)
    input_composition: InputComposition = field(default_factory=InputComposition)
    payload_signals: PayloadSignals = field(default_factory=PayloadSignals)
    scenario_labels: ScenarioLabels = field(default_factory=ScenarioLabels)

    def to_dict(self) -> dict[str, object]:
        return {
            "model": self.model,
            "body_bytes": self.body_bytes,
            "messages_count": self.messages_count,
            "messages_bytes": self.messages_bytes,
            "images_bytes": self.images_bytes,
            "has_images": self.has_images,
            "has_files": self.has_files,
            "has_document": self.has_document,
            "files_count": self.files_count,
            "files_total_bytes": self.files_total_bytes,
            "files": [item.to_dict() for item in self.files],
            "params": self.params,
            "runtime_context": self.runtime_context,
            "prompt_identity": self.prompt_identity.to_dict(),
            "input_composition": self.input_composition.to_dict(),
            "payload_signals": self.payload_signals.to_dict(),
            "scenario_labels": self.scenario_labels.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RequestMeta":
        files_raw = data.get("files")
        params = data.get("params")
        runtime_context = data.get("runtime_context")
        return cls(
            model=_opt_str(data.get("model")) or None,
            body_bytes=to_finite_number(data.get("body_bytes")),
            messages_count=to_finite_number(data.get("messages_count")),
            messages_bytes=to_finite_number(data.get("messages_bytes")),
            images_bytes=to_finite_number(data.get("images_bytes")),
            has_images=_opt_bool(data.get("has_images")),
            has_files=data.get("has_files") is True,
            has_document=data.get("has_document") is True,
            files_count=to_finite_number(data.get("files_count")) or 0,
            files_total_bytes=to_finite_number(data.get("files_total_bytes")) or 0,
            files=tuple(
                AttachmentInfo.from_dict(item)
                for item in (files_raw if isinstance(files_raw, list) else [])
                if isinstance(item, Mapping)
            ),
            params=dict(params) if isinstance(params, Mapping) else None,
            runtime_context=(
                dict(runtime_context) if isinstance(runtime_context, Mapping) else None
            ),
            prompt_identity=PromptIdentity.from_dict(_mapping(data.get("prompt_identity"))),
            input_composition=InputComposition.from_dict(
                _mapping(data.get("input_composition"))
            ),
            payload_signals=PayloadSignals.from_dict(_mapping(data.get("payload_signals"))),
            scenario_labels=ScenarioLabels.from_dict(_mapping(data.get("scenario_labels"))),
        )


@dataclass(frozen=True, slots=True)
class Timings:
    cache_n: Number | None = None
    prompt_n: Number | None = None
    prompt_ms: Number | None = None
    predicted_n: Number | None = None
    predicted_ms: Number | None = None
    prompt_tps: Number | None = None
    predicted_tps: Number | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "cache_n": self.cache_n,
            "prompt_n": self.prompt_n,
            "prompt_ms": self.prompt_ms,
            "predicted_n": self.predicted_n,
            "predicted_ms": self.predicted_ms,
            "prompt_tps": self.prompt_tps,
            "predicted_tps": self.predicted_tps,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Timings":
        prompt_tps = to_finite_number(data.get("prompt_tps"))
        if prompt_tps is None:
            prompt_tps = to_finite_number(data.get("prompt_per_second"))
        predicted_tps = to_finite_number(data.get("predicted_tps"))
        if predicted_tps is None:
            predicted_tps = to_finite_number(data.get("predicted_per_second"))
        return cls(
            cache_n=to_finite_number(data.get("cache_n")),
            prompt_n=to_finite_number(data.get("prompt_n")),
            prompt_ms=to_finite_number(data.get("prompt_ms")),
            predicted_n=to_finite_number(data.get("predicted_n")),
            predicted_ms=to_finite_number(data.get("predicted_ms")),
            prompt_tps=prompt_tps,
            predicted_tps=predicted_tps,
        )

    @classmethod
    def from_server(cls, data: Mapping[str, Any]) -> "Timings":
        return cls(
            cache_n=to_finite_number(data.get("cache_n")),
            prompt_n=to_finite_number(data.get("prompt_n")),
            prompt_ms=round_ms(data.get("prompt_ms")),
            predicted_n=to_finite_number(data.get("predicted_n")),
            predicted_ms=round_ms(data.get("predicted_ms")),
            prompt_tps=to_finite_number(data.get("prompt_per_second")),
            predicted_tps=to_finite_number(data.get("predicted_per_second")),
        )


@dataclass(frozen=True, slots=True)
class PhaseBoundary:
    reasoning_final_predicted_n: Number | None
    reasoning_final_predicted_ms: Number | None

    def to_dict(self) -> dict[str, object]:
        return {
            "reasoning_final_predicted_n": self.reasoning_final_predicted_n,
            "reasoning_final_predicted_ms": self.reasoning_final_predicted_ms,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PhaseBoundary":
        return cls(
            reasoning_final_predicted_n=to_finite_number(
                data.get("reasoning_final_predicted_n")
            ),
            reasoning_final_predicted_ms=to_finite_number(
                data.get("reasoning_final_predicted_ms")
            ),
        )


@dataclass(frozen=True, slots=True)
class DerivedSplit:
    reasoning_n: Number | None = None
    reasoning_ms: Number | None = None
    content_n: Number | None = None
    content_ms: Number | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "reasoning_n": self.reasoning_n,
            "reasoning_ms": self.reasoning_ms,
            "content_n": self.content_n,
            "content_ms": self.content_ms,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "DerivedSplit":
        return cls(
            reasoning_n=to_finite_number(data.get("reasoning_n")),
            reasoning_ms=to_finite_number(data.get("reasoning_ms")),
            content_n=to_finite_number(data.get("content_n")),
            content_ms=to_finite_number(data.get("content_ms")),
        )


@dataclass(frozen=True, slots=True)
class ClientTiming:
    request_start_ms: Number | None = None
    response_headers_ms: Number | None = None
    first_stream_chunk_ms: Number | None = None
    stop_chunk_ms: Number | None = None
    duration_request_to_headers_ms: Number | None = None
    duration_request_to_first_stream_chunk_ms: Number | None = None
    duration_headers_to_first_stream_chunk_ms: Number | None = None
    duration_first_stream_chunk_to_stop_ms: Number | None = None
    duration_headers_to_stop_ms: Number | None = None
    duration_request_to_stop_ms: Number | None = None

    @classmethod
    def from_marks(
        cls,
        request_start_ms: Number | None,
        response_headers_ms: Number | None,
        first_stream_chunk_ms: Number | None,
        stop_chunk_ms: Number | None,
    ) -> "ClientTiming":
        request_start_ms = to_finite_number(request_start_ms)
        response_headers_ms = to_finite_number(response_headers_ms)
        first_stream_chunk_ms = to_finite_number(first_stream_chunk_ms)
        stop_chunk_ms = to_finite_number(stop_chunk_ms)
        return cls(
            request_start_ms=request_start_ms,
            response_headers_ms=response_headers_ms,
            first_stream_chunk_ms=first_stream_chunk_ms,
            stop_chunk_ms=stop_chunk_ms,
            duration_request_to_headers_ms=_delta(response_headers_ms, request_start_ms),
            duration_request_to_first_stream_chunk_ms=_delta(
                first_stream_chunk_ms, request_start_ms
            ),
            duration_headers_to_first_stream_chunk_ms=_delta(
                first_stream_chunk_ms, response_headers_ms
            ),
            duration_first_stream_chunk_to_stop_ms=_delta(
                stop_chunk_ms, first_stream_chunk_ms
            ),
            duration_headers_to_stop_ms=_delta(stop_chunk_ms, response_headers_ms),
            duration_request_to_stop_ms=_delta(stop_chunk_ms, request_start_ms),
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "request_start_ms": self.request_start_ms,
            "response_headers_ms": self.response_headers_ms,
            "first_stream_chunk_ms": self.first_stream_chunk_ms,
            "stop_chunk_ms": self.stop_chunk_ms,
            "duration_request_to_headers_ms": self.duration_request_to_headers_ms,
            "duration_request_to_first_stream_chunk_ms": (
                self.duration_request_to_first_stream_chunk_ms
            ),
            "duration_headers_to_first_stream_chunk_ms": (
                self.duration_headers_to_first_stream_chunk_ms
            ),
            "duration_first_stream_chunk_to_stop_ms": (
                self.duration_first_stream_chunk_to_stop_ms
            ),
            "duration_headers_to_stop_ms": self.duration_headers_to_stop_ms,
            "duration_request_to_stop_ms": self.duration_request_to_stop_ms,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ClientTiming":
        return cls(
            request_start_ms=to_finite_number(data.get("request_start_ms")),
            response_headers_ms=to_finite_number(data.get("response_headers_ms")),
            first_stream_chunk_ms=to_finite_number(data.get("first_stream_chunk_ms")),
            stop_chunk_ms=to_finite_number(data.get("stop_chunk_ms")),
            duration_request_to_headers_ms=to_finite_number(
                data.get("duration_request_to_headers_ms")
            ),
            duration_request_to_first_stream_chunk_ms=to_finite_number(
                data.get("duration_request_to_first_stream_chunk_ms")
            ),
            duration_headers_to_first_stream_chunk_ms=to_finite_number(
                data.get("duration_headers_to_first_stream_chunk_ms")
            ),
            duration_first_stream_chunk_to_stop_ms=to_finite_number(
                data.get("duration_first_stream_chunk_to_stop_ms")
            ),
            duration_headers_to_stop_ms=to_finite_number(
                data.get("duration_headers_to_stop_ms")
            ),
            duration_request_to_stop_ms=to_finite_number(
                data.get("duration_request_to_stop_ms")
            ),
        )


@dataclass(frozen=True, slots=True)
class OutputLengthEstimate:
    output_tokens_estimate: Number | None = None
    output_chars_estimate: Number | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "output_tokens_estimate": self.output_tokens_estimate,
            "output_chars_estimate": self.output_chars_estimate,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "OutputLengthEstimate":
        return cls(
            output_tokens_estimate=to_finite_number(data.get("output_tokens_estimate")),
            output_chars_estimate=to_finite_number(data.get("output_chars_estimate")),
        )


@dataclass(frozen=True, slots=True)
class ResponseMeta:
    id: str | None = None
    created: Number | None = None
    model: str | None = None
    fingerprint: str | None = None
    choice_index: int = 0
    finish_reason: str | None = None
    timings: Timings = field(default_factory=Timings)
    phase_boundary: PhaseBoundary | None = None
    derived: DerivedSplit = field(default_factory=DerivedSplit)
    client_timing: ClientTiming = field(default_factory=ClientTiming)
    stop_reason_category: str | None = None
    output_length: OutputLengthEstimate = field(default_factory=OutputLengthEstimate)

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "created": self.created,
            "model": self.model,
            "fingerprint": self.fingerprint,
            "choice_index": self.choice_index,
            "finish_reason": self.finish_reason,
            "timings": self.timings.to_dict(),
            "phase_boundary": (
                self.phase_boundary.to_dict() if self.phase_boundary is not None else None
            ),
            "derived": self.derived.to_dict(),
            "client_timing": self.client_timing.to_dict(),
            "stop_reason_category": self.stop_reason_category,
            "output_length_estimate": self.output_length.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ResponseMeta":
        guardrails = _mapping(data.get("guardrails"))
        phase_boundary = data.get("phase_boundary")
        output_length = data.get("output_length_estimate")
        if not isinstance(output_length, Mapping):
            output_length = guardrails.get("output_length_estimate")
        stop_reason_category = _opt_str(data.get("stop_reason_category"))
        if stop_reason_category is None:
            stop_reason_category = _opt_str(guardrails.get("stop_reason_category"))
        return cls(
            id=_opt_str(data.get("id")),
            created=to_finite_number(data.get("created")),
            model=_opt_str(data.get("model")) or None,
            fingerprint=_opt_str(data.get("fingerprint")),
            choice_index=_opt_int(data.get("choice_index")) or 0,
            finish_reason=_opt_str(data.get("finish_reason")),
            timings=Timings.from_dict(_mapping(data.get("timings"))),
            phase_boundary=(
                PhaseBoundary.from_dict(phase_boundary)
                if isinstance(phase_boundary, Mapping)
                else None
            ),
            derived=DerivedSplit.from_dict(_mapping(data.get("derived"))),
            client_timing=ClientTiming.from_dict(_mapping(data.get("client_timing"))),
            stop_reason_category=stop_reason_category,
            output_length=OutputLengthEstimate.from_dict(_mapping(output_length)),
        )


@dataclass(frozen=True, slots=True)
class CompletionRecord:
    trace_id: str
    captured_at_ms: Number | None
    ui_origin: str | None
    endpoint: str | None
    request: RequestMeta | None
    response: ResponseMeta | None
    prompt_text: str | None = None
    response_text: str = ""
    reasoning_text: str | None = None
    streamed: bool = True
    chain_id: str | None = None
    turn_number: int | None = None
    version: int = RECORD_VERSION

    @property
    def model(self) -> str:
        if self.request is not None and self.request.model:
            return self.request.model
        if self.response is not None and self.response.model:
            return self.response.model
        return "unknown"

    @property
    def is_complete(self) -> bool:
        return self.request is not None and self.response is not None

    @property
    def is_correlated(self) -> bool:
        return self.chain_id is not None

    def assign_chain(self, chain_id: str, turn_number: int) -> None:
        if self.chain_id is not None:
            raise ValueError(f"Record {self.trace_id!r} already belongs to chain {self.chain_id!r}")
        object.__setattr__(self, "chain_id", chain_id)
        object.__setattr__(self, "turn_number", turn_number)

    def to_dict(self) -> dict[str, object]:
        return {
            "v": self.version,
            "trace_id": self.trace_id,
            "captured_at_ms": self.captured_at_ms,
            "ui_origin": self.ui_origin,
            "endpoint": self.endpoint,
            "streamed": self.streamed,
            "prompt_text": self.prompt_text,
            "response_text": self.response_text,
            "reasoning_text": self.reasoning_text,
            "request": self.request.to_dict() if self.request is not None else None,
            "response": self.response.to_dict() if self.response is not None else None,
            "chain_id": self.chain_id,
            "turn_number": self.turn_number,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CompletionRecord":
        request = _section(data, "request", "req")
        response = _section(data, "response", "resp")
        reasoning_text = data.get("reasoning_text", data.get("ReasoningText"))
        prompt_text = data.get("prompt_text", data.get("promptText"))
        response_text = data.get("response_text", data.get("responseText"))
        return cls(
            trace_id=_opt_str(data.get("trace_id")) or "no-trace",
            captured_at_ms=to_finite_number(data.get("captured_at_ms")),
            ui_origin=_opt_str(data.get("ui_origin")),
            endpoint=_opt_str(data.get("endpoint")),
            request=RequestMeta.from_dict(request) if request is not None else None,
            response=ResponseMeta.from_dict(response) if response is not None else None,
            prompt_text=_opt_str(prompt_text),
            response_text=_opt_str(response_text) or "",
            reasoning_text=_opt_str(reasoning_text),
            streamed=data.get("streamed") is not False,
            chain_id=_opt_str(data.get("chain_id")),
            turn_number=_opt_int(data.get("turn_number")),
            version=_opt_int(data.get("v")) or RECORD_VERSION,
        )

    @classmethod
    def from_json(cls, payload: str) -> "CompletionRecord":
        data = json.loads(payload)
        if not isinstance(data, Mapping):
            raise ValueError("Record JSON must be an object")
        return cls.from_dict(data)

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)


def has_record_sections(data: object) -> bool:
    if not isinstance(data, Mapping):
        return False
    return _section(data, "request", "req") is not None and _section(
        data, "response", "resp"
    ) is not None


def parse_jsonl_records(text: str) -> list[dict[str, Any]]:
    rows: list[dict[str, Any]] = []
    for line_number, raw_line in enumerate(text.splitlines(), start=1):
        line = raw_line.strip()
        if not line:
            continue
        try:
            payload = json.loads(line)
        except json.JSONDecodeError as exc:
            raise ValueError(f"Invalid JSON at line {line_number}: {exc.msg}") from exc
        if not has_record_sections(payload):
            raise ValueError(
                f"Record at line {line_number} does not match the record schema"
            )
        rows.append(payload)
    if not rows:
        raise ValueError("JSONL input is empty")
    return rows
