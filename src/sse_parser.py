from __future__ import annotations

from collections.abc import AsyncIterable, Callable, Iterable, Mapping
import codecs
from dataclasses import dataclass
import json
import logging
from math import floor
import time
from typing import Any

from metrics import round_ms, to_finite_number
from records import (
    DEFAULT_ENDPOINT,
    ClientTiming,
    CompletionRecord,
    DerivedSplit,
    OutputLengthEstimate,
    PhaseBoundary,
    RequestMeta,
    ResponseMeta,
    Timings,
)
from request_meta import DEFAULT_MAX_CAPTURED_TEXT_CHARS


logger = logging.getLogger(__name__)


EVENT_STREAM_CONTENT_TYPE = "text/event-stream"
CHUNK_OBJECT = "chat.completion.chunk"
DONE_SENTINEL = "[DONE]"
DONE_FINISH_REASON = "done"
CHARS_PER_TOKEN_ESTIMATE = 4

STOP_REASON_CATEGORIES = {
    "stop": "completed",
    "length": "truncated_length",
    "content_filter": "filtered",
    "tool_calls": "tool_calls",
}

Clock = Callable[[], int]


def epoch_ms() -> int:
    return int(time.time() * 1000)


def is_event_stream(content_type: str | None) -> bool:
    return bool(content_type) and EVENT_STREAM_CONTENT_TYPE in content_type.lower()


def categorize_finish_reason(finish_reason: str | None) -> str:
    if finish_reason is None:
        return "unknown"
    return STOP_REASON_CATEGORIES.get(finish_reason, "other")


@dataclass(slots=True)
class RequestTimingMarks:
    request_start_ms: int | float | None = None
    response_headers_ms: int | float | None = None


@dataclass(slots=True)
class _ReasoningBoundary:
    predicted_n: int | float | None
    predicted_ms: int | float | None


@dataclass(slots=True)
class _TerminalChunk:
    timings: Mapping[str, Any]
    finish_reason: str
    at_ms: int


def _first_choice(chunk: Mapping[str, Any]) -> Mapping[str, Any]:
    choices = chunk.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], Mapping):
        return choices[0]
    return {}


class SSEStreamParser:
    """Incremental parser for one streamed chat completion.

    Bytes are pushed with :meth:`feed` as they arrive; :meth:`finish` is called
    once the stream ends and returns the normalized record, or ``None`` when no
    chunk with server timings was ever seen (aborted or non-llama.cpp streams).
    """

    def __init__(
        self,
        trace_id: str,
        request: RequestMeta | None,
        *,
        ui_origin: str | None = None,
        endpoint: str | None = DEFAULT_ENDPOINT,
        prompt_text: str | None = None,
        timing_marks: RequestTimingMarks | None = None,
        max_captured_text_chars: int = DEFAULT_MAX_CAPTURED_TEXT_CHARS,
        clock: Clock = epoch_ms,
    ) -> None:
        self.trace_id = trace_id
        self.request = request
        self.ui_origin = ui_origin
        self.endpoint = endpoint
        self.prompt_text = prompt_text
        self.timing_marks = timing_marks or RequestTimingMarks()
        self.max_captured_text_chars = max_captured_text_chars
        self.clock = clock

        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._completion_id: str | None = None
        self._completion_created: int | float | None = None
        self._completion_model: str | None = None
        self._system_fingerprint: str | None = None
        self._response_parts: list[str] = []
        self._response_chars = 0
        self._reasoning_parts: list[str] = []
        self._reasoning_chars = 0
        self._reasoning_boundary: _ReasoningBoundary | None = None
        self._last_timed_chunk: Mapping[str, Any] | None = None
        self._pending_finish_reason: str | None = None
        self._terminal: _TerminalChunk | None = None
        self._saw_done = False
        self._first_chunk_at_ms: int | None = None
        self._finished = False
        self._record: CompletionRecord | None = None

    @property
    def done(self) -> bool:
        return self._terminal is not None

    @property
    def saw_done_marker(self) -> bool:
        return self._saw_done

    def feed(self, data: bytes) -> bool:
        if self._terminal is not None or self._finished:
            return True
        if not data:
            return False
        if self._first_chunk_at_ms is None:
            self._first_chunk_at_ms = self.clock()

        self._buffer += self._decoder.decode(data)
        while self._terminal is None:
            line_end = self._buffer.find("\n")
            if line_end == -1:
                break
            line = self._buffer[:line_end].rstrip()
            self._buffer = self._buffer[line_end + 1 :]
            self._handle_line(line)
        return self._terminal is not None

    def finish(self) -> CompletionRecord | None:
        if self._finished:
            return self._record
        self._finished = True

        if self._terminal is None:
            self._buffer += self._decoder.decode(b"", final=True)
            trailing = self._buffer.rstrip()
            self._buffer = ""
            if trailing:
                self._handle_line(trailing)

        if self._terminal is None and self._last_timed_chunk is not None:
            self._promote_last_timed_chunk()
            logger.debug(
                "[trace %s] Stream ended without a final chunk; using last timed chunk",
                self.trace_id,
            )

        if self._terminal is None:
            logger.debug("[trace %s] No timed final chunk found; skipping record", self.trace_id)
            return None

        self._record = self._build_record(self._terminal)
        return self._record

    def _handle_line(self, line: str) -> None:
        if not line.startswith("data:"):
            return
        payload = line[5:].strip()
        if not payload:
            return
        if payload == DONE_SENTINEL:
            self._handle_done()
            return

        try:
            chunk = json.loads(payload)
        except json.JSONDecodeError:
            return
        if not isinstance(chunk, Mapping) or chunk.get("object") != CHUNK_OBJECT:
            return
        self._handle_chunk(chunk)

    def _handle_done(self) -> None:
        self._saw_done = True
        logger.debug("[trace %s] SSE DONE marker received", self.trace_id)
        if self._terminal is None and self._last_timed_chunk is not None:
            self._promote_last_timed_chunk()

    def _handle_chunk(self, chunk: Mapping[str, Any]) -> None:
        if self._completion_id is None and isinstance(chunk.get("id"), str):
            self._completion_id = chunk["id"] or None
        if self._completion_created is None:
            self._completion_created = to_finite_number(chunk.get("created")) or None
        if self._completion_model is None and isinstance(chunk.get("model"), str):
            self._completion_model = chunk["model"] or None
        if self._system_fingerprint is None and isinstance(chunk.get("system_fingerprint"), str):
            self._system_fingerprint = chunk["system_fingerprint"] or None

        choice = _first_choice(chunk)
        delta = choice.get("delta")
        if not isinstance(delta, Mapping):
            delta = {}
        content = delta.get("content")
        reasoning = delta.get("reasoning_content")
        if isinstance(content, str):
            self._response_chars = self._capture(self._response_parts, self._response_chars, content)
        if isinstance(reasoning, str):
            self._reasoning_chars = self._capture(
                self._reasoning_parts, self._reasoning_chars, reasoning
            )

        timings = chunk.get("timings")
        if not isinstance(timings, Mapping):
            timings = None
        if timings is not None:
            self._last_timed_chunk = chunk
            if isinstance(reasoning, str):
                self._reasoning_boundary = _ReasoningBoundary(
                    predicted_n=to_finite_number(timings.get("predicted_n")),
                    predicted_ms=to_finite_number(timings.get("predicted_ms")),
                )

        finish_reason = choice.get("finish_reason")
        if not isinstance(finish_reason, str) or not finish_reason:
            return
        if timings is None:
            self._pending_finish_reason = finish_reason
            return

        self._terminal = _TerminalChunk(
            timings=timings, finish_reason=finish_reason, at_ms=self.clock()
        )
        logger.debug(
            "[trace %s] Final chunk received finish_reason=%s", self.trace_id, finish_reason
        )

    def _capture(self, parts: list[str], used: int, text: str) -> int:
        remaining = self.max_captured_text_chars - used
        if remaining <= 0 or not text:
            return used
        clipped = text[:remaining]
        parts.append(clipped)
        return used + len(clipped)

    def _promote_last_timed_chunk(self) -> None:
        chunk = self._last_timed_chunk
        if chunk is None:
            return
        finish_reason = _first_choice(chunk).get("finish_reason")
        if not isinstance(finish_reason, str) or not finish_reason:
            finish_reason = self._pending_finish_reason or DONE_FINISH_REASON
        self._terminal = _TerminalChunk(
            timings=chunk["timings"], finish_reason=finish_reason, at_ms=self.clock()
        )

    def _derive_split(self, timings: Mapping[str, Any]) -> DerivedSplit:
        total_n = to_finite_number(timings.get("predicted_n"))
        total_ms = to_finite_number(timings.get("predicted_ms"))
        boundary = self._reasoning_boundary
        if boundary is None:
            return DerivedSplit(
                reasoning_n=0, reasoning_ms=0, content_n=total_n, content_ms=round_ms(total_ms)
            )

        reasoning_n = boundary.predicted_n or 0
        reasoning_ms = boundary.predicted_ms or 0
        return DerivedSplit(
            reasoning_n=reasoning_n,
            reasoning_ms=round_ms(reasoning_ms),
            content_n=max(0, total_n - reasoning_n) if total_n is not None else None,
            content_ms=round_ms(max(0, total_ms - reasoning_ms)) if total_ms is not None else None,
        )

    def _build_record(self, terminal: _TerminalChunk) -> CompletionRecord:
        timings = Timings.from_server(terminal.timings)
        boundary = self._reasoning_boundary
        output_tokens = timings.predicted_n
        chars_estimate = (
            to_finite_number(output_tokens * CHARS_PER_TOKEN_ESTIMATE)
            if output_tokens is not None
            else None
        )
        output_chars = int(floor(chars_estimate + 0.5)) if chars_estimate is not None else None
        reasoning_text = "".join(self._reasoning_parts)

        response = ResponseMeta(
            id=self._completion_id,
            created=self._completion_created,
            model=self._completion_model,
            fingerprint=self._system_fingerprint,
            choice_index=0,
            finish_reason=terminal.finish_reason,
            timings=timings,
            phase_boundary=(
                PhaseBoundary(
                    reasoning_final_predicted_n=boundary.predicted_n,
                    reasoning_final_predicted_ms=round_ms(boundary.predicted_ms),
                )
                if boundary is not None
                else None
            ),
            derived=self._derive_split(terminal.timings),
            client_timing=ClientTiming.from_marks(
                self.timing_marks.request_start_ms,
                self.timing_marks.response_headers_ms,
                self._first_chunk_at_ms,
                terminal.at_ms,
            ),
            stop_reason_category=categorize_finish_reason(terminal.finish_reason),
            output_length=OutputLengthEstimate(
                output_tokens_estimate=output_tokens, output_chars_estimate=output_chars
            ),
        )
        record = CompletionRecord(
            trace_id=self.trace_id,
            captured_at_ms=self.clock(),
            ui_origin=self.ui_origin,
            endpoint=self.endpoint,
            request=self.request,
            response=response,
            prompt_text=self.prompt_text,
            response_text="".join(self._response_parts),
            reasoning_text=reasoning_text or None,
        )
        logger.debug(
            "[trace %s] Emitting record completion_id=%s predicted_n=%s",
            self.trace_id,
            response.id,
            timings.predicted_n,
        )
        return record


def parse_stream(chunks: Iterable[bytes], parser: SSEStreamParser) -> CompletionRecord | None:
    iterator = iter(chunks)
    try:
        for chunk in iterator:
            if parser.feed(chunk):
                break
    except Exception:  # noqa: BLE001
        logger.debug("[trace %s] Stream read failed; no record emitted", parser.trace_id, exc_info=True)
        return None
    finally:
        close = getattr(iterator, "close", None)
        if callable(close):
            close()
    return parser.finish()


async def aparse_stream(
    chunks: AsyncIterable[bytes], parser: SSEStreamParser
) -> CompletionRecord | None:
    iterator = chunks.__aiter__()
    try:
        async for chunk in iterator:
            if parser.feed(chunk):
                break
    except Exception:  # noqa: BLE001
        logger.debug("[trace %s] Stream read failed; no record emitted", parser.trace_id, exc_info=True)
        return None
    finally:
        aclose = getattr(iterator, "aclose", None)
        if callable(aclose):
            await aclose()
    return parser.finish()
