from __future__ import annotations

from collections.abc import Callable, Iterable, Iterator, Mapping, Sequence
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
import logging
import random
import string
from threading import Lock, Thread
from typing import Any

from channel import ChunkChannel, tee_chunks
from correlator import ConversationCorrelator
from records import DEFAULT_ENDPOINT, AttachmentInfo, CompletionRecord
from request_meta import build_request_meta
from settings import MetricsSettings
from sse_parser import (
    EVENT_STREAM_CONTENT_TYPE,
    Clock,
    RequestTimingMarks,
    SSEStreamParser,
    epoch_ms,
    is_event_stream,
    parse_stream,
)
from storage import MetricsStorage


logger = logging.getLogger(__name__)


RecordCallback = Callable[[CompletionRecord], None]
TRACE_SUFFIX_CHARS = string.ascii_lowercase + string.digits


def make_trace_id(now_ms: int) -> str:
    return f"t-{now_ms}-{''.join(random.choices(TRACE_SUFFIX_CHARS, k=6))}"


@dataclass(slots=True)
class CapturedExchange:
    request_body: str | bytes | Mapping[str, Any] | None
    chunks: Iterable[bytes] = ()
    context_id: str | None = None
    ui_origin: str | None = None
    sender_origin: str | None = None
    endpoint: str | None = DEFAULT_ENDPOINT
    content_type: str | None = EVENT_STREAM_CONTENT_TYPE
    attachments: tuple[AttachmentInfo, ...] = ()
    request_start_ms: int | float | None = None
    response_headers_ms: int | float | None = None
    trace_id: str | None = None


@dataclass(slots=True)
class _ParsedExchange:
    exchange: CapturedExchange
    record: CompletionRecord | None


class CompletionRecorder:
    """Turns captured chat-completion exchanges into stored, correlated records.

    Parsing may run on worker threads; correlation and persistence always go
    through a single lock so each context's chain state has one writer.
    """

    def __init__(
        self,
        storage: MetricsStorage,
        settings: MetricsSettings | None = None,
        *,
        correlator: ConversationCorrelator | None = None,
        clock: Clock | None = None,
        on_record: RecordCallback | None = None,
    ) -> None:
        self.storage = storage
        self.settings = settings or MetricsSettings()
        self.clock = clock or epoch_ms
        self.correlator = correlator or ConversationCorrelator(
            storage.chain_states,
            idle_reset_ms=self.settings.idle_reset_ms,
            duplicate_prompt_window_ms=self.settings.duplicate_prompt_window_ms,
            clock=self.clock,
        )
        self.on_record = on_record
        self._commit_lock = Lock()

    def record_exchange(self, exchange: CapturedExchange) -> CompletionRecord | None:
        record = self.parse_exchange(exchange, exchange.chunks)
        if record is None:
            return None
        return self._commit(record, exchange)

    def relay(
        self, exchange: CapturedExchange, chunks: Iterable[bytes]
    ) -> tuple[Iterator[bytes], Future[CompletionRecord | None]]:
        future: Future[CompletionRecord | None] = Future()
        if not is_event_stream(exchange.content_type):
            logger.debug("Skipping non-streaming response (%s)", exchange.content_type)
            future.set_result(None)
            return iter(chunks), future

        channel = ChunkChannel()

        def consume() -> None:
            if not future.set_running_or_notify_cancel():
                return
            try:
                record = self.parse_exchange(exchange, channel)
                future.set_result(self._commit(record, exchange) if record is not None else None)
            except Exception as exc:  # noqa: BLE001
                future.set_exception(exc)

        Thread(target=consume, name="completion-relay", daemon=True).start()
        return tee_chunks(chunks, channel), future

    def record_many(
        self, exchanges: Sequence[CapturedExchange], concurrency: int = 1
    ) -> list[CompletionRecord | None]:
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")

        if concurrency == 1 or len(exchanges) <= 1:
            parsed = [
                _ParsedExchange(exchange, self.parse_exchange(exchange, exchange.chunks))
                for exchange in exchanges
            ]
        else:
            with ThreadPoolExecutor(max_workers=min(concurrency, len(exchanges))) as executor:
                futures = [
                    executor.submit(self.parse_exchange, exchange, exchange.chunks)
                    for exchange in exchanges
                ]
                parsed = [
                    _ParsedExchange(exchange, future.result())
                    for exchange, future in zip(exchanges, futures)
                ]

        results: list[CompletionRecord | None] = []
        for item in parsed:
            if item.record is None:
                results.append(None)
                continue
            results.append(self._commit(item.record, item.exchange))
        logger.debug(
            "Recorded %d of %d exchange(s)",
            sum(1 for record in results if record is not None),
            len(exchanges),
        )
        return results

    def parse_exchange(
        self, exchange: CapturedExchange, chunks: Iterable[bytes]
    ) -> CompletionRecord | None:
        if not is_event_stream(exchange.content_type):
            logger.debug("Skipping non-streaming response (%s)", exchange.content_type)
            return None

        trace_id = exchange.trace_id or make_trace_id(self.clock())
        request_meta, prompt_text = build_request_meta(
            exchange.request_body,
            exchange.attachments,
            max_captured_text_chars=self.settings.max_captured_text_chars,
        )
        parser = SSEStreamParser(
            trace_id,
            request_meta,
            ui_origin=exchange.ui_origin,
            endpoint=exchange.endpoint,
            prompt_text=prompt_text,
            timing_marks=RequestTimingMarks(
                request_start_ms=exchange.request_start_ms,
                response_headers_ms=exchange.response_headers_ms,
            ),
            max_captured_text_chars=self.settings.max_captured_text_chars,
            clock=self.clock,
        )
        record = parse_stream(chunks, parser)
        if record is None:
            logger.debug("[trace %s] No terminal chunk with timings; nothing recorded", trace_id)
        return record

    def _commit(self, record: CompletionRecord, exchange: CapturedExchange) -> CompletionRecord:
        with self._commit_lock:
            try:
                self.correlator.assign(
                    record, exchange.context_id, sender_origin=exchange.sender_origin
                )
            except Exception:  # noqa: BLE001
                logger.warning(
                    "[trace %s] Chain assignment failed; storing without chain fields",
                    record.trace_id,
                    exc_info=True,
                )
            stored = self.storage.add_record(record)
        logger.debug("[trace %s] Record persisted: %s", record.trace_id, stored["key"])
        self._notify(record)
        return record

    def _notify(self, record: CompletionRecord) -> None:
        if self.on_record is None:
            return
        try:
            self.on_record(record)
        except Exception:  # noqa: BLE001
            logger.debug("[trace %s] Record listener failed", record.trace_id, exc_info=True)
