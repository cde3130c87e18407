from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass
import logging
from typing import Any, Protocol
import uuid

from metrics import to_finite_number, to_positive_int
from records import CompletionRecord
from sse_parser import epoch_ms


logger = logging.getLogger(__name__)


DEFAULT_IDLE_RESET_MS = 30 * 60 * 1000
DEFAULT_DUPLICATE_PROMPT_WINDOW_MS = 2 * 60 * 1000
FIRST_TURN_MAX_MESSAGES = 4


def make_chain_id(now_ms: int) -> str:
    return f"c-{now_ms}-{uuid.uuid4().hex[:8]}"


@dataclass(frozen=True, slots=True)
class ChainState:
    chain_id: str
    turn_number: int
    last_seen_ms: int | float | None
    last_user_message_count: int | None = None
    last_total_message_count: int | None = None
    last_prompt_hash: str | None = None
    ui_origin: str | None = None
    endpoint: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "chain_id": self.chain_id,
            "turn_number": self.turn_number,
            "last_seen_ms": self.last_seen_ms,
            "last_user_count": self.last_user_message_count,
            "last_messages_count": self.last_total_message_count,
            "last_prompt_hash": self.last_prompt_hash,
            "ui_origin": self.ui_origin,
            "endpoint": self.endpoint,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ChainState | None":
        chain_id = data.get("chain_id")
        if not isinstance(chain_id, str) or not chain_id:
            return None
        prompt_hash = data.get("last_prompt_hash")
        ui_origin = data.get("ui_origin")
        endpoint = data.get("endpoint")
        return cls(
            chain_id=chain_id,
            turn_number=to_positive_int(data.get("turn_number")) or 1,
            last_seen_ms=to_finite_number(data.get("last_seen_ms")),
            last_user_message_count=to_positive_int(data.get("last_user_count")),
            last_total_message_count=to_positive_int(data.get("last_messages_count")),
            last_prompt_hash=prompt_hash if isinstance(prompt_hash, str) else None,
            ui_origin=ui_origin if isinstance(ui_origin, str) else None,
            endpoint=endpoint if isinstance(endpoint, str) else None,
        )


class ChainStateStore(Protocol):
    def get(self, context_id: str) -> ChainState | None:
        ...

    def put(self, context_id: str, state: ChainState) -> None:
        ...

    def delete(self, context_id: str) -> None:
        ...


class InMemoryChainStateStore:
    def __init__(self) -> None:
        self._states: dict[str, ChainState] = {}

    def get(self, context_id: str) -> ChainState | None:
        return self._states.get(context_id)

    def put(self, context_id: str, state: ChainState) -> None:
        self._states[context_id] = state

    def delete(self, context_id: str) -> None:
        self._states.pop(context_id, None)

    def __len__(self) -> int:
        return len(self._states)


@dataclass(frozen=True, slots=True)
class ConversationSignals:
    user_count: int | None
    assistant_count: int
    tool_count: int
    messages_count: int | None
    prompt_hash: str | None
    ui_origin: str | None
    endpoint: str | None

    @classmethod
    def from_record(cls, record: CompletionRecord) -> "ConversationSignals":
        request = record.request
        counts: Mapping[str, Any] = {}
        messages_count = None
        prompt_hash = None
        if request is not None:
            counts = request.input_composition.messages_by_role_count
            messages_count = to_positive_int(request.messages_count)
            prompt_hash = request.prompt_identity.prompt_hash
        return cls(
            user_count=to_positive_int(counts.get("user")),
            assistant_count=to_positive_int(counts.get("assistant")) or 0,
            tool_count=to_positive_int(counts.get("tool")) or 0,
            messages_count=messages_count,
            prompt_hash=prompt_hash or None,
            ui_origin=record.ui_origin or None,
            endpoint=record.endpoint or None,
        )

    def looks_like_first_turn(self) -> bool:
        if self.user_count != 1:
            return False
        if self.assistant_count > 0 or self.tool_count > 0:
            return False
        if self.messages_count is None:
            return True
        return self.messages_count <= FIRST_TURN_MAX_MESSAGES


@dataclass(frozen=True, slots=True)
class ChainAssignment:
    chain_id: str
    turn_number: int
    rotated: bool


def should_rotate(
    state: ChainState | None,
    signals: ConversationSignals,
    now_ms: int | float,
    *,
    idle_reset_ms: int = DEFAULT_IDLE_RESET_MS,
    duplicate_prompt_window_ms: int = DEFAULT_DUPLICATE_PROMPT_WINDOW_MS,
    current_origin: str | None = None,
) -> bool:
    if state is None:
        return True

    last_seen_ms = state.last_seen_ms
    if last_seen_ms is not None and now_ms - last_seen_ms > idle_reset_ms:
        return True

    origin = signals.ui_origin or current_origin
    if state.ui_origin and origin and state.ui_origin != origin:
        return True

    previous_user_count = state.last_user_message_count
    if (
        signals.user_count is not None
        and previous_user_count is not None
        and signals.user_count < previous_user_count
    ):
        return True

    if signals.looks_like_first_turn():
        same_prompt = bool(signals.prompt_hash) and signals.prompt_hash == state.last_prompt_hash
        near_duplicate = (
            same_prompt
            and last_seen_ms is not None
            and now_ms - last_seen_ms <= duplicate_prompt_window_ms
        )
        if not near_duplicate:
            return True

    return False


class ConversationCorrelator:
    """Stamps records with the conversation chain they most likely belong to.

    The chat protocol carries no conversation id, so continuity is inferred per
    originating context (browser tab) from message-count monotonicity, prompt
    identity and timing proximity.
    """

    def __init__(
        self,
        store: ChainStateStore,
        *,
        idle_reset_ms: int = DEFAULT_IDLE_RESET_MS,
        duplicate_prompt_window_ms: int = DEFAULT_DUPLICATE_PROMPT_WINDOW_MS,
        clock: Callable[[], int] = epoch_ms,
        chain_id_factory: Callable[[int], str] = make_chain_id,
    ) -> None:
        if idle_reset_ms <= 0:
            raise ValueError("idle_reset_ms must be > 0")
        if duplicate_prompt_window_ms < 0:
            raise ValueError("duplicate_prompt_window_ms must be >= 0")
        self.store = store
        self.idle_reset_ms = idle_reset_ms
        self.duplicate_prompt_window_ms = duplicate_prompt_window_ms
        self.clock = clock
        self.chain_id_factory = chain_id_factory

    def assign(
        self,
        record: CompletionRecord,
        context_id: str | None,
        *,
        sender_origin: str | None = None,
    ) -> ChainAssignment:
        captured_at = to_finite_number(record.captured_at_ms)
        now_ms = captured_at if captured_at is not None else self.clock()
        signals = ConversationSignals.from_record(record)
        state = self.store.get(context_id) if context_id is not None else None

        rotated = should_rotate(
            state,
            signals,
            now_ms,
            idle_reset_ms=self.idle_reset_ms,
            duplicate_prompt_window_ms=self.duplicate_prompt_window_ms,
            current_origin=sender_origin,
        )
        if rotated or state is None:
            chain_id = self.chain_id_factory(int(now_ms))
            turn_number = 1
        else:
            chain_id = state.chain_id
            turn_number = max(1, state.turn_number + 1)

        record.assign_chain(chain_id, turn_number)

        if context_id is not None:
            self.store.put(
                context_id,
                ChainState(
                    chain_id=chain_id,
                    turn_number=turn_number,
                    last_seen_ms=now_ms,
                    last_user_message_count=signals.user_count,
                    last_total_message_count=signals.messages_count,
                    last_prompt_hash=signals.prompt_hash,
                    ui_origin=signals.ui_origin or sender_origin,
                    endpoint=signals.endpoint,
                ),
            )
        logger.debug(
            "[trace %s] Chain %s turn=%d rotated=%s context=%s",
            record.trace_id,
            chain_id,
            turn_number,
            rotated,
            context_id,
        )
        return ChainAssignment(chain_id=chain_id, turn_number=turn_number, rotated=rotated)

    def close_context(self, context_id: str) -> None:
        self.store.delete(context_id)
        logger.debug("Cleared chain state for context %s", context_id)
