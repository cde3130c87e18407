from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
import hashlib
import json
import logging
import re
from typing import Any
from urllib.parse import urlparse

from metrics import to_finite_number
from records import (
    AttachmentInfo,
    InputComposition,
    PayloadSignals,
    PromptIdentity,
    RequestMeta,
    ScenarioLabels,
)


logger = logging.getLogger(__name__)


DEFAULT_MAX_CAPTURED_TEXT_CHARS = 200_000
CHAT_COMPLETIONS_PATH = "/v1/chat/completions"

PARAM_KEYS = (
    "temperature",
    "top_p",
    "top_k",
    "max_tokens",
    "seed",
    "presence_penalty",
    "frequency_penalty",
    "stream",
    "stream_options",
    "n",
    "stop",
)
RUNTIME_KEYS = (
    "n_ctx",
    "n_batch",
    "n_ubatch",
    "n_threads",
    "n_threads_batch",
    "threads",
    "threads_batch",
    "n_gpu_layers",
    "gpu_layers",
    "main_gpu",
    "tensor_split",
    "rope_freq_base",
    "rope_freq_scale",
    "flash_attn",
    "cache_type_k",
    "cache_type_v",
    "numa",
    "seed",
)

TEXT_FILE_EXTENSIONS = frozenset(
    {"txt", "md", "markdown", "csv", "tsv", "json", "jsonl", "yaml", "yml", "xml", "log"}
)
IMAGE_FILE_EXTENSIONS = frozenset(
    {"png", "jpg", "jpeg", "gif", "webp", "bmp", "tif", "tiff", "heic", "heif", "avif"}
)
AUDIO_FILE_EXTENSIONS = frozenset(
    {"mp3", "wav", "ogg", "m4a", "aac", "flac", "opus", "weba", "aiff"}
)
TEXT_MIME_TYPES = frozenset(
    {"application/json", "application/xml", "application/x-yaml", "application/yaml"}
)
DOCUMENT_KINDS = frozenset({"pdf", "text"})

_DATA_URL_PATTERN = re.compile(r"^data:([^;]+);base64,(.+)$", re.DOTALL)


@dataclass(slots=True)
class MessageStats:
    messages_count: int = 0
    by_role: dict[str, int] = field(default_factory=dict)
    by_role_bytes: dict[str, int] = field(default_factory=dict)
    messages_bytes: int = 0
    current_user_text_bytes: int = 0
    history_text_bytes: int = 0
    has_images: bool = False
    images_bytes: int = 0
    image_parts_count: int = 0
    image_bytes_by_part: list[int | None] = field(default_factory=list)
    image_mimes_by_part: list[str | None] = field(default_factory=list)
    image_mimes: list[str] = field(default_factory=list)


def utf8_bytes(text: str) -> int:
    return len(text.encode("utf-8", errors="surrogatepass"))


def is_chat_completions_url(url: str) -> bool:
    try:
        path = urlparse(url).path
    except ValueError:
        return False
    return path.endswith(CHAT_COMPLETIONS_PATH)


def clip_captured_text(
    text: str | None, max_chars: int = DEFAULT_MAX_CAPTURED_TEXT_CHARS
) -> str | None:
    if not isinstance(text, str):
        return None
    if max_chars <= 0 or len(text) <= max_chars:
        return text
    return text[:max_chars]


def _file_ext(name: str | None) -> str:
    safe_name = name.lower() if isinstance(name, str) else ""
    return safe_name.rsplit(".", 1)[-1] if "." in safe_name else ""


def _is_text_mime(mime: str) -> bool:
    return mime.startswith("text/") or mime in TEXT_MIME_TYPES


def classify_attachment_kind(mime: str | None, name: str | None = None) -> str:
    safe_mime = mime.lower() if isinstance(mime, str) else ""
    ext = _file_ext(name)

    if safe_mime == "application/pdf" or ext == "pdf":
        return "pdf"
    if safe_mime.startswith("image/") or ext in IMAGE_FILE_EXTENSIONS:
        return "image"
    if safe_mime.startswith("audio/") or ext in AUDIO_FILE_EXTENSIONS:
        return "audio"
    if _is_text_mime(safe_mime) or ext in TEXT_FILE_EXTENSIONS:
        return "text"
    return "other"


def make_attachment(
    name: str | None, mime: str | None, size_bytes: int | float | None
) -> AttachmentInfo:
    normalized_mime = mime.lower() if isinstance(mime, str) and mime else None
    return AttachmentInfo(
        name=name,
        mime=normalized_mime,
        size_bytes=size_bytes,
        kind=classify_attachment_kind(normalized_mime, name),
    )


def decoded_base64_size(payload: str) -> int:
    padding = 2 if payload.endswith("==") else (1 if payload.endswith("=") else 0)
    return max(0, (len(payload) * 3) // 4 - padding)


def extract_text_from_content(content: object) -> str:
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return ""
    return "".join(
        part["text"]
        for part in content
        if isinstance(part, Mapping)
        and part.get("type") == "text"
        and isinstance(part.get("text"), str)
    )


def current_user_prompt_text(messages: list[Any]) -> str | None:
    for message in reversed(messages):
        if not isinstance(message, Mapping) or message.get("role") != "user":
            continue
        return extract_text_from_content(message.get("content"))
    return None


def _role_of(message: object) -> str:
    if isinstance(message, Mapping):
        role = message.get("role")
        if isinstance(role, str) and role:
            return role
    return "unknown"


def _image_url(part: Mapping[str, Any]) -> str | None:
    image_url = part.get("image_url")
    if isinstance(image_url, Mapping) and isinstance(image_url.get("url"), str):
        return image_url["url"]
    return None


def estimate_message_stats(messages: list[Any]) -> MessageStats:
    stats = MessageStats(messages_count=len(messages))
    per_message_text_bytes: list[int] = []
    last_user_index = -1
    image_mimes: set[str] = set()

    for index, message in enumerate(messages):
        role = _role_of(message)
        stats.by_role[role] = stats.by_role.get(role, 0) + 1
        if role == "user":
            last_user_index = index

        message_text_bytes = 0
        has_text = False
        content = message.get("content") if isinstance(message, Mapping) else None
        if isinstance(content, str):
            message_text_bytes = utf8_bytes(content)
            has_text = True
        elif isinstance(content, list):
            for part in content:
                if not isinstance(part, Mapping):
                    continue
                if part.get("type") == "text" and isinstance(part.get("text"), str):
                    message_text_bytes += utf8_bytes(part["text"])
                    has_text = True
                url = _image_url(part) if part.get("type") == "image_url" else None
                if url is None:
                    continue

                stats.has_images = True
                stats.image_parts_count += 1
                part_mime: str | None = None
                part_bytes: int | None = None
                match = _DATA_URL_PATTERN.match(url)
                if match:
                    part_mime = match.group(1)
                    part_bytes = decoded_base64_size(match.group(2))
                    image_mimes.add(part_mime)
                    stats.images_bytes += part_bytes
                stats.image_bytes_by_part.append(part_bytes)
                stats.image_mimes_by_part.append(part_mime)

        if has_text:
            stats.by_role_bytes[role] = stats.by_role_bytes.get(role, 0) + message_text_bytes
        stats.messages_bytes += message_text_bytes
        per_message_text_bytes.append(message_text_bytes)

    if last_user_index >= 0:
        stats.current_user_text_bytes = per_message_text_bytes[last_user_index]
    stats.history_text_bytes = max(0, stats.messages_bytes - stats.current_user_text_bytes)
    stats.image_mimes = sorted(image_mimes)
    return stats


def canonical_json(value: object) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def sha256_hex(material: str) -> str:
    return hashlib.sha256(material.encode("utf-8", errors="surrogatepass")).hexdigest()


def _structure_part(part: object) -> dict[str, object]:
    if not isinstance(part, Mapping):
        return {"type": "unknown"}
    part_type = part.get("type")
    if part_type == "text" and isinstance(part.get("text"), str):
        return {"type": "text", "text_bytes": utf8_bytes(part["text"])}
    url = _image_url(part) if part_type == "image_url" else None
    if url is not None:
        match = _DATA_URL_PATTERN.match(url)
        if match:
            return {
                "type": "image_url",
                "mime": match.group(1),
                "image_bytes": decoded_base64_size(match.group(2)),
                "url_kind": "data",
            }
        return {"type": "image_url", "mime": None, "image_bytes": None, "url_kind": "remote_or_blob"}
    return {"type": part_type if isinstance(part_type, str) and part_type else "unknown"}


def build_message_structure(messages: list[Any]) -> list[dict[str, object]]:
    structure: list[dict[str, object]] = []
    for message in messages:
        role = _role_of(message)
        content = message.get("content") if isinstance(message, Mapping) else None
        if isinstance(content, str):
            structure.append(
                {"role": role, "content_kind": "string", "text_bytes": utf8_bytes(content)}
            )
        elif isinstance(content, list):
            structure.append(
                {
                    "role": role,
                    "content_kind": "parts",
                    "parts": [_structure_part(part) for part in content],
                }
            )
        else:
            structure.append({"role": role, "content_kind": "unknown"})
    return structure


def build_prompt_identity(messages: list[Any]) -> PromptIdentity:
    try:
        prompt_hash = sha256_hex(canonical_json(messages))
        structure_hash = sha256_hex(canonical_json(build_message_structure(messages)))
    except (TypeError, ValueError):
        logger.debug("Prompt identity hashing failed", exc_info=True)
        return PromptIdentity()
    return PromptIdentity(prompt_hash=prompt_hash, message_structure_hash=structure_hash)


def pick_params(body: Mapping[str, Any]) -> dict[str, Any]:
    return {key: body[key] for key in PARAM_KEYS if key in body}


def pick_runtime_context(body: Mapping[str, Any]) -> dict[str, Any] | None:
    context = {key: body[key] for key in RUNTIME_KEYS if key in body}
    return context or None


def bytes_bucket(value: object) -> str:
    value = to_finite_number(value)
    if value is None or value < 0:
        return "unknown"
    if value == 0:
        return "0B"
    if value <= 10 * 1024:
        return "1B-10KB"
    if value <= 100 * 1024:
        return "10KB-100KB"
    if value <= 500 * 1024:
        return "100KB-500KB"
    if value <= 1024 * 1024:
        return "500KB-1MB"
    if value <= 5 * 1024 * 1024:
        return "1MB-5MB"
    return ">5MB"


def derive_input_mode(text_bytes: object, has_files: bool, has_images: bool) -> str:
    has_text = _positive_number(text_bytes)
    if has_text and has_files and has_images:
        return "text+file+image"
    if has_text and has_files:
        return "text+file"
    if has_text and has_images:
        return "text+image"
    if has_files and has_images:
        return "file+image"
    if has_files:
        return "file_only"
    if has_images:
        return "image_only"
    if has_text:
        return "text_only"
    return "empty_or_unknown"


def _positive_number(value: object) -> bool:
    number = to_finite_number(value)
    return number is not None and number > 0


def derive_runtime_bucket(runtime_context: Mapping[str, Any] | None) -> str:
    if not runtime_context:
        return "default_or_unknown"
    gpu_layers = runtime_context.get("n_gpu_layers", runtime_context.get("gpu_layers"))
    threads = runtime_context.get("n_threads", runtime_context.get("threads"))
    has_ctx = "n_ctx" in runtime_context

    if _positive_number(gpu_layers):
        return "gpu_offload"
    if _positive_number(threads) and has_ctx:
        return "cpu_tuned"
    if _positive_number(threads):
        return "cpu_threads_set"
    if has_ctx:
        return "ctx_set"
    return "runtime_set_other"


def derive_scenario_labels(
    stats: MessageStats | None,
    attachments: tuple[AttachmentInfo, ...],
    runtime_context: Mapping[str, Any] | None,
) -> ScenarioLabels:
    text_bytes = stats.current_user_text_bytes if stats is not None else None
    image_bytes = stats.images_bytes if stats is not None else None
    has_images = bool(stats and stats.has_images)
    file_bytes = _attachment_bytes(attachments)
    kinds = sorted({item.kind for item in attachments if item.kind})
    return ScenarioLabels(
        input_mode=derive_input_mode(text_bytes, bool(attachments), has_images),
        current_user_text_size_bucket=bytes_bucket(text_bytes),
        file_size_bucket=bytes_bucket(file_bytes),
        image_size_bucket=bytes_bucket(image_bytes),
        file_kind_set="+".join(kinds) if kinds else "none",
        runtime_bucket=derive_runtime_bucket(runtime_context),
    )


def _attachment_bytes(attachments: tuple[AttachmentInfo, ...]) -> int | float:
    return sum(to_finite_number(item.size_bytes) or 0 for item in attachments)


def _decode_body(body: str | bytes | Mapping[str, Any] | None) -> tuple[Mapping[str, Any] | None, int | None]:
    if body is None:
        return None, None
    if isinstance(body, Mapping):
        try:
            raw = canonical_json(body)
        except (TypeError, ValueError):
            logger.debug("Request body is not JSON serializable; body size unknown", exc_info=True)
            return body, None
        return body, utf8_bytes(raw)
    if isinstance(body, bytes):
        body_bytes = len(body)
        text = body.decode("utf-8", errors="replace")
    else:
        text = body
        body_bytes = utf8_bytes(body)
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        return None, body_bytes
    return (parsed if isinstance(parsed, Mapping) else None), body_bytes


def build_request_meta(
    body: str | bytes | Mapping[str, Any] | None,
    attachments: Iterable[AttachmentInfo] = (),
    *,
    max_captured_text_chars: int = DEFAULT_MAX_CAPTURED_TEXT_CHARS,
) -> tuple[RequestMeta, str | None]:
    attachment_list = tuple(attachments)
    parsed, body_bytes = _decode_body(body)
    if parsed is None:
        logger.debug("Request body is not a JSON object; using fallback request metadata")
        return (
            RequestMeta(
                body_bytes=body_bytes,
                scenario_labels=derive_scenario_labels(None, attachment_list, None),
            ),
            None,
        )

    raw_messages = parsed.get("messages")
    messages = raw_messages if isinstance(raw_messages, list) else []
    model = parsed.get("model")
    runtime_context = pick_runtime_context(parsed)
    stats = estimate_message_stats(messages)
    file_bytes_total = _attachment_bytes(attachment_list)
    has_files = bool(attachment_list)

    meta = RequestMeta(
        model=model if isinstance(model, str) and model else None,
        body_bytes=body_bytes,
        messages_count=stats.messages_count,
        messages_bytes=stats.messages_bytes,
        images_bytes=stats.images_bytes,
        has_images=stats.has_images,
        has_files=has_files,
        has_document=any(item.kind in DOCUMENT_KINDS for item in attachment_list),
        files_count=len(attachment_list),
        files_total_bytes=file_bytes_total,
        files=attachment_list,
        params=pick_params(parsed),
        runtime_context=runtime_context,
        prompt_identity=build_prompt_identity(messages),
        input_composition=InputComposition(
            text_bytes_total=stats.messages_bytes,
            current_user_text_bytes=stats.current_user_text_bytes,
            history_text_bytes=stats.history_text_bytes,
            system_text_bytes=stats.by_role_bytes.get("system"),
            assistant_text_bytes=stats.by_role_bytes.get("assistant"),
            tool_text_bytes=stats.by_role_bytes.get("tool"),
            messages_by_role_count=dict(stats.by_role),
            messages_by_role_text_bytes=dict(stats.by_role_bytes),
            image_count=stats.image_parts_count,
            image_bytes_total=stats.images_bytes,
            image_mimes=tuple(stats.image_mimes),
            image_mimes_by_part=tuple(stats.image_mimes_by_part),
            image_bytes_by_part=tuple(stats.image_bytes_by_part),
            file_count=len(attachment_list),
            file_bytes_total=file_bytes_total,
        ),
        payload_signals=PayloadSignals(
            current_user_text_bytes=stats.current_user_text_bytes,
            file_bytes_total=file_bytes_total,
        ),
        scenario_labels=derive_scenario_labels(stats, attachment_list, runtime_context),
    )
    prompt_text = clip_captured_text(current_user_prompt_text(messages), max_captured_text_chars)
    return meta, prompt_text
