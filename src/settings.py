from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
import logging
from pathlib import Path
import tomllib
from typing import Any

from correlator import DEFAULT_DUPLICATE_PROMPT_WINDOW_MS, DEFAULT_IDLE_RESET_MS
from request_meta import DEFAULT_MAX_CAPTURED_TEXT_CHARS


logger = logging.getLogger(__name__)


DEFAULT_CONFIG_PATH = Path("completion-metrics.toml")


def _escape_toml_string(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


def _format_toml_kv(key: str, value: object) -> str:
    if isinstance(value, str):
        return f'{key} = "{_escape_toml_string(value)}"'
    if isinstance(value, bool):
        return f"{key} = {'true' if value else 'false'}"
    if isinstance(value, int | float):
        return f"{key} = {value}"
    raise TypeError(f"Unsupported TOML value type: {type(value)!r}")


def _table(raw: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    section = raw.get(name, {})
    if not isinstance(section, Mapping):
        raise ValueError(f"Top-level {name!r} must be a table")
    return section


def _positive_int(section: Mapping[str, Any], table: str, key: str, default: int) -> int:
    if key not in section or section[key] is None:
        return default
    value = section[key]
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValueError(f"{table}.{key} must be a positive integer")
    return value


def _non_negative_int(section: Mapping[str, Any], table: str, key: str, default: int) -> int:
    if key not in section or section[key] is None:
        return default
    value = section[key]
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValueError(f"{table}.{key} must be a non-negative integer")
    return value


@dataclass(slots=True)
class MetricsSettings:
    max_captured_text_chars: int = DEFAULT_MAX_CAPTURED_TEXT_CHARS
    idle_reset_ms: int = DEFAULT_IDLE_RESET_MS
    duplicate_prompt_window_ms: int = DEFAULT_DUPLICATE_PROMPT_WINDOW_MS

    def to_dict(self) -> dict[str, dict[str, object]]:
        return {
            "capture": {"max_captured_text_chars": self.max_captured_text_chars},
            "correlation": {
                "idle_reset_ms": self.idle_reset_ms,
                "duplicate_prompt_window_ms": self.duplicate_prompt_window_ms,
            },
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "MetricsSettings":
        capture = _table(data, "capture")
        correlation = _table(data, "correlation")
        return cls(
            max_captured_text_chars=_positive_int(
                capture, "capture", "max_captured_text_chars", DEFAULT_MAX_CAPTURED_TEXT_CHARS
            ),
            idle_reset_ms=_positive_int(
                correlation, "correlation", "idle_reset_ms", DEFAULT_IDLE_RESET_MS
            ),
            duplicate_prompt_window_ms=_non_negative_int(
                correlation,
                "correlation",
                "duplicate_prompt_window_ms",
                DEFAULT_DUPLICATE_PROMPT_WINDOW_MS,
            ),
        )


def load_settings(config_path: Path = DEFAULT_CONFIG_PATH) -> MetricsSettings:
    if not config_path.exists():
        logger.debug("No settings file at %s; using defaults", config_path)
        return MetricsSettings()

    with config_path.open("rb") as handle:
        parsed = tomllib.load(handle)
    settings = MetricsSettings.from_dict(parsed)
    logger.debug("Loaded settings from %s: %s", config_path, settings)
    return settings


def write_settings(settings: MetricsSettings, config_path: Path = DEFAULT_CONFIG_PATH) -> None:
    lines: list[str] = []
    for table_name, values in settings.to_dict().items():
        lines.append(f"[{table_name}]")
        for key in sorted(values):
            lines.append(_format_toml_kv(key, values[key]))
        lines.append("")

    config_path.parent.mkdir(parents=True, exist_ok=True)
    content = "\n".join(lines).strip()
    config_path.write_text(content + ("\n" if content else ""), encoding="utf-8")
    logger.debug("Wrote settings to %s", config_path)
