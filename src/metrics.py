from __future__ import annotations

from dataclasses import dataclass
from math import ceil, floor, isfinite


def to_finite_number(value: object) -> float | int | None:
    # bool is an int subclass; JSON true/false are never metrics.
    if isinstance(value, bool) or not isinstance(value, int | float):
        return None
    if isinstance(value, float) and not isfinite(value):
        return None
    return value


def to_positive_int(value: object) -> int | None:
    number = to_finite_number(value)
    if number is None:
        return None
    parsed = floor(number)
    return parsed if parsed > 0 else None


def round_half_up(value: object, digits: int) -> float | None:
    number = to_finite_number(value)
    if number is None:
        return None
    scale = 10**digits
    scaled = number * scale + 0.5
    if not isfinite(scaled):
        return None
    return floor(scaled) / scale


def round2(value: object) -> float | None:
    return round_half_up(value, 2)


def round_ms(value: object) -> float | None:
    return round_half_up(value, 3)


def average(total: float, count: int) -> float | None:
    if not count:
        return None
    return total / count


def safe_pct(numerator: float, denominator: float) -> float:
    if denominator <= 0:
        return 0.0
    raw = (numerator / denominator) * 100.0
    return max(0.0, min(100.0, raw))


@dataclass(slots=True)
class RunningMean:
    total: float = 0.0
    count: int = 0

    def add(self, value: object) -> None:
        number = to_finite_number(value)
        if number is None:
            return
        self.total += number
        self.count += 1

    @property
    def mean(self) -> float | None:
        return average(self.total, self.count)

    def rounded(self) -> float | None:
        return round2(self.mean)


def _quantile_cont(values: list[float], percentile: float) -> float | None:
    if not values:
        return None
    if len(values) == 1:
        return float(values[0])

    sorted_values = sorted(values)
    position = (len(sorted_values) - 1) * percentile
    lower_index = floor(position)
    upper_index = ceil(position)
    if lower_index == upper_index:
        return float(sorted_values[lower_index])

    left = sorted_values[lower_index]
    right = sorted_values[upper_index]
    fraction = position - lower_index
    return float(left + (right - left) * fraction)


def quantile_summary(values: list[float]) -> dict[str, float | int | None]:
    return {
        "count": len(values),
        "p50": round2(_quantile_cont(values, 0.50)),
        "p90": round2(_quantile_cont(values, 0.90)),
        "p95": round2(_quantile_cont(values, 0.95)),
        "p99": round2(_quantile_cont(values, 0.99)),
    }
