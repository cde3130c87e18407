from __future__ import annotations

import math
from pathlib import Path
import sys

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from metrics import (
    RunningMean,
    average,
    quantile_summary,
    round2,
    round_ms,
    safe_pct,
    to_finite_number,
    to_positive_int,
)


def test_quantile_summary_empty_values() -> None:
    summary = quantile_summary([])
    assert summary["count"] == 0
    assert summary["p50"] is None
    assert summary["p99"] is None


def test_quantile_summary_expected_values() -> None:
    summary = quantile_summary([1.0, 2.0, 3.0, 4.0])
    assert summary["count"] == 4
    assert summary["p50"] == pytest.approx(2.5)
    assert summary["p90"] == pytest.approx(3.7)
    assert summary["p95"] == pytest.approx(3.85)
    assert summary["p99"] == pytest.approx(3.97)


def test_quantile_summary_single_value() -> None:
    summary = quantile_summary([7.5])
    assert summary["count"] == 1
    assert summary["p50"] == pytest.approx(7.5)
    assert summary["p99"] == pytest.approx(7.5)


def test_to_finite_number_rejects_bools_and_non_finite_values() -> None:
    assert to_finite_number(3) == 3
    assert to_finite_number(2.5) == 2.5
    assert to_finite_number(True) is None
    assert to_finite_number("12") is None
    assert to_finite_number(None) is None
    assert to_finite_number(math.nan) is None
    assert to_finite_number(math.inf) is None


def test_to_positive_int_floors_and_drops_non_positive() -> None:
    assert to_positive_int(3.9) == 3
    assert to_positive_int(1) == 1
    assert to_positive_int(0.5) is None
    assert to_positive_int(-2) is None
    assert to_positive_int("4") is None


def test_round2_rounds_half_up() -> None:
    assert round2(33.333333) == pytest.approx(33.33)
    assert round2(0.125) == pytest.approx(0.13)
    assert round2(None) is None
    assert round2(math.nan) is None
    assert round_ms(12.34567) == pytest.approx(12.346)


def test_rounding_overflow_yields_null() -> None:
    assert round2(1e307) is None
    assert round_ms(1e306) is None
    assert round2(1e300) == pytest.approx(1e300)


def test_average_is_null_without_samples() -> None:
    assert average(0.0, 0) is None
    assert average(10.0, 4) == pytest.approx(2.5)


def test_safe_pct_clamps_and_handles_zero_denominator() -> None:
    assert safe_pct(1, 3) == pytest.approx(33.3333, rel=1e-4)
    assert safe_pct(5, 0) == 0.0
    assert safe_pct(5, -1) == 0.0
    assert safe_pct(7, 5) == 100.0
    assert safe_pct(-1, 5) == 0.0


def test_running_mean_ignores_missing_values() -> None:
    mean = RunningMean()
    assert mean.mean is None
    assert mean.rounded() is None

    for value in (10, None, "x", 20.0, math.inf, 15):
        mean.add(value)

    assert mean.count == 3
    assert mean.mean == pytest.approx(15.0)
    assert mean.rounded() == pytest.approx(15.0)
