from __future__ import annotations

from bisect import bisect_left
from typing import Iterable

from guardian.models import CheckResult, Outcome


def window_results(items: list[CheckResult], *, since_ts: float) -> list[CheckResult]:
    """Tail of a chronological result list starting at since_ts."""
    if not items:
        return []
    ts_list = [float(r.started_at) for r in items]
    idx = bisect_left(ts_list, float(since_ts))
    return items[idx:]


def compute_availability(items: list[CheckResult]) -> tuple[int, int, float | None]:
    """
    Returns (total, ok_count, ok_percent_or_None_if_total_0)
    """
    total = len(items)
    if total <= 0:
        return 0, 0, None
    ok_count = sum(1 for r in items if r.ok)
    return total, ok_count, (ok_count / float(total)) * 100.0


def compute_error_rate_percent(items: list[CheckResult]) -> float | None:
    total, ok_count, _pct = compute_availability(items)
    if total <= 0:
        return None
    return ((total - ok_count) / float(total)) * 100.0


def _percentile(sorted_values: list[float], p: float) -> float | None:
    if not sorted_values:
        return None
    p = float(p)
    if p <= 0:
        return float(sorted_values[0])
    if p >= 100:
        return float(sorted_values[-1])
    # Nearest-rank method.
    k = int(round((p / 100.0) * (len(sorted_values) - 1)))
    k = max(0, min(k, len(sorted_values) - 1))
    return float(sorted_values[k])


def latency_percentile_ms(items: Iterable[CheckResult], *, percentile: float, successes_only: bool = True) -> float | None:
    values = sorted(float(r.duration_ms) for r in items if r.ok or not successes_only)
    return _percentile(values, percentile)


def summarize(items: list[CheckResult]) -> dict[str, float | int | None]:
    total, ok_count, ok_pct = compute_availability(items)
    return {
        "total": total,
        "ok": ok_count,
        "availability_percent": ok_pct,
        "error_rate_percent": compute_error_rate_percent(items),
        "p50_ms": latency_percentile_ms(items, percentile=50),
        "p95_ms": latency_percentile_ms(items, percentile=95),
        "timeouts": sum(1 for r in items if r.outcome == Outcome.TIMEOUT),
    }
