"""
Prometheus Metrics for MedEvidence

Tracks:
- pipeline_runs_total: Counter of pipeline runs, by answer outcome
- tasks_failed_total: Counter of tasks that ended FAILED
- degradations: Translation and synthesis fallbacks
- literature_cache_hit_rate: Gauge for PubMed cache hit rate
- result_recoveries_total: Firings of the recent-result recovery heuristic
- pipeline_latency_seconds: Histogram of pipeline run times
"""

import logging
import threading

logger = logging.getLogger(__name__)

# Thread-safe metrics storage
_lock = threading.Lock()

_metrics: dict[str, float] = {
    "pipeline_runs_total": 0,
    "tasks_failed_total": 0,
    "translation_degraded_total": 0,
    "synthesis_degraded_total": 0,
    "upstream_unavailable_total": 0,
    "cache_hits": 0,
    "cache_misses": 0,
    "result_recoveries_total": 0,
}

_outcomes: dict[str, int] = {}
_latencies: list[float] = []


def record_pipeline_run(
    latency_ms: float,
    outcome: str,
    translation_degraded: bool = False,
    upstream_unavailable: bool = False,
) -> None:
    """Record metrics for a completed pipeline run."""
    with _lock:
        _metrics["pipeline_runs_total"] += 1
        _outcomes[outcome] = _outcomes.get(outcome, 0) + 1
        if outcome == "synthesis_degraded":
            _metrics["synthesis_degraded_total"] += 1
        if translation_degraded:
            _metrics["translation_degraded_total"] += 1
        if upstream_unavailable:
            _metrics["upstream_unavailable_total"] += 1
        _latencies.append(latency_ms)


def record_task_failure() -> None:
    with _lock:
        _metrics["tasks_failed_total"] += 1


def record_cache_lookup(hit: bool) -> None:
    with _lock:
        if hit:
            _metrics["cache_hits"] += 1
        else:
            _metrics["cache_misses"] += 1


def record_result_recovery() -> None:
    with _lock:
        _metrics["result_recoveries_total"] += 1


def get_metric(name: str) -> float:
    with _lock:
        return _metrics.get(name, 0)


def get_metrics_text() -> str:
    """Generate Prometheus-compatible metrics text."""
    with _lock:
        cache_total = _metrics["cache_hits"] + _metrics["cache_misses"]
        cache_hit_rate = _metrics["cache_hits"] / cache_total if cache_total > 0 else 0.0

        sorted_latencies = sorted(_latencies) if _latencies else [0]
        p50 = _percentile(sorted_latencies, 50)
        p95 = _percentile(sorted_latencies, 95)
        p99 = _percentile(sorted_latencies, 99)

        lines = [
            "# HELP pipeline_runs_total Total pipeline runs completed",
            "# TYPE pipeline_runs_total counter",
            f'pipeline_runs_total {int(_metrics["pipeline_runs_total"])}',
        ]
        for outcome, count in sorted(_outcomes.items()):
            lines.append(f'pipeline_runs_by_outcome{{outcome="{outcome}"}} {count}')
        lines += [
            "",
            "# HELP tasks_failed_total Tasks that ended in FAILED",
            "# TYPE tasks_failed_total counter",
            f'tasks_failed_total {int(_metrics["tasks_failed_total"])}',
            "",
            "# HELP translation_degraded_total Queries translated by dictionary fallback",
            "# TYPE translation_degraded_total counter",
            f'translation_degraded_total {int(_metrics["translation_degraded_total"])}',
            "",
            "# HELP synthesis_degraded_total Answers built from the fallback listing",
            "# TYPE synthesis_degraded_total counter",
            f'synthesis_degraded_total {int(_metrics["synthesis_degraded_total"])}',
            "",
            "# HELP upstream_unavailable_total Runs where PubMed exhausted retries",
            "# TYPE upstream_unavailable_total counter",
            f'upstream_unavailable_total {int(_metrics["upstream_unavailable_total"])}',
            "",
            "# HELP pipeline_latency_seconds Pipeline run time histogram",
            "# TYPE pipeline_latency_seconds histogram",
            f'pipeline_latency_seconds{{le="5.0"}} {_count_below(sorted_latencies, 5000)}',
            f'pipeline_latency_seconds{{le="15.0"}} {_count_below(sorted_latencies, 15000)}',
            f'pipeline_latency_seconds{{le="30.0"}} {_count_below(sorted_latencies, 30000)}',
            f'pipeline_latency_seconds{{le="60.0"}} {_count_below(sorted_latencies, 60000)}',
            f"pipeline_latency_seconds_p50 {p50 / 1000:.4f}",
            f"pipeline_latency_seconds_p95 {p95 / 1000:.4f}",
            f"pipeline_latency_seconds_p99 {p99 / 1000:.4f}",
            "",
            "# HELP literature_cache_hit_rate PubMed cache hit ratio",
            "# TYPE literature_cache_hit_rate gauge",
            f"literature_cache_hit_rate {cache_hit_rate:.4f}",
            "",
            "# HELP result_recoveries_total Results adopted by the recent-result recovery heuristic",
            "# TYPE result_recoveries_total counter",
            f'result_recoveries_total {int(_metrics["result_recoveries_total"])}',
        ]

        return "\n".join(lines) + "\n"


def reset_metrics() -> None:
    """Reset all metrics to zero."""
    with _lock:
        for key in _metrics:
            _metrics[key] = 0
        _outcomes.clear()
        _latencies.clear()


def _percentile(sorted_data: list[float], percentile: int) -> float:
    if not sorted_data:
        return 0.0
    idx = int(len(sorted_data) * percentile / 100)
    idx = min(idx, len(sorted_data) - 1)
    return sorted_data[idx]


def _count_below(sorted_data: list[float], threshold_ms: float) -> int:
    count = 0
    for v in sorted_data:
        if v <= threshold_ms:
            count += 1
        else:
            break
    return count
