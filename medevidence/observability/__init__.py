"""
MedEvidence Observability Module

Prometheus metrics for pipeline runs, caching and degradations.
"""

from medevidence.observability.metrics import get_metrics_text, record_pipeline_run

__all__ = ["get_metrics_text", "record_pipeline_run"]
