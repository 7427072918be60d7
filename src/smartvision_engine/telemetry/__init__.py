"""Metrics and counters."""

from .metrics import MetricsPublisher, PipelineCounters

__all__ = ["MetricsPublisher", "PipelineCounters"]
