"""Monitoring module for workflow metrics collection."""

from .workflow_metrics import (
    StageRunMetric,
    WorkflowMetricsCollector,
    get_workflow_metrics_collector,
)

__all__ = [
    'StageRunMetric',
    'WorkflowMetricsCollector',
    'get_workflow_metrics_collector',
]
