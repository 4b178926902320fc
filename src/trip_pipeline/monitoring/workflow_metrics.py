"""
Workflow Metrics

In-process metrics for pipeline runs: per-stage durations and outcomes,
degradations and terminal workflow results. Exposed through the health
endpoint.
"""

import logging
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from threading import Lock
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

STAGE_OUTCOMES = ("success", "degraded", "skipped", "failed")


@dataclass
class StageRunMetric:
    """Metric for a single stage execution"""
    workflow_id: str
    stage: str
    outcome: str
    duration_ms: float
    timestamp: float
    provider: Optional[str] = None
    reason: Optional[str] = None


class WorkflowMetricsCollector:
    """
    Collects stage and workflow outcomes.

    Stage history is a bounded deque; counters are cumulative since start
    (or the last reset).
    """

    def __init__(self, max_history_size: int = 5000):
        self.max_history_size = max_history_size
        self._lock = Lock()

        self.stage_history: deque = deque(maxlen=max_history_size)
        self.stage_outcomes: Dict[str, Dict[str, int]] = defaultdict(lambda: defaultdict(int))
        self.workflow_outcomes: Dict[str, int] = defaultdict(int)
        self.provider_usage: Dict[str, int] = defaultdict(int)
        self.active_workflows: Dict[str, float] = {}

    def record_workflow_start(self, workflow_id: str) -> None:
        with self._lock:
            self.active_workflows.setdefault(workflow_id, time.time())

    def record_stage(
        self,
        workflow_id: str,
        stage: str,
        outcome: str,
        duration_ms: float,
        provider: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> None:
        """Record a stage execution"""
        if outcome not in STAGE_OUTCOMES:
            raise ValueError(f"Unknown stage outcome: {outcome}")

        with self._lock:
            self.stage_history.append(StageRunMetric(
                workflow_id=workflow_id,
                stage=stage,
                outcome=outcome,
                duration_ms=duration_ms,
                timestamp=time.time(),
                provider=provider,
                reason=reason,
            ))
            self.stage_outcomes[stage][outcome] += 1
            if provider:
                self.provider_usage[provider] += 1

    def record_workflow_end(self, workflow_id: str, status: str, partial: bool = False) -> None:
        with self._lock:
            self.active_workflows.pop(workflow_id, None)
            self.workflow_outcomes[status] += 1
            if partial:
                self.workflow_outcomes["partial"] += 1

    def get_stage_metrics(self, time_window_minutes: int = 60) -> Dict[str, Any]:
        """Average durations and outcome counts per stage in the time window"""
        with self._lock:
            window_start = time.time() - (time_window_minutes * 60)
            recent = [metric for metric in self.stage_history if metric.timestamp >= window_start]

            durations: Dict[str, Dict[str, float]] = {}
            for stage in sorted(set(metric.stage for metric in recent)):
                values = [metric.duration_ms for metric in recent if metric.stage == stage]
                durations[stage] = {
                    "avg_ms": round(sum(values) / len(values), 2),
                    "max_ms": round(max(values), 2),
                    "count": len(values),
                }

            return {
                "time_window_minutes": time_window_minutes,
                "stage_runs": len(recent),
                "stage_durations": durations,
                "degraded_runs": sum(1 for metric in recent if metric.outcome in ("degraded", "skipped")),
            }

    def export_metrics(self) -> Dict[str, Any]:
        with self._lock:
            snapshot = {
                "active_workflows": len(self.active_workflows),
                "workflow_outcomes": dict(self.workflow_outcomes),
                "stage_outcomes": {stage: dict(counts) for stage, counts in self.stage_outcomes.items()},
                "provider_usage": dict(self.provider_usage),
            }
        snapshot.update(self.get_stage_metrics())
        return snapshot

    def reset_metrics(self) -> None:
        with self._lock:
            self.stage_history.clear()
            self.stage_outcomes.clear()
            self.workflow_outcomes.clear()
            self.provider_usage.clear()
            self.active_workflows.clear()
        logger.info("Workflow metrics reset")


# Global metrics collector instance
_workflow_metrics_collector = None


def get_workflow_metrics_collector() -> WorkflowMetricsCollector:
    """Get singleton instance of WorkflowMetricsCollector"""
    global _workflow_metrics_collector

    if _workflow_metrics_collector is None:
        _workflow_metrics_collector = WorkflowMetricsCollector()

    return _workflow_metrics_collector
