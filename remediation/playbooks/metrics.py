"""Metrics collection, export and playbook execution aggregates."""

import logging
import re
import time
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from threading import Lock
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Set, Tuple

from .events import TERMINAL_EVENTS, EventBus, PlaybookEvent
from .models import ExecutionStatus, PlaybookExecution, StepStatus

if TYPE_CHECKING:
    from .registry import PlaybookRegistry

logger = logging.getLogger(__name__)

# Execution durations range from seconds to hours
DURATION_BUCKETS = (1.0, 5.0, 15.0, 30.0, 60.0, 120.0, 300.0, 600.0, 1800.0, 3600.0)


class MetricType(Enum):
    """Type of metric."""

    COUNTER = "counter"
    HISTOGRAM = "histogram"
    GAUGE = "gauge"


@dataclass
class MetricValue:
    """A histogram observation with labels."""

    value: float
    labels: Dict[str, str] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


LabelKey = Tuple[Tuple[str, str], ...]


def _label_key(labels: Optional[Dict[str, str]]) -> LabelKey:
    return tuple(sorted((labels or {}).items()))


class MetricsCollector:
    """
    Thread-safe store for counters, histograms and gauges with labels.

    Example:
        metrics = MetricsCollector()
        metrics.increment_counter(
            "remediation_executions_total", {"playbook": "db_fix", "status": "completed"}
        )
        metrics.observe_histogram("remediation_execution_duration_seconds", 42.0)
    """

    def __init__(self, retention_seconds: int = 3600) -> None:
        """
        Initialize metrics collector.

        Args:
            retention_seconds: How long histogram observations are kept
        """
        self.retention_seconds = retention_seconds
        self._lock = Lock()
        self._counters: Dict[str, Dict[LabelKey, float]] = defaultdict(
            lambda: defaultdict(float)
        )
        self._gauges: Dict[str, Dict[LabelKey, float]] = defaultdict(dict)
        self._histograms: Dict[str, List[MetricValue]] = defaultdict(list)
        self._types: Dict[str, MetricType] = {}
        self._help: Dict[str, str] = {}

    def _declare(self, name: str, metric_type: MetricType, help_text: Optional[str]) -> None:
        known = self._types.setdefault(name, metric_type)
        if known != metric_type:
            raise ValueError(f"Metric '{name}' is a {known.value}, not a {metric_type.value}")
        if help_text:
            self._help.setdefault(name, help_text)

    def increment_counter(
        self,
        name: str,
        labels: Optional[Dict[str, str]] = None,
        value: float = 1.0,
        help_text: Optional[str] = None,
    ) -> None:
        """Increment a counter."""
        with self._lock:
            self._declare(name, MetricType.COUNTER, help_text)
            self._counters[name][_label_key(labels)] += value

    def set_gauge(
        self,
        name: str,
        value: float,
        labels: Optional[Dict[str, str]] = None,
        help_text: Optional[str] = None,
    ) -> None:
        """Set a gauge."""
        with self._lock:
            self._declare(name, MetricType.GAUGE, help_text)
            self._gauges[name][_label_key(labels)] = value

    def observe_histogram(
        self,
        name: str,
        value: float,
        labels: Optional[Dict[str, str]] = None,
        help_text: Optional[str] = None,
    ) -> None:
        """Record a histogram observation and drop expired ones."""
        cutoff = time.time() - self.retention_seconds
        with self._lock:
            self._declare(name, MetricType.HISTOGRAM, help_text)
            observations = [v for v in self._histograms[name] if v.timestamp >= cutoff]
            observations.append(MetricValue(value=value, labels=dict(labels or {})))
            self._histograms[name] = observations

    def get_counter(self, name: str, labels: Optional[Dict[str, str]] = None) -> float:
        """
        Counter value for a label set, or the sum over all label sets when
        labels is None.
        """
        with self._lock:
            values = self._counters.get(name, {})
            if labels is None:
                return sum(values.values())
            return values.get(_label_key(labels), 0.0)

    def get_gauge(self, name: str, labels: Optional[Dict[str, str]] = None) -> float:
        with self._lock:
            return self._gauges.get(name, {}).get(_label_key(labels), 0.0)

    def get_histogram_values(
        self, name: str, labels: Optional[Dict[str, str]] = None
    ) -> List[float]:
        """Observations matching every given label."""
        with self._lock:
            observations = list(self._histograms.get(name, []))
        return [
            v.value
            for v in observations
            if labels is None or all(v.labels.get(k) == val for k, val in labels.items())
        ]

    def get_histogram_stats(
        self, name: str, labels: Optional[Dict[str, str]] = None
    ) -> Dict[str, float]:
        """Count, sum, min, max, avg, p50, p95 and p99 of a histogram."""
        values = sorted(self.get_histogram_values(name, labels))
        if not values:
            return {k: 0.0 for k in ("count", "sum", "min", "max", "avg", "p50", "p95", "p99")}

        total = sum(values)
        return {
            "count": float(len(values)),
            "sum": total,
            "min": values[0],
            "max": values[-1],
            "avg": total / len(values),
            "p50": _percentile(values, 0.50),
            "p95": _percentile(values, 0.95),
            "p99": _percentile(values, 0.99),
        }

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        """All metrics with type, help text and values."""
        with self._lock:
            types = dict(self._types)
            helps = dict(self._help)
            counters = {k: dict(v) for k, v in self._counters.items()}
            gauges = {k: dict(v) for k, v in self._gauges.items()}

        result: Dict[str, Dict[str, Any]] = {}
        for name, metric_type in types.items():
            entry: Dict[str, Any] = {"type": metric_type.value, "help": helps.get(name, "")}
            if metric_type == MetricType.COUNTER:
                entry["values"] = counters.get(name, {})
            elif metric_type == MetricType.GAUGE:
                entry["values"] = gauges.get(name, {})
            else:
                entry["stats"] = self.get_histogram_stats(name)
            result[name] = entry
        return result

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._histograms.clear()
            self._types.clear()
            self._help.clear()


def _percentile(sorted_values: List[float], p: float) -> float:
    """Linear-interpolated percentile of sorted values."""
    k = (len(sorted_values) - 1) * p
    lower = int(k)
    upper = min(lower + 1, len(sorted_values) - 1)
    return sorted_values[lower] + (k - lower) * (sorted_values[upper] - sorted_values[lower])


def _format_labels(labels: LabelKey) -> str:
    if not labels:
        return ""
    parts = []
    for key, value in labels:
        escaped = str(value).replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")
        parts.append(f'{key}="{escaped}"')
    return "{" + ",".join(parts) + "}"


class PrometheusExporter:
    """Render a MetricsCollector in the Prometheus text exposition format."""

    def __init__(self, metrics: MetricsCollector, buckets: Tuple[float, ...] = DURATION_BUCKETS) -> None:
        self.metrics = metrics
        self.buckets = buckets

    def export(self) -> str:
        lines: List[str] = []

        for name, data in sorted(self.metrics.snapshot().items()):
            if data["help"]:
                lines.append(f"# HELP {name} {data['help']}")
            lines.append(f"# TYPE {name} {data['type']}")

            if data["type"] in ("counter", "gauge"):
                for labels, value in sorted(data["values"].items()):
                    lines.append(f"{name}{_format_labels(labels)} {value}")
            else:
                values = self.metrics.get_histogram_values(name)
                for le in self.buckets:
                    count = sum(1 for v in values if v <= le)
                    lines.append(f'{name}_bucket{{le="{le}"}} {count}')
                lines.append(f'{name}_bucket{{le="+Inf"}} {len(values)}')
                lines.append(f"{name}_sum {sum(values)}")
                lines.append(f"{name}_count {len(values)}")

            lines.append("")

        return "\n".join(lines)


# ---------------------------------------------------------------------------
# Playbook execution aggregates
# ---------------------------------------------------------------------------

_NUMBER = re.compile(r"\d+(\.\d+)?")
_HEX_ID = re.compile(r"\b[0-9a-f]{8,}\b")


def error_pattern(error: Optional[str]) -> str:
    """Normalise an error message so similar failures group together."""
    if not error:
        return "unknown error"
    first_line = error.strip().splitlines()[0]
    pattern = _HEX_ID.sub("<id>", first_line)
    pattern = _NUMBER.sub("N", pattern)
    return pattern[:160]


@dataclass
class ExecutionRecord:
    """What the tracker retains about a terminal execution."""

    execution_id: str
    playbook_id: str
    status: ExecutionStatus
    created_at: datetime
    completed_at: Optional[datetime]
    duration_minutes: Optional[float]


@dataclass
class _PlaybookStats:
    total: int = 0
    succeeded: int = 0
    timed: int = 0
    total_minutes: float = 0.0
    last_executed_at: Optional[datetime] = None

    @property
    def success_rate(self) -> float:
        return self.succeeded / self.total if self.total else 0.0

    @property
    def average_minutes(self) -> float:
        return self.total_minutes / self.timed if self.timed else 0.0


class MetricsTracker:
    """
    Aggregates terminal executions per playbook.

    Every terminal execution is counted exactly once: it updates the
    playbook's ``execution_count``, rolling ``success_rate`` (share of
    ``completed`` executions) and ``average_execution_time_minutes`` (over
    executions that ran), and feeds the aggregate queries.

    Example:
        tracker = MetricsTracker(registry)
        tracker.attach(bus)
        ...
        tracker.most_used(limit=5)
    """

    def __init__(
        self,
        registry: Optional["PlaybookRegistry"] = None,
        collector: Optional[MetricsCollector] = None,
    ) -> None:
        """
        Initialize tracker.

        Args:
            registry: Registry whose playbook counters are updated
            collector: Low-level metrics sink (created if omitted)
        """
        self.registry = registry
        self.collector = collector or MetricsCollector()
        self._lock = Lock()
        self._seen: Set[str] = set()
        self._stats: Dict[str, _PlaybookStats] = defaultdict(_PlaybookStats)
        self._records: List[ExecutionRecord] = []
        self._failures: Counter = Counter()

    def attach(self, events: EventBus) -> None:
        """Subscribe to terminal execution events on a bus."""
        events.subscribe(self._on_event, types=TERMINAL_EVENTS)

    def _on_event(self, event: PlaybookEvent) -> None:
        if event.execution is not None:
            self.record(event.execution)

    def record(self, execution: PlaybookExecution) -> bool:
        """
        Account for a terminal execution.

        Returns:
            False if the execution is not terminal or was already recorded
        """
        if not execution.is_terminal:
            return False

        with self._lock:
            if execution.id in self._seen:
                return False
            self._seen.add(execution.id)

            stats = self._stats[execution.playbook_id]
            stats.total += 1
            if execution.status == ExecutionStatus.COMPLETED:
                stats.succeeded += 1

            duration_minutes: Optional[float] = None
            if execution.total_duration_seconds is not None:
                duration_minutes = execution.total_duration_seconds / 60.0
                stats.timed += 1
                stats.total_minutes += duration_minutes

            finished = execution.completed_at or execution.created_at
            if stats.last_executed_at is None or finished > stats.last_executed_at:
                stats.last_executed_at = finished

            self._records.append(
                ExecutionRecord(
                    execution_id=execution.id,
                    playbook_id=execution.playbook_id,
                    status=execution.status,
                    created_at=execution.created_at,
                    completed_at=execution.completed_at,
                    duration_minutes=duration_minutes,
                )
            )

            failed_steps = [
                (step_id, result.error)
                for step_id, result in execution.step_results.items()
                if result.status == StepStatus.FAILED
            ]
            for step_id, error in failed_steps:
                self._failures[(execution.playbook_id, step_id, error_pattern(error))] += 1

            snapshot = (
                stats.total,
                stats.success_rate,
                stats.average_minutes,
                stats.last_executed_at,
            )

        self._export(execution, duration_minutes, [s for s, _ in failed_steps])

        if self.registry is not None:
            self.registry.record_execution_stats(
                execution.playbook_id,
                execution_count=snapshot[0],
                success_rate=snapshot[1],
                average_execution_time_minutes=snapshot[2],
                last_executed_at=snapshot[3],
            )

        logger.debug(
            "Recorded execution %s (%s) for playbook %s",
            execution.id,
            execution.status.value,
            execution.playbook_id,
        )
        return True

    def _export(
        self,
        execution: PlaybookExecution,
        duration_minutes: Optional[float],
        failed_steps: List[str],
    ) -> None:
        labels = {"playbook": execution.playbook_id}
        self.collector.increment_counter(
            "remediation_executions_total",
            {**labels, "status": execution.status.value},
            help_text="Terminal playbook executions by status",
        )
        if duration_minutes is not None:
            self.collector.observe_histogram(
                "remediation_execution_duration_seconds",
                duration_minutes * 60.0,
                labels,
                help_text="Wall-clock duration of playbook executions",
            )
        for step_id in failed_steps:
            self.collector.increment_counter(
                "remediation_step_failures_total",
                {**labels, "step": step_id},
                help_text="Steps that failed after exhausting retries",
            )
        if execution.rollback_actions or execution.rollback_failures:
            self.collector.increment_counter(
                "remediation_rollback_steps_total",
                {**labels, "outcome": "succeeded"},
                value=float(len(execution.rollback_actions)),
                help_text="Rollback steps run, by outcome",
            )
            self.collector.increment_counter(
                "remediation_rollback_steps_total",
                {**labels, "outcome": "failed"},
                value=float(len(execution.rollback_failures)),
            )

    def playbook_stats(self, playbook_id: str) -> Dict[str, Any]:
        """Lifecycle counters for one playbook."""
        with self._lock:
            stats = self._stats.get(playbook_id) or _PlaybookStats()
            return {
                "playbook_id": playbook_id,
                "execution_count": stats.total,
                "success_rate": stats.success_rate,
                "average_execution_time_minutes": stats.average_minutes,
                "last_executed_at": stats.last_executed_at,
            }

    def most_used(self, limit: int = 5) -> List[Dict[str, Any]]:
        """Playbooks with the most terminal executions."""
        with self._lock:
            ranked = sorted(
                self._stats.items(), key=lambda item: (-item[1].total, item[0])
            )[:limit]
            return [
                {
                    "playbook_id": playbook_id,
                    "execution_count": stats.total,
                    "success_rate": stats.success_rate,
                }
                for playbook_id, stats in ranked
            ]

    def trends(self, playbook_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Executions and success rate per day, oldest first."""
        by_day: Dict[date, List[ExecutionRecord]] = defaultdict(list)
        with self._lock:
            for record in self._records:
                if playbook_id is None or record.playbook_id == playbook_id:
                    day = (record.completed_at or record.created_at).date()
                    by_day[day].append(record)

        trends = []
        for day in sorted(by_day):
            records = by_day[day]
            succeeded = sum(1 for r in records if r.status == ExecutionStatus.COMPLETED)
            trends.append(
                {
                    "date": day.isoformat(),
                    "executions": len(records),
                    "successes": succeeded,
                    "success_rate": succeeded / len(records),
                }
            )
        return trends

    def common_failure_points(
        self, limit: int = 10, playbook_id: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """Most frequent (step, error pattern) failures."""
        with self._lock:
            items = [
                (key, count)
                for key, count in self._failures.items()
                if playbook_id is None or key[0] == playbook_id
            ]
        items.sort(key=lambda item: (-item[1], item[0]))
        return [
            {
                "playbook_id": pid,
                "step_id": step_id,
                "error_pattern": pattern,
                "failure_count": count,
            }
            for (pid, step_id, pattern), count in items[:limit]
        ]

    def summary(self) -> Dict[str, Any]:
        """Overall totals plus the aggregate queries."""
        with self._lock:
            by_status = Counter(r.status.value for r in self._records)
            total = len(self._records)
            timed = [r.duration_minutes for r in self._records if r.duration_minutes is not None]

        return {
            "total_executions": total,
            "by_status": dict(by_status),
            "success_rate": by_status.get(ExecutionStatus.COMPLETED.value, 0) / total
            if total
            else 0.0,
            "average_execution_time_minutes": sum(timed) / len(timed) if timed else 0.0,
            "most_used": self.most_used(),
            "trends": self.trends(),
            "common_failure_points": self.common_failure_points(),
        }
