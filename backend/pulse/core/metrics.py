"""
Prometheus 指标

进程内指标注册表，/metrics 端点按 Prometheus 文本格式输出。
"""
import threading
import time
from typing import Dict, Iterable, List, Optional, Tuple

LabelKey = Tuple[Tuple[str, str], ...]

METRIC_PREFIX = "pulse"
HTTP_DURATION_BUCKETS = (0.1, 0.5, 1.0, 2.0, 5.0)

_METRIC_LOCK = threading.Lock()
START_TIME = time.time()


def _label_key(labels: Optional[Dict[str, str]]) -> LabelKey:
    return tuple(sorted((k, str(v)) for k, v in (labels or {}).items()))


def _format_labels(key: LabelKey) -> str:
    parts = []
    for name, value in key:
        escaped = value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")
        parts.append(f'{name}="{escaped}"')
    return ",".join(parts)


def _format_value(value: float) -> str:
    if float(value).is_integer():
        return str(int(value))
    return f"{value:.6f}"


class Counter:
    def __init__(self, name: str, help_text: str) -> None:
        self.name = name
        self.help_text = help_text
        self._values: Dict[LabelKey, float] = {}

    def inc(self, amount: float = 1.0, **labels: str) -> None:
        key = _label_key(labels)
        with _METRIC_LOCK:
            self._values[key] = self._values.get(key, 0.0) + amount

    def value(self, **labels: str) -> float:
        with _METRIC_LOCK:
            return self._values.get(_label_key(labels), 0.0)

    def render(self) -> List[str]:
        lines = [f"# HELP {self.name} {self.help_text}", f"# TYPE {self.name} counter"]
        for key, value in sorted(self._values.items()):
            labels = _format_labels(key)
            series = f"{self.name}{{{labels}}}" if labels else self.name
            lines.append(f"{series} {_format_value(value)}")
        return lines


class Gauge(Counter):
    def set(self, value: float, **labels: str) -> None:
        with _METRIC_LOCK:
            self._values[_label_key(labels)] = float(value)

    def render(self) -> List[str]:
        lines = super().render()
        lines[1] = f"# TYPE {self.name} gauge"
        return lines


class Histogram:
    def __init__(self, name: str, help_text: str, buckets: Iterable[float]) -> None:
        self.name = name
        self.help_text = help_text
        self.buckets = tuple(sorted(buckets))
        # key -> (bucket counts, sum, count)
        self._series: Dict[LabelKey, Tuple[List[int], float, int]] = {}

    def observe(self, value: float, **labels: str) -> None:
        key = _label_key(labels)
        with _METRIC_LOCK:
            counts, total, count = self._series.get(key, ([0] * len(self.buckets), 0.0, 0))
            for idx, bound in enumerate(self.buckets):
                if value <= bound:
                    counts[idx] += 1
            self._series[key] = (counts, total + value, count + 1)

    def render(self) -> List[str]:
        lines = [f"# HELP {self.name} {self.help_text}", f"# TYPE {self.name} histogram"]
        for key, (counts, total, count) in sorted(self._series.items()):
            for bound, bucket_count in zip(self.buckets, counts):
                labels = _format_labels(key + (("le", _format_value(bound)),))
                lines.append(f"{self.name}_bucket{{{labels}}} {bucket_count}")
            labels = _format_labels(key + (("le", "+Inf"),))
            lines.append(f"{self.name}_bucket{{{labels}}} {count}")
            base = _format_labels(key)
            suffix = f"{{{base}}}" if base else ""
            lines.append(f"{self.name}_sum{suffix} {total:.6f}")
            lines.append(f"{self.name}_count{suffix} {count}")
        return lines


http_requests_total = Counter(
    f"{METRIC_PREFIX}_http_requests_total", "Total HTTP requests"
)
http_request_duration_seconds = Histogram(
    f"{METRIC_PREFIX}_http_request_duration_seconds",
    "HTTP request duration in seconds",
    HTTP_DURATION_BUCKETS,
)
queries_executed_total = Counter(
    f"{METRIC_PREFIX}_queries_executed_total", "Query executions"
)
dataset_refresh_total = Counter(
    f"{METRIC_PREFIX}_dataset_refresh_total", "Dataset refreshes"
)
schedule_execution_total = Counter(
    f"{METRIC_PREFIX}_schedule_execution_total", "Schedule executions by final state"
)
realtime_connections = Gauge(
    f"{METRIC_PREFIX}_realtime_connections", "Open realtime sockets"
)

_REGISTRY = (
    http_requests_total,
    http_request_duration_seconds,
    queries_executed_total,
    dataset_refresh_total,
    schedule_execution_total,
    realtime_connections,
)


def render_prometheus_metrics() -> str:
    lines: List[str] = [
        f"# HELP {METRIC_PREFIX}_uptime_seconds Application uptime",
        f"# TYPE {METRIC_PREFIX}_uptime_seconds gauge",
        f"{METRIC_PREFIX}_uptime_seconds {max(time.time() - START_TIME, 0.0):.3f}",
    ]
    with _METRIC_LOCK:
        for metric in _REGISTRY:
            lines.extend(metric.render())
    lines.append("")
    return "\n".join(lines)
