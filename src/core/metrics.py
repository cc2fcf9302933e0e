"""In-process metrics collector with Prometheus text exposition."""

from __future__ import annotations

from collections import defaultdict
from threading import Lock
import time
from typing import Dict, List, Tuple


_lock = Lock()
_started_at = time.time()

_http_requests_total: Dict[Tuple[str, str, str], int] = defaultdict(int)
_http_request_duration_sum: Dict[Tuple[str, str], float] = defaultdict(float)
_http_request_duration_count: Dict[Tuple[str, str], int] = defaultdict(int)
_rate_limit_block_total: Dict[str, int] = defaultdict(int)
_generations_dispatched_total: Dict[Tuple[str, str], int] = defaultdict(int)
_task_transitions_total: Dict[Tuple[str, str], int] = defaultdict(int)
_credit_refunds_total: Dict[str, int] = defaultdict(int)
_notifications_total: Dict[Tuple[str, str], int] = defaultdict(int)


def _escape_label(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


def _normalize_label(value: str, *, fallback: str = "unknown") -> str:
    normalized = (value or "").strip()
    return normalized or fallback


def record_http_request(*, method: str, path: str, status_code: int, duration_seconds: float) -> None:
    status = str(status_code)
    method_label = method.upper()
    path_label = path or "unknown"
    duration = max(duration_seconds, 0.0)

    with _lock:
        _http_requests_total[(method_label, path_label, status)] += 1
        _http_request_duration_sum[(method_label, path_label)] += duration
        _http_request_duration_count[(method_label, path_label)] += 1


def record_rate_limit_block(*, kind: str) -> None:
    with _lock:
        _rate_limit_block_total[_normalize_label(kind)] += 1


def record_generation_dispatched(*, provider: str, status: str) -> None:
    with _lock:
        _generations_dispatched_total[(_normalize_label(provider), _normalize_label(status))] += 1


def record_task_transition(*, provider: str, state: str) -> None:
    with _lock:
        _task_transitions_total[(_normalize_label(provider), _normalize_label(state))] += 1


def record_credit_refund(*, reason: str) -> None:
    with _lock:
        _credit_refunds_total[_normalize_label(reason)] += 1


def record_notification(*, provider: str, status: str) -> None:
    with _lock:
        _notifications_total[(_normalize_label(provider), _normalize_label(status))] += 1


def _counter_block(name: str, help_text: str, label_names: Tuple[str, ...], values: Dict) -> List[str]:
    lines = [f"# HELP {name} {help_text}", f"# TYPE {name} counter"]
    for key, value in sorted(values.items()):
        labels = key if isinstance(key, tuple) else (key,)
        rendered = ",".join(
            f'{label}="{_escape_label(item)}"' for label, item in zip(label_names, labels)
        )
        lines.append(f"{name}{{{rendered}}} {value}")
    return lines


def render_prometheus_metrics(*, app_name: str, app_version: str, env: str) -> str:
    uptime = max(time.time() - _started_at, 0.0)

    with _lock:
        http_total = dict(_http_requests_total)
        duration_sum = dict(_http_request_duration_sum)
        duration_count = dict(_http_request_duration_count)
        rate_limit_total = dict(_rate_limit_block_total)
        dispatched_total = dict(_generations_dispatched_total)
        transitions_total = dict(_task_transitions_total)
        refunds_total = dict(_credit_refunds_total)
        notifications_total = dict(_notifications_total)

    lines = [
        "# HELP asmrgen_build_info Build metadata.",
        "# TYPE asmrgen_build_info gauge",
        (
            f'asmrgen_build_info{{app_name="{_escape_label(app_name)}",'
            f'version="{_escape_label(app_version)}",env="{_escape_label(env)}"}} 1'
        ),
        "# HELP asmrgen_process_uptime_seconds Process uptime in seconds.",
        "# TYPE asmrgen_process_uptime_seconds gauge",
        f"asmrgen_process_uptime_seconds {uptime:.6f}",
    ]

    lines.extend(
        _counter_block(
            "asmrgen_http_requests_total",
            "Total HTTP requests.",
            ("method", "path", "status"),
            http_total,
        )
    )

    lines.extend(
        [
            "# HELP asmrgen_http_request_duration_seconds Request duration summary.",
            "# TYPE asmrgen_http_request_duration_seconds summary",
        ]
    )
    for (method, path), value in sorted(duration_sum.items()):
        lines.append(
            (
                f'asmrgen_http_request_duration_seconds_sum{{method="{_escape_label(method)}",'
                f'path="{_escape_label(path)}"}} {value:.6f}'
            )
        )
    for (method, path), value in sorted(duration_count.items()):
        lines.append(
            (
                f'asmrgen_http_request_duration_seconds_count{{method="{_escape_label(method)}",'
                f'path="{_escape_label(path)}"}} {value}'
            )
        )

    lines.extend(
        _counter_block(
            "asmrgen_rate_limit_block_total",
            "Requests blocked by rate limiting.",
            ("kind",),
            rate_limit_total,
        )
    )
    lines.extend(
        _counter_block(
            "asmrgen_generations_dispatched_total",
            "Generation requests dispatched to a provider.",
            ("provider", "status"),
            dispatched_total,
        )
    )
    lines.extend(
        _counter_block(
            "asmrgen_task_transitions_total",
            "Terminal video task transitions.",
            ("provider", "state"),
            transitions_total,
        )
    )
    lines.extend(
        _counter_block(
            "asmrgen_credit_refunds_total",
            "Credit refunds applied.",
            ("reason",),
            refunds_total,
        )
    )
    lines.extend(
        _counter_block(
            "asmrgen_provider_notifications_total",
            "Provider notifications ingested by processing status.",
            ("provider", "status"),
            notifications_total,
        )
    )

    lines.append("")
    return "\n".join(lines)


def reset_metrics_for_tests() -> None:
    global _started_at
    with _lock:
        _http_requests_total.clear()
        _http_request_duration_sum.clear()
        _http_request_duration_count.clear()
        _rate_limit_block_total.clear()
        _generations_dispatched_total.clear()
        _task_transitions_total.clear()
        _credit_refunds_total.clear()
        _notifications_total.clear()
    _started_at = time.time()
